import logging
import os

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from casematch.env import env_csv
from casematch.routers import bids, cases, income, notifications, providers, queue
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CaseMatch API", version="0.1.0")

cors_origins = env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(queue.router)
app.include_router(cases.router)
app.include_router(bids.router)
app.include_router(income.router)
app.include_router(providers.router)
app.include_router(notifications.router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "code": "VALIDATION",
                "message": "Request body or parameters are invalid",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    try:
        engine.ping()
    except CaseEngineError:
        logger.warning("Readiness check failed: case store unavailable")
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": "error"})
    return {"status": "ready", "database": "ok"}
