from fastapi import APIRouter, Query

from casematch.models import DeclinedCase, QueueOffer
from casematch.routers.errors import raise_http_error
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/available", response_model=list[QueueOffer])
def list_available_cases(
    provider_id: str = Query(...),
    limit: int = Query(default=20),
):
    try:
        return engine.requeue.get_available_from_queue(provider_id, limit)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/declined", response_model=list[DeclinedCase])
def list_declined_cases(provider_id: str = Query(...)):
    try:
        return engine.requeue.list_declined(provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)
