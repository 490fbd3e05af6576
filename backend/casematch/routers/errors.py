from fastapi import HTTPException

from casematch.services.database import (
    CaseConflictError,
    CaseEngineError,
    CaseNotFoundError,
    CasePermissionError,
    CaseStoreInternalError,
    CaseValidationError,
    InvalidTransitionError,
    TrialLimitError,
)

STATUS_CODES = (
    (CaseNotFoundError, 404),
    (CasePermissionError, 403),
    (CaseConflictError, 409),
    (InvalidTransitionError, 409),
    (CaseValidationError, 400),
    (CaseStoreInternalError, 500),
)


def raise_http_error(exc: CaseEngineError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, TrialLimitError):
        detail["reason"] = exc.reason.value
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=detail) from exc
    raise HTTPException(status_code=400, detail=detail) from exc
