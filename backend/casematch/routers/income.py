from typing import Optional

from fastapi import APIRouter, Header, Query

from casematch.auth import assert_actor_authorized
from casematch.models import IncomeBucket, IncomeRecord, IncomeStats, IncomeUpdateRequest
from casematch.routers.errors import raise_http_error
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

router = APIRouter(prefix="/income", tags=["income"])


@router.get("/{provider_id}/stats", response_model=IncomeStats)
def get_income_stats(
    provider_id: str,
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
):
    try:
        return engine.completion.income_stats(provider_id, start=start, end=end)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/months/{month}", response_model=list[IncomeRecord])
def get_income_for_month(provider_id: str, month: str):
    try:
        return engine.completion.income_by_month(provider_id, month)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/methods/{payment_method}", response_model=list[IncomeRecord])
def get_income_for_method(provider_id: str, payment_method: str):
    try:
        return engine.completion.income_by_method(provider_id, payment_method)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/years", response_model=list[IncomeBucket])
def get_income_years(provider_id: str):
    try:
        return engine.completion.income_years(provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/records/{income_id}", response_model=IncomeRecord)
def update_income_record(
    income_id: str,
    request: IncomeUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.completion.update_income(
            income_id,
            request.provider_id,
            amount=request.amount,
            payment_method=request.payment_method,
            notes=request.notes,
        )
    except CaseEngineError as exc:
        raise_http_error(exc)
