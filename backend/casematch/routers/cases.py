from typing import Optional

from fastapi import APIRouter, Header, Query, Response

from casematch.auth import assert_actor_authorized, assert_admin_authorized
from casematch.models import (
    AcceptCaseRequest,
    AssignmentType,
    Bid,
    BidCreateRequest,
    CancelCaseRequest,
    Case,
    CaseCreateRequest,
    CasePage,
    CaseStatus,
    CaseStatusEvent,
    CompleteCaseRequest,
    CompletionResult,
    DeclineCaseRequest,
    DeclineResult,
    IncomeRecord,
    IncomeRecordRequest,
    OfferExpiryResult,
    WinnerSelectionRequest,
    WinnerSelectionResult,
)
from casematch.routers.errors import raise_http_error
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

router = APIRouter(prefix="/cases", tags=["cases"])


@router.post("", response_model=Case, status_code=201)
def create_case(
    request: CaseCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.customer_id, authorization=authorization)
    try:
        return engine.create_case(
            customer_id=request.customer_id,
            service_type=request.service_type,
            description=request.description,
            city=request.city,
            assignment_type=request.assignment_type,
            target_provider_id=request.target_provider_id,
            category=request.category,
            neighborhood=request.neighborhood,
            phone=request.phone,
            preferred_date=request.preferred_date,
            priority=request.priority,
            budget=request.budget,
            max_bidders=request.max_bidders,
            allow_requeue=request.allow_requeue,
        )
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("", response_model=CasePage)
def list_cases(
    status: Optional[CaseStatus] = Query(default=None),
    only_unassigned: bool = Query(default=False),
    customer_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    assignment_type: Optional[AssignmentType] = Query(default=None),
    exclude_declined_by: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=20),
):
    try:
        return engine.registry.list_cases(
            status=status,
            only_unassigned=only_unassigned,
            customer_id=customer_id,
            provider_id=provider_id,
            assignment_type=assignment_type,
            exclude_declined_by=exclude_declined_by,
            page=page,
            limit=limit,
        )
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/offers/expire", response_model=OfferExpiryResult)
def expire_offers(authorization: Optional[str] = Header(default=None)):
    assert_admin_authorized(authorization=authorization)
    try:
        return engine.expire_offers()
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{case_id}", response_model=Case)
def get_case(case_id: str):
    try:
        return engine.get_case(case_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{case_id}/history", response_model=list[CaseStatusEvent])
def get_case_history(case_id: str):
    try:
        return engine.registry.list_history(case_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{case_id}/accept", response_model=Case)
def accept_case(
    case_id: str,
    request: AcceptCaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.accept_case(case_id, request.provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{case_id}/decline", response_model=DeclineResult)
def decline_case(
    case_id: str,
    request: DeclineCaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.decline_case(case_id, request.provider_id, request.reason)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{case_id}/cancel", response_model=Case)
def cancel_case(
    case_id: str,
    request: CancelCaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.actor_id, authorization=authorization)
    try:
        return engine.cancel_case(case_id, request.actor_id, request.reason)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/{case_id}/bids", response_model=Bid, status_code=201)
def place_bid(
    case_id: str,
    request: BidCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.place_bid(case_id, request.provider_id, request.points, request.comment)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{case_id}/bids", response_model=list[Bid])
def list_case_bids(case_id: str):
    try:
        return engine.bids.list_bids(case_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{case_id}/select-winner", response_model=WinnerSelectionResult)
def select_winner(
    case_id: str,
    request: WinnerSelectionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.customer_id, authorization=authorization)
    try:
        return engine.select_winner(case_id, request.bid_id, request.customer_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{case_id}/complete", response_model=CompletionResult)
def complete_case(
    case_id: str,
    request: CompleteCaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.complete_case(case_id, request.provider_id, request.completion_notes, request.income)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/{case_id}/income", response_model=IncomeRecord, status_code=201)
def record_case_income(
    case_id: str,
    request: IncomeRecordRequest,
    response: Response,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        record, created = engine.completion.record_income(case_id, request.provider_id, request.income)
    except CaseEngineError as exc:
        raise_http_error(exc)
    if not created:
        response.status_code = 200
    return record
