from typing import Optional

from fastapi import APIRouter, Header, Query

from casematch.auth import assert_actor_authorized
from casematch.models import Bid, BidStatus, BidWithdrawRequest
from casematch.routers.errors import raise_http_error
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

router = APIRouter(prefix="/bids", tags=["bids"])


@router.get("", response_model=list[Bid])
def list_provider_bids(
    provider_id: str = Query(...),
    status: Optional[BidStatus] = Query(default=None),
):
    try:
        return engine.bids.list_provider_bids(provider_id, status)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.put("/{bid_id}/withdraw", response_model=Bid)
def withdraw_bid(
    bid_id: str,
    request: BidWithdrawRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.withdraw_bid(bid_id, request.provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)
