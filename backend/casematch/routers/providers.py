import logging
from typing import Optional

from fastapi import APIRouter, Header

from casematch.auth import assert_actor_authorized, assert_admin_authorized
from casematch.models import (
    AwardPointsRequest,
    PointsBalance,
    Provider,
    ProviderRegisterRequest,
    TrialStatus,
    TrialSweepResult,
)
from casematch.routers.errors import raise_http_error
from casematch.services.database import CaseEngineError
from casematch.services.engine import engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["providers"])


@router.post("", response_model=Provider, status_code=201)
def register_provider(
    request: ProviderRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=request.provider_id, authorization=authorization)
    try:
        return engine.register_provider(
            request.provider_id,
            display_name=request.display_name,
            tier=request.tier,
            points_balance=request.points_balance,
        )
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/trials/sweep", response_model=TrialSweepResult)
def sweep_trials(authorization: Optional[str] = Header(default=None)):
    admin_id = assert_admin_authorized(authorization=authorization)
    try:
        result = engine.sweep_trials()
        logger.info("Trial sweep triggered admin=%s expired=%s", admin_id, len(result.expired_provider_ids))
        return result
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}", response_model=Provider)
def get_provider(provider_id: str):
    try:
        return engine.get_provider(provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/trial", response_model=TrialStatus)
def get_trial_status(provider_id: str):
    try:
        return engine.trial_gate.can_accept(provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/{provider_id}/trial/reset", response_model=TrialStatus)
def reset_trial(
    provider_id: str,
    authorization: Optional[str] = Header(default=None),
):
    admin_id = assert_admin_authorized(authorization=authorization)
    try:
        trial = engine.trial_gate.reset_trial(provider_id)
        logger.info("Trial reset provider=%s admin=%s", provider_id, admin_id)
        return trial
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/points", response_model=PointsBalance)
def get_points(
    provider_id: str,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_id=provider_id, authorization=authorization)
    try:
        return engine.points.balance(provider_id)
    except CaseEngineError as exc:
        raise_http_error(exc)


@router.post("/{provider_id}/points/award", response_model=PointsBalance)
def award_points(
    provider_id: str,
    request: AwardPointsRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin_authorized(authorization=authorization)
    try:
        return engine.points.award_points(provider_id, request.points, request.reason)
    except CaseEngineError as exc:
        raise_http_error(exc)
