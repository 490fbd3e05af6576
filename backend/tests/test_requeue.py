import os
import sys
import tempfile
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("CASES_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="casematch-tests-"), "cases.sqlite3"))

from casematch.models import AssignmentType, CaseStatus, ProviderTier
from casematch.services.database import (
    CaseConflictError,
    CasePermissionError,
    CaseValidationError,
    utcnow,
)
from casematch.services.engine import MatchingEngine
from casematch.services.notification_store import NotificationStore


def _engine(tmp_path):
    return MatchingEngine(db_path=str(tmp_path / "cases.sqlite3"), notifications=NotificationStore())


def _specific_case(engine, target, allow_requeue=True, customer_id="cust_1"):
    return engine.create_case(
        customer_id=customer_id,
        service_type="roofing",
        description="Replace cracked roof tiles",
        city="Burgas",
        assignment_type=AssignmentType.SPECIFIC,
        target_provider_id=target,
        allow_requeue=allow_requeue,
    )


def _open_case(engine, customer_id="cust_1"):
    return engine.create_case(
        customer_id=customer_id,
        service_type="cleaning",
        description="Deep clean after renovation",
        city="Burgas",
    )


def test_declined_specific_case_is_requeued_and_taken(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO)
    engine.register_provider("prov_2", tier=ProviderTier.PRO)
    case = _specific_case(engine, "prov_1")

    result = engine.decline_case(case.id, "prov_1", "too far")
    assert result.requeued
    assert result.case.status == CaseStatus.PENDING
    assert result.case.assignment_type == AssignmentType.OPEN
    assert result.case.target_provider_id is None
    assert result.case.decline_reason == "too far"
    assert result.queue_entry.original_provider_id == "prov_1"
    assert result.queue_entry.reason == "too far"

    offers = engine.requeue.get_available_from_queue("prov_2")
    assert [offer.case.id for offer in offers] == [case.id]
    assert engine.requeue.get_available_from_queue("prov_1") == []

    accepted = engine.accept_case(case.id, "prov_2")
    assert accepted.status == CaseStatus.ACCEPTED
    assert accepted.provider_id == "prov_2"

    declined = engine.requeue.list_declined("prov_1")
    assert [item.case.id for item in declined] == [case.id]
    assert declined[0].reason == "too far"
    assert engine.requeue.get_available_from_queue("prov_2") == []

    inbox = engine.notifications.list_for_user("cust_1")
    assert [item.title for item in inbox[:2]] == ["Case accepted", "Case declined"]


def test_decliner_is_never_offered_the_case_again(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO, points_balance=50)
    case = _specific_case(engine, "prov_1")
    engine.decline_case(case.id, "prov_1", "busy this week")

    with pytest.raises(CasePermissionError):
        engine.accept_case(case.id, "prov_1")
    with pytest.raises(CasePermissionError):
        engine.place_bid(case.id, "prov_1", 10)
    with pytest.raises(CaseConflictError):
        engine.decline_case(case.id, "prov_1", "still busy")
    visible = engine.registry.list_cases(exclude_declined_by="prov_1")
    assert case.id not in {item.id for item in visible.items}


def test_decline_requires_reason_and_rights(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO, points_balance=50)
    case = _specific_case(engine, "prov_1")

    with pytest.raises(CaseValidationError):
        engine.decline_case(case.id, "prov_1", "   ")
    with pytest.raises(CasePermissionError):
        engine.decline_case(case.id, "prov_other", "not mine")

    open_case = _open_case(engine)
    with pytest.raises(CasePermissionError):
        engine.decline_case(open_case.id, "cust_1", "my own case")
    engine.place_bid(open_case.id, "prov_1", 5)
    with pytest.raises(CaseConflictError):
        engine.decline_case(open_case.id, "prov_1", "changed my mind")

    engine.accept_case(case.id, "prov_1")
    with pytest.raises(CaseConflictError):
        engine.decline_case(case.id, "prov_1", "too late")


def test_decline_without_requeue_ends_the_case(tmp_path):
    engine = _engine(tmp_path)
    case = _specific_case(engine, "prov_1", allow_requeue=False)

    result = engine.decline_case(case.id, "prov_1", "not my trade")
    assert not result.requeued
    assert result.case.status == CaseStatus.DECLINED
    assert result.case.provider_id is None
    assert result.case.decline_reason == "not my trade"
    assert engine.requeue.get_available_from_queue("prov_2") == []


def test_queue_is_first_in_first_out(tmp_path):
    engine = _engine(tmp_path)
    first = _specific_case(engine, "prov_1")
    second = _specific_case(engine, "prov_1", customer_id="cust_2")
    third = _specific_case(engine, "prov_3")

    engine.decline_case(first.id, "prov_1", "too far")
    engine.decline_case(third.id, "prov_3", "too far")
    engine.decline_case(second.id, "prov_1", "too far")

    offers = engine.requeue.get_available_from_queue("prov_9")
    assert [offer.case.id for offer in offers] == [first.id, third.id, second.id]
    positions = [offer.queue_position for offer in offers]
    assert positions == sorted(positions)

    own = engine.requeue.get_available_from_queue("cust_2")
    assert second.id not in {offer.case.id for offer in own}


def test_fully_declined_open_case_stays_pending(tmp_path):
    engine = _engine(tmp_path)
    case = _open_case(engine)
    for provider_id in ("prov_1", "prov_2", "prov_3"):
        result = engine.decline_case(case.id, provider_id, "not available")
        assert result.case.status == CaseStatus.PENDING

    assert engine.get_case(case.id).status == CaseStatus.PENDING
    offers = engine.requeue.get_available_from_queue("prov_4")
    assert [offer.case.id for offer in offers] == [case.id]
    assert offers[0].queue_position == 1
    assert engine.cancel_case(case.id, "cust_1").status == CaseStatus.CANCELLED
    assert engine.requeue.get_available_from_queue("prov_4") == []


def test_unanswered_offers_expire(tmp_path):
    engine = _engine(tmp_path)
    stale = _specific_case(engine, "prov_1")
    no_requeue = _specific_case(engine, "prov_2", allow_requeue=False)

    assert engine.expire_offers().expired_case_ids == []

    result = engine.expire_offers(now=utcnow() + timedelta(hours=25))
    assert set(result.expired_case_ids) == {stale.id, no_requeue.id}

    requeued = engine.get_case(stale.id)
    assert requeued.status == CaseStatus.PENDING
    assert requeued.assignment_type == AssignmentType.OPEN
    assert requeued.decline_reason == "expired"
    assert engine.get_case(no_requeue.id).status == CaseStatus.DECLINED

    with pytest.raises(CasePermissionError):
        engine.accept_case(stale.id, "prov_1")
    assert engine.expire_offers(now=utcnow() + timedelta(hours=50)).expired_case_ids == []
