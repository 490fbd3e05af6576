import os
import sys
import tempfile
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("CASES_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="casematch-tests-"), "cases.sqlite3"))

from casematch.models import AssignmentType, CaseStatus, ProviderTier
from casematch.services.case_registry import TRANSITIONS, is_valid_transition
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    InvalidTransitionError,
)
from casematch.services.engine import MatchingEngine
from casematch.services.notification_store import NotificationStore


def _engine(tmp_path):
    return MatchingEngine(db_path=str(tmp_path / "cases.sqlite3"), notifications=NotificationStore())


def _open_case(engine, customer_id="cust_1", **overrides):
    fields = {
        "customer_id": customer_id,
        "service_type": "plumbing",
        "description": "Leaking kitchen tap",
        "city": "Sofia",
    }
    fields.update(overrides)
    return engine.create_case(**fields)


def test_transition_table_covers_every_status():
    assert set(TRANSITIONS) == set(CaseStatus)
    assert is_valid_transition(CaseStatus.PENDING, CaseStatus.ACCEPTED)
    assert is_valid_transition(CaseStatus.ACCEPTED, CaseStatus.CANCELLED)
    assert not is_valid_transition(CaseStatus.COMPLETED, CaseStatus.PENDING)
    assert not is_valid_transition(CaseStatus.DECLINED, CaseStatus.ACCEPTED)
    assert not is_valid_transition(CaseStatus.PENDING, CaseStatus.COMPLETED)


def test_create_case_defaults(tmp_path):
    engine = _engine(tmp_path)
    case = _open_case(engine)
    assert case.status == CaseStatus.PENDING
    assert case.assignment_type == AssignmentType.OPEN
    assert case.provider_id is None
    assert case.max_bidders == 3
    assert case.current_bidders == 0
    assert case.category == "plumbing"
    assert case.offered_at is None

    history = engine.registry.list_history(case.id)
    assert [(event.from_status, event.to_status) for event in history] == [("none", "pending")]


def test_create_case_validation(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(CaseValidationError):
        _open_case(engine, service_type="  ")
    with pytest.raises(CaseValidationError):
        _open_case(engine, description="")
    with pytest.raises(CaseValidationError):
        _open_case(engine, city="")
    with pytest.raises(CaseValidationError):
        _open_case(engine, assignment_type=AssignmentType.SPECIFIC)
    with pytest.raises(CaseValidationError):
        _open_case(engine, target_provider_id="prov_1")
    with pytest.raises(CaseValidationError):
        _open_case(engine, max_bidders=0)


def test_specific_case_cannot_target_its_customer(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(CasePermissionError):
        _open_case(engine, customer_id="same_user", assignment_type=AssignmentType.SPECIFIC, target_provider_id="same_user")


def test_specific_case_records_offer_time(tmp_path):
    engine = _engine(tmp_path)
    case = _open_case(engine, assignment_type=AssignmentType.SPECIFIC, target_provider_id="prov_1")
    assert case.target_provider_id == "prov_1"
    assert case.offered_at is not None


def test_invalid_edge_is_rejected(tmp_path):
    engine = _engine(tmp_path)
    case = _open_case(engine)
    with pytest.raises(InvalidTransitionError):
        with engine.db.transaction() as conn:
            engine.registry.transition(conn, case.id, CaseStatus.PENDING, CaseStatus.COMPLETED, actor_id="x")
    assert engine.get_case(case.id).status == CaseStatus.PENDING


def test_stale_transition_is_a_conflict(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO)
    case = _open_case(engine)
    engine.accept_case(case.id, "prov_1")

    with pytest.raises(CaseConflictError) as exc_info:
        with engine.db.transaction() as conn:
            engine.registry.transition(
                conn,
                case.id,
                CaseStatus.PENDING,
                CaseStatus.CANCELLED,
                actor_id="cust_1",
            )
    assert "accepted" in str(exc_info.value)


def test_unknown_case_is_not_found(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(CaseNotFoundError):
        engine.get_case("case_missing")
    with pytest.raises(CaseNotFoundError):
        engine.accept_case("case_missing", "prov_1")


def test_provider_id_set_only_while_owned(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO)
    case = _open_case(engine)
    accepted = engine.accept_case(case.id, "prov_1")
    assert accepted.status == CaseStatus.ACCEPTED
    assert accepted.provider_id == "prov_1"
    assert accepted.accepted_at is not None

    cancelled = engine.cancel_case(case.id, "cust_1", "changed plans")
    assert cancelled.status == CaseStatus.CANCELLED
    assert cancelled.provider_id is None
    assert cancelled.cancelled_at is not None


def test_concurrent_accepts_produce_one_owner(tmp_path):
    engine = _engine(tmp_path)
    providers = [f"prov_{index}" for index in range(6)]
    for provider_id in providers:
        engine.register_provider(provider_id, tier=ProviderTier.PRO)
    case = _open_case(engine)

    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(providers))

    def accept(provider_id):
        barrier.wait()
        try:
            engine.accept_case(case.id, provider_id)
            outcome = ("ok", provider_id)
        except CaseConflictError as exc:
            outcome = ("conflict", str(exc))
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=accept, args=(provider_id,)) for provider_id in providers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [value for kind, value in results if kind == "ok"]
    conflicts = [value for kind, value in results if kind == "conflict"]
    assert len(winners) == 1
    assert len(conflicts) == len(providers) - 1
    assert all("already accepted" in message for message in conflicts)
    assert engine.get_case(case.id).provider_id == winners[0]


def test_cancel_rules(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO)
    case = _open_case(engine)

    with pytest.raises(CasePermissionError):
        engine.cancel_case(case.id, "someone_else")

    engine.accept_case(case.id, "prov_1")
    engine.complete_case(case.id, "prov_1")
    with pytest.raises(InvalidTransitionError):
        engine.cancel_case(case.id, "cust_1")


def test_list_cases_filters_and_pages(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_1", tier=ProviderTier.PRO)
    first = _open_case(engine, customer_id="cust_a")
    second = _open_case(engine, customer_id="cust_a")
    third = _open_case(engine, customer_id="cust_b")
    engine.accept_case(second.id, "prov_1")
    engine.decline_case(third.id, "prov_1", "too far")

    page = engine.registry.list_cases(customer_id="cust_a")
    assert page.total == 2
    assert page.items[0].id == first.id

    unassigned = engine.registry.list_cases(only_unassigned=True)
    assert {item.id for item in unassigned.items} == {first.id, third.id}

    mine = engine.registry.list_cases(provider_id="prov_1")
    assert [item.id for item in mine.items] == [second.id]

    visible = engine.registry.list_cases(status=CaseStatus.PENDING, exclude_declined_by="prov_1")
    assert [item.id for item in visible.items] == [first.id]

    paged = engine.registry.list_cases(limit=1, page=2)
    assert paged.total == 3
    assert len(paged.items) == 1

    with pytest.raises(CaseValidationError):
        engine.registry.list_cases(limit=0)
