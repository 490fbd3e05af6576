import os
import sys
import tempfile
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
os.environ.setdefault("CASES_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="casematch-tests-"), "cases.sqlite3"))

from casematch.models import AssignmentType, BidStatus, CaseStatus, ProviderTier
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
)
from casematch.services.engine import MatchingEngine
from casematch.services.notification_store import NotificationStore
from casematch.services.winner_selection import refund_for


def _engine(tmp_path):
    return MatchingEngine(db_path=str(tmp_path / "cases.sqlite3"), notifications=NotificationStore())


def _open_case(engine, max_bidders=3):
    return engine.create_case(
        customer_id="cust_1",
        service_type="carpentry",
        description="Fix a wardrobe door",
        city="Varna",
        max_bidders=max_bidders,
    )


def test_refund_rounds_down():
    assert refund_for(100) == 80
    assert refund_for(80) == 64
    assert refund_for(150) == 120
    assert refund_for(1) == 0


def test_bidding_scenario_refunds_losers(tmp_path):
    engine = _engine(tmp_path)
    for provider_id in ("prov_a", "prov_b", "prov_c"):
        engine.register_provider(provider_id, points_balance=500)
    case = _open_case(engine)

    bid_a = engine.place_bid(case.id, "prov_a", 100)
    bid_b = engine.place_bid(case.id, "prov_b", 150, comment="Can come tomorrow")
    bid_c = engine.place_bid(case.id, "prov_c", 80)
    assert [bid_a.bid_order, bid_b.bid_order, bid_c.bid_order] == [1, 2, 3]
    assert engine.get_case(case.id).current_bidders == 3

    result = engine.select_winner(case.id, bid_b.id, "cust_1")
    assert result.case.status == CaseStatus.ACCEPTED
    assert result.case.provider_id == "prov_b"
    assert result.case.winning_bid_id == bid_b.id
    assert result.winning_bid.bid_status == BidStatus.WON
    assert {refund.provider_id: refund.refunded_points for refund in result.refunds} == {
        "prov_a": 80,
        "prov_c": 64,
    }

    bids = {bid.provider_id: bid for bid in engine.bids.list_bids(case.id)}
    assert bids["prov_a"].bid_status == BidStatus.LOST
    assert bids["prov_a"].refunded_points == 80
    assert bids["prov_c"].bid_status == BidStatus.LOST
    assert bids["prov_c"].refunded_points == 64
    assert bids["prov_b"].bid_status == BidStatus.WON

    assert engine.get_provider("prov_a").points_balance == 480
    assert engine.get_provider("prov_b").points_balance == 350
    assert engine.get_provider("prov_c").points_balance == 484
    assert engine.get_provider("prov_b").trial.cases_used == 1


def test_second_winner_selection_conflicts(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_a", points_balance=100)
    engine.register_provider("prov_b", points_balance=100)
    case = _open_case(engine)
    bid_a = engine.place_bid(case.id, "prov_a", 10)
    bid_b = engine.place_bid(case.id, "prov_b", 20)

    engine.select_winner(case.id, bid_a.id, "cust_1")
    with pytest.raises(CaseConflictError):
        engine.select_winner(case.id, bid_b.id, "cust_1")
    with pytest.raises(CaseConflictError):
        engine.select_winner(case.id, bid_a.id, "cust_1")

    won = [bid for bid in engine.bids.list_bids(case.id) if bid.bid_status == BidStatus.WON]
    assert [bid.id for bid in won] == [bid_a.id]
    assert engine.get_provider("prov_b").points_balance == 96


def test_winner_selection_permissions(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_a", points_balance=100)
    case = _open_case(engine)
    other = _open_case(engine)
    bid = engine.place_bid(case.id, "prov_a", 10)

    with pytest.raises(CasePermissionError):
        engine.select_winner(case.id, bid.id, "not_the_customer")
    with pytest.raises(CaseNotFoundError):
        engine.select_winner(other.id, bid.id, "cust_1")
    with pytest.raises(CaseNotFoundError):
        engine.select_winner(case.id, "bid_missing", "cust_1")
    assert engine.get_case(case.id).status == CaseStatus.PENDING

    specific = engine.create_case(
        customer_id="cust_1",
        service_type="carpentry",
        description="Hang a door",
        city="Varna",
        assignment_type=AssignmentType.SPECIFIC,
        target_provider_id="prov_a",
    )
    with pytest.raises(CaseValidationError):
        engine.select_winner(specific.id, bid.id, "cust_1")


def test_bidder_cap_holds_under_concurrency(tmp_path):
    engine = _engine(tmp_path)
    max_bidders = 3
    providers = [f"prov_{index}" for index in range(max_bidders + 5)]
    for provider_id in providers:
        engine.register_provider(provider_id, points_balance=50)
    case = _open_case(engine, max_bidders=max_bidders)

    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(providers))

    def bid(provider_id):
        barrier.wait()
        try:
            engine.place_bid(case.id, provider_id, 10)
            outcome = "ok"
        except CaseConflictError:
            outcome = "conflict"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=bid, args=(provider_id,)) for provider_id in providers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == max_bidders
    assert outcomes.count("conflict") == len(providers) - max_bidders
    stored = engine.bids.list_bids(case.id)
    assert len(stored) == max_bidders
    assert sorted(bid.bid_order for bid in stored) == [1, 2, 3]
    assert engine.get_case(case.id).current_bidders == max_bidders
    charged = [p for p in providers if engine.get_provider(p).points_balance == 40]
    assert len(charged) == max_bidders


def test_bid_rules(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_a", points_balance=30)
    engine.register_provider("cust_1", points_balance=30)
    case = _open_case(engine)

    with pytest.raises(CasePermissionError):
        engine.place_bid(case.id, "cust_1", 10)
    with pytest.raises(CaseValidationError):
        engine.place_bid(case.id, "prov_a", 31)
    assert engine.get_case(case.id).current_bidders == 0

    engine.place_bid(case.id, "prov_a", 10)
    with pytest.raises(CaseConflictError):
        engine.place_bid(case.id, "prov_a", 5)
    with pytest.raises(CaseConflictError):
        engine.accept_case(case.id, "prov_a")

    specific = engine.create_case(
        customer_id="cust_2",
        service_type="painting",
        description="Paint one room",
        city="Varna",
        assignment_type=AssignmentType.SPECIFIC,
        target_provider_id="prov_a",
    )
    with pytest.raises(CaseConflictError):
        engine.place_bid(specific.id, "prov_a", 5)


def test_withdraw_frees_slot_and_refunds(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_a", points_balance=40)
    engine.register_provider("prov_b", points_balance=40)
    case = _open_case(engine, max_bidders=1)
    bid = engine.place_bid(case.id, "prov_a", 25)

    with pytest.raises(CaseConflictError):
        engine.place_bid(case.id, "prov_b", 10)
    with pytest.raises(CasePermissionError):
        engine.withdraw_bid(bid.id, "prov_b")

    withdrawn = engine.withdraw_bid(bid.id, "prov_a")
    assert withdrawn.bid_status == BidStatus.REFUNDED
    assert withdrawn.refunded_points == 25
    assert engine.get_provider("prov_a").points_balance == 40
    assert engine.get_case(case.id).current_bidders == 0

    engine.place_bid(case.id, "prov_b", 10)
    with pytest.raises(CaseConflictError):
        engine.withdraw_bid(bid.id, "prov_a")

    rows = engine.bids.list_bids(case.id)
    assert len(rows) == 2
    holding = [item for item in rows if item.bid_status != BidStatus.REFUNDED]
    assert len(holding) == engine.get_case(case.id).current_bidders == case.max_bidders == 1

    history = engine.bids.list_provider_bids("prov_a", BidStatus.REFUNDED)
    assert [item.id for item in history] == [bid.id]


def test_cancel_refunds_pending_bids_in_full(tmp_path):
    engine = _engine(tmp_path)
    engine.register_provider("prov_a", points_balance=100, tier=ProviderTier.BASIC)
    engine.register_provider("prov_b", points_balance=100)
    case = _open_case(engine)
    engine.place_bid(case.id, "prov_a", 30)
    engine.place_bid(case.id, "prov_b", 45)

    cancelled = engine.cancel_case(case.id, "cust_1", "found someone else")
    assert cancelled.status == CaseStatus.CANCELLED
    assert cancelled.current_bidders == 0
    assert {bid.bid_status for bid in engine.bids.list_bids(case.id)} == {BidStatus.REFUNDED}
    assert engine.get_provider("prov_a").points_balance == 100
    assert engine.get_provider("prov_b").points_balance == 100

    ledger = engine.points.list_transactions("prov_b", case_id=case.id)
    assert sorted(entry.amount for entry in ledger) == [-45, 45]
