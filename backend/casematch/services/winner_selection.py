import logging
from datetime import datetime
from typing import List, Optional

from casematch.models import AssignmentType, BidStatus, CaseStatus, PointsRefund, WinnerSelectionResult
from casematch.services.bid_ledger import BidLedger
from casematch.services.case_registry import CaseRegistry
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    Database,
    bid_from_row,
    to_iso,
    utcnow,
)
from casematch.services.points_ledger import PointsLedger
from casematch.services.trial_gate import TrialGate

logger = logging.getLogger(__name__)

REFUND_PERCENT = 80


def refund_for(points_bid: int) -> int:
    """Points returned to a losing bidder, rounded down."""
    return points_bid * REFUND_PERCENT // 100


class WinnerSelection:
    def __init__(
        self,
        db: Database,
        registry: CaseRegistry,
        bids: BidLedger,
        trial_gate: TrialGate,
        points: PointsLedger,
    ) -> None:
        self.db = db
        self.registry = registry
        self.bids = bids
        self.trial_gate = trial_gate
        self.points = points

    def select_winner(
        self,
        case_id: str,
        bid_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> WinnerSelectionResult:
        """Award an open case to one bid and refund the others.

        The case transition, the winning bid, the losing bids and every
        refund commit together or not at all.
        """
        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.customer_id != actor_id:
                raise CasePermissionError("Only the customer who created the case can select a winner")
            if case.assignment_type != AssignmentType.OPEN:
                raise CaseValidationError("Winner selection only applies to open cases")
            bid = self.bids.fetch_bid(conn, bid_id)
            if bid.case_id != case_id:
                raise CaseNotFoundError("Bid not found for this case")
            if case.status != CaseStatus.PENDING:
                if case.winning_bid_id:
                    raise CaseConflictError("A winner has already been selected for this case")
                raise CaseConflictError(f"Case is {case.status.value}; a winner can no longer be selected")
            if bid.bid_status != BidStatus.PENDING:
                raise CaseConflictError(f"Bid is {bid.bid_status.value} and cannot win")

            self.trial_gate.check(conn, bid.provider_id, now)
            updated_case = self.registry.transition(
                conn,
                case_id,
                CaseStatus.PENDING,
                CaseStatus.ACCEPTED,
                actor_id=actor_id,
                note=f"winner selected: {bid_id}",
                changes={"provider_id": bid.provider_id, "winning_bid_id": bid_id},
            )

            now_iso = to_iso(utcnow())
            cursor = conn.execute(
                "UPDATE bids SET bid_status = 'won', updated_at = ? WHERE id = ? AND bid_status = 'pending'",
                (now_iso, bid_id),
            )
            if cursor.rowcount == 0:
                raise CaseConflictError("Bid is no longer pending")
            self.trial_gate.record_acceptance(conn, bid.provider_id)

            refunds: List[PointsRefund] = []
            losing_rows = conn.execute(
                "SELECT * FROM bids WHERE case_id = ? AND bid_status = 'pending' ORDER BY bid_order ASC",
                (case_id,),
            ).fetchall()
            for row in losing_rows:
                losing = bid_from_row(row)
                refund = refund_for(losing.points_bid)
                conn.execute(
                    """
                    UPDATE bids SET bid_status = 'lost', refunded_points = ?, updated_at = ?
                    WHERE id = ? AND bid_status = 'pending'
                    """,
                    (refund, now_iso, losing.id),
                )
                if refund > 0:
                    self.points.credit(
                        conn,
                        losing.provider_id,
                        refund,
                        reason="losing bid refund",
                        case_id=case_id,
                    )
                refunds.append(
                    PointsRefund(
                        bid_id=losing.id,
                        provider_id=losing.provider_id,
                        points_bid=losing.points_bid,
                        refunded_points=refund,
                    )
                )
            winning_bid = self.bids.fetch_bid(conn, bid_id)

        logger.info(
            "Winner selected case_id=%s bid_id=%s provider=%s losing_bids=%s",
            case_id,
            bid_id,
            winning_bid.provider_id,
            len(refunds),
        )
        return WinnerSelectionResult(case=updated_case, winning_bid=winning_bid, refunds=refunds)
