import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from casematch.models import AssignmentType, Bid, BidStatus, CaseStatus
from casematch.services.case_registry import CaseRegistry
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    Database,
    bid_from_row,
    new_id,
    to_iso,
    utcnow,
)
from casematch.services.points_ledger import PointsLedger
from casematch.services.trial_gate import TrialGate

logger = logging.getLogger(__name__)


class BidLedger:
    def __init__(self, db: Database, registry: CaseRegistry, trial_gate: TrialGate, points: PointsLedger) -> None:
        self.db = db
        self.registry = registry
        self.trial_gate = trial_gate
        self.points = points

    def fetch_bid(self, conn: sqlite3.Connection, bid_id: str) -> Bid:
        row = conn.execute("SELECT * FROM bids WHERE id = ?", (bid_id,)).fetchone()
        if not row:
            raise CaseNotFoundError("Bid not found")
        return bid_from_row(row)

    def place_bid(
        self,
        case_id: str,
        provider_id: str,
        points: int,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> Bid:
        """Reserve one of the case's bidder slots and charge the bid.

        The slot reservation is a conditional increment guarded by
        ``current_bidders < max_bidders``, so concurrent bidders can never
        push a case over its cap.
        """
        cleaned_provider = provider_id.strip()
        if not cleaned_provider:
            raise CaseValidationError("provider_id is required")
        if points <= 0:
            raise CaseValidationError("points must be greater than 0")

        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.status != CaseStatus.PENDING:
                raise CaseConflictError(f"Case is {case.status.value}; bidding is closed")
            if case.assignment_type != AssignmentType.OPEN:
                raise CaseConflictError("Bids are only accepted on open cases")
            if case.customer_id == cleaned_provider:
                raise CasePermissionError("You cannot bid on your own case")
            if self.registry.is_excluded(conn, case_id, cleaned_provider):
                raise CasePermissionError("You declined this case and cannot bid on it")
            self.trial_gate.check(conn, cleaned_provider, now)

            existing = conn.execute(
                "SELECT 1 FROM bids WHERE case_id = ? AND provider_id = ?",
                (case_id, cleaned_provider),
            ).fetchone()
            if existing:
                raise CaseConflictError("You have already bid on this case")

            now_iso = to_iso(utcnow())
            cursor = conn.execute(
                """
                UPDATE cases
                SET current_bidders = current_bidders + 1, updated_at = ?
                WHERE id = ? AND status = 'pending' AND current_bidders < max_bidders
                """,
                (now_iso, case_id),
            )
            if cursor.rowcount == 0:
                logger.info("Bid rejected, case full case_id=%s provider=%s", case_id, cleaned_provider)
                raise CaseConflictError("Maximum bidders reached for this case")

            bid_order = int(
                conn.execute(
                    "SELECT COALESCE(MAX(bid_order), 0) + 1 AS next_order FROM bids WHERE case_id = ?",
                    (case_id,),
                ).fetchone()["next_order"]
            )
            self.points.debit(conn, cleaned_provider, points, reason="bid placed", case_id=case_id)

            bid_id = new_id("bid")
            try:
                conn.execute(
                    """
                    INSERT INTO bids (
                        id, case_id, provider_id, points_bid, bid_status, bid_order,
                        refunded_points, comment, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 'pending', ?, 0, ?, ?, ?)
                    """,
                    (bid_id, case_id, cleaned_provider, points, bid_order, comment.strip(), now_iso, now_iso),
                )
            except sqlite3.IntegrityError as exc:
                raise CaseConflictError("You have already bid on this case") from exc
            bid = self.fetch_bid(conn, bid_id)

        logger.info(
            "Bid placed bid_id=%s case_id=%s provider=%s points=%s order=%s",
            bid.id,
            case_id,
            cleaned_provider,
            points,
            bid_order,
        )
        return bid

    def list_bids(self, case_id: str) -> List[Bid]:
        with self.db.read() as conn:
            self.registry.fetch(conn, case_id)
            rows = conn.execute("SELECT * FROM bids WHERE case_id = ? ORDER BY bid_order ASC", (case_id,)).fetchall()
        return [bid_from_row(row) for row in rows]

    def list_provider_bids(self, provider_id: str, status: Optional[BidStatus] = None) -> List[Bid]:
        query = "SELECT * FROM bids WHERE provider_id = ?"
        params: list = [provider_id]
        if status is not None:
            query += " AND bid_status = ?"
            params.append(BidStatus(status).value)
        query += " ORDER BY created_at DESC"
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [bid_from_row(row) for row in rows]

    def refund_pending_bids(self, conn: sqlite3.Connection, case_id: str, *, reason: str) -> List[Bid]:
        """Fully refund every pending bid on a case and free its slots."""
        rows = conn.execute(
            "SELECT * FROM bids WHERE case_id = ? AND bid_status = 'pending' ORDER BY bid_order ASC",
            (case_id,),
        ).fetchall()
        now_iso = to_iso(utcnow())
        refunded: List[Bid] = []
        for row in rows:
            bid = bid_from_row(row)
            conn.execute(
                """
                UPDATE bids SET bid_status = 'refunded', refunded_points = points_bid, updated_at = ?
                WHERE id = ? AND bid_status = 'pending'
                """,
                (now_iso, bid.id),
            )
            self.points.credit(conn, bid.provider_id, bid.points_bid, reason=reason, case_id=case_id)
            refunded.append(self.fetch_bid(conn, bid.id))
        return refunded

    def withdraw_bid(self, bid_id: str, provider_id: str) -> Bid:
        with self.db.transaction() as conn:
            bid = self.fetch_bid(conn, bid_id)
            if bid.provider_id != provider_id:
                raise CasePermissionError("Only the bidder can withdraw this bid")
            if bid.bid_status != BidStatus.PENDING:
                raise CaseConflictError(f"Bid is already {bid.bid_status.value}")
            case = self.registry.fetch(conn, bid.case_id)
            if case.status != CaseStatus.PENDING:
                raise CaseConflictError(f"Case is {case.status.value}; the bid can no longer be withdrawn")

            now_iso = to_iso(utcnow())
            cursor = conn.execute(
                """
                UPDATE bids SET bid_status = 'refunded', refunded_points = points_bid, updated_at = ?
                WHERE id = ? AND bid_status = 'pending'
                """,
                (now_iso, bid_id),
            )
            if cursor.rowcount == 0:
                raise CaseConflictError("Bid is no longer pending")
            conn.execute(
                """
                UPDATE cases SET current_bidders = current_bidders - 1, updated_at = ?
                WHERE id = ? AND current_bidders > 0
                """,
                (now_iso, bid.case_id),
            )
            self.points.credit(conn, provider_id, bid.points_bid, reason="bid withdrawn", case_id=bid.case_id)
            withdrawn = self.fetch_bid(conn, bid_id)
        logger.info("Bid withdrawn bid_id=%s case_id=%s provider=%s", bid_id, bid.case_id, provider_id)
        return withdrawn
