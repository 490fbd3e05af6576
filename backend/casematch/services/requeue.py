import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from casematch.env import env_int
from casematch.models import (
    AssignmentType,
    Case,
    CaseStatus,
    DeclinedCase,
    DeclineResult,
    OfferExpiryResult,
    QueueEntry,
    QueueOffer,
)
from casematch.services.case_registry import CaseRegistry
from casematch.services.database import (
    CaseConflictError,
    CasePermissionError,
    CaseValidationError,
    Database,
    case_from_row,
    new_id,
    queue_entry_from_row,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

OFFER_EXPIRY_HOURS = env_int("OFFER_EXPIRY_HOURS", 24)
EXPIRED_OFFER_REASON = "expired"
SYSTEM_ACTOR = "system"


class RequeueService:
    """Declines, the shared case queue and the exclusion list it implies.

    Every decline leaves a queue entry naming the provider who declined.
    That entry is also what keeps the case away from them afterwards.
    """

    def __init__(self, db: Database, registry: CaseRegistry, *, offer_expiry_hours: int = OFFER_EXPIRY_HOURS) -> None:
        self.db = db
        self.registry = registry
        self.offer_expiry_hours = offer_expiry_hours

    def decline_case(self, case_id: str, provider_id: str, reason: str) -> DeclineResult:
        cleaned_provider = provider_id.strip()
        cleaned_reason = reason.strip()
        if not cleaned_provider:
            raise CaseValidationError("provider_id is required")
        if not cleaned_reason:
            raise CaseValidationError("A decline reason is required")

        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            result = self._decline(conn, case, cleaned_provider, cleaned_reason, actor_id=cleaned_provider)
        logger.info(
            "Case declined case_id=%s provider=%s requeued=%s position=%s",
            case_id,
            cleaned_provider,
            result.requeued,
            result.queue_entry.queue_position,
        )
        return result

    def _decline(
        self,
        conn: sqlite3.Connection,
        case: Case,
        provider_id: str,
        reason: str,
        *,
        actor_id: str,
    ) -> DeclineResult:
        if case.status != CaseStatus.PENDING:
            raise CaseConflictError(f"Case is {case.status.value}; it can no longer be declined")
        if case.assignment_type == AssignmentType.SPECIFIC:
            if case.target_provider_id != provider_id:
                raise CasePermissionError("Only the provider this case was sent to can decline it")
        else:
            if case.customer_id == provider_id:
                raise CasePermissionError("You cannot decline your own case")
            if self.registry.is_excluded(conn, case.id, provider_id):
                raise CaseConflictError("You have already declined this case")
            pending_bid = conn.execute(
                "SELECT 1 FROM bids WHERE case_id = ? AND provider_id = ? AND bid_status = 'pending'",
                (case.id, provider_id),
            ).fetchone()
            if pending_bid:
                raise CaseConflictError("Withdraw your bid before declining this case")

        entry = self._enqueue(conn, case.id, provider_id, reason)

        if case.assignment_type == AssignmentType.OPEN:
            self.registry.record_event(conn, case.id, actor_id, "pending", "pending", f"declined: {reason}")
            return DeclineResult(case=self.registry.fetch(conn, case.id), queue_entry=entry, requeued=True)

        if not case.allow_requeue:
            declined = self.registry.transition(
                conn,
                case.id,
                CaseStatus.PENDING,
                CaseStatus.DECLINED,
                actor_id=actor_id,
                note=reason,
                changes={"decline_reason": reason},
            )
            return DeclineResult(case=declined, queue_entry=entry, requeued=False)

        cursor = conn.execute(
            """
            UPDATE cases
            SET assignment_type = 'open',
                target_provider_id = NULL,
                offered_at = NULL,
                decline_reason = ?,
                updated_at = ?
            WHERE id = ? AND status = 'pending' AND assignment_type = 'specific' AND target_provider_id = ?
            """,
            (reason, to_iso(utcnow()), case.id, provider_id),
        )
        if cursor.rowcount == 0:
            raise CaseConflictError("Case changed while it was being declined")
        self.registry.record_event(conn, case.id, actor_id, "pending", "pending", f"requeued: {reason}")
        return DeclineResult(case=self.registry.fetch(conn, case.id), queue_entry=entry, requeued=True)

    def _enqueue(self, conn: sqlite3.Connection, case_id: str, provider_id: str, reason: str) -> QueueEntry:
        position = int(
            conn.execute("SELECT COALESCE(MAX(queue_position), 0) + 1 AS next_position FROM case_queue").fetchone()[
                "next_position"
            ]
        )
        entry_id = new_id("cq")
        conn.execute(
            """
            INSERT INTO case_queue (id, case_id, original_provider_id, queue_position, available_to_all, reason, created_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (entry_id, case_id, provider_id, position, reason, to_iso(utcnow())),
        )
        row = conn.execute("SELECT * FROM case_queue WHERE id = ?", (entry_id,)).fetchone()
        return queue_entry_from_row(row)

    def get_available_from_queue(self, provider_id: str, limit: int = 20) -> List[QueueOffer]:
        """Requeued cases a provider may still take, oldest entry first."""
        if not 1 <= limit <= 100:
            raise CaseValidationError("limit must be between 1 and 100")
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT c.*, MIN(q.queue_position) AS first_position
                FROM case_queue q
                JOIN cases c ON c.id = q.case_id
                WHERE q.available_to_all = 1
                  AND c.status = 'pending'
                  AND c.assignment_type = 'open'
                  AND c.current_bidders < c.max_bidders
                  AND c.customer_id != ?
                  AND NOT EXISTS (
                      SELECT 1 FROM case_queue d
                      WHERE d.case_id = c.id AND d.original_provider_id = ?
                  )
                GROUP BY c.id
                ORDER BY first_position ASC
                LIMIT ?
                """,
                (provider_id, provider_id, limit),
            ).fetchall()
        return [QueueOffer(case=case_from_row(row), queue_position=int(row["first_position"])) for row in rows]

    def list_declined(self, provider_id: str) -> List[DeclinedCase]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT c.*, q.reason AS queue_reason, q.created_at AS declined_at
                FROM case_queue q
                JOIN cases c ON c.id = q.case_id
                WHERE q.original_provider_id = ?
                ORDER BY q.queue_position DESC
                """,
                (provider_id,),
            ).fetchall()
        return [
            DeclinedCase(case=case_from_row(row), reason=row["queue_reason"] or "", declined_at=row["declined_at"])
            for row in rows
        ]

    def expire_offers(self, now: Optional[datetime] = None) -> OfferExpiryResult:
        """Treat specific offers left unanswered past the window as declined."""
        current = now or utcnow()
        cutoff = to_iso(current - timedelta(hours=self.offer_expiry_hours))
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT id FROM cases
                WHERE status = 'pending'
                  AND assignment_type = 'specific'
                  AND offered_at IS NOT NULL
                  AND offered_at <= ?
                ORDER BY offered_at ASC
                """,
                (cutoff,),
            ).fetchall()

        expired: List[str] = []
        for row in rows:
            case_id = str(row["id"])
            try:
                with self.db.transaction() as conn:
                    case = self.registry.fetch(conn, case_id)
                    if (
                        case.status != CaseStatus.PENDING
                        or case.assignment_type != AssignmentType.SPECIFIC
                        or not case.offered_at
                        or case.offered_at > cutoff
                        or not case.target_provider_id
                    ):
                        continue
                    self._decline(
                        conn,
                        case,
                        case.target_provider_id,
                        EXPIRED_OFFER_REASON,
                        actor_id=SYSTEM_ACTOR,
                    )
            except (CaseConflictError, CasePermissionError) as exc:
                logger.info("Skipped offer expiry case_id=%s: %s", case_id, exc)
                continue
            expired.append(case_id)

        if expired:
            logger.info("Expired %s unanswered offer(s): %s", len(expired), ", ".join(expired))
        return OfferExpiryResult(expired_case_ids=expired)
