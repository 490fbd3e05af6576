import logging
import sqlite3
from typing import Any, Dict, List, Optional

from casematch.models import AssignmentType, Case, CasePage, CaseStatus, CaseStatusEvent
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    Database,
    InvalidTransitionError,
    case_from_row,
    new_id,
    status_event_from_row,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[CaseStatus, frozenset] = {
    CaseStatus.PENDING: frozenset({CaseStatus.ACCEPTED, CaseStatus.DECLINED, CaseStatus.CANCELLED}),
    CaseStatus.ACCEPTED: frozenset({CaseStatus.COMPLETED, CaseStatus.CANCELLED}),
    CaseStatus.DECLINED: frozenset(),
    CaseStatus.COMPLETED: frozenset(),
    CaseStatus.CANCELLED: frozenset(),
}

# Columns a transition may set alongside the status change.
TRANSITION_COLUMNS = {
    "provider_id",
    "target_provider_id",
    "winning_bid_id",
    "decline_reason",
    "completion_notes",
    "current_bidders",
}

STATUS_TIMESTAMP_COLUMN = {
    CaseStatus.ACCEPTED: "accepted_at",
    CaseStatus.COMPLETED: "completed_at",
    CaseStatus.CANCELLED: "cancelled_at",
}

STATUS_SORT_ORDER = """
    CASE status
        WHEN 'pending' THEN 1
        WHEN 'accepted' THEN 2
        WHEN 'declined' THEN 3
        WHEN 'completed' THEN 4
        ELSE 5
    END
"""

MAX_PAGE_SIZE = 100


def is_valid_transition(from_status: CaseStatus, to_status: CaseStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


def _conflict_message(current_status: str, to_status: CaseStatus) -> str:
    if current_status == CaseStatus.ACCEPTED.value and to_status == CaseStatus.ACCEPTED:
        return "This case was already accepted by another provider"
    if current_status == CaseStatus.COMPLETED.value:
        return "This case is already completed"
    if current_status == CaseStatus.CANCELLED.value:
        return "This case was cancelled by the customer"
    return f"Case is {current_status}; it cannot move to {to_status.value}"


class CaseRegistry:
    """Single source of truth for case ownership.

    Status changes go through ``transition`` only. It is a conditional
    update keyed on the expected current status, so a competing request that
    already moved the case makes it affect zero rows and fail with a
    conflict instead of overwriting the other change.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def create_case(
        self,
        *,
        customer_id: str,
        service_type: str,
        description: str,
        city: str,
        assignment_type: AssignmentType = AssignmentType.OPEN,
        target_provider_id: Optional[str] = None,
        category: Optional[str] = None,
        neighborhood: str = "",
        phone: str = "",
        preferred_date: Optional[str] = None,
        priority: str = "normal",
        budget: Optional[str] = None,
        max_bidders: int = 3,
        allow_requeue: bool = True,
    ) -> Case:
        cleaned_customer = customer_id.strip()
        cleaned_service = service_type.strip()
        cleaned_description = description.strip()
        cleaned_city = city.strip()
        cleaned_target = (target_provider_id or "").strip() or None
        assignment = AssignmentType(assignment_type)
        if not cleaned_customer:
            raise CaseValidationError("customer_id is required")
        if not cleaned_service:
            raise CaseValidationError("Service type is required")
        if not cleaned_description:
            raise CaseValidationError("Description is required")
        if not cleaned_city:
            raise CaseValidationError("City is required")
        if not 1 <= max_bidders <= 10:
            raise CaseValidationError("max_bidders must be between 1 and 10")
        if assignment == AssignmentType.SPECIFIC:
            if not cleaned_target:
                raise CaseValidationError("A specific case needs target_provider_id")
            if cleaned_target == cleaned_customer:
                raise CasePermissionError("Service providers cannot create cases assigned to themselves")
        elif cleaned_target:
            raise CaseValidationError("target_provider_id only applies to specific cases")

        now_iso = to_iso(utcnow())
        case_id = new_id("case")
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO cases (
                    id, customer_id, service_type, category, description, city, neighborhood, phone,
                    preferred_date, priority, budget, assignment_type, target_provider_id, provider_id,
                    status, max_bidders, current_bidders, allow_requeue, created_at, offered_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 'pending', ?, 0, ?, ?, ?, ?)
                """,
                (
                    case_id,
                    cleaned_customer,
                    cleaned_service,
                    (category or "").strip() or cleaned_service,
                    cleaned_description,
                    cleaned_city,
                    neighborhood.strip(),
                    phone.strip(),
                    preferred_date,
                    priority,
                    budget,
                    assignment.value,
                    cleaned_target,
                    max_bidders,
                    1 if allow_requeue else 0,
                    now_iso,
                    now_iso if assignment == AssignmentType.SPECIFIC else None,
                    now_iso,
                ),
            )
            self.record_event(conn, case_id, cleaned_customer, "none", CaseStatus.PENDING.value, "case created")
            created = self.fetch(conn, case_id)
        logger.info(
            "Case created case_id=%s customer=%s assignment=%s target=%s",
            case_id,
            cleaned_customer,
            assignment.value,
            cleaned_target,
        )
        return created

    def fetch(self, conn: sqlite3.Connection, case_id: str) -> Case:
        row = conn.execute("SELECT * FROM cases WHERE id = ?", (case_id,)).fetchone()
        if not row:
            raise CaseNotFoundError("Case not found")
        return case_from_row(row)

    def get_case(self, case_id: str) -> Case:
        with self.db.read() as conn:
            return self.fetch(conn, case_id)

    def transition(
        self,
        conn: sqlite3.Connection,
        case_id: str,
        from_status: CaseStatus,
        to_status: CaseStatus,
        *,
        actor_id: str,
        note: str = "",
        changes: Optional[Dict[str, Any]] = None,
    ) -> Case:
        from_status = CaseStatus(from_status)
        to_status = CaseStatus(to_status)
        if not is_valid_transition(from_status, to_status):
            raise InvalidTransitionError(f"Invalid status transition: {from_status.value} -> {to_status.value}")

        updates = dict(changes or {})
        unknown = set(updates) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported transition columns: {sorted(unknown)}")
        if to_status in {CaseStatus.DECLINED, CaseStatus.CANCELLED}:
            updates.setdefault("provider_id", None)

        now_iso = to_iso(utcnow())
        updates["status"] = to_status.value
        updates["updated_at"] = now_iso
        timestamp_column = STATUS_TIMESTAMP_COLUMN.get(to_status)
        if timestamp_column:
            updates[timestamp_column] = now_iso

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        cursor = conn.execute(
            f"UPDATE cases SET {set_clause} WHERE id = ? AND status = ?",
            (*updates.values(), case_id, from_status.value),
        )
        if cursor.rowcount == 0:
            row = conn.execute("SELECT status FROM cases WHERE id = ?", (case_id,)).fetchone()
            if not row:
                raise CaseNotFoundError("Case not found")
            logger.info(
                "Lost transition race case_id=%s expected=%s actual=%s target=%s",
                case_id,
                from_status.value,
                row["status"],
                to_status.value,
            )
            raise CaseConflictError(_conflict_message(str(row["status"]), to_status))

        self.record_event(conn, case_id, actor_id, from_status.value, to_status.value, note)
        return self.fetch(conn, case_id)

    def record_event(
        self,
        conn: sqlite3.Connection,
        case_id: str,
        actor_id: str,
        from_status: str,
        to_status: str,
        note: str = "",
    ) -> None:
        conn.execute(
            """
            INSERT INTO case_status_history (id, case_id, actor_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id("csh"), case_id, actor_id, from_status, to_status, note, to_iso(utcnow())),
        )

    def is_excluded(self, conn: sqlite3.Connection, case_id: str, provider_id: str) -> bool:
        """True once the provider has declined (or let expire) this case."""
        row = conn.execute(
            "SELECT 1 FROM case_queue WHERE case_id = ? AND original_provider_id = ? LIMIT 1",
            (case_id, provider_id),
        ).fetchone()
        return row is not None

    def list_cases(
        self,
        *,
        status: Optional[CaseStatus] = None,
        only_unassigned: bool = False,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        assignment_type: Optional[AssignmentType] = None,
        exclude_declined_by: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> CasePage:
        if page < 1:
            raise CaseValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise CaseValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        conditions: List[str] = []
        params: List[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(CaseStatus(status).value)
        if only_unassigned:
            conditions.append("provider_id IS NULL AND status = 'pending'")
        if customer_id:
            conditions.append("customer_id = ?")
            params.append(customer_id)
        if provider_id:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if assignment_type is not None:
            conditions.append("assignment_type = ?")
            params.append(AssignmentType(assignment_type).value)
        if exclude_declined_by:
            conditions.append(
                "id NOT IN (SELECT case_id FROM case_queue WHERE original_provider_id = ?)"
            )
            params.append(exclude_declined_by)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self.db.read() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS total FROM cases {where}", tuple(params)).fetchone()["total"]
            rows = conn.execute(
                f"""
                SELECT * FROM cases
                {where}
                ORDER BY {STATUS_SORT_ORDER}, created_at DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return CasePage(items=[case_from_row(row) for row in rows], total=int(total), page=page, limit=limit)

    def list_history(self, case_id: str) -> List[CaseStatusEvent]:
        with self.db.read() as conn:
            self.fetch(conn, case_id)
            rows = conn.execute(
                "SELECT * FROM case_status_history WHERE case_id = ? ORDER BY created_at ASC, rowid ASC",
                (case_id,),
            ).fetchall()
        return [status_event_from_row(row) for row in rows]
