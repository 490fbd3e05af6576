import logging
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from casematch.models import (
    Bid,
    Case,
    CaseStatusEvent,
    IncomeRecord,
    PointsTransaction,
    Provider,
    QueueEntry,
    TrialReason,
    TrialState,
)

logger = logging.getLogger(__name__)


class CaseEngineError(ValueError):
    """Base class for user-visible engine errors."""

    code = "INTERNAL"


class CaseValidationError(CaseEngineError):
    code = "VALIDATION"


class CaseNotFoundError(CaseEngineError):
    code = "NOT_FOUND"


class CaseConflictError(CaseEngineError):
    code = "CONFLICT"


class InvalidTransitionError(CaseEngineError):
    code = "INVALID_TRANSITION"


class CasePermissionError(CaseEngineError):
    code = "FORBIDDEN"


class TrialLimitError(CasePermissionError):
    def __init__(self, message: str, reason: TrialReason) -> None:
        super().__init__(message)
        self.reason = reason


class CaseStoreInternalError(CaseEngineError):
    code = "INTERNAL"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed-width UTC timestamps keep string comparison in SQL chronological.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Owns the sqlite file, its schema and the transaction boundary.

    Every mutating operation runs inside ``transaction()``, which takes the
    write lock up front (``BEGIN IMMEDIATE``) so that the conditional updates
    issued inside it observe a consistent snapshot across processes.
    """

    def __init__(self, db_path: str, *, busy_timeout: float = 30.0) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._busy_timeout = busy_timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except CaseEngineError:
            raise
        except sqlite3.Error as exc:
            logger.exception("Case store transaction failed")
            raise CaseStoreInternalError("Case store is temporarily unavailable, please retry") from exc
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as conn:
                yield conn
        except sqlite3.Error as exc:
            logger.exception("Case store read failed")
            raise CaseStoreInternalError("Case store is temporarily unavailable, please retry") from exc

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    tier TEXT NOT NULL DEFAULT 'free' CHECK (tier IN ('free', 'basic', 'pro')),
                    points_balance INTEGER NOT NULL DEFAULT 0 CHECK (points_balance >= 0),
                    trial_started_at TEXT,
                    trial_cases_used INTEGER NOT NULL DEFAULT 0,
                    trial_expired INTEGER NOT NULL DEFAULT 0,
                    trial_expired_reason TEXT,
                    contact_enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cases (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    service_type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    description TEXT NOT NULL,
                    city TEXT NOT NULL,
                    neighborhood TEXT NOT NULL DEFAULT '',
                    phone TEXT NOT NULL DEFAULT '',
                    preferred_date TEXT,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    budget TEXT,
                    assignment_type TEXT NOT NULL CHECK (assignment_type IN ('open', 'specific')),
                    target_provider_id TEXT,
                    provider_id TEXT,
                    status TEXT NOT NULL CHECK (
                        status IN ('pending', 'accepted', 'declined', 'completed', 'cancelled')
                    ),
                    max_bidders INTEGER NOT NULL DEFAULT 3,
                    current_bidders INTEGER NOT NULL DEFAULT 0,
                    allow_requeue INTEGER NOT NULL DEFAULT 1,
                    decline_reason TEXT,
                    winning_bid_id TEXT,
                    completion_notes TEXT,
                    created_at TEXT NOT NULL,
                    offered_at TEXT,
                    accepted_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    updated_at TEXT NOT NULL,
                    CHECK (current_bidders >= 0 AND current_bidders <= max_bidders),
                    CHECK ((provider_id IS NOT NULL) = (status IN ('accepted', 'completed')))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bids (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL REFERENCES cases(id),
                    provider_id TEXT NOT NULL REFERENCES providers(id),
                    points_bid INTEGER NOT NULL CHECK (points_bid > 0),
                    bid_status TEXT NOT NULL CHECK (bid_status IN ('pending', 'won', 'lost', 'refunded')),
                    bid_order INTEGER NOT NULL,
                    refunded_points INTEGER NOT NULL DEFAULT 0,
                    comment TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (case_id, provider_id),
                    UNIQUE (case_id, bid_order)
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_bids_single_winner
                ON bids (case_id) WHERE bid_status = 'won'
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS case_queue (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL REFERENCES cases(id),
                    original_provider_id TEXT NOT NULL,
                    queue_position INTEGER NOT NULL UNIQUE,
                    available_to_all INTEGER NOT NULL DEFAULT 1,
                    reason TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_case_queue_case_provider
                ON case_queue (case_id, original_provider_id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS case_status_history (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL REFERENCES cases(id),
                    actor_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS income_records (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL UNIQUE REFERENCES cases(id),
                    provider_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    amount REAL NOT NULL CHECK (amount > 0),
                    currency TEXT NOT NULL,
                    payment_method TEXT,
                    notes TEXT NOT NULL DEFAULT '',
                    recorded_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS points_transactions (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL REFERENCES providers(id),
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    kind TEXT NOT NULL CHECK (kind IN ('spent', 'refund', 'award')),
                    reason TEXT NOT NULL,
                    case_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._ensure_column(conn, "cases", "offered_at", "TEXT")
            self._ensure_column(conn, "providers", "trial_expired_reason", "TEXT")

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in columns}
        if column in existing:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def case_from_row(row: sqlite3.Row) -> Case:
    return Case(
        id=row["id"],
        customer_id=row["customer_id"],
        service_type=row["service_type"],
        category=row["category"],
        description=row["description"],
        city=row["city"],
        neighborhood=row["neighborhood"] or "",
        phone=row["phone"] or "",
        preferred_date=row["preferred_date"],
        priority=row["priority"],
        budget=row["budget"],
        assignment_type=row["assignment_type"],
        target_provider_id=row["target_provider_id"],
        provider_id=row["provider_id"],
        status=row["status"],
        max_bidders=row["max_bidders"],
        current_bidders=row["current_bidders"],
        allow_requeue=bool(row["allow_requeue"]),
        decline_reason=row["decline_reason"],
        winning_bid_id=row["winning_bid_id"],
        completion_notes=row["completion_notes"],
        created_at=row["created_at"],
        offered_at=row["offered_at"],
        accepted_at=row["accepted_at"],
        completed_at=row["completed_at"],
        cancelled_at=row["cancelled_at"],
        updated_at=row["updated_at"],
    )


def bid_from_row(row: sqlite3.Row) -> Bid:
    return Bid(
        id=row["id"],
        case_id=row["case_id"],
        provider_id=row["provider_id"],
        points_bid=row["points_bid"],
        bid_status=row["bid_status"],
        bid_order=row["bid_order"],
        refunded_points=row["refunded_points"],
        comment=row["comment"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def queue_entry_from_row(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(
        id=row["id"],
        case_id=row["case_id"],
        original_provider_id=row["original_provider_id"],
        queue_position=row["queue_position"],
        available_to_all=bool(row["available_to_all"]),
        reason=row["reason"] or "",
        created_at=row["created_at"],
    )


def trial_state_from_row(row: sqlite3.Row) -> TrialState:
    return TrialState(
        started_at=row["trial_started_at"],
        cases_used=row["trial_cases_used"],
        expired=bool(row["trial_expired"]),
        expired_reason=row["trial_expired_reason"],
    )


def provider_from_row(row: sqlite3.Row) -> Provider:
    return Provider(
        id=row["id"],
        display_name=row["display_name"] or "",
        tier=row["tier"],
        points_balance=row["points_balance"],
        contact_enabled=bool(row["contact_enabled"]),
        trial=trial_state_from_row(row),
        created_at=row["created_at"],
    )


def income_from_row(row: sqlite3.Row) -> IncomeRecord:
    return IncomeRecord(
        id=row["id"],
        case_id=row["case_id"],
        provider_id=row["provider_id"],
        customer_id=row["customer_id"],
        amount=row["amount"],
        currency=row["currency"],
        payment_method=row["payment_method"],
        notes=row["notes"] or "",
        recorded_at=row["recorded_at"],
        updated_at=row["updated_at"],
    )


def points_transaction_from_row(row: sqlite3.Row) -> PointsTransaction:
    return PointsTransaction(
        id=row["id"],
        provider_id=row["provider_id"],
        amount=row["amount"],
        balance_after=row["balance_after"],
        kind=row["kind"],
        reason=row["reason"],
        case_id=row["case_id"],
        created_at=row["created_at"],
    )


def status_event_from_row(row: sqlite3.Row) -> CaseStatusEvent:
    return CaseStatusEvent(
        id=row["id"],
        case_id=row["case_id"],
        actor_id=row["actor_id"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        note=row["note"] or "",
        created_at=row["created_at"],
    )
