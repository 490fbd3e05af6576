import logging
import os
import re
import sqlite3
from typing import List, Optional, Tuple

from casematch.models import (
    Case,
    CaseStatus,
    CompletionResult,
    IncomeBucket,
    IncomeInput,
    IncomeRecord,
    IncomeStats,
    IncomeSummary,
)
from casematch.services.case_registry import CaseRegistry
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    Database,
    income_from_row,
    new_id,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BGN").strip().upper() or "BGN"
UNSPECIFIED_METHOD = "unspecified"
MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
DATE_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])$")

INCOME_WARNING = "Case completed, but the income record could not be saved. Record it again from the case."


def _bucket(key: str, total: Optional[float], count: int) -> IncomeBucket:
    total_value = round(float(total or 0), 2)
    return IncomeBucket(
        key=key,
        total=total_value,
        count=int(count),
        average=round(total_value / count, 2) if count else 0.0,
    )


class CompletionService:
    """Case completion plus the provider income attached to it.

    The completion is the commitment; income capture rides inside the same
    transaction behind a savepoint so a failed insert never undoes it.
    """

    def __init__(self, db: Database, registry: CaseRegistry) -> None:
        self.db = db
        self.registry = registry

    def complete_case(
        self,
        case_id: str,
        provider_id: str,
        completion_notes: str = "",
        income: Optional[IncomeInput] = None,
    ) -> CompletionResult:
        income_record: Optional[IncomeRecord] = None
        income_warning: Optional[str] = None
        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.status == CaseStatus.ACCEPTED and case.provider_id != provider_id:
                raise CasePermissionError("Only the assigned provider can complete this case")
            completed = self.registry.transition(
                conn,
                case_id,
                CaseStatus.ACCEPTED,
                CaseStatus.COMPLETED,
                actor_id=provider_id,
                note="case completed",
                changes={"completion_notes": completion_notes.strip() or None},
            )
            if income is not None:
                conn.execute("SAVEPOINT income_capture")
                try:
                    income_record = self._insert_income(conn, completed, income)
                except sqlite3.Error:
                    conn.execute("ROLLBACK TO SAVEPOINT income_capture")
                    logger.exception("Income capture failed case_id=%s provider=%s", case_id, provider_id)
                    income_warning = INCOME_WARNING
                finally:
                    conn.execute("RELEASE SAVEPOINT income_capture")

        logger.info(
            "Case completed case_id=%s provider=%s income=%s",
            case_id,
            provider_id,
            "recorded" if income_record else ("failed" if income_warning else "none"),
        )
        return CompletionResult(case=completed, income_record=income_record, income_warning=income_warning)

    def _insert_income(self, conn: sqlite3.Connection, case: Case, income: IncomeInput) -> IncomeRecord:
        now_iso = to_iso(utcnow())
        record_id = new_id("inc")
        conn.execute(
            """
            INSERT INTO income_records (
                id, case_id, provider_id, customer_id, amount, currency, payment_method, notes, recorded_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                case.id,
                case.provider_id,
                case.customer_id,
                float(income.amount),
                (income.currency or DEFAULT_CURRENCY).strip().upper(),
                (income.payment_method or "").strip() or None,
                income.notes.strip(),
                now_iso,
                now_iso,
            ),
        )
        row = conn.execute("SELECT * FROM income_records WHERE id = ?", (record_id,)).fetchone()
        return income_from_row(row)

    def record_income(self, case_id: str, provider_id: str, income: IncomeInput) -> Tuple[IncomeRecord, bool]:
        """Attach income to a completed case; a second call returns the first record."""
        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.provider_id != provider_id:
                raise CasePermissionError("Only the assigned provider can record income for this case")
            if case.status != CaseStatus.COMPLETED:
                raise CaseConflictError("Income can only be recorded for completed cases")
            existing = conn.execute("SELECT * FROM income_records WHERE case_id = ?", (case_id,)).fetchone()
            if existing:
                return income_from_row(existing), False
            record = self._insert_income(conn, case, income)
        logger.info("Income recorded case_id=%s provider=%s amount=%.2f", case_id, provider_id, record.amount)
        return record, True

    def get_income_for_case(self, case_id: str) -> Optional[IncomeRecord]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM income_records WHERE case_id = ?", (case_id,)).fetchone()
        return income_from_row(row) if row else None

    def update_income(
        self,
        income_id: str,
        provider_id: str,
        *,
        amount: float,
        payment_method: Optional[str] = None,
        notes: str = "",
    ) -> IncomeRecord:
        if amount <= 0:
            raise CaseValidationError("amount must be greater than 0")
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM income_records WHERE id = ?", (income_id,)).fetchone()
            if not row:
                raise CaseNotFoundError("Income record not found")
            if row["provider_id"] != provider_id:
                raise CasePermissionError("You can only update your own income records")
            conn.execute(
                """
                UPDATE income_records
                SET amount = ?, payment_method = ?, notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (float(amount), (payment_method or "").strip() or None, notes.strip(), to_iso(utcnow()), income_id),
            )
            updated = income_from_row(conn.execute("SELECT * FROM income_records WHERE id = ?", (income_id,)).fetchone())
        logger.info("Income updated income_id=%s provider=%s", income_id, provider_id)
        return updated

    def income_stats(
        self,
        provider_id: str,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        months: int = 12,
    ) -> IncomeStats:
        """Summary, recent months and payment-method split for a provider.

        ``start`` and ``end`` are inclusive ``YYYY-MM-DD`` bounds on the
        recording date.
        """
        where = "provider_id = ?"
        params: list = [provider_id]
        for bound, operator in ((start, ">="), (end, "<=")):
            if not bound:
                continue
            if not DATE_PATTERN.match(bound):
                raise CaseValidationError("start and end must be formatted as YYYY-MM-DD")
            where += f" AND substr(recorded_at, 1, 10) {operator} ?"
            params.append(bound)

        with self.db.read() as conn:
            summary = conn.execute(
                f"SELECT COALESCE(SUM(amount), 0) AS total, COUNT(*) AS count FROM income_records WHERE {where}",
                tuple(params),
            ).fetchone()
            currency_row = conn.execute(
                f"""
                SELECT currency FROM income_records WHERE {where}
                GROUP BY currency ORDER BY COUNT(*) DESC, currency ASC LIMIT 1
                """,
                tuple(params),
            ).fetchone()
            monthly = conn.execute(
                f"""
                SELECT substr(recorded_at, 1, 7) AS month, SUM(amount) AS total, COUNT(*) AS count
                FROM income_records WHERE {where}
                GROUP BY month ORDER BY month DESC LIMIT ?
                """,
                (*params, months),
            ).fetchall()
            methods = conn.execute(
                f"""
                SELECT COALESCE(payment_method, ?) AS method, SUM(amount) AS total, COUNT(*) AS count
                FROM income_records WHERE {where}
                GROUP BY method ORDER BY total DESC, method ASC
                """,
                (UNSPECIFIED_METHOD, *params),
            ).fetchall()

        count = int(summary["count"])
        total = round(float(summary["total"]), 2)
        return IncomeStats(
            provider_id=provider_id,
            summary=IncomeSummary(
                total_income=total,
                income_count=count,
                average_income=round(total / count, 2) if count else 0.0,
                currency=currency_row["currency"] if currency_row else DEFAULT_CURRENCY,
            ),
            monthly_income=[_bucket(row["month"], row["total"], row["count"]) for row in monthly],
            payment_methods=[_bucket(row["method"], row["total"], row["count"]) for row in methods],
        )

    def income_by_month(self, provider_id: str, month: str) -> List[IncomeRecord]:
        if not MONTH_PATTERN.match(month or ""):
            raise CaseValidationError("month must be formatted as YYYY-MM")
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM income_records
                WHERE provider_id = ? AND substr(recorded_at, 1, 7) = ?
                ORDER BY recorded_at DESC
                """,
                (provider_id, month),
            ).fetchall()
        return [income_from_row(row) for row in rows]

    def income_by_method(self, provider_id: str, payment_method: str) -> List[IncomeRecord]:
        method = payment_method.strip()
        if not method:
            raise CaseValidationError("payment_method is required")
        with self.db.read() as conn:
            if method == UNSPECIFIED_METHOD:
                rows = conn.execute(
                    """
                    SELECT * FROM income_records
                    WHERE provider_id = ? AND payment_method IS NULL
                    ORDER BY recorded_at DESC
                    """,
                    (provider_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM income_records
                    WHERE provider_id = ? AND payment_method = ?
                    ORDER BY recorded_at DESC
                    """,
                    (provider_id, method),
                ).fetchall()
        return [income_from_row(row) for row in rows]

    def income_years(self, provider_id: str) -> List[IncomeBucket]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT substr(recorded_at, 1, 4) AS year, SUM(amount) AS total, COUNT(*) AS count
                FROM income_records WHERE provider_id = ?
                GROUP BY year ORDER BY year DESC
                """,
                (provider_id,),
            ).fetchall()
        return [_bucket(row["year"], row["total"], row["count"]) for row in rows]
