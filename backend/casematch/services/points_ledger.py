import logging
import sqlite3
from typing import List, Optional

from casematch.models import PointsBalance, PointsTransaction
from casematch.services.database import (
    CaseNotFoundError,
    CaseValidationError,
    Database,
    new_id,
    points_transaction_from_row,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


class PointsLedger:
    """Provider point balances plus an append-only transaction log."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        amount: int,
        kind: str,
        reason: str,
        case_id: Optional[str],
    ) -> PointsTransaction:
        balance_row = conn.execute("SELECT points_balance FROM providers WHERE id = ?", (provider_id,)).fetchone()
        transaction = PointsTransaction(
            id=new_id("pt"),
            provider_id=provider_id,
            amount=amount,
            balance_after=int(balance_row["points_balance"]),
            kind=kind,  # type: ignore[arg-type]
            reason=reason,
            case_id=case_id,
            created_at=to_iso(utcnow()),
        )
        conn.execute(
            """
            INSERT INTO points_transactions (id, provider_id, amount, balance_after, kind, reason, case_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.id,
                transaction.provider_id,
                transaction.amount,
                transaction.balance_after,
                transaction.kind,
                transaction.reason,
                transaction.case_id,
                transaction.created_at,
            ),
        )
        return transaction

    def debit(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        points: int,
        *,
        reason: str,
        case_id: Optional[str] = None,
    ) -> PointsTransaction:
        if points <= 0:
            raise CaseValidationError("points must be greater than 0")
        cursor = conn.execute(
            """
            UPDATE providers
            SET points_balance = points_balance - ?, updated_at = ?
            WHERE id = ? AND points_balance >= ?
            """,
            (points, to_iso(utcnow()), provider_id, points),
        )
        if cursor.rowcount == 0:
            row = conn.execute("SELECT points_balance FROM providers WHERE id = ?", (provider_id,)).fetchone()
            if not row:
                raise CaseNotFoundError("Provider not found")
            raise CaseValidationError(
                f"Insufficient points. Required: {points}, available: {int(row['points_balance'])}"
            )
        return self._record(conn, provider_id, -points, "spent", reason, case_id)

    def credit(
        self,
        conn: sqlite3.Connection,
        provider_id: str,
        points: int,
        *,
        kind: str = "refund",
        reason: str,
        case_id: Optional[str] = None,
    ) -> PointsTransaction:
        if points <= 0:
            raise CaseValidationError("points must be greater than 0")
        cursor = conn.execute(
            "UPDATE providers SET points_balance = points_balance + ?, updated_at = ? WHERE id = ?",
            (points, to_iso(utcnow()), provider_id),
        )
        if cursor.rowcount == 0:
            raise CaseNotFoundError("Provider not found")
        return self._record(conn, provider_id, points, kind, reason, case_id)

    def list_transactions(
        self,
        provider_id: str,
        *,
        case_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[PointsTransaction]:
        query = "SELECT * FROM points_transactions WHERE provider_id = ?"
        params: list = [provider_id]
        if case_id:
            query += " AND case_id = ?"
            params.append(case_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self.db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [points_transaction_from_row(row) for row in rows]

    def balance(self, provider_id: str, *, limit: int = 50) -> PointsBalance:
        with self.db.read() as conn:
            row = conn.execute("SELECT points_balance FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise CaseNotFoundError("Provider not found")
        return PointsBalance(
            provider_id=provider_id,
            points_balance=int(row["points_balance"]),
            transactions=self.list_transactions(provider_id, limit=limit),
        )

    def award_points(self, provider_id: str, points: int, reason: str = "award") -> PointsBalance:
        with self.db.transaction() as conn:
            self.credit(conn, provider_id, points, kind="award", reason=reason.strip() or "award")
        logger.info("Points awarded provider=%s points=%s", provider_id, points)
        return self.balance(provider_id)
