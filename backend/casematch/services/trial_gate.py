import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from casematch.env import env_int
from casematch.models import ProviderTier, TrialReason, TrialState, TrialStatus, TrialSweepResult
from casematch.services.database import (
    CaseNotFoundError,
    Database,
    TrialLimitError,
    parse_timestamp,
    to_iso,
    trial_state_from_row,
    utcnow,
)

logger = logging.getLogger(__name__)

TRIAL_MAX_CASES = env_int("TRIAL_MAX_CASES", 5)
TRIAL_MAX_DAYS = env_int("TRIAL_MAX_DAYS", 14)

_DENIAL_MESSAGES = {
    TrialReason.CASES_LIMIT: "Free trial case limit reached; upgrade to accept more cases",
    TrialReason.TIME_LIMIT: "Free trial period has ended; upgrade to accept more cases",
}


def evaluate_trial(
    provider_id: str,
    tier: ProviderTier,
    state: TrialState,
    now: datetime,
    *,
    max_cases: int = TRIAL_MAX_CASES,
    max_days: int = TRIAL_MAX_DAYS,
) -> TrialStatus:
    """Decide whether a provider may take another case.

    The case quota is checked before the time window, so a provider who has
    used every trial case is reported as ``cases_limit`` however old the
    trial is.
    """
    if ProviderTier(tier) != ProviderTier.FREE:
        return TrialStatus(provider_id=provider_id, allowed=True, reason=TrialReason.NOT_FREE_TIER)

    started_at = parse_timestamp(state.started_at)
    days_elapsed = max(0, (now - started_at).days) if started_at else 0
    expires_at = to_iso(started_at + timedelta(days=max_days)) if started_at else None
    cases_remaining = max(0, max_cases - state.cases_used)
    days_remaining = max(0, max_days - days_elapsed)

    def denied(reason: TrialReason) -> TrialStatus:
        return TrialStatus(
            provider_id=provider_id,
            allowed=False,
            reason=reason,
            cases_used=state.cases_used,
            cases_remaining=cases_remaining,
            days_remaining=days_remaining,
            expires_at=expires_at,
        )

    if state.expired:
        if state.expired_reason in {TrialReason.CASES_LIMIT, TrialReason.TIME_LIMIT}:
            return denied(TrialReason(state.expired_reason))
        return denied(TrialReason.CASES_LIMIT if state.cases_used >= max_cases else TrialReason.TIME_LIMIT)
    if state.cases_used >= max_cases:
        return denied(TrialReason.CASES_LIMIT)
    if started_at and days_elapsed >= max_days:
        return denied(TrialReason.TIME_LIMIT)

    return TrialStatus(
        provider_id=provider_id,
        allowed=True,
        reason=TrialReason.NONE,
        cases_used=state.cases_used,
        cases_remaining=cases_remaining,
        days_remaining=days_remaining,
        expires_at=expires_at,
    )


class TrialGate:
    def __init__(self, db: Database, *, max_cases: int = TRIAL_MAX_CASES, max_days: int = TRIAL_MAX_DAYS) -> None:
        self.db = db
        self.max_cases = max_cases
        self.max_days = max_days

    def _load(self, conn: sqlite3.Connection, provider_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise CaseNotFoundError("Provider not found")
        return row

    def evaluate_row(self, row: sqlite3.Row, now: Optional[datetime] = None) -> TrialStatus:
        return evaluate_trial(
            str(row["id"]),
            ProviderTier(row["tier"]),
            trial_state_from_row(row),
            now or utcnow(),
            max_cases=self.max_cases,
            max_days=self.max_days,
        )

    def can_accept(self, provider_id: str, now: Optional[datetime] = None) -> TrialStatus:
        with self.db.read() as conn:
            row = self._load(conn, provider_id)
        return self.evaluate_row(row, now)

    def check(self, conn: sqlite3.Connection, provider_id: str, now: Optional[datetime] = None) -> TrialStatus:
        status = self.evaluate_row(self._load(conn, provider_id), now)
        if not status.allowed:
            logger.info("Trial gate denied provider=%s reason=%s", provider_id, status.reason.value)
            raise TrialLimitError(_DENIAL_MESSAGES[status.reason], status.reason)
        return status

    def record_acceptance(self, conn: sqlite3.Connection, provider_id: str) -> None:
        """Count one accepted case against a free-tier trial.

        Runs on the caller's connection so the increment commits or rolls
        back together with the case transition.
        """
        row = self._load(conn, provider_id)
        if ProviderTier(row["tier"]) != ProviderTier.FREE:
            return
        cursor = conn.execute(
            """
            UPDATE providers
            SET trial_cases_used = trial_cases_used + 1, updated_at = ?
            WHERE id = ? AND tier = 'free' AND trial_expired = 0 AND trial_cases_used < ?
            """,
            (to_iso(utcnow()), provider_id, self.max_cases),
        )
        if cursor.rowcount == 0:
            raise TrialLimitError(_DENIAL_MESSAGES[TrialReason.CASES_LIMIT], TrialReason.CASES_LIMIT)
        logger.info("Trial case recorded provider=%s used=%s", provider_id, int(row["trial_cases_used"]) + 1)

    def sweep_expired(self, now: Optional[datetime] = None) -> TrialSweepResult:
        """Mark exhausted free trials as expired and switch off outbound contact."""
        current = now or utcnow()
        expired: List[str] = []
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM providers
                WHERE tier = 'free' AND (trial_expired = 0 OR contact_enabled = 1)
                """
            ).fetchall()
            for row in rows:
                status = self.evaluate_row(row, current)
                if status.allowed:
                    continue
                cursor = conn.execute(
                    """
                    UPDATE providers
                    SET trial_expired = 1,
                        trial_expired_reason = COALESCE(trial_expired_reason, ?),
                        contact_enabled = 0,
                        updated_at = ?
                    WHERE id = ? AND tier = 'free'
                    """,
                    (status.reason.value, to_iso(current), row["id"]),
                )
                if cursor.rowcount and not bool(row["trial_expired"]):
                    expired.append(str(row["id"]))
        if expired:
            logger.info("Trial sweep expired %s provider(s): %s", len(expired), ", ".join(expired))
        else:
            logger.info("Trial sweep found no newly expired trials")
        return TrialSweepResult(expired_provider_ids=expired)

    def reset_trial(self, provider_id: str, now: Optional[datetime] = None) -> TrialStatus:
        current = now or utcnow()
        with self.db.transaction() as conn:
            self._load(conn, provider_id)
            conn.execute(
                """
                UPDATE providers
                SET trial_started_at = ?,
                    trial_cases_used = 0,
                    trial_expired = 0,
                    trial_expired_reason = NULL,
                    contact_enabled = 1,
                    updated_at = ?
                WHERE id = ?
                """,
                (to_iso(current), to_iso(current), provider_id),
            )
            row = self._load(conn, provider_id)
        logger.info("Trial reset provider=%s", provider_id)
        return self.evaluate_row(row, current)
