import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from casematch.env import env_int
from casematch.models import (
    AssignmentType,
    Bid,
    Case,
    CaseStatus,
    CompletionResult,
    DeclineResult,
    IncomeInput,
    OfferExpiryResult,
    Provider,
    ProviderTier,
    TrialSweepResult,
    WinnerSelectionResult,
)
from casematch.services.bid_ledger import BidLedger
from casematch.services.case_registry import CaseRegistry
from casematch.services.completion import CompletionService
from casematch.services.database import (
    CaseConflictError,
    CaseNotFoundError,
    CasePermissionError,
    CaseValidationError,
    Database,
    provider_from_row,
    to_iso,
    utcnow,
)
from casematch.services.notification_store import NotificationStore, notification_store
from casematch.services.points_ledger import PointsLedger
from casematch.services.requeue import RequeueService
from casematch.services.trial_gate import TrialGate
from casematch.services.winner_selection import WinnerSelection

logger = logging.getLogger(__name__)

DEFAULT_POINTS_BALANCE = env_int("DEFAULT_POINTS_BALANCE", 0, minimum=0)


class MatchingEngine:
    """Entry point for every case, bid and trial operation.

    Holds one ``Database`` and wires the components onto it. Operations that
    span components (accepting, cancelling) live here so they still run in a
    single transaction.
    """

    def __init__(self, db_path: str, notifications: Optional[NotificationStore] = None) -> None:
        self.db = Database(db_path)
        self.notifications = notifications or notification_store
        self.registry = CaseRegistry(self.db)
        self.trial_gate = TrialGate(self.db)
        self.points = PointsLedger(self.db)
        self.bids = BidLedger(self.db, self.registry, self.trial_gate, self.points)
        self.winner_selection = WinnerSelection(self.db, self.registry, self.bids, self.trial_gate, self.points)
        self.requeue = RequeueService(self.db, self.registry)
        self.completion = CompletionService(self.db, self.registry)

    def register_provider(
        self,
        provider_id: str,
        *,
        display_name: str = "",
        tier: ProviderTier = ProviderTier.FREE,
        points_balance: Optional[int] = None,
        trial_started_at: Optional[datetime] = None,
    ) -> Provider:
        cleaned_id = provider_id.strip()
        if not cleaned_id:
            raise CaseValidationError("provider_id is required")
        opening_balance = DEFAULT_POINTS_BALANCE if points_balance is None else points_balance
        if opening_balance < 0:
            raise CaseValidationError("points_balance cannot be negative")
        tier_value = ProviderTier(tier)
        now_iso = to_iso(utcnow())
        started_iso = to_iso(trial_started_at) if trial_started_at else now_iso

        with self.db.transaction() as conn:
            existing = conn.execute("SELECT 1 FROM providers WHERE id = ?", (cleaned_id,)).fetchone()
            if existing:
                raise CaseConflictError("Provider already registered")
            conn.execute(
                """
                INSERT INTO providers (
                    id, display_name, tier, points_balance, trial_started_at, trial_cases_used,
                    trial_expired, trial_expired_reason, contact_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, 0, ?, 0, 0, NULL, 1, ?, ?)
                """,
                (
                    cleaned_id,
                    display_name.strip(),
                    tier_value.value,
                    started_iso if tier_value == ProviderTier.FREE else None,
                    now_iso,
                    now_iso,
                ),
            )
            if opening_balance > 0:
                self.points.credit(conn, cleaned_id, opening_balance, kind="award", reason="opening balance")
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (cleaned_id,)).fetchone()
        logger.info("Provider registered provider=%s tier=%s points=%s", cleaned_id, tier_value.value, opening_balance)
        return provider_from_row(row)

    def get_provider(self, provider_id: str) -> Provider:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise CaseNotFoundError("Provider not found")
        return provider_from_row(row)

    def _notify(self, user_id: Optional[str], title: str, body: str, category: str, deep_link: str) -> None:
        if not user_id:
            return
        try:
            self.notifications.create(
                user_id=user_id,
                title=title,
                body=body,
                category=category,
                deep_link=deep_link,
            )
        except Exception:
            logger.exception("Notification dispatch failed user=%s title=%s", user_id, title)

    def create_case(self, **fields) -> Case:
        case = self.registry.create_case(**fields)
        if case.assignment_type == AssignmentType.SPECIFIC:
            self._notify(
                case.target_provider_id,
                "New case request",
                f"A customer sent you a {case.service_type} request in {case.city}.",
                "case",
                f"case:{case.id}",
            )
        return case

    def get_case(self, case_id: str) -> Case:
        return self.registry.get_case(case_id)

    def accept_case(self, case_id: str, provider_id: str, now: Optional[datetime] = None) -> Case:
        """Assign a pending case to a provider directly.

        Specific cases only accept their target. Open cases accept anyone
        who has not declined them, until the first bid arrives; from then
        on the customer chooses among bids.
        """
        cleaned_provider = provider_id.strip()
        if not cleaned_provider:
            raise CaseValidationError("provider_id is required")

        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.status == CaseStatus.PENDING:
                if case.assignment_type == AssignmentType.SPECIFIC:
                    if case.target_provider_id != cleaned_provider:
                        raise CasePermissionError("This case was sent to another provider")
                else:
                    if case.customer_id == cleaned_provider:
                        raise CasePermissionError("You cannot accept your own case")
                    if self.registry.is_excluded(conn, case_id, cleaned_provider):
                        raise CasePermissionError("You declined this case and cannot accept it")
                    if case.current_bidders > 0:
                        raise CaseConflictError("This case has bids; the customer selects the winner")
                self.trial_gate.check(conn, cleaned_provider, now)
            accepted = self.registry.transition(
                conn,
                case_id,
                CaseStatus.PENDING,
                CaseStatus.ACCEPTED,
                actor_id=cleaned_provider,
                note="accepted by provider",
                changes={"provider_id": cleaned_provider},
            )
            self.trial_gate.record_acceptance(conn, cleaned_provider)
        logger.info("Case accepted case_id=%s provider=%s", case_id, cleaned_provider)
        self._notify(
            accepted.customer_id,
            "Case accepted",
            f"Your {accepted.service_type} request was accepted by a provider.",
            "case",
            f"case:{case_id}",
        )
        return accepted

    def decline_case(self, case_id: str, provider_id: str, reason: str) -> DeclineResult:
        result = self.requeue.decline_case(case_id, provider_id, reason)
        self._notify(
            result.case.customer_id,
            "Case declined",
            "A provider declined your request."
            + (" It is now visible to other providers." if result.requeued else ""),
            "case",
            f"case:{case_id}",
        )
        return result

    def cancel_case(self, case_id: str, actor_id: str, reason: str = "") -> Case:
        with self.db.transaction() as conn:
            case = self.registry.fetch(conn, case_id)
            if case.customer_id != actor_id:
                raise CasePermissionError("Only the customer who created the case can cancel it")
            changes = {}
            refunded = []
            if case.status == CaseStatus.PENDING:
                refunded = self.bids.refund_pending_bids(conn, case_id, reason="case cancelled")
                changes["current_bidders"] = 0
            cancelled = self.registry.transition(
                conn,
                case_id,
                case.status,
                CaseStatus.CANCELLED,
                actor_id=actor_id,
                note=reason.strip() or "cancelled by customer",
                changes=changes,
            )
        logger.info("Case cancelled case_id=%s refunded_bids=%s", case_id, len(refunded))
        for bid in refunded:
            self._notify(
                bid.provider_id,
                "Case cancelled",
                f"The customer cancelled the case; {bid.points_bid} points were refunded.",
                "bid",
                f"case:{case_id}",
            )
        if case.provider_id:
            self._notify(case.provider_id, "Case cancelled", "The customer cancelled this case.", "case", f"case:{case_id}")
        return cancelled

    def place_bid(
        self,
        case_id: str,
        provider_id: str,
        points: int,
        comment: str = "",
        now: Optional[datetime] = None,
    ) -> Bid:
        bid = self.bids.place_bid(case_id, provider_id, points, comment, now)
        case = self.registry.get_case(case_id)
        self._notify(
            case.customer_id,
            "New bid",
            f"A provider bid on your {case.service_type} request.",
            "bid",
            f"case:{case_id}",
        )
        return bid

    def withdraw_bid(self, bid_id: str, provider_id: str) -> Bid:
        return self.bids.withdraw_bid(bid_id, provider_id)

    def select_winner(
        self,
        case_id: str,
        bid_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> WinnerSelectionResult:
        result = self.winner_selection.select_winner(case_id, bid_id, actor_id, now)
        self._notify(
            result.winning_bid.provider_id,
            "Bid won",
            "The customer selected your bid. The case is now yours.",
            "bid",
            f"case:{case_id}",
        )
        for refund in result.refunds:
            self._notify(
                refund.provider_id,
                "Bid not selected",
                f"Another provider was selected; {refund.refunded_points} points were refunded.",
                "bid",
                f"case:{case_id}",
            )
        return result

    def complete_case(
        self,
        case_id: str,
        provider_id: str,
        completion_notes: str = "",
        income: Optional[IncomeInput] = None,
    ) -> CompletionResult:
        result = self.completion.complete_case(case_id, provider_id, completion_notes, income)
        self._notify(
            result.case.customer_id,
            "Case completed",
            f"Your {result.case.service_type} request was marked as completed.",
            "case",
            f"case:{case_id}",
        )
        return result

    def expire_offers(self, now: Optional[datetime] = None) -> OfferExpiryResult:
        result = self.requeue.expire_offers(now)
        for case_id in result.expired_case_ids:
            case = self.registry.get_case(case_id)
            self._notify(
                case.customer_id,
                "Offer expired",
                "The provider did not respond in time.",
                "case",
                f"case:{case_id}",
            )
        return result

    def sweep_trials(self, now: Optional[datetime] = None) -> TrialSweepResult:
        result = self.trial_gate.sweep_expired(now)
        for provider_id in result.expired_provider_ids:
            self._notify(
                provider_id,
                "Free trial ended",
                "Your free trial has ended. Upgrade to keep accepting cases.",
                "trial",
                f"provider:{provider_id}",
            )
        return result

    def ping(self) -> bool:
        with self.db.read() as conn:
            conn.execute("SELECT 1").fetchone()
        return True


default_db = str(Path(__file__).resolve().parents[2] / "data" / "cases.sqlite3")
engine = MatchingEngine(db_path=os.getenv("CASES_DB_PATH", default_db))
