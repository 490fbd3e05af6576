from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class CaseStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AssignmentType(str, Enum):
    OPEN = "open"
    SPECIFIC = "specific"


class BidStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class ProviderTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class TrialReason(str, Enum):
    NONE = "none"
    CASES_LIMIT = "cases_limit"
    TIME_LIMIT = "time_limit"
    NOT_FREE_TIER = "not_free_tier"


class Case(BaseModel):
    id: str
    customer_id: str
    service_type: str
    category: str
    description: str
    city: str
    neighborhood: str = ""
    phone: str = ""
    preferred_date: Optional[str] = None
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    budget: Optional[str] = None
    assignment_type: AssignmentType
    target_provider_id: Optional[str] = None
    provider_id: Optional[str] = None
    status: CaseStatus
    max_bidders: int = 3
    current_bidders: int = 0
    allow_requeue: bool = True
    decline_reason: Optional[str] = None
    winning_bid_id: Optional[str] = None
    completion_notes: Optional[str] = None
    created_at: str
    offered_at: Optional[str] = None
    accepted_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    updated_at: str


class CaseCreateRequest(BaseModel):
    customer_id: str
    service_type: str = ""
    description: str = ""
    city: str = ""
    category: Optional[str] = None
    neighborhood: str = ""
    phone: str = ""
    preferred_date: Optional[str] = None
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    budget: Optional[str] = None
    assignment_type: AssignmentType = AssignmentType.OPEN
    target_provider_id: Optional[str] = None
    max_bidders: int = Field(default=3, ge=1, le=10)
    allow_requeue: bool = True


class CasePage(BaseModel):
    items: list[Case]
    total: int
    page: int
    limit: int


class CaseStatusEvent(BaseModel):
    id: str
    case_id: str
    actor_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class AcceptCaseRequest(BaseModel):
    provider_id: str


class DeclineCaseRequest(BaseModel):
    provider_id: str
    reason: str = ""


class CancelCaseRequest(BaseModel):
    actor_id: str
    reason: str = ""


class DeclineResult(BaseModel):
    case: Case
    queue_entry: "QueueEntry"
    requeued: bool


class Bid(BaseModel):
    """One provider's bid on an open case.

    Only bids that are not `refunded` hold a slot against `max_bidders`;
    a withdrawn bid keeps its row for history and frees its slot.
    """

    id: str
    case_id: str
    provider_id: str
    points_bid: int
    bid_status: BidStatus
    bid_order: int
    refunded_points: int = 0
    comment: str = ""
    created_at: str
    updated_at: str


class BidCreateRequest(BaseModel):
    provider_id: str
    points: int = Field(gt=0)
    comment: str = ""


class BidWithdrawRequest(BaseModel):
    provider_id: str


class WinnerSelectionRequest(BaseModel):
    customer_id: str
    bid_id: str


class PointsRefund(BaseModel):
    bid_id: str
    provider_id: str
    points_bid: int
    refunded_points: int


class WinnerSelectionResult(BaseModel):
    case: Case
    winning_bid: Bid
    refunds: list[PointsRefund] = Field(default_factory=list)


class QueueEntry(BaseModel):
    id: str
    case_id: str
    original_provider_id: str
    queue_position: int
    available_to_all: bool = True
    reason: str = ""
    created_at: str


class QueueOffer(BaseModel):
    case: Case
    queue_position: int


class DeclinedCase(BaseModel):
    case: Case
    reason: str
    declined_at: str


class OfferExpiryResult(BaseModel):
    expired_case_ids: list[str] = Field(default_factory=list)


class TrialState(BaseModel):
    started_at: Optional[str] = None
    cases_used: int = 0
    expired: bool = False
    expired_reason: Optional[TrialReason] = None


class TrialStatus(BaseModel):
    provider_id: str
    allowed: bool
    reason: TrialReason = TrialReason.NONE
    cases_used: int = 0
    cases_remaining: Optional[int] = None
    days_remaining: Optional[int] = None
    expires_at: Optional[str] = None


class TrialSweepResult(BaseModel):
    expired_provider_ids: list[str] = Field(default_factory=list)


class Provider(BaseModel):
    id: str
    display_name: str = ""
    tier: ProviderTier
    points_balance: int
    contact_enabled: bool = True
    trial: TrialState
    created_at: str


class ProviderRegisterRequest(BaseModel):
    provider_id: str
    display_name: str = ""
    tier: ProviderTier = ProviderTier.FREE
    points_balance: Optional[int] = Field(default=None, ge=0)


class PointsTransaction(BaseModel):
    id: str
    provider_id: str
    amount: int
    balance_after: int
    kind: Literal["spent", "refund", "award"]
    reason: str
    case_id: Optional[str] = None
    created_at: str


class PointsBalance(BaseModel):
    provider_id: str
    points_balance: int
    transactions: list[PointsTransaction] = Field(default_factory=list)


class AwardPointsRequest(BaseModel):
    points: int = Field(gt=0)
    reason: str = "award"


class IncomeInput(BaseModel):
    amount: float = Field(gt=0)
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    notes: str = ""


class IncomeRecord(BaseModel):
    id: str
    case_id: str
    provider_id: str
    customer_id: str
    amount: float
    currency: str
    payment_method: Optional[str] = None
    notes: str = ""
    recorded_at: str
    updated_at: str


class IncomeRecordRequest(BaseModel):
    provider_id: str
    income: IncomeInput


class IncomeUpdateRequest(BaseModel):
    provider_id: str
    amount: float = Field(gt=0)
    payment_method: Optional[str] = None
    notes: str = ""


class CompleteCaseRequest(BaseModel):
    provider_id: str
    completion_notes: str = ""
    income: Optional[IncomeInput] = None


class CompletionResult(BaseModel):
    case: Case
    income_record: Optional[IncomeRecord] = None
    income_warning: Optional[str] = None


class IncomeSummary(BaseModel):
    total_income: float
    income_count: int
    average_income: float
    currency: str


class IncomeBucket(BaseModel):
    key: str
    total: float
    count: int
    average: float


class IncomeStats(BaseModel):
    provider_id: str
    summary: IncomeSummary
    monthly_income: list[IncomeBucket]
    payment_methods: list[IncomeBucket]


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["case", "bid", "trial", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


DeclineResult.model_rebuild()
