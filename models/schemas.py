"""
Core data models for the travel inbox pipeline.
These are the universal types shared across all modules: the message record,
the typed result of every pipeline stage, inventory items, and review items.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONVERTED_TO_QUOTE = "converted_to_quote"
    LINKED_TO_EXISTING_QUOTE = "linked_to_existing_quote"
    DUPLICATE_DETECTED = "duplicate_detected"


class MessageCategory(str, Enum):
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"
    AGENT = "AGENT"
    FINANCE = "FINANCE"
    OTHER = "OTHER"
    SPAM = "SPAM"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    URGENT = "urgent"


class JobPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric priority, lower sorts first."""
        return _PRIORITY_RANK[self.value]


_PRIORITY_RANK = {"urgent": 1, "high": 2, "normal": 3, "low": 4}


class WorkflowStage(str, Enum):
    RECEIVED = "received"
    CATEGORIZING = "categorizing"
    VISION_EXTRACTION = "vision_extraction"
    VALIDATING = "validating"
    MATCHING = "matching"
    DRAFTING_RESPONSE = "drafting_response"
    SENDING = "sending"
    COMPLETED = "completed"
    REVIEW = "review"
    FAILED = "failed"


class WorkflowAction(str, Enum):
    ASK_CUSTOMER = "ASK_CUSTOMER"
    SEND_ITINERARIES = "SEND_ITINERARIES"
    SEND_ITINERARIES_WITH_NOTE = "SEND_ITINERARIES_WITH_NOTE"
    FORWARD_TO_SUPPLIER = "FORWARD_TO_SUPPLIER"


class DraftKind(str, Enum):
    ASK_FOR_INFO = "ask_for_info"
    ITINERARY_MATCHES = "itinerary_matches"
    ITINERARY_MATCHES_WITH_NOTE = "itinerary_matches_with_note"
    CUSTOM_REQUEST = "custom_request"
    PACKAGE_FOUND = "package_found"
    PACKAGE_NOT_FOUND = "package_not_found"

    @property
    def is_templated(self) -> bool:
        return self not in (DraftKind.PACKAGE_FOUND, DraftKind.PACKAGE_NOT_FOUND)


class SourceType(str, Enum):
    SUPPLIER_OFFER = "supplier_offer"
    CATALOG_ITINERARY = "catalog_itinerary"


class ReviewReason(str, Enum):
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    CONFLICTING_CATEGORIES = "CONFLICTING_CATEGORIES"
    SENSITIVE_CONTENT = "SENSITIVE_CONTENT"
    HIGH_VALUE = "HIGH_VALUE"
    MANUAL_FLAG = "MANUAL_FLAG"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    AMBIGUOUS_REQUEST = "AMBIGUOUS_REQUEST"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    NEW_CUSTOMER = "NEW_CUSTOMER"
    ESCALATION = "ESCALATION"
    OTHER = "OTHER"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    ESCALATED = "escalated"


class CustomerValue(str, Enum):
    VIP = "vip"
    RETURNING = "returning"
    NEW = "new"
    AT_RISK = "at_risk"


class ReviewDecisionType(str, Enum):
    APPROVE_AI = "approve_ai"
    MODIFY = "modify"
    REJECT = "reject"


# ──────────────────────────────────────────────────────────────
#  Extracted intent: what the customer is asking for
# ──────────────────────────────────────────────────────────────

class DateRange(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None
    flexible: bool = False


class Travelers(BaseModel):
    adults: Optional[int] = None
    children: int = 0
    infants: int = 0

    @property
    def party_size(self) -> Optional[int]:
        if not self.adults:
            return None
        return self.adults + self.children + self.infants


class Budget(BaseModel):
    amount: Optional[float] = None
    currency: str = "USD"
    per_person: bool = False


class ContactDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None


class InventoryItem(BaseModel):
    """A bookable package: a supplier offer or a published catalog itinerary."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str = ""
    title: str
    destination: str = ""
    country: str = ""
    region: str = ""
    price: Optional[float] = None
    currency: str = "USD"
    duration_days: Optional[int] = None
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None
    min_pax: Optional[int] = None
    max_pax: Optional[int] = None
    package_type: str = ""
    meal_plan: str = ""
    hotel_rating: Optional[int] = None
    highlights: list[str] = []
    activities: list[str] = []
    created_at: datetime = Field(default_factory=_utcnow)


class SupplierOffer(InventoryItem):
    """Offer recorded from a supplier email; searchable once verified and active."""
    supplier_email: str = ""
    source_message_id: str = ""
    status: str = "pending_verification"        # pending_verification | active | expired
    verified: bool = False


class CatalogItinerary(InventoryItem):
    additional_destinations: list[str] = []     # multi-stop itineraries
    status: str = "published"                   # published | draft | archived
    is_active: bool = True


class ExtractedData(BaseModel):
    destination: Optional[str] = None
    additional_destinations: list[str] = []
    dates: DateRange = Field(default_factory=DateRange)
    duration_days: Optional[int] = None
    travelers: Travelers = Field(default_factory=Travelers)
    budget: Budget = Field(default_factory=Budget)
    package_type: Optional[str] = None
    meal_plan: Optional[str] = None
    hotel_type: Optional[str] = None
    hotel_rating: Optional[int] = None
    activities: list[str] = []
    special_requests: list[str] = []
    missing_info: list[str] = []
    contact: ContactDetails = Field(default_factory=ContactDetails)
    supplier_packages: list[InventoryItem] = []


# ──────────────────────────────────────────────────────────────
#  Stage results
# ──────────────────────────────────────────────────────────────

class CategorizationResult(BaseModel):
    category: MessageCategory
    confidence: float                           # 0-100
    sentiment: Sentiment = Sentiment.NEUTRAL
    extracted_data: Optional[ExtractedData] = None
    reasoning: str = ""
    cost: float = 0.0
    tokens: int = 0


class VisionResult(BaseModel):
    success: bool
    contacts: list[ContactDetails] = []
    cost: float = 0.0
    tokens: int = 0
    error: str = ""


class MissingField(BaseModel):
    field: str
    label: str
    question: str
    priority: str = "critical"                  # critical | high | optional


class FieldValidation(BaseModel):
    is_valid: bool
    missing_fields: list[MissingField] = []
    optional_fields: list[MissingField] = []
    completeness: float = 0.0                   # share of required fields present, 0-1


class ItineraryMatch(BaseModel):
    itinerary_id: str
    title: str
    destination: str = ""
    price: Optional[float] = None
    score: int                                  # 0-100 weighted percentage
    breakdown: dict[str, int] = {}


class WorkflowDecision(BaseModel):
    action: WorkflowAction
    reason: str = ""
    matches: list[ItineraryMatch] = []


class ItineraryDecision(BaseModel):
    success: bool
    validation: Optional[FieldValidation] = None
    workflow: Optional[WorkflowDecision] = None
    error: str = ""


class ScoreBreakdown(BaseModel):
    destination: int = Field(0, ge=0, le=40)
    dates: int = Field(0, ge=0, le=25)
    budget: int = Field(0, ge=0, le=20)
    travelers: int = Field(0, ge=0, le=10)
    requirements: int = Field(0, ge=0, le=5)

    @property
    def total(self) -> int:
        return self.destination + self.dates + self.budget + self.travelers + self.requirements


class MatchCandidate(BaseModel):
    """A scored inventory item. Produced per matching call, never stored whole."""
    candidate_id: str
    source_type: SourceType
    title: str
    destination: str = ""
    price: Optional[float] = None
    currency: str = "USD"
    score: ScoreBreakdown
    reasons: list[str] = []
    gaps: list[str] = []

    @property
    def total(self) -> int:
        return self.score.total

    def summary(self) -> MatchSummary:
        return MatchSummary(
            candidate_id=self.candidate_id,
            source_type=self.source_type,
            title=self.title,
            destination=self.destination,
            price=self.price,
            total=self.total,
            score=self.score,
            reasons=self.reasons,
            gaps=self.gaps,
        )


class MatchSummary(BaseModel):
    """Persisted form of a match on the message record."""
    candidate_id: str
    source_type: SourceType
    title: str
    destination: str = ""
    price: Optional[float] = None
    total: int
    score: ScoreBreakdown
    reasons: list[str] = []
    gaps: list[str] = []


class DraftedResponse(BaseModel):
    kind: DraftKind
    subject: str
    body: str                                   # html
    plain_text: str = ""
    cost: float = 0.0
    tokens: int = 0


class DeliveryReceipt(BaseModel):
    delivery_id: str
    sent_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Message record: the persisted processing surface
# ──────────────────────────────────────────────────────────────

class Attachment(BaseModel):
    filename: str
    content_type: str
    url: str = ""
    size_bytes: int = 0

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


class ThreadSignal(BaseModel):
    """Reply/forward detection, computed upstream."""
    is_reply: bool = False
    is_forward: bool = False
    linked_quote_id: Optional[str] = None


class StatusChange(BaseModel):
    from_status: ProcessingStatus
    to_status: ProcessingStatus
    reason: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class InboundMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    message_id_header: str = ""                 # RFC 5322 Message-ID, used for duplicate detection
    from_address: str
    from_name: str = ""
    to_address: str = ""
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    attachments: list[Attachment] = []
    thread: ThreadSignal = Field(default_factory=ThreadSignal)
    customer_id: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    received_at: datetime = Field(default_factory=_utcnow)

    # Processing state
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    stage: WorkflowStage = WorkflowStage.RECEIVED
    progress: int = 0
    category: Optional[MessageCategory] = None
    confidence: Optional[float] = None
    sentiment: Optional[Sentiment] = None
    extracted_data: Optional[ExtractedData] = None
    requires_review: bool = False
    review_reason: Optional[ReviewReason] = None
    matching_results: list[MatchSummary] = []
    itinerary_decision: Optional[ItineraryDecision] = None
    response_generated: bool = False
    generated_response: Optional[DraftedResponse] = None
    response_held: bool = False
    response_sent_at: Optional[datetime] = None
    delivery_id: Optional[str] = None
    delivery_error: Optional[str] = None
    manually_replied: bool = False
    quote_id: Optional[str] = None
    cost: float = 0.0
    tokens_used: int = 0
    processing_error: Optional[str] = None
    status_history: list[StatusChange] = []
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def image_attachments(self) -> list[Attachment]:
        return [a for a in self.attachments if a.is_image]

    @property
    def budget_amount(self) -> Optional[float]:
        if self.extracted_data is None:
            return None
        return self.extracted_data.budget.amount

    def add_cost(self, cost: float, tokens: int) -> None:
        self.cost += cost or 0.0
        self.tokens_used += tokens or 0


class WorkflowOutcome(BaseModel):
    """What a single process() call did with a message."""
    message_id: str
    status: ProcessingStatus
    stage: WorkflowStage
    review_reason: Optional[ReviewReason] = None
    review_item_id: Optional[str] = None
    draft_kind: Optional[DraftKind] = None
    sent: bool = False
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Review
# ──────────────────────────────────────────────────────────────

class ReviewAction(BaseModel):
    """Immutable audit record appended on every review transition."""
    model_config = ConfigDict(frozen=True)

    action: str                                 # created | assigned | completed | escalated | commented | reminder_sent | sla_breached
    actor: str = "system"
    details: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class ReviewComment(BaseModel):
    author: str
    text: str
    created_at: datetime = Field(default_factory=_utcnow)


class ReviewDecision(BaseModel):
    decision: ReviewDecisionType
    final_category: Optional[MessageCategory] = None
    final_response: Optional[str] = None
    notes: str = ""


_OPEN_REVIEW_STATUSES = (ReviewStatus.PENDING, ReviewStatus.IN_REVIEW)


class ReviewItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    message_id: str
    reason: ReviewReason
    priority: JobPriority = JobPriority.NORMAL
    status: ReviewStatus = ReviewStatus.PENDING
    customer_value: CustomerValue = CustomerValue.NEW
    ai_context: dict[str, Any] = {}
    queued_at: datetime = Field(default_factory=_utcnow)
    sla_target: int = 480                       # minutes
    due_by: datetime
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    decision: Optional[ReviewDecision] = None
    is_escalated: bool = False
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    comments: list[ReviewComment] = []
    actions: list[ReviewAction] = []
    reminder_sent_at: Optional[datetime] = None
    breach_notified_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        """Open items block a second review item for the same message."""
        return self.status in _OPEN_REVIEW_STATUSES or self.status == ReviewStatus.ESCALATED

    def sla_breached(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return self.status in _OPEN_REVIEW_STATUSES and self.due_by < now

    def time_in_queue(self, now: Optional[datetime] = None) -> timedelta:
        end = self.completed_at or now or _utcnow()
        return end - self.queued_at
