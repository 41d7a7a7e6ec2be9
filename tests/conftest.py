"""Shared test fixtures for the travel inbox pipeline."""
from datetime import date
from typing import Any, Optional

import pytest

from config.settings import PipelineConfig, ReviewConfig
from core.collaborators import (
    ItineraryMatcher, MailTransport, MessageAnalyzer, ResponseDrafter, VisionExtractor,
)
from core.drafting import TemplateResponseDrafter
from core.orchestrator import WorkflowOrchestrator
from database.store_memory import InMemoryWorkflowStore
from matching.engine import MatchingEngine
from models.schemas import (
    Budget, CatalogItinerary, CategorizationResult, ContactDetails, DateRange,
    DeliveryReceipt, ExtractedData, InboundMessage, ItineraryDecision, ItineraryMatch,
    MessageCategory, SupplierOffer, Travelers, VisionResult, WorkflowAction, WorkflowDecision,
)
from review.escalator import ReviewEscalator

TODAY = date(2025, 5, 1)


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeJobContext:
    """Stands in for job_queue.message_queue.JobContext."""

    def __init__(self, message_id: str, tenant_id: str = "acme", attempt: int = 1, max_attempts: int = 3):
        self.job_id = f"job-{message_id}-{attempt}"
        self.payload = {"message_id": message_id, "tenant_id": tenant_id}
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.progress: list[int] = []

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1

    async def report_progress(self, percent: int) -> None:
        self.progress.append(percent)


class FakeAnalyzer(MessageAnalyzer):
    """Returns queued results (or raises queued exceptions) in order; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def categorize_and_extract(self, message, tenant_id):
        self.calls += 1
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class FakeVision(VisionExtractor):
    def __init__(self, contacts: Optional[list[ContactDetails]] = None):
        self.contacts = contacts or []
        self.calls = 0

    async def extract_contacts_from_images(self, message, tenant_id):
        self.calls += 1
        return VisionResult(success=True, contacts=self.contacts, cost=0.01, tokens=100)


class FakeItineraryMatcher(ItineraryMatcher):
    def __init__(self, decision: Optional[ItineraryDecision] = None):
        self.decision = decision or ItineraryDecision(success=False, error="not configured")
        self.calls = 0

    async def evaluate_itinerary_match(self, extracted, tenant_id):
        self.calls += 1
        return self.decision


class FakeTransport(MailTransport):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def send_mail(self, to_address, subject, html_body, text_body="", in_reply_to=None):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to_address, "subject": subject, "html": html_body, "in_reply_to": in_reply_to})
        return DeliveryReceipt(delivery_id=f"<sent-{len(self.sent)}@test>")


# ──────────────────────────────────────────────────────────────
#  Data
# ──────────────────────────────────────────────────────────────

def paris_request(**overrides) -> ExtractedData:
    data = dict(
        destination="Paris",
        dates=DateRange(start=date(2025, 6, 1), end=date(2025, 6, 7)),
        travelers=Travelers(adults=2),
        budget=Budget(amount=5000),
        contact=ContactDetails(name="Claire Martin", email="claire@example.com"),
    )
    data.update(overrides)
    return ExtractedData(**data)


def categorized(category=MessageCategory.CUSTOMER, confidence=92.0,
                extracted: Optional[ExtractedData] = None) -> CategorizationResult:
    return CategorizationResult(
        category=category,
        confidence=confidence,
        extracted_data=extracted,
        cost=0.02,
        tokens=1200,
    )


def good_decision() -> ItineraryDecision:
    return ItineraryDecision(
        success=True,
        workflow=WorkflowDecision(
            action=WorkflowAction.SEND_ITINERARIES,
            reason="good_matches_found",
            matches=[ItineraryMatch(itinerary_id="it-1", title="Paris in Spring",
                                    destination="Paris, France", price=4900, score=88)],
        ),
    )


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def make_message():
    def _make(**overrides) -> InboundMessage:
        data = dict(
            tenant_id="acme",
            message_id_header="<abc123@mail.example.com>",
            from_address="claire@example.com",
            from_name="Claire Martin",
            subject="Paris in June",
            body_text="Hi, we are 2 adults looking at Paris 1-7 June 2025, budget around 5000 USD.",
        )
        data.update(overrides)
        return InboundMessage(**data)
    return _make


@pytest.fixture
def paris_offer() -> SupplierOffer:
    return SupplierOffer(
        id="offer-paris",
        tenant_id="acme",
        title="Paris Romance Week",
        destination="Paris, France",
        country="France",
        region="Europe",
        price=4900,
        valid_from=date(2025, 4, 1),
        valid_until=date(2025, 9, 30),
        min_pax=1,
        max_pax=6,
        status="active",
        verified=True,
    )


@pytest.fixture
def catalog() -> list[CatalogItinerary]:
    return [
        CatalogItinerary(
            id="it-paris",
            tenant_id="acme",
            title="Paris in Spring",
            destination="Paris",
            country="France",
            price=5200,
            duration_days=6,
            valid_from=date(2025, 3, 1),
            valid_until=date(2025, 10, 31),
            highlights=["Louvre", "Seine cruise"],
        ),
        CatalogItinerary(
            id="it-rome",
            tenant_id="acme",
            title="Roman Holiday",
            destination="Rome",
            country="Italy",
            price=4100,
            duration_days=7,
        ),
    ]


@pytest.fixture
def build_orchestrator(store):
    """Factory: WorkflowOrchestrator over the memory store with fake model collaborators.

    deliver=False builds it without any mail transport.
    """
    def _build(analyzer: MessageAnalyzer,
               itinerary: Optional[ItineraryMatcher] = None,
               transport: Optional[MailTransport] = None,
               vision: Optional[VisionExtractor] = None,
               matching: Optional[MatchingEngine] = None,
               config: Optional[PipelineConfig] = None,
               drafter: Optional[ResponseDrafter] = None,
               deliver: bool = True) -> WorkflowOrchestrator:
        return WorkflowOrchestrator(
            store=store,
            analyzer=analyzer,
            matching=matching or MatchingEngine(store, today=lambda: TODAY),
            itinerary_matcher=itinerary or FakeItineraryMatcher(),
            escalator=ReviewEscalator(store, ReviewConfig()),
            drafter=drafter or TemplateResponseDrafter(),
            transport=transport if transport is not None or not deliver else FakeTransport(),
            vision=vision,
            config=config,
        )
    return _build
