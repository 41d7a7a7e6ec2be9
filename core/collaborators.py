"""
Collaborator interfaces consumed by the workflow orchestrator.

The model-backed implementations live in core/engine.py, templated drafting
in core/drafting.py, itinerary evaluation in matching/itinerary.py and SMTP
delivery in channels/mail_transport.py. Tests substitute fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    CategorizationResult, DeliveryReceipt, DraftKind, DraftedResponse,
    ExtractedData, InboundMessage, ItineraryDecision, VisionResult,
)


class MessageAnalyzer(ABC):

    @abstractmethod
    async def categorize_and_extract(self, message: InboundMessage, tenant_id: str) -> CategorizationResult:
        """One combined call: category, confidence, sentiment and extracted intent."""
        ...


class VisionExtractor(ABC):

    @abstractmethod
    async def extract_contacts_from_images(self, message: InboundMessage, tenant_id: str) -> VisionResult:
        ...


class ItineraryMatcher(ABC):

    @abstractmethod
    async def evaluate_itinerary_match(self, extracted: ExtractedData, tenant_id: str) -> ItineraryDecision:
        ...


class ResponseDrafter(ABC):

    @abstractmethod
    async def draft_response(self, kind: DraftKind, context: dict[str, Any]) -> DraftedResponse:
        ...


class MailTransport(ABC):

    @abstractmethod
    async def send_mail(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        text_body: str = "",
        in_reply_to: Optional[str] = None,
    ) -> DeliveryReceipt:
        ...
