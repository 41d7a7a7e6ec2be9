"""
Response drafting.

The four itinerary-workflow outcomes have fixed templates and cost nothing.
package_found / package_not_found go to a model drafter (AIProcessingEngine);
without one, a plain fallback template is used.

Context keys read by the templates:
    message      InboundMessage (required)
    extracted    ExtractedData
    validation   FieldValidation
    workflow     WorkflowDecision
    matches      list[MatchCandidate]
"""
from __future__ import annotations

import html
import structlog
from typing import Any, Optional

from core.collaborators import ResponseDrafter
from models.schemas import DraftKind, DraftedResponse, InboundMessage, ItineraryMatch

logger = structlog.get_logger()

CUSTOMISE_NOTE = (
    "We found some options that partially match your requirements. "
    "We can customize them to better fit your needs."
)


class TemplateResponseDrafter(ResponseDrafter):

    def __init__(self, model_drafter: Optional[ResponseDrafter] = None, signature: str = "The Travel Desk"):
        self._model_drafter = model_drafter
        self._signature = signature

    async def draft_response(self, kind: DraftKind, context: dict[str, Any]) -> DraftedResponse:
        if not kind.is_templated and self._model_drafter is not None:
            return await self._model_drafter.draft_response(kind, context)

        message: InboundMessage = context["message"]
        render = {
            DraftKind.ASK_FOR_INFO: self._ask_for_info,
            DraftKind.ITINERARY_MATCHES: self._itinerary_matches,
            DraftKind.ITINERARY_MATCHES_WITH_NOTE: self._itinerary_matches,
            DraftKind.CUSTOM_REQUEST: self._custom_request,
            DraftKind.PACKAGE_FOUND: self._package_fallback,
            DraftKind.PACKAGE_NOT_FOUND: self._package_fallback,
        }[kind]
        paragraphs = render(kind, context)

        name = self._customer_name(context)
        paragraphs = [f"Dear {name}," if name else "Hello,"] + paragraphs + [f"Kind regards,\n{self._signature}"]

        logger.debug("response_templated", message_id=message.id, kind=kind.value)
        return DraftedResponse(
            kind=kind,
            subject=_reply_subject(message.subject),
            body="".join(_html_paragraph(p) for p in paragraphs),
            plain_text="\n\n".join(paragraphs),
        )

    # ── Templates ─────────────────────────────────────────────

    def _ask_for_info(self, kind: DraftKind, context: dict[str, Any]) -> list[str]:
        validation = context.get("validation")
        questions = [f.question for f in validation.missing_fields] if validation else []
        if not questions and context.get("extracted") is not None:
            questions = [f"Could you tell us your {item}?" for item in context["extracted"].missing_info]
        destination = self._destination(context)
        opening = (
            f"Thank you for your interest in travelling to {destination}."
            if destination else "Thank you for getting in touch with us."
        )
        return [
            opening,
            "To put together the best options for you, we need a few more details:",
            "\n".join(f"• {q}" for q in questions) or "• Your destination, travel dates, group size and budget",
            "As soon as we hear back we will send you tailored proposals.",
        ]

    def _itinerary_matches(self, kind: DraftKind, context: dict[str, Any]) -> list[str]:
        workflow = context.get("workflow")
        matches: list[ItineraryMatch] = workflow.matches if workflow else []
        paragraphs = [
            f"Great news! We have itineraries for {self._destination(context) or 'your trip'} that suit your request:",
            "\n".join(_itinerary_line(m) for m in matches),
        ]
        if kind == DraftKind.ITINERARY_MATCHES_WITH_NOTE:
            paragraphs.append(CUSTOMISE_NOTE)
        paragraphs.append("Reply to this email and we will hold your preferred option and confirm availability.")
        return paragraphs

    def _custom_request(self, kind: DraftKind, context: dict[str, Any]) -> list[str]:
        validation = context.get("validation")
        paragraphs = [
            "Thank you for your request. We will create a custom itinerary for your requirements "
            "and come back to you shortly.",
        ]
        if validation and validation.optional_fields:
            paragraphs.append("To make it a perfect fit, you could also let us know:")
            paragraphs.append("\n".join(f"• {f.question}" for f in validation.optional_fields))
        return paragraphs

    def _package_fallback(self, kind: DraftKind, context: dict[str, Any]) -> list[str]:
        matches = context.get("matches") or []
        if kind == DraftKind.PACKAGE_FOUND and matches:
            lines = [
                f"• {m.title} ({m.destination})" + (f", {m.currency} {m.price:,.0f}" if m.price else "")
                for m in matches[:3]
            ]
            return ["Here are the packages that best match your request:", "\n".join(lines)]
        return [
            "Thank you for your enquiry. We don't have a ready-made package that fits just yet, "
            "so one of our travel specialists will prepare a tailored proposal for you.",
        ]

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _customer_name(context: dict[str, Any]) -> str:
        extracted = context.get("extracted")
        if extracted is not None and extracted.contact.name:
            return extracted.contact.name
        return context["message"].from_name

    @staticmethod
    def _destination(context: dict[str, Any]) -> str:
        extracted = context.get("extracted")
        return (extracted.destination or "") if extracted is not None else ""


def _reply_subject(subject: str) -> str:
    subject = subject.strip()
    if not subject:
        return "Your travel enquiry"
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


def _itinerary_line(match: ItineraryMatch) -> str:
    line = f"• {match.title}"
    if match.destination:
        line += f" ({match.destination})"
    if match.price:
        line += f", from {match.price:,.0f}"
    return line


def _html_paragraph(text: str) -> str:
    return f"<p>{html.escape(text).replace(chr(10), '<br>')}</p>"
