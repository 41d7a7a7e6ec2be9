"""
Workflow Orchestrator — drives one inbound message through the pipeline.

Registered as the job handler on the JobScheduler. One process() call:

    received → categorizing → [vision_extraction] → validating → matching
             → drafting_response → sending → completed

with side exits:
    review     low confidence · extraction failed · ambiguous request · high value
    completed  supplier / agent / finance / other / spam, replies to a known quote
    failed     non-transient errors (recorded, job completes) and transient errors
               (recorded, re-raised so the scheduler retries)

Every stage result is persisted through store.update_message() before the next
stage starts, so a retry resumes with what earlier attempts already paid for.
A saved draft is not redrafted and a sent reply is never sent again.
Stage and status changes are checked against the declared state maps.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import PipelineConfig
from core.collaborators import (
    ItineraryMatcher, MailTransport, MessageAnalyzer, ResponseDrafter, VisionExtractor,
)
from core.exceptions import DeliveryNotConfiguredError, MessageNotFoundError, is_transient
from core.state_machine import STATE_MACHINE, StateMachine
from database.store_base import BaseWorkflowStore
from job_queue.message_queue import JobContext
from matching.engine import MatchingEngine
from models.schemas import (
    CategorizationResult, ContactDetails, DraftKind, DraftedResponse, ExtractedData,
    InboundMessage, ItineraryDecision, MatchCandidate, MessageCategory, ProcessingStatus,
    ReviewReason, StatusChange, SupplierOffer, WorkflowAction, WorkflowOutcome, WorkflowStage,
)
from review.escalator import ReviewEscalator

logger = structlog.get_logger()

PS = ProcessingStatus
WS = WorkflowStage

_FINISHED = {
    PS.COMPLETED, PS.CONVERTED_TO_QUOTE, PS.LINKED_TO_EXISTING_QUOTE,
    PS.DUPLICATE_DETECTED, PS.SKIPPED,
}
_ANSWERED = {PS.COMPLETED, PS.CONVERTED_TO_QUOTE, PS.LINKED_TO_EXISTING_QUOTE}

_ACTION_DRAFT = {
    WorkflowAction.ASK_CUSTOMER: DraftKind.ASK_FOR_INFO,
    WorkflowAction.SEND_ITINERARIES: DraftKind.ITINERARY_MATCHES,
    WorkflowAction.SEND_ITINERARIES_WITH_NOTE: DraftKind.ITINERARY_MATCHES_WITH_NOTE,
    WorkflowAction.FORWARD_TO_SUPPLIER: DraftKind.CUSTOM_REQUEST,
}

_CONTACT_FIELDS = ("name", "email", "phone", "company", "website", "address")


def merge_contacts(known: ContactDetails, found: list[ContactDetails]) -> ContactDetails:
    """Fill only the fields that are still empty; known values always win."""
    merged = known.model_copy()
    for contact in found:
        for name in _CONTACT_FIELDS:
            if getattr(merged, name) is None and getattr(contact, name):
                setattr(merged, name, getattr(contact, name))
    return merged


class WorkflowOrchestrator:
    """
    Generic per-message pipeline. Collaborators are injected so each stage
    can be swapped (model-backed in production, fakes in tests).
    """

    def __init__(
        self,
        store: BaseWorkflowStore,
        analyzer: MessageAnalyzer,
        matching: MatchingEngine,
        itinerary_matcher: ItineraryMatcher,
        escalator: ReviewEscalator,
        drafter: ResponseDrafter,
        transport: Optional[MailTransport] = None,
        vision: Optional[VisionExtractor] = None,
        config: Optional[PipelineConfig] = None,
        state_machine: StateMachine = STATE_MACHINE,
    ):
        self._store = store
        self._analyzer = analyzer
        self._matching = matching
        self._itinerary = itinerary_matcher
        self._escalator = escalator
        self._drafter = drafter
        self._transport = transport
        self._vision = vision
        self._config = config or PipelineConfig()
        self._sm = state_machine

    # ── Job entry points ──────────────────────────────────────

    async def handle_job(self, ctx: JobContext) -> dict[str, Any]:
        """Handler registered with the scheduler; the result is stored on the job."""
        outcome = await self.process(ctx)
        return outcome.model_dump(mode="json")

    async def process(self, ctx: JobContext) -> WorkflowOutcome:
        message_id = ctx.payload["message_id"]
        tenant_id = ctx.payload["tenant_id"]
        logger.info("workflow_started",
                    message_id=message_id, tenant_id=tenant_id,
                    job_id=ctx.job_id, attempt=ctx.attempt)
        try:
            outcome = await self._run(ctx, message_id, tenant_id)
        except Exception as e:
            if not is_transient(e):
                # configuration, auth and programming errors fail the message now
                logger.error("workflow_failed_permanently",
                             message_id=message_id, error_type=type(e).__name__, error=str(e))
                await self._record_failure(message_id, e)
                return WorkflowOutcome(message_id=message_id, status=PS.FAILED, stage=WS.FAILED, error=str(e))
            logger.warning("workflow_attempt_failed",
                           message_id=message_id, attempt=ctx.attempt,
                           error_type=type(e).__name__, error=str(e))
            await self._record_failure(message_id, e)
            raise

        logger.info("workflow_finished",
                    message_id=message_id,
                    status=outcome.status.value,
                    stage=outcome.stage.value,
                    review_reason=outcome.review_reason.value if outcome.review_reason else None,
                    sent=outcome.sent)
        return outcome

    async def mark_converted_to_quote(self, message_id: str, tenant_id: str, quote_id: str) -> InboundMessage:
        def convert(m: InboundMessage):
            if m.tenant_id != tenant_id:
                raise MessageNotFoundError(message_id)
            self._set_status(m, PS.CONVERTED_TO_QUOTE, reason=f"quote {quote_id}")
            m.quote_id = quote_id

        message = await self._store.update_message(message_id, convert)
        logger.info("message_converted_to_quote", message_id=message_id, quote_id=quote_id)
        return message

    # ── Pipeline ──────────────────────────────────────────────

    async def _run(self, ctx: JobContext, message_id: str, tenant_id: str) -> WorkflowOutcome:
        message = await self._store.get_message(message_id)
        if message is None or message.tenant_id != tenant_id:
            raise MessageNotFoundError(message_id)

        if message.processing_status in _FINISHED:
            logger.info("message_already_processed",
                        message_id=message_id, status=message.processing_status.value)
            return self._outcome(message)

        if await self._is_duplicate(message):
            message = await self._store.update_message(message_id, self._mark_duplicate)
            logger.info("duplicate_detected", message_id=message_id, header=message.message_id_header)
            return self._outcome(message)

        def start(m: InboundMessage):
            m.stage = WS.RECEIVED
            self._set_status(m, PS.PROCESSING, reason=f"attempt {ctx.attempt}")
            m.processing_error = None
        message = await self._checkpoint(ctx, message_id, 10, start)

        if message.delivery_id or message.response_sent_at:
            # an earlier attempt sent the reply but stopped before recording completion
            logger.info("send_already_done", message_id=message_id, delivery_id=message.delivery_id)
            kind = message.generated_response.kind if message.generated_response else None
            return await self._complete(ctx, message_id, kind, sent=True)

        # ── categorizing ──
        result = await self._categorize(ctx, message)
        message = await self._store.get_message(message_id)

        if result.confidence < self._config.confidence_threshold:
            return await self._exit_to_review(ctx, message, ReviewReason.LOW_CONFIDENCE)

        if result.category != MessageCategory.CUSTOMER:
            return await self._finish_non_customer(ctx, message, result)

        if message.thread.is_reply and message.thread.linked_quote_id:
            return await self._link_to_quote(ctx, message)

        # ── vision_extraction ──
        if self._vision is not None and message.image_attachments:
            message = await self._extract_from_images(message)
        message = await self._checkpoint(ctx, message_id, 60)

        # ── validating ──
        message = await self._store.update_message(message_id, lambda m: self._set_stage(m, WS.VALIDATING))
        extracted = message.extracted_data
        if extracted is None:
            return await self._exit_to_review(ctx, message, ReviewReason.EXTRACTION_FAILED)
        if len(extracted.missing_info) > self._config.max_missing_fields:
            return await self._exit_to_review(ctx, message, ReviewReason.AMBIGUOUS_REQUEST)

        # ── matching ──
        message = await self._store.update_message(message_id, lambda m: self._set_stage(m, WS.MATCHING))
        matches = await self._matching.match_packages(extracted, tenant_id, message_id=message_id)
        await self._checkpoint(
            ctx, message_id, 70,
            lambda m: setattr(m, "matching_results", [c.summary() for c in matches]),
        )
        decision = await self._itinerary.evaluate_itinerary_match(extracted, tenant_id)
        message = await self._checkpoint(
            ctx, message_id, 80, lambda m: setattr(m, "itinerary_decision", decision),
        )

        # ── drafting_response ──
        message = await self._store.update_message(message_id, lambda m: self._set_stage(m, WS.DRAFTING_RESPONSE))
        if ctx.is_retry and message.generated_response is not None:
            draft = message.generated_response
            kind = draft.kind
            message = await self._checkpoint(ctx, message_id, 90)
            logger.info("draft_reused", message_id=message_id, kind=kind.value)
        else:
            kind = self._draft_kind(decision, matches)
            draft = await self._drafter.draft_response(kind, {
                "message": message,
                "extracted": extracted,
                "validation": decision.validation,
                "workflow": decision.workflow,
                "matches": matches,
            })

            def store_draft(m: InboundMessage):
                m.generated_response = draft
                m.response_generated = True
                m.add_cost(draft.cost, draft.tokens)
            message = await self._checkpoint(ctx, message_id, 90, store_draft)
            logger.info("response_drafted", message_id=message_id, kind=kind.value, cost=draft.cost)

        budget = extracted.budget.amount
        if budget is not None and budget > self._config.high_value_threshold:
            message = await self._store.update_message(message_id, lambda m: setattr(m, "response_held", True))
            return await self._exit_to_review(ctx, message, ReviewReason.HIGH_VALUE, draft_kind=kind)

        # ── sending ──
        return await self._send(ctx, message_id, draft)

    async def _categorize(self, ctx: JobContext, message: InboundMessage) -> CategorizationResult:
        await self._store.update_message(message.id, lambda m: self._set_stage(m, WS.CATEGORIZING))

        if ctx.is_retry and message.category is not None and message.confidence is not None:
            logger.info("categorization_reused", message_id=message.id, category=message.category.value)
            await self._checkpoint(ctx, message.id, 50)
            return CategorizationResult(
                category=message.category,
                confidence=message.confidence,
                sentiment=message.sentiment or "neutral",
                extracted_data=message.extracted_data,
            )

        result = await self._analyzer.categorize_and_extract(message, message.tenant_id)

        def persist(m: InboundMessage):
            m.category = result.category
            m.confidence = result.confidence
            m.sentiment = result.sentiment
            m.extracted_data = result.extracted_data
            m.add_cost(result.cost, result.tokens)
        await self._checkpoint(ctx, message.id, 50, persist)
        return result

    async def _finish_non_customer(
        self, ctx: JobContext, message: InboundMessage, result: CategorizationResult,
    ) -> WorkflowOutcome:
        if result.category == MessageCategory.SUPPLIER:
            await self._record_supplier_offers(message, result.extracted_data)

        def finish(m: InboundMessage):
            self._set_stage(m, WS.COMPLETED)
            self._set_status(m, PS.COMPLETED, reason=f"category {result.category.value}")
        message = await self._checkpoint(ctx, message.id, 100, finish)
        return self._outcome(message)

    async def _record_supplier_offers(self, message: InboundMessage, extracted: Optional[ExtractedData]):
        packages = extracted.supplier_packages if extracted else []
        offers = [
            SupplierOffer(
                **p.model_dump(exclude={"id", "tenant_id", "created_at"}),
                tenant_id=message.tenant_id,
                supplier_email=message.from_address,
                source_message_id=message.id,
            )
            for p in packages
        ]
        if offers:
            await self._store.add_supplier_offers(offers)
        logger.info("supplier_offers_recorded",
                    message_id=message.id, supplier=message.from_address, offers=len(offers))

    async def _link_to_quote(self, ctx: JobContext, message: InboundMessage) -> WorkflowOutcome:
        quote_id = message.thread.linked_quote_id

        def link(m: InboundMessage):
            self._set_stage(m, WS.COMPLETED)
            self._set_status(m, PS.COMPLETED)
            self._set_status(m, PS.LINKED_TO_EXISTING_QUOTE, reason=f"reply to quote {quote_id}")
            m.quote_id = quote_id
        message = await self._checkpoint(ctx, message.id, 100, link)
        logger.info("reply_linked_to_quote", message_id=message.id, quote_id=quote_id)
        return self._outcome(message)

    async def _extract_from_images(self, message: InboundMessage) -> InboundMessage:
        await self._store.update_message(message.id, lambda m: self._set_stage(m, WS.VISION_EXTRACTION))
        result = await self._vision.extract_contacts_from_images(message, message.tenant_id)

        def merge(m: InboundMessage):
            m.add_cost(result.cost, result.tokens)
            if result.success and result.contacts and m.extracted_data is not None:
                m.extracted_data.contact = merge_contacts(m.extracted_data.contact, result.contacts)
        message = await self._store.update_message(message.id, merge)
        logger.info("vision_merged",
                    message_id=message.id, success=result.success, contacts=len(result.contacts))
        return message

    def _draft_kind(self, decision: ItineraryDecision, matches: list[MatchCandidate]) -> DraftKind:
        if decision.success and decision.workflow is not None:
            return _ACTION_DRAFT[decision.workflow.action]
        if matches and matches[0].total >= self._config.fallback_good_match_score:
            return DraftKind.PACKAGE_FOUND
        return DraftKind.PACKAGE_NOT_FOUND

    async def _send(self, ctx: JobContext, message_id: str, draft: DraftedResponse) -> WorkflowOutcome:
        message = await self._store.update_message(message_id, lambda m: self._set_stage(m, WS.SENDING))

        if message.manually_replied:
            logger.info("send_skipped_manually_replied", message_id=message_id)
            return await self._complete(ctx, message_id, draft.kind)

        if self._transport is None:
            raise DeliveryNotConfiguredError(message.tenant_id)

        try:
            receipt = await self._transport.send_mail(
                to_address=message.from_address,
                subject=draft.subject,
                html_body=draft.body,
                text_body=draft.plain_text,
                in_reply_to=message.message_id_header or None,
            )
        except Exception as e:
            logger.error("response_send_failed", message_id=message_id, error=str(e))
            await self._store.update_message(message_id, lambda m: setattr(m, "delivery_error", str(e)))
            return await self._complete(ctx, message_id, draft.kind)

        def delivered(m: InboundMessage):
            m.delivery_id = receipt.delivery_id
            m.response_sent_at = receipt.sent_at
            m.delivery_error = None
        await self._store.update_message(message_id, delivered)
        logger.info("response_sent", message_id=message_id, delivery_id=receipt.delivery_id)
        return await self._complete(ctx, message_id, draft.kind, sent=True)

    async def _complete(self, ctx: JobContext, message_id: str, kind: Optional[DraftKind], sent: bool = False) -> WorkflowOutcome:
        def finish(m: InboundMessage):
            self._set_stage(m, WS.COMPLETED)
            self._set_status(m, PS.COMPLETED)
        message = await self._checkpoint(ctx, message_id, 100, finish)
        outcome = self._outcome(message)
        outcome.draft_kind = kind
        outcome.sent = sent
        return outcome

    async def _exit_to_review(
        self,
        ctx: JobContext,
        message: InboundMessage,
        reason: ReviewReason,
        draft_kind: Optional[DraftKind] = None,
    ) -> WorkflowOutcome:
        item = await self._escalator.send_to_review(message, reason, self._ai_context(message))

        def finish(m: InboundMessage):
            self._set_stage(m, WS.REVIEW)
            self._set_status(m, PS.COMPLETED, reason=f"review: {reason.value}")
        message = await self._checkpoint(ctx, message.id, 100, finish)

        logger.info("workflow_sent_to_review",
                    message_id=message.id, reason=reason.value, review_item_id=item.id)
        outcome = self._outcome(message)
        outcome.review_item_id = item.id
        outcome.draft_kind = draft_kind
        return outcome

    # ── Duplicates ────────────────────────────────────────────

    async def _is_duplicate(self, message: InboundMessage) -> bool:
        if not message.message_id_header:
            return False
        others = await self._store.find_messages_by_header(message.tenant_id, message.message_id_header)
        return any(o.id != message.id and o.processing_status in _ANSWERED for o in others)

    def _mark_duplicate(self, m: InboundMessage):
        if m.processing_status == PS.FAILED:
            self._set_status(m, PS.PROCESSING, reason="retry")
        m.stage = WS.RECEIVED
        self._set_stage(m, WS.COMPLETED)
        self._set_status(m, PS.DUPLICATE_DETECTED, reason="same Message-ID as an answered message")

    # ── Bookkeeping ───────────────────────────────────────────

    def _set_status(self, m: InboundMessage, to_status: ProcessingStatus, reason: str = ""):
        if m.processing_status == to_status:
            return
        self._sm.transition("processing_status", m.processing_status, to_status)
        m.status_history.append(StatusChange(from_status=m.processing_status, to_status=to_status, reason=reason))
        m.processing_status = to_status

    def _set_stage(self, m: InboundMessage, to_stage: WorkflowStage):
        if m.stage == to_stage:
            return
        self._sm.transition("workflow_stage", m.stage, to_stage)
        m.stage = to_stage

    async def _checkpoint(self, ctx: JobContext, message_id: str, percent: int, mutate=None) -> InboundMessage:
        """Persist (optionally mutate) and report progress; progress never goes down."""
        def apply(m: InboundMessage):
            if mutate is not None:
                mutate(m)
            m.progress = max(m.progress, percent)
        message = await self._store.update_message(message_id, apply)
        await ctx.report_progress(percent)
        return message

    async def _record_failure(self, message_id: str, error: Exception):
        def fail(m: InboundMessage):
            m.processing_error = f"{type(error).__name__}: {error}"
            if m.processing_status == PS.PROCESSING:
                self._set_status(m, PS.FAILED, reason=type(error).__name__)
            if m.processing_status == PS.FAILED:
                self._set_stage(m, WS.FAILED)
        try:
            await self._store.update_message(message_id, fail)
        except MessageNotFoundError:
            logger.warning("failure_record_skipped", message_id=message_id, reason="message not found")
        except Exception as e:
            logger.error("failure_record_failed", message_id=message_id, error=str(e))

    @staticmethod
    def _ai_context(message: InboundMessage) -> dict[str, Any]:
        return {
            "category": message.category.value if message.category else None,
            "confidence": message.confidence,
            "sentiment": message.sentiment.value if message.sentiment else None,
            "extracted_data": message.extracted_data.model_dump(mode="json") if message.extracted_data else None,
            "suggested_response": message.generated_response.plain_text if message.generated_response else None,
            "top_matches": [s.model_dump(mode="json") for s in message.matching_results[:3]],
        }

    @staticmethod
    def _outcome(message: InboundMessage) -> WorkflowOutcome:
        return WorkflowOutcome(
            message_id=message.id,
            status=message.processing_status,
            stage=message.stage,
            review_reason=message.review_reason if message.requires_review else None,
            error=message.processing_error,
        )
