"""
Review Escalator — the human review queue.

A message lands here when the pipeline should not act on its own (low
confidence, ambiguous request, high value, policy). Each message has at most
one open item at a time; reviewers assign, comment, escalate and complete it.
Every change appends an immutable ReviewAction to the item's audit trail.

Lifecycle (validated against the review_status state map):

    pending ──assign──→ in_review ──complete──→ approved | modified | rejected
       │                    │
       └──────escalate──────┴──→ escalated ──assign──→ in_review

SLA targets by priority (minutes): urgent 30 · high 120 · normal 480 · low 1440.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import ReviewConfig
from core.exceptions import InvalidReviewOperationError, InvalidTransitionError
from core.state_machine import STATE_MACHINE
from database.store_base import BaseWorkflowStore
from models.schemas import (
    CustomerValue, InboundMessage, JobPriority, ReviewAction, ReviewComment,
    ReviewDecision, ReviewDecisionType, ReviewItem, ReviewReason, ReviewStatus,
)

logger = structlog.get_logger()

REVIEW_MAP = "review_status"

_DECISION_STATUS = {
    ReviewDecisionType.APPROVE_AI: ReviewStatus.APPROVED,
    ReviewDecisionType.MODIFY: ReviewStatus.MODIFIED,
    ReviewDecisionType.REJECT: ReviewStatus.REJECTED,
}

_REASON_PRIORITY = {
    ReviewReason.POLICY_VIOLATION: JobPriority.URGENT,
    ReviewReason.HIGH_VALUE: JobPriority.HIGH,
}

_WORKING_STATUSES = [ReviewStatus.PENDING, ReviewStatus.IN_REVIEW]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_priority(reason: ReviewReason, message_priority: JobPriority = JobPriority.NORMAL) -> JobPriority:
    """Reason-based priority, raised to the message's own priority when that is higher."""
    derived = _REASON_PRIORITY.get(reason, JobPriority.NORMAL)
    return min(derived, message_priority, key=lambda p: p.rank)


def _queue_order(item: ReviewItem) -> tuple:
    return (item.priority.rank, item.queued_at)


class ReviewEscalator:

    def __init__(
        self,
        store: BaseWorkflowStore,
        config: Optional[ReviewConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._config = config or ReviewConfig()
        self._clock = clock

    # ── Intake ────────────────────────────────────────────────

    def customer_value(self, message: InboundMessage) -> CustomerValue:
        budget = message.budget_amount
        if budget is not None and budget > self._config.vip_budget_threshold:
            return CustomerValue.VIP
        if message.customer_id:
            return CustomerValue.RETURNING
        return CustomerValue.NEW

    def sla_minutes(self, priority: JobPriority) -> int:
        return self._config.sla_minutes.get(priority.value, self._config.sla_minutes.get("normal", 480))

    async def send_to_review(
        self,
        message: InboundMessage,
        reason: ReviewReason,
        ai_context: Optional[dict[str, Any]] = None,
        actor: str = "system",
    ) -> ReviewItem:
        """Queue a message for review. Returns the existing item if one is already open."""
        async with self._store.serialized(f"review:{message.id}"):
            existing = await self._store.find_open_review_item(message.id)
            if existing is not None:
                logger.info("review_item_exists",
                            message_id=message.id,
                            review_item_id=existing.id,
                            status=existing.status.value)
                return existing

            now = self._clock()
            priority = derive_priority(reason, message.priority)
            sla_target = self.sla_minutes(priority)
            item = ReviewItem(
                tenant_id=message.tenant_id,
                message_id=message.id,
                reason=reason,
                priority=priority,
                customer_value=self.customer_value(message),
                ai_context=ai_context or {},
                queued_at=now,
                sla_target=sla_target,
                due_by=now + timedelta(minutes=sla_target),
                actions=[ReviewAction(
                    action="created",
                    actor=actor,
                    details={"reason": reason.value, "priority": priority.value},
                    timestamp=now,
                )],
            )
            item = await self._store.save_review_item(item)

        def flag(m: InboundMessage):
            m.requires_review = True
            m.review_reason = reason

        await self._store.update_message(message.id, flag)

        logger.info("review_item_created",
                    message_id=message.id,
                    tenant_id=message.tenant_id,
                    review_item_id=item.id,
                    reason=reason.value,
                    priority=priority.value,
                    customer_value=item.customer_value.value,
                    due_by=item.due_by.isoformat())
        return item

    # ── Lifecycle ─────────────────────────────────────────────

    def _move(self, item: ReviewItem, to_status: ReviewStatus, operation: str):
        try:
            STATE_MACHINE.transition(REVIEW_MAP, item.status, to_status)
        except InvalidTransitionError as e:
            raise InvalidReviewOperationError(
                f"cannot {operation} review item '{item.id}' in status '{item.status.value}'"
            ) from e
        item.status = to_status

    async def assign(self, item_id: str, reviewer: str, assigned_by: str = "system") -> ReviewItem:
        now = self._clock()

        def apply(item: ReviewItem):
            if item.status != ReviewStatus.IN_REVIEW:
                self._move(item, ReviewStatus.IN_REVIEW, "assign")
            item.assigned_to = reviewer
            item.assigned_at = now
            item.actions.append(ReviewAction(
                action="assigned", actor=assigned_by,
                details={"assigned_to": reviewer}, timestamp=now,
            ))

        item = await self._store.update_review_item(item_id, apply)
        logger.info("review_item_assigned", review_item_id=item_id, reviewer=reviewer, assigned_by=assigned_by)
        return item

    async def complete(
        self,
        item_id: str,
        decision: ReviewDecision,
        reviewer: str,
        notes: str = "",
    ) -> ReviewItem:
        now = self._clock()
        if notes and not decision.notes:
            decision = decision.model_copy(update={"notes": notes})

        def apply(item: ReviewItem):
            self._move(item, _DECISION_STATUS[decision.decision], "complete")
            item.decision = decision
            item.completed_at = now
            item.actions.append(ReviewAction(
                action="completed", actor=reviewer,
                details=decision.model_dump(mode="json"), timestamp=now,
            ))

        item = await self._store.update_review_item(item_id, apply)
        logger.info("review_item_completed",
                    review_item_id=item_id,
                    reviewer=reviewer,
                    decision=decision.decision.value,
                    status=item.status.value,
                    minutes_in_queue=round(item.time_in_queue(now).total_seconds() / 60, 1))
        return item

    async def escalate(self, item_id: str, actor: str, reason: str = "") -> ReviewItem:
        now = self._clock()

        def apply(item: ReviewItem):
            self._move(item, ReviewStatus.ESCALATED, "escalate")
            item.is_escalated = True
            item.escalated_at = now
            item.escalation_reason = reason or None
            item.priority = JobPriority.URGENT
            item.actions.append(ReviewAction(
                action="escalated", actor=actor,
                details={"reason": reason}, timestamp=now,
            ))

        item = await self._store.update_review_item(item_id, apply)
        logger.warning("review_item_escalated", review_item_id=item_id, actor=actor, reason=reason)
        return item

    async def add_comment(self, item_id: str, author: str, text: str) -> ReviewItem:
        now = self._clock()

        def apply(item: ReviewItem):
            item.comments.append(ReviewComment(author=author, text=text, created_at=now))
            item.actions.append(ReviewAction(action="commented", actor=author, timestamp=now))

        return await self._store.update_review_item(item_id, apply)

    # ── Queries ───────────────────────────────────────────────

    async def my_queue(self, tenant_id: str, reviewer: str) -> list[ReviewItem]:
        items = await self._store.list_review_items(
            tenant_id=tenant_id, statuses=_WORKING_STATUSES, assigned_to=reviewer,
        )
        return sorted(items, key=_queue_order)

    async def unassigned_queue(self, tenant_id: str) -> list[ReviewItem]:
        items = await self._store.list_review_items(
            tenant_id=tenant_id, statuses=[ReviewStatus.PENDING], unassigned=True,
        )
        return sorted(items, key=_queue_order)

    async def breached(self, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> list[ReviewItem]:
        now = now or self._clock()
        items = await self._store.list_review_items(tenant_id=tenant_id, statuses=_WORKING_STATUSES)
        return sorted((i for i in items if i.sla_breached(now)), key=lambda i: i.due_by)

    async def queue_stats(self, tenant_id: str) -> dict[str, dict[str, Any]]:
        """Per-status counts, mean minutes in queue, urgent and breached counts."""
        now = self._clock()
        stats: dict[str, dict[str, Any]] = {}
        minutes: dict[str, list[float]] = {}
        for item in await self._store.list_review_items(tenant_id=tenant_id):
            entry = stats.setdefault(item.status.value, {
                "count": 0, "avg_minutes_in_queue": 0.0, "urgent": 0, "sla_breached": 0,
            })
            entry["count"] += 1
            if item.priority == JobPriority.URGENT:
                entry["urgent"] += 1
            if item.sla_breached(now):
                entry["sla_breached"] += 1
            minutes.setdefault(item.status.value, []).append(item.time_in_queue(now).total_seconds() / 60)

        for status, values in minutes.items():
            stats[status]["avg_minutes_in_queue"] = round(sum(values) / len(values), 1)
        return stats
