"""
SLA Monitor — periodic sweep over the review queue.

Run from cron (scripts/check_sla.py) or a worker loop. Each run:
  - items past due_by that are still pending/in_review → one breach event
  - items due within the reminder window → one reminder event
Items are stamped (breach_notified_at / reminder_sent_at) so each is reported once.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import ReviewConfig
from database.store_base import BaseWorkflowStore
from models.schemas import ReviewAction, ReviewItem, ReviewStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SLACheckReport:
    checked_at: datetime
    checked: int = 0
    breaches: list[str] = field(default_factory=list)
    reminders: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "checked": self.checked,
            "breach_count": len(self.breaches),
            "reminder_count": len(self.reminders),
            "breaches": self.breaches,
            "reminders": self.reminders,
        }


class SLAMonitor:

    def __init__(
        self,
        store: BaseWorkflowStore,
        config: Optional[ReviewConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._config = config or ReviewConfig()
        self._clock = clock

    async def run_check(self, tenant_id: Optional[str] = None) -> SLACheckReport:
        now = self._clock()
        window_end = now + timedelta(minutes=self._config.reminder_window_minutes)
        report = SLACheckReport(checked_at=now)

        items = await self._store.list_review_items(
            tenant_id=tenant_id, statuses=[ReviewStatus.PENDING, ReviewStatus.IN_REVIEW],
        )
        report.checked = len(items)

        for item in items:
            if item.sla_breached(now):
                if item.breach_notified_at is None:
                    await self._notify_breach(item, now)
                    report.breaches.append(item.id)
            elif item.due_by <= window_end and item.reminder_sent_at is None:
                await self._send_reminder(item, now)
                report.reminders.append(item.id)

        logger.info("sla_check_completed",
                    tenant_id=tenant_id,
                    checked=report.checked,
                    breaches=len(report.breaches),
                    reminders=len(report.reminders))
        return report

    async def _notify_breach(self, item: ReviewItem, now: datetime):
        minutes_overdue = int((now - item.due_by).total_seconds() // 60)

        def stamp(i: ReviewItem):
            i.breach_notified_at = now
            i.actions.append(ReviewAction(
                action="sla_breached", details={"minutes_overdue": minutes_overdue}, timestamp=now,
            ))

        await self._store.update_review_item(item.id, stamp)
        logger.warning("review_sla_breached",
                       review_item_id=item.id,
                       tenant_id=item.tenant_id,
                       message_id=item.message_id,
                       priority=item.priority.value,
                       assigned_to=item.assigned_to,
                       minutes_overdue=minutes_overdue)

    async def _send_reminder(self, item: ReviewItem, now: datetime):
        minutes_remaining = int((item.due_by - now).total_seconds() // 60)

        def stamp(i: ReviewItem):
            i.reminder_sent_at = now
            i.actions.append(ReviewAction(
                action="reminder_sent", details={"minutes_remaining": minutes_remaining}, timestamp=now,
            ))

        await self._store.update_review_item(item.id, stamp)
        logger.info("review_sla_reminder",
                    review_item_id=item.id,
                    tenant_id=item.tenant_id,
                    assigned_to=item.assigned_to,
                    minutes_remaining=minutes_remaining)
