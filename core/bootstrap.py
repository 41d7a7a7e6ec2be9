"""
Pipeline wiring — builds every component from Settings.

    pipeline = await build_pipeline(get_settings())
    await pipeline.scheduler.start()
    await pipeline.scheduler.enqueue_message("msg_1", "acme", priority="high")
    ...
    await pipeline.close()

Store and queue backend are chosen once here, through their factories.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.mail_transport import create_mail_transport
from config.settings import Settings, get_settings
from core.collaborators import MailTransport, MessageAnalyzer, VisionExtractor
from core.drafting import TemplateResponseDrafter
from core.engine import AIProcessingEngine
from core.orchestrator import WorkflowOrchestrator
from database.store_base import BaseWorkflowStore
from database.store_factory import create_store
from job_queue.message_queue import create_queue_backend
from job_queue.scheduler import JobScheduler
from matching.engine import MatchingEngine
from matching.itinerary import CatalogItineraryMatcher
from review.escalator import ReviewEscalator
from review.sla import SLAMonitor

logger = structlog.get_logger()


@dataclass
class Pipeline:
    settings: Settings
    store: BaseWorkflowStore
    scheduler: JobScheduler
    matching: MatchingEngine
    itinerary_matcher: CatalogItineraryMatcher
    escalator: ReviewEscalator
    sla_monitor: SLAMonitor
    orchestrator: WorkflowOrchestrator
    transport: Optional[MailTransport] = None

    async def close(self):
        await self.scheduler.stop()
        await self.store.close()
        logger.info("pipeline_closed")


async def build_pipeline(
    settings: Optional[Settings] = None,
    store: Optional[BaseWorkflowStore] = None,
    analyzer: Optional[MessageAnalyzer] = None,
    vision: Optional[VisionExtractor] = None,
) -> Pipeline:
    """analyzer/vision default to one AIProcessingEngine; pass fakes to run offline."""
    settings = settings or get_settings()
    store = store or await create_store(settings.database)

    engine = None
    if analyzer is None or vision is None:
        engine = AIProcessingEngine(settings.llm)
    analyzer = analyzer or engine
    vision = vision or engine

    matching = MatchingEngine(store, settings.matching)
    itinerary_matcher = CatalogItineraryMatcher(store)
    escalator = ReviewEscalator(store, settings.review)
    transport = create_mail_transport(settings.mail)
    drafter = TemplateResponseDrafter(
        model_drafter=engine,
        signature=settings.mail.from_name or settings.app_name,
    )

    orchestrator = WorkflowOrchestrator(
        store=store,
        analyzer=analyzer,
        matching=matching,
        itinerary_matcher=itinerary_matcher,
        escalator=escalator,
        drafter=drafter,
        transport=transport,
        vision=vision,
        config=settings.pipeline,
    )

    backend = await create_queue_backend(settings.queue)
    scheduler = JobScheduler(backend, settings.queue)
    scheduler.register_handler(orchestrator.handle_job)

    logger.info("pipeline_built",
                store=type(store).__name__,
                queue_mode=scheduler.mode,
                llm_provider=settings.llm.provider,
                delivery=transport is not None)

    return Pipeline(
        settings=settings,
        store=store,
        scheduler=scheduler,
        matching=matching,
        itinerary_matcher=itinerary_matcher,
        escalator=escalator,
        sla_monitor=SLAMonitor(store, settings.review),
        orchestrator=orchestrator,
        transport=transport,
    )
