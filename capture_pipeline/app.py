"""FastAPI application and service wiring for the capture pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from capture_pipeline.config import Settings, configure_logging, get_settings
from capture_pipeline.services.ai_clients import (
    AudioStore,
    CalendarApiIntegrationService,
    ChatCompletionEnrichmentService,
    EnrichmentService,
    FileAudioStore,
    IntegrationService,
    TranscriptionService,
    WhisperApiTranscriptionService,
)
from capture_pipeline.services.content_cache import ContentCache
from capture_pipeline.services.external_caller import ExternalCallerRegistry
from capture_pipeline.services.job_queue import JobQueue, RetryPolicy
from capture_pipeline.services.pipeline_orchestrator import PipelineOrchestrator
from capture_pipeline.services.pipeline_stages import ExternalIdStore, build_stage_processors
from capture_pipeline.services.record_store import RecordStore
from capture_pipeline.services.status_notifier import StatusNotifier
from capture_pipeline.services.sync_reconciler import SyncReconciler
from capture_pipeline.services.sync_router import init_sync_router, router as sync_router

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Everything one running pipeline instance shares."""

    config: Settings
    store: RecordStore
    job_queue: JobQueue
    cache: ContentCache
    callers: ExternalCallerRegistry
    notifier: StatusNotifier
    orchestrator: PipelineOrchestrator
    reconciler: SyncReconciler
    audio_store: AudioStore


def build_services(
    config: Optional[Settings] = None,
    *,
    transcription_service: Optional[TranscriptionService] = None,
    enrichment_service: Optional[EnrichmentService] = None,
    integration_service: Optional[IntegrationService] = None,
    audio_store: Optional[AudioStore] = None,
) -> PipelineServices:
    """Wire the pipeline. Services not passed in are built from settings when configured."""
    config = config or get_settings()
    db_path = str(config.db_path)

    if transcription_service is None and config.openai_api_key:
        transcription_service = WhisperApiTranscriptionService(config)
    if enrichment_service is None and config.openai_api_key:
        enrichment_service = ChatCompletionEnrichmentService(config)
    if integration_service is None and config.integration_enabled and config.calendar_access_token:
        integration_service = CalendarApiIntegrationService(config)
    if enrichment_service is None:
        logger.warning("No enrichment service configured, using heuristic analysis only")

    audio_store = audio_store or FileAudioStore(config.audio_dir)
    store = RecordStore(db_path)
    job_queue = JobQueue(db_path, retry_policy=RetryPolicy.from_settings(config))
    cache = ContentCache()
    callers = ExternalCallerRegistry(config)
    notifier = StatusNotifier(config.notifier_send_timeout_seconds)
    stages = build_stage_processors(
        callers,
        cache,
        audio_store=audio_store,
        transcription_service=transcription_service,
        enrichment_service=enrichment_service,
        integration_service=integration_service,
        id_store=ExternalIdStore(db_path),
        config=config,
    )
    orchestrator = PipelineOrchestrator(store, job_queue, stages, notifier, config)
    reconciler = SyncReconciler(store, orchestrator, config)
    return PipelineServices(
        config=config,
        store=store,
        job_queue=job_queue,
        cache=cache,
        callers=callers,
        notifier=notifier,
        orchestrator=orchestrator,
        reconciler=reconciler,
        audio_store=audio_store,
    )


def create_app(services: Optional[PipelineServices] = None, *, start_workers: bool = True) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the worker pool with the app and stop it on shutdown."""
        configure_logging(services.config.log_level)
        logger.info("Starting capture pipeline...")
        if start_workers:
            await services.orchestrator.start()
        yield
        logger.info("Shutting down capture pipeline...")
        await services.orchestrator.stop()

    app = FastAPI(
        title="Capture Pipeline API",
        description="Sync and processing pipeline for captured thoughts",
        version="0.1.0",
        lifespan=lifespan,
    )
    init_sync_router(services)
    app.include_router(sync_router)
    app.state.services = services
    return app
