"""
Pipeline stage processors.

Each stage turns a record into a set of field updates. Stages never retry and
never write records: they raise a PipelineError and let the orchestrator and
job queue decide what happens. Capabilities are served by an ordered chain of
providers, best first, each tagging its results with a provider name and a
confidence so degraded output is always visible downstream.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence

from capture_pipeline.config import Settings, settings as default_settings
from capture_pipeline.database import connect
from capture_pipeline.errors import PipelineError, StorageError, TerminalExternalError, classify_exception
from capture_pipeline.models import (
    ActionCommand,
    CaptureRecord,
    CommandStatus,
    Enrichment,
    Stage,
    fingerprint_text,
    normalize_text,
    utcnow,
)
from capture_pipeline.services import heuristic_analyzer
from capture_pipeline.services.ai_clients import (
    AudioStore,
    EnrichmentService,
    IntegrationService,
    TranscriptionResult,
    TranscriptionService,
)
from capture_pipeline.services.content_cache import ContentCache
from capture_pipeline.services.external_caller import ExternalCaller

logger = logging.getLogger(__name__)

SUPPORTED_COMMANDS = {"create_event"}
ENTITY_KEYS = ("people", "places", "dates", "organizations", "topics")


@dataclass
class StageContext:
    """Per-dispatch inputs that are not part of the record."""

    allow_degraded: bool = False
    prior_records: List[CaptureRecord] = field(default_factory=list)


@dataclass
class StageResult:
    stage: Stage
    updates: Dict[str, Any] = field(default_factory=dict)
    provider: Optional[str] = None
    degraded: bool = False
    cached: bool = False


async def _run_chain(providers: Sequence[Any], record: CaptureRecord, context: StageContext, stage: Stage):
    """Try each provider in order. Returns (provider, output) or raises."""
    errors: List[PipelineError] = []
    for provider in providers:
        if not provider.available():
            continue
        try:
            output = await provider.run(record)
        except Exception as e:
            error = classify_exception(e, service=stage.value)
            if error.retryable and not context.allow_degraded:
                raise error from e
            logger.warning(f"{stage.value} provider {provider.name} failed for {record.id}: {error.message}")
            errors.append(error)
            continue
        if output is not None:
            if errors:
                logger.info(f"{stage.value} for {record.id} fell back to {provider.name}")
            return provider, output

    reason = errors[0].user_message if errors else "no provider produced a result"
    raise TerminalExternalError(
        f"{stage.value.capitalize()} failed for {record.id}: {reason}",
        user_message=f"{stage.value.capitalize()} failed: {reason}",
        service=stage.value,
    )


# ----------------------------------------------------------------------
# Transcription
# ----------------------------------------------------------------------
class ExternalTranscriptionProvider:
    name = "external"
    degraded = False

    def __init__(self, caller: ExternalCaller, service: Optional[TranscriptionService], audio_store: AudioStore):
        self.caller = caller
        self.service = service
        self.audio_store = audio_store

    def available(self) -> bool:
        return self.service is not None

    async def run(self, record: CaptureRecord) -> Optional[TranscriptionResult]:
        audio = await self.audio_store.load(record.audio_ref)
        result = await self.caller.call(self.service.transcribe, audio, record.language)
        return result if result.text else None


class ClientTranscriptProvider:
    """The browser or on-device transcript that came with the capture."""

    name = "client"
    degraded = True

    def __init__(self, confidence_cap: float):
        self.confidence_cap = confidence_cap

    def available(self) -> bool:
        return True

    async def run(self, record: CaptureRecord) -> Optional[TranscriptionResult]:
        if not record.text or not record.text.strip():
            return None
        return TranscriptionResult(text=record.text.strip(), confidence=self.confidence_cap)


class TranscriptionStage:
    stage = Stage.TRANSCRIPTION

    def __init__(self, providers: Sequence[Any], cache: ContentCache, config: Optional[Settings] = None):
        self.providers = list(providers)
        self.cache = cache
        self.config = config or default_settings

    def _result(self, transcript: TranscriptionResult, provider: str, degraded: bool, cached: bool) -> StageResult:
        return StageResult(
            stage=self.stage,
            updates={
                "transcript": transcript.text,
                "transcript_confidence": transcript.confidence,
                "transcript_provider": provider,
            },
            provider=provider,
            degraded=degraded,
            cached=cached,
        )

    async def process(self, record: CaptureRecord, context: StageContext) -> StageResult:
        if not record.has_audio:
            raise TerminalExternalError(
                f"Record {record.id} has no audio to transcribe",
                user_message="Transcription failed: no audio attached",
                service=self.stage.value,
            )
        key = f"transcription:{record.content_fingerprint}:{record.language or 'auto'}"
        cached = self.cache.get(key)
        if cached is not None:
            return self._result(cached["result"], cached["provider"], False, True)

        async with self.cache.key_lock(key):
            cached = self.cache.get(key)
            if cached is not None:
                return self._result(cached["result"], cached["provider"], False, True)
            provider, transcript = await _run_chain(self.providers, record, context, self.stage)
            if not provider.degraded:
                self.cache.put(
                    key,
                    {"result": transcript, "provider": provider.name},
                    self.config.transcription_cache_ttl_seconds,
                )
        return self._result(transcript, provider.name, provider.degraded, False)


# ----------------------------------------------------------------------
# Enrichment
# ----------------------------------------------------------------------
class LLMEnrichmentProvider:
    name = "llm"
    degraded = False

    def __init__(self, caller: ExternalCaller, service: Optional[EnrichmentService]):
        self.caller = caller
        self.service = service

    def available(self) -> bool:
        return self.service is not None

    async def run(self, record: CaptureRecord) -> Dict[str, Any]:
        context = {
            "categories": list(heuristic_analyzer.CATEGORY_VOCABULARY) + [heuristic_analyzer.DEFAULT_CATEGORY],
            "captured_at": record.created_at.isoformat(),
            "language": record.language,
        }
        return await self.caller.call(self.service.enrich, record.finalized_text, context)


class HeuristicEnrichmentProvider:
    """Keyword vocabulary fallback, always available."""

    name = "heuristic"
    degraded = True

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def available(self) -> bool:
        return True

    async def run(self, record: CaptureRecord) -> Dict[str, Any]:
        return heuristic_analyzer.analyze(
            record.finalized_text,
            record.created_at,
            confidence=self.config.heuristic_confidence,
            max_tags=self.config.max_tags,
        )


def suggest_links(
    text: str, prior_records: Sequence[CaptureRecord], threshold: float, limit: int
) -> List[str]:
    """Ids of prior records whose text is similar enough to link."""
    normalized = normalize_text(text)
    scored = []
    for prior in prior_records:
        prior_text = prior.finalized_text
        if not prior_text or prior.deleted or prior.duplicate_of:
            continue
        ratio = SequenceMatcher(None, normalized, normalize_text(prior_text)).ratio()
        if ratio >= threshold:
            scored.append((ratio, prior.id))
    scored.sort(reverse=True)
    return [record_id for _, record_id in scored[:limit]]


class EnrichmentStage:
    stage = Stage.ENRICHMENT

    def __init__(self, providers: Sequence[Any], cache: ContentCache, config: Optional[Settings] = None):
        self.providers = list(providers)
        self.cache = cache
        self.config = config or default_settings

    def build_enrichment(self, raw: Dict[str, Any], provider: str, degraded: bool) -> Enrichment:
        confidence = max(0.0, min(1.0, float(raw.get("confidence") or 0.0)))
        if degraded:
            confidence = min(confidence, self.config.heuristic_confidence)
        suggested = degraded or confidence < self.config.auto_apply_threshold

        tags: List[str] = []
        for tag in raw.get("tags") or []:
            tag = str(tag).strip().lower().lstrip("#")
            if tag and tag not in tags:
                tags.append(tag)

        raw_entities = raw.get("entities") or {}
        entities = {key: [str(v) for v in raw_entities.get(key) or []] for key in ENTITY_KEYS}

        commands = []
        for data in raw.get("commands") or []:
            if not isinstance(data, dict):
                continue
            command = ActionCommand.from_dict({k: v for k, v in data.items() if k not in ("status", "external_id")})
            if not suggested and command.type in SUPPORTED_COMMANDS:
                command.status = CommandStatus.PENDING
            commands.append(command)

        return Enrichment(
            category=str(raw.get("category") or heuristic_analyzer.DEFAULT_CATEGORY).lower(),
            confidence=confidence,
            summary=raw.get("summary") or "",
            subcategory=raw.get("subcategory"),
            tags=tags[: self.config.max_tags],
            entities=entities,
            commands=commands,
            provider=provider,
            degraded=degraded,
            suggested=suggested,
        )

    async def process(self, record: CaptureRecord, context: StageContext) -> StageResult:
        text = record.finalized_text
        if not text or not text.strip():
            raise TerminalExternalError(
                f"Record {record.id} has no text to enrich",
                user_message="Enrichment failed: the capture has no text",
                service=self.stage.value,
            )
        key = f"enrichment:{fingerprint_text(text)}"
        cached_entry = self.cache.get(key)
        cached = cached_entry is not None
        if not cached:
            async with self.cache.key_lock(key):
                cached_entry = self.cache.get(key)
                cached = cached_entry is not None
                if not cached:
                    provider, raw = await _run_chain(self.providers, record, context, self.stage)
                    cached_entry = {"raw": raw, "provider": provider.name, "degraded": provider.degraded}
                    if not provider.degraded:
                        self.cache.put(key, cached_entry, self.config.enrichment_cache_ttl_seconds)

        enrichment = self.build_enrichment(cached_entry["raw"], cached_entry["provider"], cached_entry["degraded"])
        enrichment.suggested_links = suggest_links(
            text,
            [r for r in context.prior_records if r.id != record.id],
            self.config.suggested_link_threshold,
            self.config.max_suggested_links,
        )
        return StageResult(
            stage=self.stage,
            updates={
                "enrichment": enrichment,
                # Only auto-applied enrichments change the visible category
                "category": None if enrichment.suggested else enrichment.category,
            },
            provider=enrichment.provider,
            degraded=enrichment.degraded,
            cached=cached,
        )


# ----------------------------------------------------------------------
# Integration
# ----------------------------------------------------------------------
class ExternalIdStore:
    """Idempotency keys of created side-effects and the ids they produced."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = str(db_path or default_settings.db_path)
        self._lock = threading.Lock()
        conn = connect(self.db_path)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS integration_external_ids (
                idempotency_key TEXT PRIMARY KEY,
                record_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

    def get(self, idempotency_key: str) -> Optional[str]:
        conn = connect(self.db_path)
        row = conn.execute(
            "SELECT external_id FROM integration_external_ids WHERE idempotency_key = ?",
            (idempotency_key,),
        ).fetchone()
        conn.close()
        return row["external_id"] if row else None

    def put(self, idempotency_key: str, record_id: str, external_id: str) -> None:
        with self._lock:
            conn = connect(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO integration_external_ids
                        (idempotency_key, record_id, external_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (idempotency_key, record_id, external_id, utcnow().isoformat()),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to store external id for {idempotency_key}: {e}") from e
            finally:
                conn.close()

    def for_record(self, record_id: str) -> Dict[str, str]:
        conn = connect(self.db_path)
        rows = conn.execute(
            "SELECT idempotency_key, external_id FROM integration_external_ids WHERE record_id = ?",
            (record_id,),
        ).fetchall()
        conn.close()
        return {row["idempotency_key"]: row["external_id"] for row in rows}


class IntegrationStage:
    stage = Stage.INTEGRATION

    def __init__(
        self,
        caller: ExternalCaller,
        service: IntegrationService,
        id_store: ExternalIdStore,
    ):
        self.caller = caller
        self.service = service
        self.id_store = id_store

    @staticmethod
    def idempotency_key(record: CaptureRecord, index: int) -> str:
        # content_version is stable across pipeline bookkeeping bumps
        return f"{record.id}:{index}:{record.content_version}"

    async def process(self, record: CaptureRecord, context: StageContext) -> StageResult:
        if record.enrichment is None:
            return StageResult(stage=self.stage)
        commands = [ActionCommand.from_dict(c.to_dict()) for c in record.enrichment.commands]
        created = failed = 0
        for index, command in enumerate(commands):
            if command.status != CommandStatus.PENDING:
                continue
            key = self.idempotency_key(record, index)
            existing = self.id_store.get(key)
            if existing:
                command.status = CommandStatus.CREATED
                command.external_id = existing
                continue
            try:
                external_id = await self.caller.call(self.service.create_event, command.params, key)
            except PipelineError as e:
                if e.retryable and not context.allow_degraded:
                    raise
                command.status = CommandStatus.FAILED
                command.error = e.user_message
                failed += 1
                logger.warning(f"Integration command {index} of {record.id} failed: {e.message}")
                continue
            self.id_store.put(key, record.id, external_id)
            command.status = CommandStatus.CREATED
            command.external_id = external_id
            created += 1

        logger.info(f"Integration for {record.id}: {created} created, {failed} failed")
        enrichment = Enrichment.from_dict({**record.enrichment.to_dict(), "commands": [c.to_dict() for c in commands]})
        return StageResult(stage=self.stage, updates={"enrichment": enrichment}, provider="integration")


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------
@dataclass
class StageProcessors:
    transcription: TranscriptionStage
    enrichment: EnrichmentStage
    integration: Optional[IntegrationStage] = None

    def for_stage(self, stage: Stage):
        processor = {
            Stage.TRANSCRIPTION: self.transcription,
            Stage.ENRICHMENT: self.enrichment,
            Stage.INTEGRATION: self.integration,
        }[stage]
        if processor is None:
            raise TerminalExternalError(f"No processor configured for {stage.value}", service=stage.value)
        return processor


def build_stage_processors(
    registry,
    cache: ContentCache,
    *,
    audio_store: AudioStore,
    transcription_service: Optional[TranscriptionService] = None,
    enrichment_service: Optional[EnrichmentService] = None,
    integration_service: Optional[IntegrationService] = None,
    id_store: Optional[ExternalIdStore] = None,
    config: Optional[Settings] = None,
) -> StageProcessors:
    """Assemble provider chains for every stage from the given services."""
    config = config or default_settings
    transcription = TranscriptionStage(
        [
            ExternalTranscriptionProvider(registry.get("transcription"), transcription_service, audio_store),
            ClientTranscriptProvider(config.fallback_transcript_confidence),
        ],
        cache,
        config,
    )
    enrichment = EnrichmentStage(
        [
            LLMEnrichmentProvider(registry.get("enrichment"), enrichment_service),
            HeuristicEnrichmentProvider(config),
        ],
        cache,
        config,
    )
    integration = None
    if integration_service is not None:
        integration = IntegrationStage(
            registry.get("integration"),
            integration_service,
            id_store or ExternalIdStore(str(config.db_path)),
        )
    return StageProcessors(transcription=transcription, enrichment=enrichment, integration=integration)
