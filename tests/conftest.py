"""Shared fixtures and fake collaborators for pipeline tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from capture_pipeline.app import build_services
from capture_pipeline.config import Settings
from capture_pipeline.errors import PipelineError
from capture_pipeline.models import CaptureRecord, fingerprint_audio, fingerprint_text, new_record_id
from capture_pipeline.services.ai_clients import TranscriptionResult
from capture_pipeline.services.job_queue import RetryPolicy


class FakeAudioStore:
    def __init__(self, blobs: Optional[Dict[str, bytes]] = None):
        self.blobs = blobs or {}

    async def load(self, audio_ref: str) -> bytes:
        return self.blobs.get(audio_ref, b"fake-audio:" + audio_ref.encode())

    def save(self, audio_ref: str, audio_bytes: bytes) -> None:
        self.blobs[audio_ref] = audio_bytes


class FakeTranscriptionService:
    """Returns a fixed transcript, or raises the queued errors first."""

    def __init__(self, text: str = "Call Sam tomorrow at 5pm", confidence: float = 0.95, delay: float = 0.0):
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.errors: List[PipelineError] = []
        self.always_raise: Optional[PipelineError] = None
        self.calls = 0
        self.audio: List[bytes] = []

    async def transcribe(self, audio_bytes: bytes, language: Optional[str] = None) -> TranscriptionResult:
        self.calls += 1
        self.audio.append(audio_bytes)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        return TranscriptionResult(text=self.text, confidence=self.confidence)


class FakeEnrichmentService:
    def __init__(self, confidence: float = 0.95, category: str = "reminders"):
        self.confidence = confidence
        self.category = category
        self.calls: List[str] = []
        self.errors: List[PipelineError] = []
        self.always_raise: Optional[PipelineError] = None
        self.gate: Optional[asyncio.Event] = None

    async def enrich(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        return {
            "summary": text[:40],
            "category": self.category,
            "subcategory": None,
            "confidence": self.confidence,
            "tags": ["Call", "sam", "#call"],
            "entities": {"people": ["Sam"], "dates": ["tomorrow at 5pm"]},
            "commands": [
                {
                    "type": "create_event",
                    "title": "Call Sam",
                    "params": {"title": "Call Sam", "start": "2026-01-02T17:00:00+00:00"},
                    "confidence": self.confidence,
                }
            ],
        }


class FakeIntegrationService:
    def __init__(self):
        self.created: List[str] = []
        self.errors: List[PipelineError] = []

    async def create_event(self, params: Dict[str, Any], idempotency_key: str) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.created.append(idempotency_key)
        return f"evt-{len(self.created)}"


class RecordingNotifier:
    """Collects published events instead of sending them."""

    def __init__(self):
        self.records: List[CaptureRecord] = []
        self.jobs: List[Any] = []

    async def record_update(self, record):
        self.records.append(record)
        return 0

    async def job_update(self, job):
        self.jobs.append(job)
        return 0

    def states_for(self, record_id: str) -> List[str]:
        states = []
        for record in self.records:
            if record.id == record_id and (not states or states[-1] != record.state.value):
                states.append(record.state.value)
        return states


def text_record(text: str, owner_id: str = "user-1", **overrides) -> CaptureRecord:
    values = dict(
        id=new_record_id(),
        owner_id=owner_id,
        origin_client_id="web",
        content_fingerprint=fingerprint_text(text),
        text=text,
    )
    values.update(overrides)
    return CaptureRecord(**values)


def audio_record(audio: bytes, owner_id: str = "user-1", text: Optional[str] = None, **overrides) -> CaptureRecord:
    values = dict(
        id=new_record_id(),
        owner_id=owner_id,
        origin_client_id="extension",
        content_fingerprint=fingerprint_audio(audio),
        text=text,
        audio_ref="clip.webm",
    )
    values.update(overrides)
    return CaptureRecord(**values)


@pytest.fixture()
def test_settings(tmp_path):
    return Settings(
        db_path=tmp_path / "pipeline.db",
        local_queue_path=tmp_path / "local.db",
        audio_dir=tmp_path / "audio",
        worker_count=2,
        worker_poll_interval_seconds=0.02,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        openai_api_key=None,
        integration_enabled=False,
    )


@pytest.fixture()
def fakes():
    return {
        "transcription": FakeTranscriptionService(),
        "enrichment": FakeEnrichmentService(),
        "integration": FakeIntegrationService(),
        "audio": FakeAudioStore(),
    }


@pytest.fixture()
def make_services(test_settings, fakes):
    """Build a wired pipeline; pass integration=True to configure the integration stage."""

    def _make(*, enrichment=True, integration=False, transcription=True, config=None):
        config = config or test_settings
        services = build_services(
            config,
            transcription_service=fakes["transcription"] if transcription else None,
            enrichment_service=fakes["enrichment"] if enrichment else None,
            integration_service=fakes["integration"] if integration else None,
            audio_store=fakes["audio"],
        )
        services.job_queue.retry_policy = RetryPolicy(base_delay=0.01, max_delay=0.05)
        services.orchestrator.notifier = RecordingNotifier()
        return services

    return _make
