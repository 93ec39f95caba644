"""
Clients for the external collaborators of the pipeline.

Each collaborator is described by a small protocol so stages can be wired to
fakes in tests; the default implementations talk to OpenAI-compatible
transcription/chat endpoints and the Google Calendar REST API over httpx.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx

from capture_pipeline.config import Settings, settings as default_settings
from capture_pipeline.errors import ParseError, TerminalExternalError, error_for_status

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    text: str
    confidence: float
    segments: List[Dict[str, Any]] = field(default_factory=list)


class TranscriptionService(Protocol):
    async def transcribe(self, audio_bytes: bytes, language: Optional[str] = None) -> TranscriptionResult:
        ...


class EnrichmentService(Protocol):
    async def enrich(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...


class IntegrationService(Protocol):
    async def create_event(self, params: Dict[str, Any], idempotency_key: str) -> str:
        ...


class AudioStore(Protocol):
    async def load(self, audio_ref: str) -> bytes:
        ...

    def save(self, audio_ref: str, audio_bytes: bytes) -> Any:
        ...


def raise_for_service_status(response: httpx.Response, service: str) -> None:
    """Raise the pipeline error matching a failed provider response."""
    if response.status_code < 400:
        return
    retry_after = response.headers.get("retry-after")
    try:
        retry_after_seconds = float(retry_after) if retry_after else None
    except ValueError:
        retry_after_seconds = None
    raise error_for_status(
        response.status_code,
        response.text,
        service=service,
        retry_after=retry_after_seconds,
    )


class FileAudioStore:
    """Audio blobs uploaded by clients, stored under audio_dir."""

    def __init__(self, audio_dir: Optional[Path] = None) -> None:
        self.audio_dir = Path(audio_dir or default_settings.audio_dir)

    def _path(self, audio_ref: str) -> Path:
        path = (self.audio_dir / audio_ref).resolve()
        if self.audio_dir.resolve() not in path.parents:
            raise TerminalExternalError(
                f"Audio reference escapes storage: {audio_ref}",
                user_message="Invalid audio reference",
            )
        return path

    async def load(self, audio_ref: str) -> bytes:
        path = self._path(audio_ref)
        if not path.exists():
            raise TerminalExternalError(
                f"Audio blob not found: {audio_ref}",
                user_message="The audio recording could not be found",
            )
        return await asyncio.to_thread(path.read_bytes)

    def save(self, audio_ref: str, audio_bytes: bytes) -> Path:
        path = self._path(audio_ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio_bytes)
        logger.info(f"Stored audio {audio_ref} ({len(audio_bytes)} bytes)")
        return path


class WhisperApiTranscriptionService:
    """OpenAI-compatible /audio/transcriptions client."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or default_settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.openai_base_url,
                headers={"Authorization": f"Bearer {self.config.openai_api_key or ''}"},
                timeout=self.config.transcription_timeout_seconds,
            )
        return self._client

    async def transcribe(self, audio_bytes: bytes, language: Optional[str] = None) -> TranscriptionResult:
        data = {"model": self.config.transcription_model, "response_format": "verbose_json"}
        if language:
            data["language"] = language
        response = await self._http().post(
            "/audio/transcriptions",
            data=data,
            files={"file": ("capture.webm", audio_bytes, "application/octet-stream")},
        )
        raise_for_service_status(response, "transcription")
        try:
            payload = response.json()
        except ValueError as e:
            raise ParseError("Transcription response was not JSON", service="transcription") from e

        segments = payload.get("segments") or []
        logprobs = [s["avg_logprob"] for s in segments if isinstance(s.get("avg_logprob"), (int, float))]
        # Mean token probability is the closest thing Whisper reports to confidence
        confidence = math.exp(sum(logprobs) / len(logprobs)) if logprobs else 0.9
        return TranscriptionResult(
            text=(payload.get("text") or "").strip(),
            confidence=round(min(1.0, confidence), 3),
            segments=segments,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class ChatCompletionEnrichmentService:
    """Structured categorization through an OpenAI-compatible chat endpoint."""

    SYSTEM_PROMPT = (
        "Categorize the user's captured thought. Respond in JSON with keys "
        "'summary', 'category', 'subcategory', 'confidence' (0-1), 'tags' (max 10), "
        "'entities' (object with lists: people, places, dates, organizations, topics) and "
        "'commands' (list of {type: create_event|create_task, title, params, confidence})."
    )

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or default_settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.openai_base_url,
                headers={"Authorization": f"Bearer {self.config.openai_api_key or ''}"},
                timeout=self.config.enrichment_timeout_seconds,
            )
        return self._client

    async def enrich(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        messages = [{"role": "system", "content": self.SYSTEM_PROMPT}]
        if context:
            messages.append({"role": "system", "content": f"Context: {json.dumps(context)[:2000]}"})
        messages.append({"role": "user", "content": text})
        response = await self._http().post(
            "/chat/completions",
            json={
                "model": self.config.enrichment_model,
                "messages": messages,
                "temperature": 0.3,
                "response_format": {"type": "json_object"},
            },
        )
        raise_for_service_status(response, "enrichment")
        return parse_enrichment_response(response.json())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def parse_enrichment_response(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the JSON object from a chat completion payload."""
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ParseError("Enrichment response missing message content", service="enrichment") from e
    try:
        result = json.loads(content or "")
    except json.JSONDecodeError as e:
        raise ParseError(f"Enrichment response was not valid JSON: {e}", service="enrichment") from e
    if not isinstance(result, dict) or "category" not in result:
        raise ParseError("Enrichment response has no category", service="enrichment")
    return result


class CalendarApiIntegrationService:
    """Creates calendar events with a deterministic event id per idempotency key."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or default_settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.calendar_api_url,
                headers={"Authorization": f"Bearer {self.config.calendar_access_token or ''}"},
                timeout=self.config.integration_timeout_seconds,
            )
        return self._client

    @staticmethod
    def event_id_for(idempotency_key: str) -> str:
        # Calendar ids allow base32hex characters; lowercase hex is a subset
        return hashlib.sha1(idempotency_key.encode("utf-8")).hexdigest()

    async def create_event(self, params: Dict[str, Any], idempotency_key: str) -> str:
        event_id = self.event_id_for(idempotency_key)
        body: Dict[str, Any] = {
            "id": event_id,
            "summary": params.get("title") or "Captured event",
            "description": params.get("description", ""),
        }
        if params.get("start"):
            body["start"] = {"dateTime": params["start"]}
            body["end"] = {"dateTime": params.get("end") or params["start"]}
        elif params.get("date"):
            body["start"] = {"date": params["date"]}
            body["end"] = {"date": params["date"]}
        else:
            raise TerminalExternalError(
                "Event has no start time",
                user_message="Could not work out when the event happens",
                service="integration",
            )
        response = await self._http().post(f"/calendars/{self.config.calendar_id}/events", json=body)
        if response.status_code == 409:
            logger.info(f"Calendar event {event_id} already exists, reusing it")
            return event_id
        raise_for_service_status(response, "integration")
        return response.json().get("id", event_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
