"""
Client-side capture agent.

Captures are written to the LocalCaptureQueue first and only then synced, in
batches, to the server. The queue is never touched by a failed sync, so an
offline client simply retries on the next ``sync_now()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol
from urllib.parse import quote

import httpx

from capture_pipeline.config import settings
from capture_pipeline.errors import PipelineError, RetryableExternalError
from capture_pipeline.models import (
    AckStatus,
    CaptureRecord,
    SyncAck,
    fingerprint_audio,
    fingerprint_text,
    new_record_id,
)
from capture_pipeline.services.local_capture_queue import LocalCaptureQueue

logger = logging.getLogger(__name__)

_SYNCED_STATUSES = (AckStatus.ACCEPTED, AckStatus.STALE, AckStatus.DUPLICATE)


class SyncTransport(Protocol):
    async def upload_audio(self, client_id: str, audio_ref: str, audio_bytes: bytes) -> None:
        ...

    async def submit(self, client_id: str, records: List[CaptureRecord]) -> List[SyncAck]:
        ...


class InProcessTransport:
    """Hands batches straight to a reconciler and recordings to its audio store."""

    def __init__(self, reconciler, audio_store) -> None:
        self.reconciler = reconciler
        self.audio_store = audio_store

    async def upload_audio(self, client_id: str, audio_ref: str, audio_bytes: bytes) -> None:
        self.audio_store.save(audio_ref, audio_bytes)

    async def submit(self, client_id: str, records: List[CaptureRecord]) -> List[SyncAck]:
        return await self.reconciler.submit_batch(client_id, records)


class HttpSyncTransport:
    """POSTs recordings and batches to the server's /api/sync endpoints."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = (base_url or settings.sync_server_url).rstrip("/")
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=30.0)
        return self._client

    async def upload_audio(self, client_id: str, audio_ref: str, audio_bytes: bytes) -> None:
        try:
            response = await self._http().post(
                f"/api/sync/audio/{quote(audio_ref)}",
                content=audio_bytes,
                headers={"Content-Type": "application/octet-stream", "X-Client-Id": client_id},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RetryableExternalError(
                f"Audio upload failed for {audio_ref}: {e}",
                user_message="Could not upload the recording, captures stay queued",
                service="sync",
            ) from e

    async def submit(self, client_id: str, records: List[CaptureRecord]) -> List[SyncAck]:
        try:
            response = await self._http().post(
                "/api/sync/batch",
                json={"client_id": client_id, "records": [r.to_api() for r in records]},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RetryableExternalError(
                f"Sync request failed: {e}",
                user_message="Could not reach the server, captures stay queued",
                service="sync",
            ) from e
        return [SyncAck.from_dict(item) for item in response.json()["acks"]]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


@dataclass
class SyncResult:
    success: bool
    synced: int = 0
    conflicts: int = 0
    duplicates: int = 0
    acks: List[SyncAck] = field(default_factory=list)
    error: Optional[str] = None


class CaptureSyncClient:
    """One client (web app tab, browser extension) of one user."""

    def __init__(
        self,
        client_id: str,
        owner_id: str,
        local_queue: LocalCaptureQueue,
        transport: SyncTransport,
        *,
        batch_size: Optional[int] = None,
        is_online: Optional[Callable[[], bool]] = None,
        max_rounds: int = 10,
    ) -> None:
        self.client_id = client_id
        self.owner_id = owner_id
        self.local_queue = local_queue
        self.transport = transport
        self.batch_size = batch_size or settings.sync_batch_size
        self.is_online = is_online or (lambda: True)
        self.max_rounds = max_rounds

    def capture_text(self, text: str, language: Optional[str] = None) -> CaptureRecord:
        record = CaptureRecord(
            id=new_record_id(),
            owner_id=self.owner_id,
            origin_client_id=self.client_id,
            content_fingerprint=fingerprint_text(text),
            text=text,
            language=language,
        )
        return self.local_queue.enqueue(record)

    def capture_audio(
        self,
        audio_bytes: bytes,
        audio_ref: str,
        browser_transcript: Optional[str] = None,
        language: Optional[str] = None,
    ) -> CaptureRecord:
        record = CaptureRecord(
            id=new_record_id(),
            owner_id=self.owner_id,
            origin_client_id=self.client_id,
            content_fingerprint=fingerprint_audio(audio_bytes),
            text=browser_transcript,
            audio_ref=audio_ref,
            language=language,
        )
        return self.local_queue.enqueue(record, audio_bytes=audio_bytes)

    def edit(self, record_id: str, text: str, base_version: int) -> CaptureRecord:
        """Queue an edit of a record last seen at base_version."""
        previous = self.local_queue.get(record_id)
        base = previous or CaptureRecord(
            id=record_id,
            owner_id=self.owner_id,
            origin_client_id=self.client_id,
            content_fingerprint=fingerprint_text(text),
        )
        edited = base.copy(
            text=text,
            content_fingerprint=fingerprint_text(text),
            version=base_version + 1,
            content_version=base_version + 1,
            edited=True,
        )
        return self.local_queue.enqueue(edited)

    async def _upload_audio(self, batch: List[CaptureRecord]) -> None:
        """Upload recordings referenced by the batch before the records themselves."""
        for entry in batch:
            if not entry.audio_ref:
                continue
            audio_bytes = self.local_queue.pending_audio(entry.audio_ref)
            if audio_bytes is None:
                continue
            await self.transport.upload_audio(self.client_id, entry.audio_ref, audio_bytes)
            self.local_queue.mark_audio_uploaded(entry.audio_ref)
            logger.debug(f"Uploaded recording {entry.audio_ref} for {entry.id}")

    async def sync_now(self) -> SyncResult:
        if not self.is_online():
            return SyncResult(success=False, error="offline")

        result = SyncResult(success=True)
        for _ in range(self.max_rounds):
            batch = self.local_queue.drain_batch(self.batch_size)
            if not batch:
                break
            try:
                await self._upload_audio(batch)
                acks = await self.transport.submit(self.client_id, batch)
            except PipelineError as e:
                logger.warning(f"Sync from {self.client_id} failed: {e.message}")
                result.success = False
                result.error = e.user_message
                return result

            progressed = 0
            for entry, ack in zip(batch, acks):
                result.acks.append(ack)
                if ack.status in _SYNCED_STATUSES:
                    # Only clear what was actually sent; newer local edits stay queued
                    progressed += self.local_queue.mark_synced(entry.id, entry.version)
                    result.synced += 1
                    if ack.status == AckStatus.DUPLICATE:
                        result.duplicates += 1
                else:
                    result.conflicts += 1
                    self.local_queue.rebase(entry.id, ack.version)
            if not progressed:
                break

        if result.synced or result.conflicts:
            logger.info(
                f"Client {self.client_id} synced {result.synced} captures "
                f"({result.duplicates} duplicates, {result.conflicts} conflicts)"
            )
        return result
