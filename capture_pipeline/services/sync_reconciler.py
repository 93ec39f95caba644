"""Server-side ingestion of client sync batches.

Each incoming record is compared with the authoritative copy and answered
with an acknowledgement. Nothing here calls an external service; accepted
records are handed to the orchestrator, which owns all record writes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Union

from capture_pipeline.config import Settings, settings as default_settings
from capture_pipeline.errors import ConflictError
from capture_pipeline.models import AckStatus, CaptureRecord, SyncAck
from capture_pipeline.services.pipeline_orchestrator import PipelineOrchestrator
from capture_pipeline.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class SyncReconciler:
    """Applies client batches in order, one batch per client at a time."""

    def __init__(
        self,
        store: RecordStore,
        orchestrator: PipelineOrchestrator,
        config: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.config = config or default_settings
        self._client_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.stats = {status.value: 0 for status in AckStatus}

    async def submit_batch(
        self,
        client_id: str,
        records: Iterable[Union[CaptureRecord, Dict[str, Any]]],
    ) -> List[SyncAck]:
        """Reconcile a client batch; acks are returned in submission order."""
        acks: List[SyncAck] = []
        async with self._client_locks[client_id]:
            for item in records:
                record = item if isinstance(item, CaptureRecord) else CaptureRecord.from_api(item)
                ack = await self._reconcile(record)
                self.stats[ack.status.value] += 1
                acks.append(ack)
        logger.info(
            f"Reconciled batch of {len(acks)} from client {client_id}: "
            + ", ".join(f"{a.record_id[:8]}={a.status.value}" for a in acks)
        )
        return acks

    async def _reconcile(self, incoming: CaptureRecord) -> SyncAck:
        current = self.store.get(incoming.id)
        if current is None:
            return await self._reconcile_new(incoming)

        if current.deleted:
            # Nothing to apply the edit to; let the client drop it
            return SyncAck(incoming.id, AckStatus.STALE, current.version, message="Record was deleted")

        if incoming.version == current.version + 1:
            try:
                updated = await self.orchestrator.apply_edit(incoming, expected_version=current.version)
            except ConflictError as e:
                return self._conflict(incoming, e.current, e.message)
            return SyncAck(incoming.id, AckStatus.ACCEPTED, updated.version)

        if incoming.version <= current.version:
            # Pipeline bookkeeping bumps the version too. A lower version is a
            # retransmit when it carries the current content or predates the
            # last content change; otherwise it is a racing edit.
            if (
                incoming.content_fingerprint == current.content_fingerprint
                or incoming.version < current.content_version
            ):
                return SyncAck(incoming.id, AckStatus.STALE, current.version, message="Already applied")
            return self._conflict(incoming, current.to_api(), "Edit based on an outdated version")

        return self._conflict(
            incoming,
            current.to_api(),
            f"Version {incoming.version} is ahead of server version {current.version}",
        )

    async def _reconcile_new(self, incoming: CaptureRecord) -> SyncAck:
        canonical_id = self.store.get_duplicate_link(incoming.id)
        if canonical_id and not incoming.edited:
            return self._duplicate(incoming, canonical_id)

        if self.config.dedup_enabled and not incoming.edited:
            canonical = self.store.find_duplicate(
                incoming.owner_id,
                incoming.content_fingerprint,
                incoming.created_at,
                self.config.dedup_window_seconds,
                exclude_id=incoming.id,
            )
            if canonical is not None:
                self.store.link_duplicate(incoming.id, canonical.id, incoming.owner_id)
                return self._duplicate(incoming, canonical.id)

        if canonical_id:
            # An edit to a merged duplicate becomes a record of its own
            self.store.unlink_duplicate(incoming.id)
            logger.info(f"Edited duplicate {incoming.id} split from {canonical_id}")
        admitted = await self.orchestrator.admit(incoming)
        return SyncAck(incoming.id, AckStatus.ACCEPTED, admitted.version)

    def _duplicate(self, incoming: CaptureRecord, canonical_id: str) -> SyncAck:
        return SyncAck(
            incoming.id,
            AckStatus.DUPLICATE,
            incoming.version,
            canonical_id=canonical_id,
            message=f"Merged into {canonical_id}",
        )

    def _conflict(self, incoming: CaptureRecord, current: Optional[Dict[str, Any]], message: str) -> SyncAck:
        logger.info(f"Sync conflict on {incoming.id} (incoming v{incoming.version}): {message}")
        version = current["version"] if current else incoming.version
        return SyncAck(incoming.id, AckStatus.CONFLICT, version, record=current, message=message)
