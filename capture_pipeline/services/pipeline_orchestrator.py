"""
Pipeline orchestrator and worker pool.

The orchestrator is the single writer of record ``state`` and ``version``.
Workers claim jobs from the JobQueue, stamp the record with the stage state,
run the stage processor under the stage timeout and then either commit the
result and schedule the next stage, or hand the error to the job queue's retry
policy. A result is discarded when the record version moved on while the job
was running (an edit, retry or delete happened in the meantime).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from capture_pipeline.config import Settings, settings as default_settings
from capture_pipeline.errors import ConflictError, PipelineError, StorageError, classify_exception
from capture_pipeline.models import (
    CaptureRecord,
    CommandStatus,
    Enrichment,
    Job,
    JobStatus,
    RecordState,
    Stage,
    fingerprint_text,
    utcnow,
)
from capture_pipeline.services.job_queue import PRIORITY_DEFAULT, PRIORITY_INTERACTIVE, JobQueue
from capture_pipeline.services.pipeline_stages import StageContext, StageProcessors, StageResult
from capture_pipeline.services.record_store import RecordStore
from capture_pipeline.services.status_notifier import StatusNotifier

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Runs capture records through transcription, enrichment and integration."""

    def __init__(
        self,
        store: RecordStore,
        job_queue: JobQueue,
        stages: StageProcessors,
        notifier: Optional[StatusNotifier] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.job_queue = job_queue
        self.stages = stages
        self.notifier = notifier
        self.config = config or default_settings
        self._write_lock = threading.RLock()
        self._workers: List[asyncio.Task] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._stopping = False
        self.stats = {"dispatched": 0, "completed": 0, "retried": 0, "failed": 0, "discarded": 0}

    # ------------------------------------------------------------------
    # Record writes
    # ------------------------------------------------------------------
    def _write(self, current: CaptureRecord, **changes: Any) -> CaptureRecord:
        """Apply changes as one mutation: version + 1."""
        updated = current.copy(version=current.version + 1, updated_at=utcnow(), **changes)
        if not self.store.update(updated, expected_version=current.version):
            latest = self.store.get(current.id)
            raise ConflictError(
                f"Record {current.id} changed concurrently",
                current=latest.to_api() if latest else None,
            )
        return updated

    def _first_stage(self, record: CaptureRecord) -> Stage:
        if record.has_audio and not record.transcript:
            return Stage.TRANSCRIPTION
        return Stage.ENRICHMENT

    def _next_stage(self, stage: Stage, record: CaptureRecord) -> Optional[Stage]:
        if stage == Stage.TRANSCRIPTION:
            return Stage.ENRICHMENT
        if stage == Stage.ENRICHMENT:
            enrichment = record.enrichment
            if (
                self.stages.integration is not None
                and enrichment is not None
                and not enrichment.suggested
                and any(c.status == CommandStatus.PENDING for c in enrichment.commands)
            ):
                return Stage.INTEGRATION
        return None

    def _schedule(self, record: CaptureRecord, stage: Stage, priority: int) -> Job:
        job = self.job_queue.enqueue(
            record.id,
            record.owner_id,
            stage,
            record_version=record.version,
            priority=priority,
            max_attempts=self.config.ai_max_attempts,
        )
        self._wake()
        return job

    def _restart_with_content(self, current: CaptureRecord, text: Optional[str], fingerprint: str) -> CaptureRecord:
        self.job_queue.cancel_pending(current.id, "Superseded by edit")
        # On audio captures an edit is a corrected transcript
        transcript = text if current.has_audio and text else None
        return self._write(
            current,
            text=text,
            content_fingerprint=fingerprint,
            content_version=current.version + 1,
            transcript=transcript,
            transcript_confidence=1.0 if transcript else None,
            transcript_provider="user" if transcript else None,
            enrichment=None,
            category=None,
            edited=True,
            state=RecordState.QUEUED,
            failure_stage=None,
            failure_reason=None,
        )

    async def _notify(self, record: Optional[CaptureRecord], *jobs: Optional[Job]) -> None:
        if self.notifier is None:
            return
        for job in jobs:
            if job is not None:
                await self.notifier.job_update(job)
        if record is not None:
            await self.notifier.record_update(record)

    # ------------------------------------------------------------------
    # Public record operations
    # ------------------------------------------------------------------
    async def admit(self, record: CaptureRecord, priority: int = PRIORITY_DEFAULT) -> CaptureRecord:
        """Store a newly synced capture and schedule its first stage."""
        with self._write_lock:
            captured = record.copy(
                state=RecordState.CAPTURED,
                version=1,
                content_version=1,
                transcript=None,
                transcript_confidence=None,
                transcript_provider=None,
                enrichment=None,
                category=None,
                deleted=False,
                duplicate_of=None,
                failure_stage=None,
                failure_reason=None,
            )
            self.store.insert(captured)
            queued = self._write(captured, state=RecordState.QUEUED)
            job = self._schedule(queued, self._first_stage(queued), priority)
        logger.info(f"Admitted capture {queued.id} for {queued.owner_id}, first stage {job.stage.value}")
        await self._notify(queued, job)
        return queued

    async def apply_edit(self, incoming: CaptureRecord, expected_version: int) -> CaptureRecord:
        """Apply a synced client edit made on top of expected_version."""
        with self._write_lock:
            current = self.store.get(incoming.id)
            if current is None:
                raise ConflictError(f"Record {incoming.id} does not exist")
            if current.deleted or current.version != expected_version:
                raise ConflictError(
                    f"Edit of {incoming.id} based on v{expected_version}, server is at v{current.version}",
                    current=current.to_api(),
                )
            updated = self._restart_with_content(current, incoming.text, incoming.content_fingerprint)
            job = self._schedule(updated, self._first_stage(updated), PRIORITY_INTERACTIVE)
        logger.info(f"Applied edit to {updated.id}, now v{updated.version}")
        await self._notify(updated, job)
        return updated

    async def edit_record(
        self, record_id: str, text: str, base_version: Optional[int] = None
    ) -> Optional[CaptureRecord]:
        """Server-side text edit; restarts the pipeline at interactive priority."""
        with self._write_lock:
            current = self.store.get(record_id)
            if current is None:
                return None
            if current.deleted or (base_version is not None and base_version != current.version):
                raise ConflictError(f"Record {record_id} is at v{current.version}", current=current.to_api())
            updated = self._restart_with_content(current, text, fingerprint_text(text))
            job = self._schedule(updated, self._first_stage(updated), PRIORITY_INTERACTIVE)
        await self._notify(updated, job)
        return updated

    async def retry_record(self, record_id: str) -> Optional[CaptureRecord]:
        """Re-run a completed or failed record from its first needed stage."""
        with self._write_lock:
            current = self.store.get(record_id)
            if current is None:
                return None
            if current.deleted or not current.state.terminal:
                raise ConflictError(
                    f"Record {record_id} is {current.state.value} and cannot be retried",
                    current=current.to_api(),
                )
            self.job_queue.cancel_pending(record_id, "Superseded by retry")
            updated = self._write(
                current,
                state=RecordState.QUEUED,
                enrichment=None,
                category=None,
                failure_stage=None,
                failure_reason=None,
            )
            job = self._schedule(updated, self._first_stage(updated), PRIORITY_INTERACTIVE)
        logger.info(f"Retrying record {record_id} from {job.stage.value}")
        await self._notify(updated, job)
        return updated

    async def delete_record(self, record_id: str) -> Optional[CaptureRecord]:
        with self._write_lock:
            current = self.store.get(record_id)
            if current is None:
                return None
            if current.deleted:
                return current
            self.job_queue.cancel_pending(record_id, "Record deleted")
            changes: Dict[str, Any] = {"deleted": True}
            if not current.state.terminal:
                changes.update(state=RecordState.FAILED, failure_reason="Deleted before processing finished")
            updated = self._write(current, **changes)
        await self._notify(updated)
        return updated

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------
    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        self._wakeup = asyncio.Event()
        self.job_queue.recover_interrupted()
        for index in range(self.config.worker_count):
            self._workers.append(asyncio.create_task(self._worker_loop(index), name=f"pipeline-worker-{index}"))
        logger.info(f"Started {len(self._workers)} pipeline workers")

    async def stop(self, timeout: float = 10.0) -> None:
        if not self._workers:
            return
        self._stopping = True
        self._wake()
        _, pending = await asyncio.wait(self._workers, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        if pending:
            self.job_queue.recover_interrupted()
        logger.info("Pipeline workers stopped")

    async def run_until_idle(self, timeout: float = 30.0) -> None:
        """Process jobs until none are outstanding."""
        started_here = not self._workers
        if started_here:
            await self.start()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while self.job_queue.has_outstanding():
                if loop.time() >= deadline:
                    raise TimeoutError(f"Pipeline still busy after {timeout}s: {self.job_queue.counts()}")
                self._wake()
                await asyncio.sleep(0.02)
        finally:
            if started_here:
                await self.stop()

    async def _idle_wait(self) -> None:
        timeout = self.config.worker_poll_interval_seconds
        due = self.job_queue.next_retry_due()
        if due is not None:
            timeout = max(0.0, min(timeout, (due - utcnow()).total_seconds()))
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            try:
                job = self.job_queue.claim_next()
            except StorageError as e:
                logger.error(f"Worker {index} could not claim a job: {e}")
                await asyncio.sleep(self.config.worker_poll_interval_seconds)
                continue
            if job is None:
                await self._idle_wait()
                continue
            try:
                await self._run_job(job)
            except PipelineError as e:
                logger.error(f"Worker {index} failed to record outcome of job {job.job_id}: {e.message}")
                self.job_queue.mark_failed(job.job_id, e.message)

    async def _run_job(self, job: Job) -> None:
        record = self.store.get(job.record_id)
        if record is None or record.deleted or record.version != job.record_version:
            self._discard(job, "record changed before dispatch")
            return

        try:
            with self._write_lock:
                dispatched = self._write(record, state=job.stage.record_state)
        except ConflictError:
            self._discard(job, "record changed before dispatch")
            return
        self.stats["dispatched"] += 1
        logger.debug(f"Dispatching {job.stage.value} for {record.id} (attempt {job.attempt}/{job.max_attempts})")
        await self._notify(dispatched, job)

        context = StageContext(allow_degraded=job.attempt >= job.max_attempts)
        if job.stage == Stage.ENRICHMENT:
            context.prior_records = self.store.recent_for_owner(
                record.owner_id, self.config.prior_records_context, exclude_id=record.id
            )
        try:
            processor = self.stages.for_stage(job.stage)
            result = await asyncio.wait_for(
                processor.process(dispatched, context),
                timeout=self.config.stage_timeouts[job.stage.value],
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, dispatched, classify_exception(e, service=job.stage.value))
            return
        await self._commit(job, dispatched, result)

    def _discard(self, job: Job, reason: str) -> None:
        self.stats["discarded"] += 1
        logger.info(f"Discarding {job.stage.value} job {job.job_id} for {job.record_id}: {reason}")
        self.job_queue.mark_completed(job.job_id, note=f"Discarded: {reason}")

    async def _commit(self, job: Job, dispatched: CaptureRecord, result: StageResult) -> None:
        with self._write_lock:
            current = self.store.get(dispatched.id)
            if current is None or current.version != dispatched.version:
                self._discard(job, "record changed during processing")
                return
            changes = dict(result.updates)
            next_stage = self._next_stage(job.stage, current.copy(**changes))
            if next_stage is None:
                changes["state"] = RecordState.COMPLETED
            updated = self._write(current, **changes)
            self.job_queue.mark_completed(job.job_id)
            next_job = self._schedule(updated, next_stage, job.priority) if next_stage else None
        self.stats["completed"] += 1
        if next_stage is None:
            logger.info(f"Record {updated.id} completed (v{updated.version})")
        await self._notify(updated, self.job_queue.get_job(job.job_id), next_job)

    async def _handle_failure(self, job: Job, dispatched: CaptureRecord, error: PipelineError) -> None:
        with self._write_lock:
            current = self.store.get(dispatched.id)
            if current is None or current.version != dispatched.version:
                self._discard(job, "record changed during processing")
                return
            updated_job = self.job_queue.fail_or_retry(job, error, record_version=current.version)
            if updated_job.status == JobStatus.RETRY_PENDING:
                self.stats["retried"] += 1
                updated = None
            elif job.stage == Stage.INTEGRATION:
                updated = self._write(
                    current,
                    state=RecordState.COMPLETED,
                    enrichment=self._fail_pending_commands(current.enrichment, error.user_message),
                )
            else:
                self.stats["failed"] += 1
                reason = error.user_message
                if job.stage.value not in reason.lower():
                    reason = f"{job.stage.value.capitalize()} failed: {reason}"
                updated = self._write(
                    current,
                    state=RecordState.FAILED,
                    failure_stage=job.stage.value,
                    failure_reason=reason,
                )
                logger.warning(f"Record {current.id} failed at {job.stage.value}: {reason}")
        await self._notify(updated, updated_job)

    @staticmethod
    def _fail_pending_commands(enrichment: Optional[Enrichment], reason: str) -> Optional[Enrichment]:
        if enrichment is None:
            return None
        data = enrichment.to_dict()
        for command in data["commands"]:
            if command["status"] == CommandStatus.PENDING.value:
                command["status"] = CommandStatus.FAILED.value
                command["error"] = reason
        return Enrichment.from_dict(data)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "workers": len(self._workers),
            "jobs": self.job_queue.counts(),
            "records": self.store.counts_by_state(),
            **self.stats,
        }
