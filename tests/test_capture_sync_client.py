"""Tests for the client-side capture and sync agent."""

import json

import httpx
import pytest

from capture_pipeline.app import build_services, create_app
from capture_pipeline.errors import RetryableExternalError
from capture_pipeline.models import AckStatus, RecordState, SyncAck
from capture_pipeline.services.ai_clients import FileAudioStore
from capture_pipeline.services.capture_sync_client import (
    CaptureSyncClient,
    HttpSyncTransport,
    InProcessTransport,
)
from capture_pipeline.services.local_capture_queue import LocalCaptureQueue
from conftest import FakeEnrichmentService, FakeTranscriptionService, text_record


class CountingTransport(InProcessTransport):
    def __init__(self, services):
        super().__init__(services.reconciler, services.audio_store)
        self.batches = []

    async def submit(self, client_id, records):
        self.batches.append([r.id for r in records])
        return await super().submit(client_id, records)


def in_process(services):
    return InProcessTransport(services.reconciler, services.audio_store)


class FailingTransport:
    async def upload_audio(self, client_id, audio_ref, audio_bytes):
        raise RetryableExternalError("connection refused", user_message="server unreachable")

    async def submit(self, client_id, records):
        raise RetryableExternalError("connection refused", user_message="server unreachable")


@pytest.fixture()
def local_queue(tmp_path):
    return LocalCaptureQueue(str(tmp_path / "device.db"))


@pytest.mark.asyncio
async def test_captures_sync_in_batches(make_services, local_queue):
    services = make_services()
    transport = CountingTransport(services)
    client = CaptureSyncClient("web", "user-1", local_queue, transport, batch_size=10)
    for i in range(25):
        client.capture_text(f"thought number {i}")

    result = await client.sync_now()

    assert result.success
    assert result.synced == 25
    assert [len(b) for b in transport.batches] == [10, 10, 5]
    assert local_queue.pending_count() == 0
    assert services.store.counts_by_state()["queued"] == 25


@pytest.mark.asyncio
async def test_offline_sync_keeps_captures_queued(make_services, local_queue):
    services = make_services()
    client = CaptureSyncClient(
        "web", "user-1", local_queue, in_process(services), is_online=lambda: False
    )
    record = client.capture_text("written on a plane")

    result = await client.sync_now()

    assert not result.success
    assert result.error == "offline"
    assert local_queue.get(record.id) is not None
    assert services.store.get(record.id) is None


@pytest.mark.asyncio
async def test_transport_failure_keeps_captures_queued(local_queue):
    client = CaptureSyncClient("web", "user-1", local_queue, FailingTransport())
    client.capture_text("network is flaky")

    result = await client.sync_now()

    assert not result.success
    assert result.error == "server unreachable"
    assert local_queue.pending_count() == 1


@pytest.mark.asyncio
async def test_duplicate_capture_from_second_client(make_services, tmp_path):
    services = make_services()
    web = CaptureSyncClient(
        "web", "user-1", LocalCaptureQueue(str(tmp_path / "web.db")), in_process(services)
    )
    extension = CaptureSyncClient(
        "extension", "user-1", LocalCaptureQueue(str(tmp_path / "ext.db")), in_process(services)
    )
    web.capture_text("Renew passport")
    extension.capture_text("Renew passport")

    await web.sync_now()
    result = await extension.sync_now()

    assert result.duplicates == 1
    assert extension.local_queue.pending_count() == 0
    assert sum(services.store.counts_by_state().values()) == 1


@pytest.mark.asyncio
async def test_conflicting_edit_is_rebased_and_resubmitted(make_services, local_queue):
    services = make_services()
    client = CaptureSyncClient("web", "user-1", local_queue, in_process(services))
    record = client.capture_text("Dentist on Friday")
    await client.sync_now()

    # Edited against v1 while the server already moved to v2
    client.edit(record.id, "Dentist on Thursday", base_version=1)
    first = await client.sync_now()
    assert first.conflicts == 1
    assert local_queue.get(record.id).version == 3

    second = await client.sync_now()
    assert second.success
    assert second.synced == 1
    assert second.acks[0].status == AckStatus.ACCEPTED
    assert services.store.get(record.id).text == "Dentist on Thursday"
    assert local_queue.pending_count() == 0


def test_edits_made_during_sync_stay_queued(local_queue):
    client = CaptureSyncClient("web", "user-1", local_queue, FailingTransport())
    record = client.capture_text("first version")
    batch = local_queue.drain_batch(10)
    client.edit(record.id, "second version", base_version=2)

    # Only the entry that was sent is cleared
    assert local_queue.mark_synced(batch[0].id, batch[0].version) == 1
    assert local_queue.get(record.id).text == "second version"


@pytest.mark.asyncio
async def test_http_transport_posts_batches():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen["path"] = request.url.path
        seen["client_id"] = body["client_id"]
        acks = [SyncAck(r["id"], AckStatus.ACCEPTED, 2).to_dict() for r in body["records"]]
        return httpx.Response(200, json={"acks": acks})

    client = httpx.AsyncClient(base_url="http://pipeline.test", transport=httpx.MockTransport(handler))
    transport = HttpSyncTransport("http://pipeline.test", client=client)

    acks = await transport.submit("extension", [text_record("hello")])

    assert seen == {"path": "/api/sync/batch", "client_id": "extension"}
    assert acks[0].status == AckStatus.ACCEPTED


@pytest.mark.asyncio
async def test_http_transport_errors_are_retryable():
    def handler(request):
        return httpx.Response(503, text="maintenance")

    client = httpx.AsyncClient(base_url="http://pipeline.test", transport=httpx.MockTransport(handler))
    transport = HttpSyncTransport("http://pipeline.test", client=client)

    with pytest.raises(RetryableExternalError):
        await transport.submit("web", [])


@pytest.mark.asyncio
async def test_edit_of_merged_duplicate_reaches_the_server(make_services, local_queue):
    services = make_services()
    client = CaptureSyncClient("web", "user-1", local_queue, in_process(services))
    client.capture_text("buy milk")
    second = client.capture_text("buy milk")
    first_sync = await client.sync_now()
    assert first_sync.duplicates == 1

    client.edit(second.id, "buy milk and eggs", base_version=1)
    result = await client.sync_now()

    assert result.acks[0].status == AckStatus.ACCEPTED
    assert local_queue.pending_count() == 0
    texts = sorted(r.text for r in services.store.list_records(owner_id="user-1"))
    assert texts == ["buy milk", "buy milk and eggs"]


@pytest.mark.asyncio
async def test_edit_of_deleted_record_is_pruned(make_services, local_queue):
    services = make_services()
    client = CaptureSyncClient("web", "user-1", local_queue, in_process(services))
    record = client.capture_text("Dentist on Friday")
    await client.sync_now()
    await services.orchestrator.delete_record(record.id)

    client.edit(record.id, "Dentist on Thursday", base_version=2)
    result = await client.sync_now()

    assert result.success
    assert result.conflicts == 0
    assert result.acks[0].status == AckStatus.STALE
    assert local_queue.pending_count() == 0


@pytest.mark.asyncio
async def test_voice_capture_reaches_transcription_with_its_recording(test_settings, local_queue):
    transcription = FakeTranscriptionService()
    services = build_services(
        test_settings,
        transcription_service=transcription,
        enrichment_service=FakeEnrichmentService(),
    )
    assert isinstance(services.audio_store, FileAudioStore)
    client = CaptureSyncClient("web", "user-1", local_queue, in_process(services))

    record = client.capture_audio(b"real voice memo bytes", "memo-1.webm")
    assert local_queue.pending_audio("memo-1.webm") == b"real voice memo bytes"

    result = await client.sync_now()
    await services.orchestrator.run_until_idle(timeout=5)

    assert result.success
    assert (test_settings.audio_dir / "memo-1.webm").read_bytes() == b"real voice memo bytes"
    assert transcription.audio == [b"real voice memo bytes"]
    stored = services.store.get(record.id)
    assert stored.state == RecordState.COMPLETED
    assert stored.transcript == "Call Sam tomorrow at 5pm"
    assert local_queue.stored_audio_count() == 0


@pytest.mark.asyncio
async def test_voice_capture_over_http(test_settings, local_queue):
    transcription = FakeTranscriptionService()
    services = build_services(test_settings, transcription_service=transcription)
    app = create_app(services, start_workers=False)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://pipeline.test")
    client = CaptureSyncClient("web", "user-1", local_queue, HttpSyncTransport("http://pipeline.test", client=http))

    record = client.capture_audio(b"spoken over the wire", "web/memo-2.webm")
    result = await client.sync_now()
    await services.orchestrator.run_until_idle(timeout=5)
    await http.aclose()

    assert result.success
    assert result.acks[0].status == AckStatus.ACCEPTED
    assert transcription.audio == [b"spoken over the wire"]
    assert services.store.get(record.id).state == RecordState.COMPLETED


@pytest.mark.asyncio
async def test_failed_upload_keeps_capture_and_recording(local_queue):
    client = CaptureSyncClient("web", "user-1", local_queue, FailingTransport())
    client.capture_audio(b"voice memo", "memo-3.webm")

    result = await client.sync_now()

    assert not result.success
    assert local_queue.pending_count() == 1
    assert local_queue.pending_audio("memo-3.webm") == b"voice memo"


@pytest.mark.asyncio
async def test_http_transport_uploads_recording_bytes():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.content, request.headers["content-type"]))
        return httpx.Response(200, json={"success": True})

    client = httpx.AsyncClient(base_url="http://pipeline.test", transport=httpx.MockTransport(handler))
    transport = HttpSyncTransport("http://pipeline.test", client=client)

    await transport.upload_audio("web", "clips/memo.webm", b"\x00\x01audio")

    assert seen == [("/api/sync/audio/clips/memo.webm", b"\x00\x01audio", "application/octet-stream")]
