"""Tests for server-side reconciliation of client sync batches."""

from datetime import timedelta

import pytest

from capture_pipeline.models import AckStatus, RecordState, fingerprint_text
from conftest import text_record


def edited(record, text, version):
    return record.copy(
        text=text,
        content_fingerprint=fingerprint_text(text),
        version=version,
        content_version=version,
        edited=True,
    )


@pytest.mark.asyncio
async def test_new_record_is_accepted_and_queued(make_services):
    services = make_services()
    record = text_record("Pick up the dry cleaning")

    [ack] = await services.reconciler.submit_batch("web", [record])

    assert ack.status == AckStatus.ACCEPTED
    assert ack.version == 2
    stored = services.store.get(record.id)
    assert stored.state == RecordState.QUEUED
    assert services.job_queue.counts()["pending"] == 1


@pytest.mark.asyncio
async def test_retransmit_is_stale_even_after_processing(make_services):
    services = make_services()
    record = text_record("Pick up the dry cleaning")
    await services.reconciler.submit_batch("web", [record])
    await services.orchestrator.run_until_idle(timeout=5)

    [ack] = await services.reconciler.submit_batch("web", [record])

    assert ack.status == AckStatus.STALE
    assert ack.version == services.store.get(record.id).version
    # No second pipeline run
    assert len(services.job_queue.list_jobs(record_id=record.id)) == 1


@pytest.mark.asyncio
async def test_same_content_from_another_client_is_a_duplicate(make_services):
    services = make_services()
    original = text_record("Buy oat milk")
    copy = text_record("  buy OAT milk ", origin_client_id="extension")

    await services.reconciler.submit_batch("web", [original])
    [ack] = await services.reconciler.submit_batch("extension", [copy])

    assert ack.status == AckStatus.DUPLICATE
    assert ack.canonical_id == original.id
    assert services.store.get(copy.id) is None

    # Retransmitting the duplicate gets the same answer
    [again] = await services.reconciler.submit_batch("extension", [copy])
    assert again.status == AckStatus.DUPLICATE
    assert again.canonical_id == original.id


@pytest.mark.asyncio
async def test_duplicates_are_scoped_by_owner_and_window(make_services):
    services = make_services()
    original = text_record("Buy oat milk")
    other_owner = text_record("Buy oat milk", owner_id="user-2")
    much_later = text_record("Buy oat milk", created_at=original.created_at + timedelta(hours=2))

    acks = await services.reconciler.submit_batch("web", [original, other_owner, much_later])

    assert [a.status for a in acks] == [AckStatus.ACCEPTED] * 3


@pytest.mark.asyncio
async def test_dedup_can_be_disabled(make_services, test_settings):
    config = test_settings.model_copy(update={"dedup_enabled": False})
    services = make_services(config=config)

    acks = await services.reconciler.submit_batch("web", [text_record("Buy oat milk"), text_record("Buy oat milk")])

    assert [a.status for a in acks] == [AckStatus.ACCEPTED, AckStatus.ACCEPTED]


@pytest.mark.asyncio
async def test_edit_on_current_version_is_accepted(make_services):
    services = make_services()
    record = text_record("Meet Ana at noon")
    [ack] = await services.reconciler.submit_batch("web", [record])

    [edit_ack] = await services.reconciler.submit_batch("web", [edited(record, "Meet Ana at one", ack.version + 1)])

    assert edit_ack.status == AckStatus.ACCEPTED
    assert edit_ack.version == ack.version + 1
    stored = services.store.get(record.id)
    assert stored.text == "Meet Ana at one"
    assert stored.edited
    assert stored.state == RecordState.QUEUED
    counts = services.job_queue.counts()
    assert counts["pending"] == 1
    assert counts["failed"] == 1  # the superseded job


@pytest.mark.asyncio
async def test_racing_edit_from_second_client_conflicts(make_services):
    services = make_services()
    record = text_record("Meet Ana at noon")
    [ack] = await services.reconciler.submit_batch("web", [record])

    first = edited(record, "Meet Ana at one", ack.version + 1)
    second = edited(record, "Meet Ana at two", ack.version + 1)
    [first_ack] = await services.reconciler.submit_batch("web", [first])
    [second_ack] = await services.reconciler.submit_batch("extension", [second])

    assert first_ack.status == AckStatus.ACCEPTED
    assert second_ack.status == AckStatus.CONFLICT
    assert second_ack.version == first_ack.version
    assert second_ack.record["text"] == "Meet Ana at one"
    assert services.store.get(record.id).text == "Meet Ana at one"

    # Retransmitting the accepted edit is stale, not a conflict
    [retransmit] = await services.reconciler.submit_batch("web", [first])
    assert retransmit.status == AckStatus.STALE


@pytest.mark.asyncio
async def test_version_ahead_of_server_conflicts(make_services):
    services = make_services()
    record = text_record("Meet Ana at noon")
    await services.reconciler.submit_batch("web", [record])

    [ack] = await services.reconciler.submit_batch("web", [edited(record, "Meet Ana later", 10)])

    assert ack.status == AckStatus.CONFLICT
    assert ack.version == 2
    assert "ahead" in ack.message


@pytest.mark.asyncio
async def test_batch_accepts_api_payloads_in_order(make_services):
    services = make_services()
    records = [text_record(f"note number {i}") for i in range(3)]

    acks = await services.reconciler.submit_batch("web", [r.to_api() for r in records])

    assert [a.record_id for a in acks] == [r.id for r in records]
    assert services.reconciler.stats["accepted"] == 3


@pytest.mark.asyncio
async def test_edit_of_merged_duplicate_is_admitted_as_its_own_record(make_services):
    services = make_services()
    original = text_record("buy milk")
    copy = text_record("buy milk")
    [_, merged] = await services.reconciler.submit_batch("web", [original, copy])
    assert merged.status == AckStatus.DUPLICATE

    [ack] = await services.reconciler.submit_batch("web", [edited(copy, "buy milk and eggs", 2)])

    assert ack.status == AckStatus.ACCEPTED
    assert ack.canonical_id is None
    stored = services.store.get(copy.id)
    assert stored.text == "buy milk and eggs"
    assert stored.edited
    assert services.store.get_duplicate_link(copy.id) is None
    assert services.store.get(original.id).text == "buy milk"


@pytest.mark.asyncio
async def test_edit_of_deleted_record_is_stale(make_services):
    services = make_services()
    record = text_record("Meet Ana at noon")
    [ack] = await services.reconciler.submit_batch("web", [record])
    deleted = await services.orchestrator.delete_record(record.id)

    [edit_ack] = await services.reconciler.submit_batch("web", [edited(record, "Meet Ana at one", ack.version + 1)])

    assert edit_ack.status == AckStatus.STALE
    assert edit_ack.version == deleted.version
    assert "deleted" in edit_ack.message
    assert services.store.get(record.id).text == "Meet Ana at noon"
