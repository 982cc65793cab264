"""Tests for the sync layer."""
import asyncio

import pytest

from conftest import FakeRemoteStore, make_set
from flashdrill.models.study_models import ReviewState, SyncBucket, SyncStatus
from flashdrill.services.local_store import LocalStore
from flashdrill.services.sync_service import (
    LOCAL_ACCOUNT,
    SYNC_CUSTOM,
    SYNC_PRIORITY,
    SYNC_RECORDS,
    SYNC_SRS,
    Bucket,
    SyncService,
    load_account,
    local_records_key,
    local_srs_key,
    save_account,
)

RECORD = {"date": "2026-03-09", "mode": "chunk", "sets": 2, "correct": 7, "words": 10}


def envelope(data) -> dict:
    return {"version": 1, "updatedAt": 1767225600000, "data": data}


def test_storage_keys() -> None:
    """Test the persisted key names."""
    assert (SYNC_CUSTOM, SYNC_PRIORITY, SYNC_RECORDS, SYNC_SRS) == (
        "fr_custom_v7",
        "fr_priority_v7",
        "fr_records_v7",
        "fr_srs_v7",
    )
    assert LOCAL_ACCOUNT == "fr_account_v7"
    assert local_records_key("child") == "fr_records_v7_child"
    assert local_srs_key("parent") == "fr_srs_v7_parent"


def test_unwrap() -> None:
    """Test envelope unwrapping with both payload keys and bare values."""
    assert SyncBucket.unwrap({"data": [1]}, []) == [1]
    assert SyncBucket.unwrap({"payload": {"a": 1}}, {}) == {"a": 1}
    assert SyncBucket.unwrap([2], []) == [2]
    assert SyncBucket.unwrap(None, {}) == {}
    assert SyncBucket.unwrap({"data": None}, []) == []


def test_account_marker(local: LocalStore) -> None:
    """Test the active account marker defaults to child."""
    assert load_account(local) == "child"
    save_account(local, "parent")
    assert load_account(local) == "parent"
    local.set(LOCAL_ACCOUNT, "guest")
    assert load_account(local) == "child"


def test_unknown_account_rejected(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test that only child and parent are accepted."""
    with pytest.raises(ValueError):
        SyncService(local, remote, "guest")


def test_initial_state_comes_from_local_cache(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test that a new service starts from cached values."""
    local.set(SYNC_PRIORITY, envelope({"w_chunk_01": 1}))
    local.set(local_records_key("child"), [RECORD])

    sync = SyncService(local, remote, "child")

    assert sync.status == SyncStatus.IDLE
    assert not sync.ready
    assert sync.priority_overrides == {"w_chunk_01": 1}
    assert sync.records == [RECORD]
    assert sync.custom_sets == []


@pytest.mark.asyncio
async def test_pull_failure_keeps_cached_values(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test an unreachable shared store."""
    local.set(local_records_key("child"), [RECORD])
    sync = SyncService(local, remote, "child", settle_delay=0.01)
    remote.fail = True

    assert not await sync.pull()

    assert sync.status == SyncStatus.ERROR
    assert sync.ready
    assert sync.records == [RECORD]

    # Errors stay visible until the next operation
    await asyncio.sleep(0.05)
    assert sync.status == SyncStatus.ERROR


@pytest.mark.asyncio
async def test_pull_refreshes_memory_and_cache(
    sync: SyncService, local: LocalStore, remote: FakeRemoteStore
) -> None:
    """Test a successful pull of all buckets."""
    custom = make_set("custom_1").to_dict()
    remote.put_json(SYNC_CUSTOM, envelope([custom]))
    remote.put_json(SYNC_PRIORITY, envelope({"w_cvc_03": 3}))
    remote.put_json(SYNC_RECORDS, envelope({"child": [RECORD], "parent": []}))
    remote.put_json(SYNC_SRS, envelope({"child": {"w_cvc_01": {"level": 2, "due": "2026-03-12"}}}))

    assert await sync.pull()

    assert sync.status == SyncStatus.OK
    assert sync.custom_sets == [custom]
    assert sync.priority_overrides == {"w_cvc_03": 3}
    assert sync.records == [RECORD]
    assert sync.get_review_states()["w_cvc_01"] == ReviewState(level=2, due="2026-03-12")
    assert local.get(SYNC_CUSTOM)["data"] == [custom]
    assert local.get(local_records_key("child")) == [RECORD]
    assert local.get(local_srs_key("parent")) == {}


@pytest.mark.asyncio
async def test_pull_accepts_payload_key(sync: SyncService, remote: FakeRemoteStore) -> None:
    """Test the alternate envelope payload key."""
    remote.put_json(SYNC_PRIORITY, {"version": 1, "updatedAt": 0, "payload": {"w_chunk_02": 0}})

    await sync.pull()

    assert sync.priority_overrides == {"w_chunk_02": 0}


@pytest.mark.asyncio
async def test_pull_falls_back_on_malformed_remote(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test that empty or malformed shared values never wipe the cache."""
    local.set(SYNC_PRIORITY, envelope({"w_chunk_01": 2}))
    local.set(local_records_key("child"), [RECORD])
    remote.data[SYNC_PRIORITY] = "{not json"
    remote.put_json(SYNC_RECORDS, envelope("wrong shape"))
    sync = SyncService(local, remote, "child")

    assert await sync.pull()

    assert sync.priority_overrides == {"w_chunk_01": 2}
    assert sync.records == [RECORD]


@pytest.mark.asyncio
async def test_pull_keeps_cached_slice_of_malformed_account(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test that one account's malformed shared entry keeps its local copy."""
    cached = {"w_chunk_01": {"level": 3, "due": "2026-03-17"}}
    local.set(local_srs_key("child"), cached)
    remote.put_json(SYNC_SRS, envelope({"child": "garbage", "parent": {"w_col_01": {"level": 1}}}))
    sync = SyncService(local, remote, "child")

    assert await sync.pull()

    assert sync.review_state == cached
    assert local.get(local_srs_key("child")) == cached
    assert local.get(local_srs_key("parent")) == {"w_col_01": {"level": 1}}


@pytest.mark.asyncio
async def test_push_before_pull_is_deferred(sync: SyncService, remote: FakeRemoteStore) -> None:
    """Test that nothing reaches the shared store before the first pull."""
    custom = make_set("custom_1").to_dict()

    pushed = await sync.push(Bucket.CUSTOM_SETS, lambda sets: sets + [custom])
    sync.set_records([RECORD])
    await sync.drain()

    assert not pushed
    assert sync.custom_sets == [custom]
    assert sync.records == [RECORD]
    assert remote.writes == []


@pytest.mark.asyncio
async def test_push_then_pull_round_trip(local: LocalStore, remote: FakeRemoteStore) -> None:
    """Test that another device sees pushed changes."""
    device_a = SyncService(local, remote, "child")
    await device_a.pull()
    await device_a.push(Bucket.PRIORITY, lambda prev: {**prev, "w_chunk_01": 1})
    await device_a.push(Bucket.RECORDS, lambda records: records + [RECORD])

    # A second device starts with an empty cache
    local.delete(SYNC_PRIORITY)
    local.delete(local_records_key("child"))
    device_b = SyncService(local, remote, "child")
    assert device_b.records == []

    await device_b.pull()

    assert device_b.priority_overrides == {"w_chunk_01": 1}
    assert device_b.records == [RECORD]


@pytest.mark.asyncio
async def test_account_push_preserves_other_account(sync: SyncService, remote: FakeRemoteStore) -> None:
    """Test that a per-account push only replaces the active account."""
    parent_record = {**RECORD, "mode": "sentence"}
    remote.put_json(SYNC_RECORDS, envelope({"parent": [parent_record]}))
    await sync.pull()

    await sync.push_account(Bucket.RECORDS, [RECORD])

    shared = remote.get_json(SYNC_RECORDS)["data"]
    assert shared == {"child": [RECORD], "parent": [parent_record]}


@pytest.mark.asyncio
async def test_account_push_rereads_remote(sync: SyncService, remote: FakeRemoteStore) -> None:
    """Test that a parent write after our pull survives our push."""
    await sync.pull()
    remote.put_json(SYNC_SRS, envelope({"parent": {"w_col_03": {"level": 1}}}))

    sync.put_review_state("w_cvc_01", ReviewState(level=1, due="2026-03-11"))
    await sync.drain()

    shared = remote.get_json(SYNC_SRS)["data"]
    assert shared["parent"] == {"w_col_03": {"level": 1}}
    assert shared["child"]["w_cvc_01"]["due"] == "2026-03-11"


@pytest.mark.asyncio
async def test_push_failure_keeps_local_value(sync: SyncService, remote: FakeRemoteStore) -> None:
    """Test that a failed write does not roll back the local change."""
    await sync.pull()
    remote.fail = True

    assert not await sync.push(Bucket.PRIORITY, lambda prev: {**prev, "w_sen_01": 0})

    assert sync.status == SyncStatus.ERROR
    assert sync.priority_overrides == {"w_sen_01": 0}
    assert sync.local.get(SYNC_PRIORITY)["data"] == {"w_sen_01": 0}


@pytest.mark.asyncio
async def test_status_settles_back_to_idle(sync: SyncService) -> None:
    """Test the ok -> idle settle and the listener notifications."""
    seen = []
    sync.add_status_listener(seen.append)

    await sync.pull()
    assert sync.status == SyncStatus.OK
    await asyncio.sleep(0.1)

    assert sync.status == SyncStatus.IDLE
    assert seen == [SyncStatus.SYNCING, SyncStatus.OK, SyncStatus.IDLE]


@pytest.mark.asyncio
async def test_records_of_other_account(sync: SyncService, local: LocalStore) -> None:
    """Test reading and resetting another account's local records."""
    local.set(local_records_key("parent"), [RECORD, {"bad": "row"}])

    assert [r.date for r in sync.get_records("parent")] == ["2026-03-09"]
    sync.reset_records("parent")
    assert sync.get_records("parent") == []


@pytest.mark.asyncio
async def test_reset_review_state(sync: SyncService) -> None:
    """Test the explicit bulk reset."""
    await sync.pull()
    sync.put_review_state("w_cvc_01", ReviewState(level=3))

    sync.reset_review_state()
    await sync.close()

    assert sync.get_review_states() == {}
