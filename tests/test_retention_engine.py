"""
Tests for RetentionEngine: continuous cleanup, session policy and usage.
"""

import json
from datetime import timedelta

import pytest

from faultlab.core.exceptions import SessionNotFound, StorageFailure
from faultlab.core.models import RetentionPolicy, SessionRetention, utcnow
from faultlab.retention.engine import RetentionEngine, continuous_key_date, session_id_from_key


def day(offset_days: int) -> str:
    return (utcnow() - timedelta(days=offset_days)).strftime("%Y-%m-%d")


async def put_session(store, session_id: str, age_days: float, status: str = "completed", blobs: int = 2):
    start = utcnow() - timedelta(days=age_days)
    metadata = {"sessionId": session_id, "startTime": start.isoformat(), "status": status}
    await store.put(f"sessions/{session_id}/metadata.json", json.dumps(metadata).encode())
    for i in range(blobs):
        await store.put(f"sessions/{session_id}/raw/traces/{i}.otlp.gz", b"x" * 100)


@pytest.fixture
def engine(store):
    return RetentionEngine(store, cleanup_page_cap=5000, delete_concurrency=4, usage_sample_cap=1000)


class TestKeyParsing:
    def test_continuous_key_date(self):
        parsed = continuous_key_date("continuous/2025-01-31/traces/a.otlp.gz")
        assert (parsed.year, parsed.month, parsed.day, parsed.hour) == (2025, 1, 31, 0)
        assert parsed.tzinfo is not None

    def test_undatable_keys(self):
        assert continuous_key_date("continuous/2025-02-30/traces/a") is None
        assert continuous_key_date("continuous/latest/traces/a") is None
        assert continuous_key_date("sessions/2025-01-01/x") is None

    def test_session_id_from_key(self):
        assert session_id_from_key("sessions/abc/metadata.json") == "abc"
        assert session_id_from_key("sessions/abc") is None
        assert session_id_from_key("continuous/abc/x") is None


class TestCleanupContinuous:
    @pytest.mark.asyncio
    async def test_deletes_only_expired_dated_keys(self, engine, store):
        await store.put(f"continuous/{day(10)}/traces/old.otlp.gz", b"a" * 10)
        await store.put(f"continuous/{day(9)}/metrics/old.otlp.gz", b"b" * 20)
        await store.put(f"continuous/{day(1)}/traces/new.otlp.gz", b"c" * 30)
        await store.put("continuous/2025-13-45/traces/bad.otlp.gz", b"d")
        await store.put("continuous/misc/readme", b"e")
        await store.put("sessions/s1/metadata.json", b"{}")

        result = await engine.cleanup_continuous_data(7)

        assert result.deleted_objects == 2
        assert result.freed_space_bytes == 30
        assert result.errors == []
        assert result.processed_paths == ["continuous/"]
        assert store.keys("continuous/") == sorted([
            f"continuous/{day(1)}/traces/new.otlp.gz",
            "continuous/2025-13-45/traces/bad.otlp.gz",
            "continuous/misc/readme",
        ])
        assert store.keys("sessions/") == ["sessions/s1/metadata.json"]

    @pytest.mark.asyncio
    async def test_delete_failures_are_collected(self, engine, store):
        bad = f"continuous/{day(30)}/traces/stuck.otlp.gz"
        await store.put(bad, b"a" * 10)
        await store.put(f"continuous/{day(30)}/traces/ok.otlp.gz", b"b" * 5)
        store.fail_deletes.add(bad)

        result = await engine.cleanup_continuous_data(7)
        assert result.deleted_objects == 1
        assert result.freed_space_bytes == 5
        assert len(result.errors) == 1
        assert bad in result.errors[0]

    @pytest.mark.asyncio
    async def test_listing_is_capped(self, store):
        for i in range(30):
            await store.put(f"continuous/{day(40)}/traces/{i:03d}", b"x")
        engine = RetentionEngine(store, cleanup_page_cap=10)

        result = await engine.cleanup_continuous_data(7)
        assert result.deleted_objects == 10
        assert store.listed_objects == 10
        assert len(store.keys("continuous/")) == 20

    @pytest.mark.asyncio
    async def test_listing_failure_never_raises(self, engine, store):
        store.fail_list = True
        result = await engine.cleanup_continuous_data(7)
        assert result.deleted_objects == 0
        assert result.errors and "list" in result.errors[0]

    @pytest.mark.asyncio
    async def test_zero_days_deletes_every_dated_key(self, engine, store):
        await store.put(f"continuous/{day(1)}/traces/a", b"x")
        await store.put(f"continuous/{day(0)}/traces/b", b"x")
        result = await engine.cleanup_continuous_data(0)
        assert result.deleted_objects == 2


class TestManageSessionData:
    @pytest.mark.asyncio
    async def test_young_session_untouched(self, engine, store):
        await put_session(store, "young", age_days=1)
        outcome = await engine.manage_session_data("young", SessionRetention(max_retention_days=30))

        assert outcome.deleted is False
        assert outcome.cleanup is None
        assert 0.9 < outcome.age_days < 1.1
        assert len(store.keys("sessions/young/")) == 3

    @pytest.mark.asyncio
    async def test_old_session_deleted(self, engine, store):
        await put_session(store, "old", age_days=100, blobs=3)
        await put_session(store, "other", age_days=100)
        outcome = await engine.manage_session_data("old", SessionRetention(max_retention_days=90))

        assert outcome.deleted is True
        assert outcome.cleanup.deleted_objects == 4
        assert store.keys("sessions/old/") == []
        assert len(store.keys("sessions/other/")) == 3

    @pytest.mark.asyncio
    async def test_cleanup_disabled_keeps_data(self, engine, store):
        await put_session(store, "old", age_days=100)
        outcome = await engine.manage_session_data(
            "old", SessionRetention(max_retention_days=90, cleanup_enabled=False)
        )
        assert outcome.deleted is False
        assert len(store.keys("sessions/old/")) == 3

    @pytest.mark.asyncio
    async def test_archive_eligibility_is_reported_only(self, engine, store):
        await put_session(store, "mid", age_days=20)
        outcome = await engine.manage_session_data(
            "mid", RetentionPolicy(sessions=SessionRetention(archive_after_days=10, max_retention_days=90))
        )
        assert outcome.archive_eligible is True
        assert outcome.deleted is False
        assert len(store.keys("sessions/mid/")) == 3

    @pytest.mark.asyncio
    async def test_missing_metadata(self, engine, store):
        await store.put("sessions/orphan/raw/traces/a", b"x")
        with pytest.raises(SessionNotFound):
            await engine.manage_session_data("orphan", SessionRetention())

    @pytest.mark.asyncio
    async def test_unparseable_metadata(self, engine, store):
        await store.put("sessions/bad/metadata.json", b"not json")
        with pytest.raises(StorageFailure) as exc:
            await engine.manage_session_data("bad", SessionRetention())
        assert exc.value.session_id == "bad"

        await store.put("sessions/nostart/metadata.json", b"{}")
        with pytest.raises(StorageFailure):
            await engine.manage_session_data("nostart", SessionRetention())

    @pytest.mark.asyncio
    async def test_unreadable_metadata(self, engine, store):
        await put_session(store, "locked", age_days=1)
        store.fail_gets.add("sessions/locked/metadata.json")
        with pytest.raises(StorageFailure):
            await engine.manage_session_data("locked", SessionRetention())


class TestDeleteSessionData:
    @pytest.mark.asyncio
    async def test_deletes_whole_prefix(self, engine, store):
        await put_session(store, "gone", age_days=1, blobs=2)
        await put_session(store, "gone-too", age_days=1, blobs=1)

        result = await engine.delete_session_data("gone")
        assert result.deleted_objects == 3
        assert result.freed_space_bytes > 200
        assert result.processed_paths == ["sessions/gone/"]
        assert store.keys("sessions/gone/") == []
        assert len(store.keys("sessions/gone-too/")) == 2

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_metadata_for_retry(self, engine, store):
        await put_session(store, "s1", age_days=100, blobs=2)
        stuck = "sessions/s1/raw/traces/0.otlp.gz"
        store.fail_deletes.add(stuck)
        policy = SessionRetention(max_retention_days=90)

        first = await engine.apply_session_policy(policy)
        assert first.deleted_objects == 1
        assert len(first.errors) == 1 and stuck in first.errors[0]
        assert store.keys("sessions/s1/") == ["sessions/s1/metadata.json", stuck]

        store.fail_deletes.clear()
        second = await engine.apply_session_policy(policy)
        assert second.errors == []
        assert second.deleted_objects == 2
        assert store.keys("sessions/s1/") == []

    @pytest.mark.asyncio
    async def test_listing_failure_raises(self, engine, store):
        store.fail_list = True
        with pytest.raises(StorageFailure) as exc:
            await engine.delete_session_data("any")
        assert exc.value.session_id == "any"


class TestApplySessionPolicy:
    @pytest.mark.asyncio
    async def test_applies_to_every_session(self, engine, store):
        await put_session(store, "a-old", age_days=200)
        await put_session(store, "b-new", age_days=2)
        await store.put("sessions/c-orphan/raw/traces/x", b"x")

        assert await engine.list_session_ids() == ["a-old", "b-new", "c-orphan"]

        result = await engine.apply_session_policy(SessionRetention(max_retention_days=90))
        assert result.deleted_objects == 3
        assert len(result.errors) == 1
        assert "c-orphan" in result.errors[0]
        assert store.keys("sessions/a-old/") == []
        assert len(store.keys("sessions/b-new/")) == 3


class TestStorageUsage:
    @pytest.mark.asyncio
    async def test_metrics(self, engine, store):
        await store.put(f"continuous/{day(5)}/traces/a", b"x" * 10)
        await store.put(f"continuous/{day(2)}/traces/b", b"x" * 20)
        await put_session(store, "active", age_days=0, status="active", blobs=1)
        await put_session(store, "done", age_days=3, status="completed", blobs=1)

        metrics = await engine.get_storage_usage()
        assert metrics.exact is False
        assert metrics.sample_cap == 1000
        assert metrics.continuous.total_objects == 2
        assert metrics.continuous.total_size_bytes == 30
        assert metrics.continuous.oldest_object_date < metrics.continuous.newest_object_date
        assert metrics.sessions.total_objects == 4
        assert metrics.sessions.active_sessions == 1
        assert metrics.sessions.completed_sessions == 1
        assert metrics.total_size_bytes == metrics.continuous.total_size_bytes + metrics.sessions.total_size_bytes

    @pytest.mark.asyncio
    async def test_sample_cap_bounds_listing(self, engine, store):
        for i in range(50):
            await store.put(f"continuous/{day(1)}/traces/{i:03d}", b"x")

        metrics = await engine.get_storage_usage(sample_cap=20)
        assert metrics.continuous.total_objects == 20
        assert metrics.continuous.truncated is True
        assert store.listed_objects == 20

    @pytest.mark.asyncio
    async def test_listing_failure_degrades_to_empty(self, engine, store):
        await store.put(f"continuous/{day(1)}/traces/a", b"x")
        store.fail_list = True
        metrics = await engine.get_storage_usage()
        assert metrics.total_size_bytes == 0
        assert metrics.continuous.total_objects == 0


class TestArchive:
    @pytest.mark.asyncio
    async def test_archive_is_a_no_op(self, engine, store):
        await put_session(store, "old", age_days=500)
        result = await engine.archive_old_sessions(30)
        assert result.deleted_objects == 0
        assert result.errors == []
        assert result.processed_paths == ["sessions/"]
        assert len(store.keys("sessions/old/")) == 3
