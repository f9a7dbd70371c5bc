"""
Unit tests for the object store contract, bounded listing and the S3 adapter.
"""

import io

import pytest
from botocore.exceptions import ClientError

from faultlab.core.config import ObjectStoreSettings
from faultlab.core.exceptions import ObjectNotFound, StorageFailure
from faultlab.storage.object_store import InMemoryObjectStore, ObjectStore, collect_objects
from faultlab.storage.s3_store import S3ObjectStore


async def fill(store, prefix: str, count: int, size: int = 4):
    for i in range(count):
        await store.put(f"{prefix}{i:05d}", b"x" * size)


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryObjectStore(), ObjectStore)

    @pytest.mark.asyncio
    async def test_put_get_head_delete(self, store):
        await store.put("sessions/a/metadata.json", b"{}")
        assert await store.get("sessions/a/metadata.json") == b"{}"

        info = await store.head("sessions/a/metadata.json")
        assert info.size == 2
        assert info.last_modified is not None

        await store.delete("sessions/a/metadata.json")
        assert await store.head("sessions/a/metadata.json") is None
        with pytest.raises(ObjectNotFound):
            await store.get("sessions/a/metadata.json")

        # Deleting a missing key is not an error
        await store.delete("sessions/a/metadata.json")

    @pytest.mark.asyncio
    async def test_listing_is_prefix_scoped_and_paginated(self, store):
        await fill(store, "continuous/2025-01-01/", 5)
        await store.put("sessions/s1/metadata.json", b"{}")

        page = await store.list_objects("continuous/", max_keys=2)
        assert [o.key for o in page.objects] == ["continuous/2025-01-01/00000", "continuous/2025-01-01/00001"]
        assert page.is_truncated

        page = await store.list_objects("continuous/", max_keys=10, continuation_token=page.next_token)
        assert len(page.objects) == 3
        assert page.next_token is None

    @pytest.mark.asyncio
    async def test_injected_failures(self, store):
        await store.put("k", b"1")
        store.fail_deletes.add("k")
        store.fail_gets.add("k")
        with pytest.raises(StorageFailure):
            await store.delete("k")
        with pytest.raises(StorageFailure):
            await store.get("k")

        store.fail_list = True
        with pytest.raises(StorageFailure):
            await store.list_objects("")


class TestCollectObjects:
    @pytest.mark.asyncio
    async def test_never_lists_more_than_limit(self, store):
        await fill(store, "continuous/2025-01-01/", 2500, size=1)

        collected = await collect_objects(store, "continuous/", 1200)
        assert len(collected.objects) == 1200
        assert collected.truncated is True
        assert collected.pages == 2
        assert store.listed_objects == 1200

    @pytest.mark.asyncio
    async def test_small_namespace(self, store):
        await fill(store, "sessions/s1/", 3)
        collected = await collect_objects(store, "sessions/", 1000)
        assert len(collected.objects) == 3
        assert collected.truncated is False


class FakeS3Client:
    """Just enough of the boto3 S3 client for S3ObjectStore."""

    def __init__(self):
        self.objects = {}
        self.put_kwargs = []

    def _missing(self, op):
        return ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, op)

    def list_objects_v2(self, **kwargs):
        prefix = kwargs.get("Prefix", "")
        keys = sorted(k for k in self.objects if k.startswith(prefix))
        start = kwargs.get("ContinuationToken")
        if start:
            keys = [k for k in keys if k > start]
        page = keys[: kwargs["MaxKeys"]]
        out = {
            "Contents": [{"Key": k, "Size": len(self.objects[k])} for k in page],
            "IsTruncated": len(keys) > len(page),
        }
        if out["IsTruncated"]:
            out["NextContinuationToken"] = page[-1]
        return out

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise self._missing("GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def put_object(self, **kwargs):
        self.put_kwargs.append(kwargs)
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)
        return {}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def head_bucket(self, Bucket):
        return {}


class TestS3ObjectStore:
    """S3ObjectStore against an in-process fake client."""

    @pytest.fixture
    def s3(self):
        client = FakeS3Client()
        config = ObjectStoreSettings()
        return S3ObjectStore(config, client=client), client

    @pytest.mark.asyncio
    async def test_roundtrip(self, s3):
        store, client = s3
        await store.put("sessions/a/metadata.json", b"{}", "application/json")
        assert client.put_kwargs[0]["ContentType"] == "application/json"
        assert await store.get("sessions/a/metadata.json") == b"{}"
        assert (await store.head("sessions/a/metadata.json")).size == 2

        await store.delete("sessions/a/metadata.json")
        assert await store.head("sessions/a/metadata.json") is None

    @pytest.mark.asyncio
    async def test_missing_key_maps_to_object_not_found(self, s3):
        store, _ = s3
        with pytest.raises(ObjectNotFound):
            await store.get("nope")

    @pytest.mark.asyncio
    async def test_pagination(self, s3):
        store, client = s3
        for i in range(5):
            client.objects[f"continuous/2025-01-01/{i}"] = b"abc"
        collected = await collect_objects(store, "continuous/", 4)
        assert len(collected.objects) == 4
        assert collected.truncated is True
        assert all(o.size == 3 for o in collected.objects)

    @pytest.mark.asyncio
    async def test_client_errors_become_storage_failures(self, s3):
        store, client = s3

        def boom(**kwargs):
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "throttled"}}, "ListObjectsV2")

        client.list_objects_v2 = boom
        with pytest.raises(StorageFailure) as exc:
            await store.list_objects("continuous/")
        assert exc.value.retryable is True
