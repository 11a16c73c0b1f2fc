from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from services.errors import StorageError
from services.storage import ObjectStore, build_object_path, resolve_path_from_public_url

BASE = "https://storage.test/storage/v1/object/public"


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def test_build_object_path_is_timestamped_and_unique():
    now = datetime(2026, 10, 18, 9, 30, 0, 123456, tzinfo=timezone.utc)

    first = build_object_path("uploads", "image/jpeg", now=now)
    second = build_object_path("uploads", "image/jpeg", now=now)

    assert first.startswith("uploads/20261018T093000123456Z-")
    assert first.endswith(".jpg")
    assert first != second
    assert build_object_path("generated", None).endswith(".png")
    assert build_object_path("generated", "image/webp").endswith(".webp")


def test_public_url_round_trips_to_path():
    store = ObjectStore(MagicMock(), BASE + "/")
    url = store.public_url("input-images", "uploads/a b.png")

    assert url == f"{BASE}/input-images/uploads/a%20b.png"
    assert resolve_path_from_public_url("input-images", url) == "uploads/a b.png"
    assert resolve_path_from_public_url("output-images", url) is None
    assert resolve_path_from_public_url("input-images", None) is None


@pytest.mark.asyncio
async def test_put_rejects_disallowed_type_and_oversized_objects():
    client = MagicMock()
    store = ObjectStore(client, BASE, max_object_bytes=10)

    with pytest.raises(StorageError):
        await store.put("input-images", "a.txt", b"hi", "text/plain")
    with pytest.raises(StorageError):
        await store.put("input-images", "a.png", b"x" * 11, "image/png")

    client.put_object.assert_not_called()


@pytest.mark.asyncio
async def test_put_wraps_client_errors():
    client = MagicMock()
    client.put_object.side_effect = _client_error("InternalError", "PutObject")
    store = ObjectStore(client, BASE)

    with pytest.raises(StorageError):
        await store.put("input-images", "a.png", b"png", "image/png")


@pytest.mark.asyncio
async def test_ensure_buckets_creates_missing_buckets_with_public_policy():
    client = MagicMock()
    client.head_bucket.side_effect = _client_error("404", "HeadBucket")
    store = ObjectStore(client, BASE)

    await store.ensure_buckets(["input-images", "output-images"])

    assert [call.kwargs["Bucket"] for call in client.create_bucket.call_args_list] == [
        "input-images",
        "output-images",
    ]
    assert client.put_bucket_policy.call_count == 2
    policy = client.put_bucket_policy.call_args_list[0].kwargs["Policy"]
    assert "s3:GetObject" in policy
    assert "arn:aws:s3:::input-images/*" in policy


@pytest.mark.asyncio
async def test_ensure_buckets_is_idempotent():
    client = MagicMock()
    store = ObjectStore(client, BASE)

    await store.ensure_buckets(["input-images"])

    client.create_bucket.assert_not_called()

    client.head_bucket.side_effect = _client_error("404", "HeadBucket")
    client.create_bucket.side_effect = _client_error("BucketAlreadyOwnedByYou", "CreateBucket")
    await store.ensure_buckets(["input-images"])

    client.put_bucket_policy.assert_called_once()


@pytest.mark.asyncio
async def test_ensure_buckets_surfaces_unexpected_create_errors():
    client = MagicMock()
    client.head_bucket.side_effect = _client_error("404", "HeadBucket")
    client.create_bucket.side_effect = _client_error("AccessDenied", "CreateBucket")
    store = ObjectStore(client, BASE)

    with pytest.raises(StorageError):
        await store.ensure_buckets(["input-images"])


@pytest.mark.asyncio
async def test_delete_public_url_is_best_effort():
    client = MagicMock()
    client.delete_object.side_effect = _client_error("AccessDenied", "DeleteObject")
    store = ObjectStore(client, BASE)

    removed = await store.delete_public_url("input-images", f"{BASE}/input-images/uploads/a.png")
    skipped = await store.delete_public_url("input-images", None)

    assert removed is False
    assert skipped is False
    client.delete_object.assert_called_once_with(Bucket="input-images", Key="uploads/a.png")
