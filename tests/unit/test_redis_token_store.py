"""Tests for the Redis response token store."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from redis.exceptions import ConnectionError

from app.core.rescheduling.errors import StorageError
from app.core.rescheduling.models import AvailabilitySlot
from app.core.rescheduling.tokens import ResponseTokenData
from app.infra.redis import RedisTokenStore


def make_data(expires_in: timedelta = timedelta(hours=24)) -> ResponseTokenData:
    start = datetime(2030, 3, 4, 10, 0, tzinfo=timezone.utc)
    return ResponseTokenData(
        token="abc_req12345",
        rescheduling_request_id="req-1",
        tenant_id="tenant-1",
        contact_id="contact-1",
        expires_at=datetime.now(timezone.utc) + expires_in,
        available_slots=[AvailabilitySlot(start, start + timedelta(hours=1), 60)],
    )


@pytest.fixture
def mock_redis():
    client = MagicMock()
    client.setex = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.getdel = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.mget = AsyncMock(return_value=[])
    return client


@pytest.fixture
def store(mock_redis):
    return RedisTokenStore(redis_client=mock_redis)


class TestRedisTokenStore:
    """Test RedisTokenStore against a mocked client."""

    @pytest.mark.asyncio
    async def test_put_sets_ttl(self, store, mock_redis):
        await store.put(make_data())

        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == "reschedule:v1:token:abc_req12345"
        assert 23 * 3600 < ttl <= 24 * 3600
        assert json.loads(payload)["rescheduling_request_id"] == "req-1"

    @pytest.mark.asyncio
    async def test_ttl_follows_issue_time(self, store, mock_redis):
        """TTL is the issued lifetime, not the time left on the wall clock."""
        issued = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
        data = make_data()
        data.created_at = issued
        data.expires_at = issued + timedelta(hours=12)

        await store.put(data)

        _, ttl, _ = mock_redis.setex.call_args.args
        assert ttl == 12 * 3600

    @pytest.mark.asyncio
    async def test_get_and_pop_decode(self, store, mock_redis):
        raw = json.dumps(make_data().to_dict())
        mock_redis.get.return_value = raw
        mock_redis.getdel.return_value = raw

        fetched = await store.get("abc_req12345")
        popped = await store.pop("abc_req12345")

        assert fetched.available_slots[0].duration == 60
        assert popped.tenant_id == "tenant-1"
        mock_redis.getdel.assert_awaited_once_with("reschedule:v1:token:abc_req12345")

    @pytest.mark.asyncio
    async def test_pop_missing(self, store):
        assert await store.pop("gone") is None

    @pytest.mark.asyncio
    async def test_items_scans_namespace(self, store, mock_redis):
        async def scan_iter(match):
            assert match == "reschedule:v1:token:*"
            yield "reschedule:v1:token:abc_req12345"

        mock_redis.scan_iter = scan_iter
        mock_redis.mget.return_value = [json.dumps(make_data().to_dict()), None]

        items = await store.items()

        assert [d.token for d in items] == ["abc_req12345"]

    @pytest.mark.asyncio
    async def test_redis_error_raises_storage_error(self, store, mock_redis):
        mock_redis.setex.side_effect = ConnectionError("connection refused")

        with pytest.raises(StorageError):
            await store.put(make_data())

    @pytest.mark.asyncio
    async def test_unavailable_redis(self):
        with patch("app.infra.redis.get_redis", AsyncMock(return_value=None)):
            store = RedisTokenStore()

            with pytest.raises(StorageError):
                await store.get("abc_req12345")
