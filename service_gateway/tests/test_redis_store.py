"""
Unit tests for the Redis store adapter.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from service_gateway.app.adapters.redis_store import RedisStore, escape_glob
from shared.errors import StoreUnavailableError


class TestRedisStore:
    """Test cases for RedisStore."""

    @pytest.fixture
    def store(self):
        """Create RedisStore instance."""
        return RedisStore("redis://localhost:6379/0", timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_get_and_set_with_ttl(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.return_value = '{"id": "X"}'

            await store.set("fluxsight:pool:X", '{"id": "X"}', ttl_ms=300_000)
            value = await store.get("fluxsight:pool:X")

            mock_redis.set.assert_awaited_once_with("fluxsight:pool:X", '{"id": "X"}', px=300_000)
            assert value == '{"id": "X"}'

    @pytest.mark.asyncio
    async def test_set_if_absent(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.set.side_effect = [True, None]

            assert await store.set_if_absent("client_key:abc", "client-1") is True
            assert await store.set_if_absent("client_key:abc", "client-2") is False
            mock_redis.set.assert_awaited_with("client_key:abc", "client-2", px=None, nx=True)

    @pytest.mark.asyncio
    async def test_incr_with_expiry_uses_one_transaction(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = MagicMock()
            mock_get_redis.return_value = mock_redis

            mock_pipeline = MagicMock()
            mock_pipeline.execute = AsyncMock(return_value=[7, True])
            mock_redis.pipeline.return_value.__aenter__ = AsyncMock(return_value=mock_pipeline)
            mock_redis.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)

            count = await store.incr_with_expiry("rate_limit:client-1:0", 60_000)

            assert count == 7
            mock_redis.pipeline.assert_called_once_with(transaction=True)
            mock_pipeline.incr.assert_called_once_with("rate_limit:client-1:0")
            mock_pipeline.pexpire.assert_called_once_with("rate_limit:client-1:0", 60_000)

    @pytest.mark.asyncio
    async def test_scan_prefix(self, store):
        async def scan_iter(match, count):
            assert match == "fluxsight:swaps:X:*"
            for key in ("fluxsight:swaps:X:0", "fluxsight:swaps:X:1"):
                yield key

        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = MagicMock()
            mock_redis.scan_iter = scan_iter
            mock_get_redis.return_value = mock_redis

            keys = await store.scan_prefix("fluxsight:swaps:X:")

            assert keys == ["fluxsight:swaps:X:0", "fluxsight:swaps:X:1"]

    @pytest.mark.asyncio
    async def test_scan_prefix_matches_pattern_characters_literally(self, store):
        patterns = []

        async def scan_iter(match, count):
            patterns.append(match)
            return
            yield

        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = MagicMock()
            mock_redis.scan_iter = scan_iter
            mock_get_redis.return_value = mock_redis

            await store.scan_prefix("fluxsight:swaps:[a-z]*?:")

            assert patterns == ["fluxsight:swaps:\\[a-z\\]\\*\\?:*"]

    @pytest.mark.parametrize("text,expected", [
        ("fluxsight:swaps:0xabc:", "fluxsight:swaps:0xabc:"),
        ("*", "\\*"),
        ("a\\b", "a\\\\b"),
    ])
    def test_escape_glob(self, text, expected):
        assert escape_glob(text) == expected

    @pytest.mark.asyncio
    async def test_delete_without_keys_skips_redis(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            assert await store.delete() == 0
            mock_get_redis.assert_not_called()

    @pytest.mark.asyncio
    async def test_members(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.smembers.return_value = {"a", "b"}

            await store.add_members("clients", ["a", "b"])
            assert await store.members("clients") == {"a", "b"}
            mock_redis.sadd.assert_awaited_once_with("clients", "a", "b")

    @pytest.mark.asyncio
    async def test_redis_error_maps_to_store_unavailable(self, store):
        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_get_redis.return_value = mock_redis
            mock_redis.get.side_effect = RedisConnectionError("Connection refused")

            with pytest.raises(StoreUnavailableError) as exc_info:
                await store.get("key")

            assert exc_info.value.operation == "get"
            assert exc_info.value.status_code == 503
            assert "Connection refused" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, store):
        async def slow_get(key):
            await asyncio.sleep(1)

        with patch.object(store, '_get_redis', new_callable=AsyncMock) as mock_get_redis:
            mock_redis = AsyncMock()
            mock_redis.get = slow_get
            mock_get_redis.return_value = mock_redis

            with pytest.raises(StoreUnavailableError):
                await store.get("key")

    @pytest.mark.asyncio
    async def test_close(self, store):
        mock_redis = AsyncMock()
        store._redis = mock_redis

        await store.close()

        mock_redis.aclose.assert_awaited_once()
        assert store._redis is None
