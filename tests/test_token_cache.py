"""
Tests for the supplier API token caches.
"""
import json
from unittest.mock import Mock

import pytest

from services.dropshipping.token_cache import (
    ACCESS_TOKEN_MARGIN,
    InMemoryTokenCache,
    RedisTokenCache,
    build_token_cache,
)


NOW = 1_700_000_000.0
DAY = 24 * 60 * 60


@pytest.fixture
def cache():
    return InMemoryTokenCache(clock=lambda: NOW)


@pytest.mark.unit
def test_access_token_is_reused_until_margin(cache):
    cache.store('cj', 'access-1', NOW + DAY, 'refresh-1', NOW + 180 * DAY)

    assert cache.get_access_token('cj') == 'access-1'
    assert cache.get_access_token('cj', now=NOW + DAY - ACCESS_TOKEN_MARGIN - 1) == 'access-1'
    assert cache.get_access_token('cj', now=NOW + DAY - ACCESS_TOKEN_MARGIN) is None
    # the refresh token outlives the access token
    assert cache.get_refresh_token('cj', now=NOW + 2 * DAY) == 'refresh-1'


@pytest.mark.unit
def test_expired_refresh_token(cache):
    cache.store('cj', 'access-1', NOW - 1, 'refresh-1', NOW + 10)

    assert cache.get_access_token('cj') is None
    assert cache.get_refresh_token('cj') == 'refresh-1'
    assert cache.get_refresh_token('cj', now=NOW + 11) is None


@pytest.mark.unit
def test_unknown_supplier(cache):
    assert cache.get_access_token('nobody') is None
    assert cache.get_refresh_token('nobody') is None


@pytest.mark.unit
def test_invalidate_and_clear(cache):
    cache.store(1, 'a', NOW + DAY)
    cache.store(2, 'b', NOW + DAY)

    cache.invalidate('1')
    assert cache.get_access_token(1) is None
    assert cache.get_access_token(2) == 'b'

    cache.clear()
    assert cache.load(2) is None


@pytest.mark.unit
def test_redis_cache_stores_json_with_ttl():
    """Test that the Redis cache writes JSON entries that expire with the tokens."""
    client = Mock()
    cache = RedisTokenCache(client, clock=lambda: NOW)

    cache.store('cj', 'access-1', NOW + DAY, 'refresh-1', NOW + 180 * DAY)

    key, ttl, payload = client.setex.call_args[0]
    assert key == 'uniqverse:supplier_tokens:cj'
    assert ttl == 180 * DAY
    assert json.loads(payload)['access_token'] == 'access-1'

    client.get.return_value = payload
    assert cache.get_access_token('cj') == 'access-1'
    assert cache.get_refresh_token('cj') == 'refresh-1'


@pytest.mark.unit
def test_redis_cache_drops_expired_and_unreadable_entries():
    client = Mock()
    cache = RedisTokenCache(client, clock=lambda: NOW)

    cache.store('cj', 'access-1', NOW - 5)
    client.delete.assert_called_with('uniqverse:supplier_tokens:cj')
    client.setex.assert_not_called()

    client.reset_mock()
    client.get.return_value = 'not json'
    assert cache.load('cj') is None
    client.delete.assert_called_once_with('uniqverse:supplier_tokens:cj')


@pytest.mark.unit
def test_redis_cache_clear_scans_prefix():
    client = Mock()
    client.scan_iter.return_value = iter(['uniqverse:supplier_tokens:1', 'uniqverse:supplier_tokens:2'])
    cache = RedisTokenCache(client, clock=lambda: NOW)

    cache.clear()

    client.scan_iter.assert_called_once_with(match='uniqverse:supplier_tokens:*', count=100)
    client.delete.assert_called_once_with('uniqverse:supplier_tokens:1', 'uniqverse:supplier_tokens:2')


@pytest.mark.unit
def test_build_without_redis_uses_memory():
    assert isinstance(build_token_cache(None), InMemoryTokenCache)
