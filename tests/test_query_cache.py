from unittest.mock import patch

import pytest

from store_agent.services.query_cache import InMemoryQueryCache


class TestInMemoryQueryCache:

    @pytest.fixture
    def cache(self, app_config):
        app_config.cache.max_entries = 2
        return InMemoryQueryCache(app_config.cache)

    @pytest.mark.asyncio
    async def test_values_are_copied(self, cache):
        payload = {'message': 'answer', 'search_metadata': {'result_count': 2}}
        await cache.set('k', payload)
        payload['message'] = 'changed'

        first = await cache.get('k')
        first['search_metadata']['result_count'] = 99
        second = await cache.get('k')

        assert second == {'message': 'answer', 'search_metadata': {'result_count': 2}}

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache):
        with patch('store_agent.services.query_cache.monotonic', return_value=100.0) as clock:
            await cache.set('k', 'v', ttl_seconds=10)
            clock.return_value = 109.0
            assert await cache.get('k') == 'v'
            clock.return_value = 110.0
            assert await cache.get('k') is None

        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted(self, cache):
        await cache.set('a', 1)
        await cache.set('b', 2)
        await cache.set('c', 3)

        assert await cache.get('a') is None
        assert await cache.get('b') == 2
        assert await cache.get('c') == 3

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, cache):
        await cache.set('a', 1)
        await cache.set('b', 2)

        await cache.delete('a')
        assert await cache.get('a') is None

        await cache.clear()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_zero_ttl_is_not_stored(self, cache):
        await cache.set('a', 1, ttl_seconds=0)

        assert await cache.get('a') is None
