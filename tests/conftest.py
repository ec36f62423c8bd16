"""Pytest configuration and fixtures."""

from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from store_agent.models.core import SearchResult
from store_agent.utils.config import load_config


@pytest.fixture
def app_config():
    """Fresh configuration with fast retries and no startup sync."""
    test_config = load_config()
    test_config.llm.provider = 'ollama'
    test_config.llm.chat_timeout = 5
    test_config.llm.fallback_timeout = 5
    test_config.sync.batch_size = 2
    test_config.sync.retry_attempts = 3
    test_config.sync.retry_delay = 0
    test_config.sync.interval_minutes = 60
    test_config.sync.tick_minutes = 5
    test_config.sync.run_on_startup = False
    test_config.cache.ttl_seconds = 300
    test_config.cache.max_entries = 100
    test_config.conversation.title_length = 50
    return test_config


@pytest.fixture
def fake_index():
    """Index double that accepts every batch and counts one entry per document."""
    index = MagicMock()
    index.initialize = AsyncMock()
    index.is_ready = MagicMock(return_value=True)
    index.upsert_documents = AsyncMock(side_effect=lambda documents, sync_run=None: len(documents))
    index.delete_stale = AsyncMock(return_value=0)
    index.clear = AsyncMock(return_value=0)
    index.get_stats = AsyncMock(return_value={'total_documents': 0, 'documents_by_type': {}})
    index.similarity_search = AsyncMock(return_value=[])
    index.close = MagicMock()
    return index


def make_products(count: int) -> List[Dict[str, Any]]:
    return [{
        'id': number,
        'name': f'Widget {number}',
        'sku': f'W-{number:03d}',
        'category': 'Hardware',
        'price': 10 + number,
        'cost_price': 5,
        'stock_quantity': 20,
        'reorder_point': 5,
        'created_at': '2024-01-10T08:00:00Z'
    } for number in range(1, count + 1)]


def product_sources() -> Dict[str, Any]:
    """Record source factory referenced by dotted path in configuration tests."""

    async def products_source() -> List[Dict[str, Any]]:
        return make_products(3)

    return {'products': products_source}


def make_result(entity_type: str = 'invoices', content: str = 'Invoice INV-1 for Acme', **metadata) -> SearchResult:
    return SearchResult(id=f'{entity_type}_1',
                        content=content,
                        metadata={'entity_type': entity_type, 'entity_id': '1', **metadata},
                        similarity=0.8,
                        entity_type=entity_type)


@pytest.fixture
def products():
    return make_products(5)


@pytest.fixture
def fake_backend():
    """Generation backend double that always answers and reports healthy."""
    backend = MagicMock()
    backend.generate = MagicMock(return_value='Here is the answer.')
    backend.health_check = MagicMock(return_value=True)
    backend.close = MagicMock()
    return backend
