"""
AI agent service: the top-level coordinator for store assistant queries.

Ties together the query cache, conversation lifecycle, retrieval and generation,
performance metrics and the background index synchronization.
"""

import asyncio
import hashlib
import time
import uuid
from dataclasses import asdict
from enum import Enum
from typing import Any, Dict, Optional

from ..models.core import PerformanceMetrics, SearchFilters
from ..utils.config import AppConfig, config
from ..utils.errors import AuthorizationError, InitializationError, UpstreamError, ValidationError
from ..utils.health_check import check_health, get_data_quality_report, get_health_status, get_system_info
from ..utils.logging_config import get_logger, truncate_for_log
from ..utils.timestamp_utils import elapsed_ms, to_iso, utc_now
from .conversation_store import ConversationStore, build_repository
from .document_sync import DocumentSyncer, RecordSource, load_sources
from .embedding_index import EmbeddingIndex
from .enhanced_search import EnhancedSearch
from .llm_provider import ChatOptions, LanguageModelProvider
from .metadata_extraction import extract_metadata_from_query
from .query_cache import InMemoryQueryCache, QueryCache
from .scheduled_sync import ScheduledSync

logger = get_logger(__name__)


class ServiceState(str, Enum):
    CREATED = 'created'
    INITIALIZING = 'initializing'
    READY = 'ready'
    SHUTTING_DOWN = 'shutting_down'
    STOPPED = 'stopped'


class AgentService:
    """Store assistant service.

    Args:
        sources: Entity type to an async callable returning that type's records,
            loaded from ``sync.sources_factory`` if None
        index: Embedding index, built from config if None
        provider: Language model provider, built from config if None
        conversations: Conversation store, built from config if None
        cache: Query cache, in-memory if None
        app_config: Configuration, uses the process default if None
    """

    def __init__(self,
                 sources: Optional[Dict[str, RecordSource]] = None,
                 index: Optional[EmbeddingIndex] = None,
                 provider: Optional[LanguageModelProvider] = None,
                 conversations: Optional[ConversationStore] = None,
                 cache: Optional[QueryCache] = None,
                 app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.metrics = PerformanceMetrics()
        self.index = index or EmbeddingIndex(app_config=self.config)
        self.provider = provider or LanguageModelProvider(EnhancedSearch(self.index), app_config=self.config)
        self.conversations = conversations or ConversationStore(build_repository(self.config), self.config)
        self.cache = cache or InMemoryQueryCache(self.config.cache)
        if sources is None:
            sources = load_sources(self.config.sync.sources_factory)
        self.syncer = DocumentSyncer(self.index, sources, self.config)
        self.scheduler = ScheduledSync(self.syncer, self.metrics, self.config.sync)
        self.state = ServiceState.CREATED

    @property
    def is_ready(self) -> bool:
        return self.state == ServiceState.READY

    async def startup(self) -> None:
        """Initialize the index, provider and conversation storage, then start the sync schedule.

        Raises:
            RuntimeError: If the service was already started
            AgentError: If a component fails to initialize
        """
        if self.state != ServiceState.CREATED:
            raise RuntimeError(f'AI Agent cannot start from state {self.state.value}')

        self.state = ServiceState.INITIALIZING
        logger.info('Initializing AI Agent service')
        try:
            await self.index.initialize()
            await self.provider.initialize()
            await self.conversations.initialize()
            await self.scheduler.start()
        except Exception as e:
            logger.error(f'AI Agent initialization failed: {e}')
            self.state = ServiceState.STOPPED
            raise

        self.state = ServiceState.READY
        logger.info(f'AI Agent service ready with provider {self.provider.get_current_provider()}')

    async def shutdown(self) -> None:
        if self.state in (ServiceState.SHUTTING_DOWN, ServiceState.STOPPED):
            return

        self.state = ServiceState.SHUTTING_DOWN
        logger.info('Shutting down AI Agent service')
        await self.scheduler.stop()
        self.provider.close()
        self.index.close()
        self.state = ServiceState.STOPPED

    def _require_ready(self) -> None:
        if self.state != ServiceState.READY:
            raise InitializationError('AI Agent is not initialized')

    @staticmethod
    def cache_key(query: str, user_id: str) -> str:
        digest = hashlib.sha256(query.strip().lower().encode('utf-8')).hexdigest()[:16]
        return f'ai_query:{user_id}:{digest}'

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning(f'Cache read failed for {key}: {e}')
            return None

    async def _cache_set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            await self.cache.set(key, value, self.config.cache.ttl_seconds)
        except Exception as e:
            logger.warning(f'Cache write failed for {key}: {e}')

    async def handle_query(self, query: str, user_id: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """Answer a user query within a conversation.

        A cached answer for the same normalized query and user is returned as is.
        Otherwise the conversation is opened (or created, titled from the query),
        both messages are persisted and the answer is cached.

        Args:
            query: User question
            user_id: Authenticated user
            conversation_id: Existing conversation to continue, or None for a new one

        Returns:
            Dict with message, html, conversation_id, search_metadata, session_metadata,
            enhanced_context and timestamp

        Raises:
            InitializationError: If the service is not ready
            ValidationError: If the query is empty
            AuthorizationError: If user_id is missing
            NotFoundError: If the conversation is unknown or not owned by the user
            UpstreamError: If generation fails
        """
        self._require_ready()
        if not query or not query.strip():
            raise ValidationError('Query is required')
        if not user_id:
            raise AuthorizationError('User authentication required')

        request_id = uuid.uuid4().hex[:7]
        start = time.monotonic()
        logger.info(f'[{request_id}] Processing query for user {user_id}: {truncate_for_log(query)}')

        key = self.cache_key(query, user_id)
        cached = await self._cache_get(key)
        if cached is not None:
            self.metrics.cache_hits += 1
            logger.info(f'[{request_id}] Returning cached response')
            return cached
        self.metrics.cache_misses += 1

        try:
            if conversation_id:
                conversation = await self.conversations.get_conversation(conversation_id, user_id)
            else:
                title = self.conversations.generate_conversation_title(query)
                conversation = await self.conversations.create_conversation(user_id, title)

            await self.conversations.add_message(conversation.id, query, 'user', {'request_id': request_id})

            filters = SearchFilters(metadata=extract_metadata_from_query(query))
            chat = await self.provider.chat(query, conversation.id, user_id, ChatOptions(use_enhanced_search=True, filters=filters))

            search_metadata = chat.metadata.get('search_metadata') or {}
            session_metadata = {
                'message_count': chat.metadata.get('message_count'),
                'session_age': chat.metadata.get('session_age'),
                'response_time': chat.metadata.get('response_time'),
                'provider': chat.metadata.get('provider'),
                'strategy_used': chat.metadata.get('strategy_used')
            }

            try:
                await self.conversations.add_message(conversation.id, chat.response, 'assistant', {
                    'request_id': request_id,
                    'search_metadata': search_metadata,
                    'session_metadata': session_metadata
                })
            except Exception as e:
                logger.error(f'[{request_id}] Failed to save assistant message: {e}')

            html = self.conversations.convert_to_safe_html(chat.response)

            response_time = elapsed_ms(start, time.monotonic())
            self.metrics.record_query(response_time)
        except Exception as e:
            logger.error(f'[{request_id}] Query failed after {elapsed_ms(start, time.monotonic())}ms: {e!r}')
            raise

        result = {
            'message': chat.response,
            'html': html,
            'conversation_id': conversation.id,
            'search_metadata': search_metadata,
            'session_metadata': session_metadata,
            'enhanced_context': bool(search_metadata.get('result_count')),
            'timestamp': to_iso()
        }
        await self._cache_set(key, result)

        logger.info(f'[{request_id}] Query completed in {response_time}ms')
        return result

    async def enhanced_search(self, query: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        """Search synced records without generating an answer.

        Raises:
            InitializationError: If the service is not ready
            ValidationError: If the query is empty
            UpstreamError: If the search fails
        """
        self._require_ready()
        if not query or not query.strip():
            raise ValidationError('Query is required')

        try:
            return await self.provider.enhanced_search(query, filters)
        except Exception as e:
            logger.error(f'Enhanced search failed: {e!r}')
            raise UpstreamError('Enhanced search failed') from e

    async def switch_provider(self, name: str) -> str:
        self._require_ready()
        await self.provider.switch_provider(name)
        return self.provider.get_current_provider()

    def get_current_provider(self) -> str:
        return self.provider.get_current_provider()

    def list_providers(self):
        return self.provider.list_providers()

    def health_check(self) -> Dict[str, Any]:
        """Readiness of the provider and index, plus a metrics snapshot. Performs no network calls."""
        return {
            'status': self.is_ready,
            'state': self.state.value,
            'provider': self.provider.get_current_provider(),
            'services': {
                'llm': self.provider.is_ready(),
                'vector_store': self.index.is_ready(),
                'conversation': True
            },
            'performance': self.metrics.snapshot(),
            'timestamp': to_iso()
        }

    async def get_detailed_health(self) -> Dict[str, Any]:
        """Probe every backend, which unlike health_check makes network calls."""
        probes = {
            'vector_store': self.index.opensearch.health_check,
            'embeddings': self.index.embedder.health_check,
            'llm': self.provider.check_backend
        }
        details = {'llm': {'provider': self.provider.get_current_provider()}}
        components = await asyncio.to_thread(get_health_status, probes, details)
        components['scheduler'] = {'healthy': self.scheduler.is_running, 'state': self.scheduler.state.value}
        return {
            'healthy': check_health(components),
            'components': components,
            'system': get_system_info(self.config),
            'performance': self.metrics.snapshot(),
            'timestamp': to_iso()
        }

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def get_performance(self) -> Dict[str, Any]:
        return {
            **self.metrics.snapshot(),
            'active_sessions': len(self.provider.get_active_sessions()),
            'sync_in_progress': self.syncer.is_running,
            'timestamp': to_iso()
        }

    def get_sync_status(self, entity_type: Optional[str] = None) -> Dict[str, Any]:
        if entity_type:
            return self.syncer.get_sync_status(entity_type).to_dict()
        statuses = self.syncer.get_sync_status()
        return {
            'scheduler': self.scheduler.state.value,
            'sync_in_progress': self.syncer.is_running,
            'entities': {name: status.to_dict() for name, status in statuses.items()},
            'last_sync': self.metrics.last_sync
        }

    def get_data_quality_report(self) -> Dict[str, Any]:
        return get_data_quality_report(self.syncer.get_sync_status().values())

    async def trigger_sync(self, entity_type: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        """Run a sync now, for one entity type or for all of them.

        Raises:
            ValidationError: If the entity type is unknown
            SyncError: If a single-type sync fails after its retries
        """
        self._require_ready()

        if entity_type:
            if force:
                result = await self.syncer.force_full_sync(entity_type)
            else:
                result = await self.syncer.sync_with_retry(entity_type)
            if not result.skipped:
                self.metrics.record_sync_duration(entity_type, result.duration_ms)
            return asdict(result)

        report = await (self.syncer.force_full_sync() if force else self.syncer.sync_all_data())
        if report is None:
            return {'skipped': True, 'message': 'Sync already in progress'}

        self.metrics.record_sync_report(report, 'manual', utc_now())
        return {
            'skipped': False,
            'duration_ms': report.duration_ms,
            'total_synced': report.total_synced,
            'total_skipped': report.total_skipped,
            'failed': report.failed,
            'results': {name: asdict(result) for name, result in report.results.items()}
        }

    async def get_index_stats(self) -> Dict[str, Any]:
        self._require_ready()
        return await self.index.get_stats()

    async def find_similar_content(self, query: str, k: int = 5) -> Dict[str, Any]:
        """Raw similarity search with no filters or re-ranking, for inspecting the index."""
        self._require_ready()
        if not query or not query.strip():
            raise ValidationError('Query is required')
        results = await self.index.similarity_search(query, k)
        return {'query': query, 'results': [result.to_dict() for result in results], 'total_results': len(results)}

    async def clear_index(self) -> Dict[str, Any]:
        """Remove every indexed document and forget sync checksums so the next pass rebuilds it."""
        self._require_ready()
        deleted = await self.index.clear()
        self.syncer.clear_statuses()
        await self.cache.clear()
        logger.info(f'Cleared vector store ({deleted} entries)')
        return {'deleted': deleted}
