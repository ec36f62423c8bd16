"""
Language model provider: chat with retrieval over interchangeable generation backends.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models.core import ChatResult, SearchFilters, SearchResult
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.errors import InitializationError, UpstreamError, ValidationError
from ..utils.huggingface_llm import HuggingFaceLLM
from ..utils.logging_config import get_logger, truncate_for_log
from ..utils.ollama_client import OllamaClient
from .enhanced_search import EnhancedSearch
from .prompts import build_question, format_history, get_assistant_prompt

logger = get_logger(__name__)

PROVIDERS = ('bedrock', 'ollama', 'huggingface')
MODERATE_CONTEXT_RESULTS = 4


@dataclass
class ChatOptions:
    """Per-call options for LanguageModelProvider.chat."""
    use_enhanced_search: bool = True
    filters: Optional[SearchFilters] = None
    provider: Optional[str] = None


@dataclass
class ChatSession:
    session_id: str
    user_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)


@dataclass
class _Strategy:
    name: str
    timeout: float
    search_k: int = 0
    filters: Optional[SearchFilters] = None


def _has_filters(filters: Optional[SearchFilters]) -> bool:
    return bool(filters and (filters.entity_types or filters.metadata or filters.date_from or filters.date_to))


class LanguageModelProvider:
    """Uniform chat and search contract over the Bedrock, Ollama and Hugging Face backends.

    Chat tries progressively cheaper strategies (filtered retrieval, unfiltered
    retrieval with fewer results, history only), each bounded by a timeout, and
    keeps a short per-session message history in memory.

    Args:
        search: Enhanced search over the embedding index
        backends: Prebuilt backends by provider name; missing ones are built from config on demand
        app_config: Configuration, uses the process default if None
    """

    def __init__(self, search: EnhancedSearch, backends: Optional[Dict[str, Any]] = None, app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.search = search
        self._backends: Dict[str, Any] = dict(backends or {})
        self._factories: Dict[str, Callable[[], Any]] = {
            'bedrock': lambda: BedrockLLM(self.config.bedrock_llm),
            'ollama': lambda: OllamaClient(self.config.ollama),
            'huggingface': lambda: HuggingFaceLLM(self.config.huggingface)
        }
        self._current = self.config.llm.provider
        self._lock = asyncio.Lock()
        self._sessions: Dict[str, ChatSession] = {}
        self._initialized = False
        self._healthy = False

    def _backend(self, name: str) -> Any:
        if name not in self._backends:
            self._backends[name] = self._factories[name]()
        return self._backends[name]

    async def initialize(self) -> None:
        """Build the default backend and probe it.

        A failed probe is logged and reflected in is_ready; it does not stop startup.

        Raises:
            ValidationError: If the configured provider is unknown
        """
        if self._current not in PROVIDERS:
            raise ValidationError(f'Unknown LLM provider: {self._current}')

        backend = self._backend(self._current)
        self._healthy = await asyncio.to_thread(backend.health_check)
        if not self._healthy:
            logger.warning(f'LLM provider {self._current} failed its startup health check')
        self._initialized = True
        logger.info(f'Initialized LLM provider layer with {self._current}')

    def is_ready(self) -> bool:
        return self._initialized and self._healthy

    def get_current_provider(self) -> str:
        return self._current

    def check_backend(self, name: Optional[str] = None) -> bool:
        """Blocking readiness probe of a backend, the active one by default."""
        return bool(self._backend(name or self._current).health_check())

    def list_providers(self) -> List[Dict[str, Any]]:
        models = {
            'bedrock': self.config.bedrock_llm.model_id,
            'ollama': self.config.ollama.chat_model,
            'huggingface': self.config.huggingface.model
        }
        return [{'name': name, 'model': models[name], 'active': name == self._current} for name in PROVIDERS]

    async def switch_provider(self, name: str) -> None:
        """Make another backend the active one.

        Raises:
            ValidationError: If the provider is unknown
            UpstreamError: If the provider fails its readiness check
        """
        if name not in PROVIDERS:
            raise ValidationError(f'Unknown provider: {name}')

        async with self._lock:
            try:
                backend = self._backend(name)
            except Exception as e:
                logger.error(f'Failed to create {name} backend: {e}')
                raise UpstreamError(f'Provider {name} is not available') from e

            if not await asyncio.to_thread(backend.health_check):
                raise UpstreamError(f'Provider {name} failed its readiness check')

            previous, self._current = self._current, name
            self._healthy = True
        logger.info(f'Switched LLM provider from {previous} to {name}')

    def _prune_sessions(self) -> None:
        cutoff = time.monotonic() - self.config.llm.max_session_age
        expired = [session_id for session_id, session in self._sessions.items() if session.last_activity < cutoff]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f'Cleaned up {len(expired)} expired chat sessions')

    def _get_or_create_session(self, session_id: str, user_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            session = ChatSession(session_id=session_id, user_id=user_id)
            self._sessions[session_id] = session
            logger.debug(f'Created new chat session: {session_id}')
        session.last_activity = time.monotonic()
        return session

    def _strategies(self, options: ChatOptions) -> List[_Strategy]:
        llm_config = self.config.llm
        strategies = []
        if options.use_enhanced_search:
            strategies.append(_Strategy('enhanced_search', llm_config.chat_timeout, llm_config.max_search_results, options.filters))
        strategies.append(_Strategy('moderate_context', llm_config.fallback_timeout, MODERATE_CONTEXT_RESULTS))
        strategies.append(_Strategy('history_only', llm_config.fallback_timeout))
        return strategies

    async def _run_strategy(self, strategy: _Strategy, backend: Any, query: str, history: str) -> Dict[str, Any]:
        results: List[SearchResult] = []
        if strategy.search_k:
            results = await self.search.search(query, strategy.filters, k=strategy.search_k)
            if not results and _has_filters(strategy.filters):
                raise LookupError('No results matched the extracted filters')

        prompt = get_assistant_prompt(history, self.search.build_context(results), build_question(query))
        response = await asyncio.wait_for(asyncio.to_thread(backend.generate, prompt), timeout=strategy.timeout)
        if not response or not response.strip():
            raise ValueError('Empty response from model')
        return {'response': response.strip(), 'results': results}

    async def chat(self, query: str, session_id: str, user_id: str, options: Optional[ChatOptions] = None) -> ChatResult:
        """Answer a query using retrieval and the session's history.

        Args:
            query: User question
            session_id: Conversation-scoped session identifier
            user_id: Owner of the session
            options: Retrieval and provider options

        Returns:
            ChatResult with the answer and search/session metadata

        Raises:
            InitializationError: If initialize has not completed
            UpstreamError: If every strategy fails
        """
        if not self._initialized:
            raise InitializationError('LLM service not initialized')

        options = options or ChatOptions()
        request_id = uuid.uuid4().hex[:7]
        provider = options.provider or self._current
        if provider not in PROVIDERS:
            raise ValidationError(f'Unknown provider: {provider}')
        backend = self._backend(provider)
        start = time.monotonic()

        self._prune_sessions()
        session = self._get_or_create_session(session_id, user_id)
        history = format_history(session.messages)
        logger.debug(f'[{request_id}] Starting chat for session {session_id} with {provider}: {truncate_for_log(query)}')

        outcome = None
        strategy_used = None
        last_error: Optional[BaseException] = None
        for strategy in self._strategies(options):
            try:
                outcome = await self._run_strategy(strategy, backend, query, history)
                strategy_used = strategy.name
                break
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f'[{request_id}] Strategy {strategy.name} timed out after {strategy.timeout}s with {provider}')
            except Exception as e:
                last_error = e
                logger.warning(f'[{request_id}] Strategy {strategy.name} failed with {provider}: {e}')

        if outcome is None:
            logger.error(f'[{request_id}] All chat strategies failed with {provider}: {last_error!r}')
            raise UpstreamError('Query processing failed') from last_error

        response = outcome['response']
        results = outcome['results']
        now = time.monotonic()
        session.messages.append({'role': 'user', 'content': query, 'request_id': request_id})
        session.messages.append({'role': 'assistant', 'content': response, 'request_id': request_id, 'strategy': strategy_used})
        del session.messages[:-self.config.llm.max_session_messages]
        session.last_activity = now

        filters = options.filters if strategy_used == 'enhanced_search' else None
        search_metadata = {
            'strategy_used': strategy_used,
            'provider': provider,
            'result_count': len(results),
            'entity_types': sorted({result.entity_type for result in results}),
            'filters': {
                'entity_types': filters.entity_types,
                'metadata': filters.metadata
            } if filters else None
        }
        response_time = round((now - start) * 1000, 2)
        logger.debug(f'[{request_id}] Chat completed in {response_time}ms using {strategy_used} with {provider}')

        return ChatResult(response=response,
                          session_id=session_id,
                          metadata={
                              'request_id': request_id,
                              'response_time': response_time,
                              'search_metadata': search_metadata,
                              'message_count': len(session.messages),
                              'session_age': round(now - session.created_at, 2),
                              'strategy_used': strategy_used,
                              'provider': provider
                          })

    async def enhanced_search(self, query: str, filters: Optional[SearchFilters] = None) -> Dict[str, Any]:
        """Search the index without generating an answer.

        Returns:
            Dict with search_results, total_results, insights, recommendations and facets

        Raises:
            InitializationError: If initialize has not completed
            UpstreamError: If the search fails
        """
        if not self._initialized:
            raise InitializationError('LLM service not initialized')

        limit = self.config.llm.max_search_results
        if filters and filters.limit:
            limit = min(filters.limit, limit)
        results = await self.search.search(query, filters, k=limit)
        results = results[:limit]
        return {
            'search_results': [result.to_dict() for result in results],
            'total_results': len(results),
            'insights': self.search.extract_insights(results),
            'recommendations': self.search.generate_recommendations(results),
            'facets': self.search.facets(results)
        }

    def get_session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = time.monotonic()
        return {
            'session_id': session.session_id,
            'user_id': session.user_id,
            'message_count': len(session.messages),
            'session_age': round(now - session.created_at, 2),
            'idle_seconds': round(now - session.last_activity, 2)
        }

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        return [self.get_session_info(session_id) for session_id in list(self._sessions)]

    def clear_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def close(self) -> None:
        for name, backend in self._backends.items():
            close = getattr(backend, 'close', None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.warning(f'Failed to close {name} backend: {e}')
        self._initialized = False
