from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from store_agent.models.core import ChatResult, Conversation
from store_agent.services.agent import AgentService, ServiceState
from store_agent.services.conversation_store import ConversationStore, InMemoryConversationRepository
from store_agent.services.query_cache import InMemoryQueryCache
from store_agent.utils.errors import AuthorizationError, InitializationError, NotFoundError, UpstreamError, ValidationError
from store_agent.utils.timestamp_utils import utc_now


def _chat_result(session_id='c1'):
    return ChatResult(response='You have **3** overdue invoices.',
                      session_id=session_id,
                      metadata={
                          'request_id': 'abc1234',
                          'response_time': 12.0,
                          'search_metadata': {
                              'strategy_used': 'enhanced_search',
                              'provider': 'ollama',
                              'result_count': 3
                          },
                          'message_count': 2,
                          'session_age': 0.1,
                          'strategy_used': 'enhanced_search',
                          'provider': 'ollama'
                      })


class TestAgentService:

    @pytest.fixture
    def provider(self):
        provider = MagicMock()
        provider.initialize = AsyncMock()
        provider.is_ready = MagicMock(return_value=True)
        provider.get_current_provider = MagicMock(return_value='ollama')
        provider.chat = AsyncMock(side_effect=lambda query, session_id, user_id, options: _chat_result(session_id))
        provider.enhanced_search = AsyncMock(return_value={'search_results': [], 'total_results': 0})
        provider.switch_provider = AsyncMock()
        provider.get_active_sessions = MagicMock(return_value=[])
        provider.close = MagicMock()
        return provider

    @pytest.fixture
    def conversations(self, app_config):
        return ConversationStore(InMemoryConversationRepository(), app_config)

    @pytest.fixture
    async def agent(self, fake_index, provider, conversations, app_config):
        agent = AgentService(index=fake_index,
                             provider=provider,
                             conversations=conversations,
                             cache=InMemoryQueryCache(app_config.cache),
                             app_config=app_config)
        await agent.startup()
        yield agent
        await agent.shutdown()

    def test_sources_loaded_from_configured_factory(self, fake_index, provider, conversations, app_config):
        app_config.sync.sources_factory = 'conftest:product_sources'

        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, app_config=app_config)

        assert agent.syncer.entity_types == ['products', 'system_features']

    def test_explicit_sources_override_factory(self, fake_index, provider, conversations, app_config):
        app_config.sync.sources_factory = 'conftest:missing_factory'

        agent = AgentService(sources={}, index=fake_index, provider=provider, conversations=conversations, app_config=app_config)

        assert agent.syncer.entity_types == ['system_features']

    @pytest.mark.asyncio
    async def test_query_before_startup(self, fake_index, provider, conversations, app_config):
        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, app_config=app_config)

        with pytest.raises(InitializationError):
            await agent.handle_query('hello', 'u1')

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, fake_index, provider, conversations, app_config):
        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, app_config=app_config)

        await agent.startup()
        assert agent.state == ServiceState.READY
        assert agent.scheduler.is_running

        await agent.shutdown()
        assert agent.state == ServiceState.STOPPED
        provider.close.assert_called_once()
        with pytest.raises(InitializationError):
            await agent.handle_query('hello', 'u1')

    @pytest.mark.asyncio
    async def test_failed_startup_propagates(self, fake_index, provider, conversations, app_config):
        fake_index.initialize.side_effect = UpstreamError('Vector index initialization failed')
        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, app_config=app_config)

        with pytest.raises(UpstreamError):
            await agent.startup()

        assert agent.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    @pytest.mark.parametrize('query', ['', '   ', '\n\t'])
    async def test_empty_query_rejected(self, agent, query):
        with pytest.raises(ValidationError):
            await agent.handle_query(query, 'u1')

    @pytest.mark.asyncio
    async def test_missing_user_rejected(self, agent):
        with pytest.raises(AuthorizationError):
            await agent.handle_query('hello', '')

    @pytest.mark.asyncio
    async def test_new_conversation_is_created(self, agent, conversations, provider):
        with patch.object(conversations, 'create_conversation', wraps=conversations.create_conversation) as create, \
                patch.object(conversations, 'add_message', wraps=conversations.add_message) as add_message:
            result = await agent.handle_query('Show overdue invoices', 'u1')

        create.assert_awaited_once_with('u1', 'Show overdue invoices')
        assert add_message.await_count == 2
        assert [call.args[2] for call in add_message.await_args_list] == ['user', 'assistant']

        assert result['message'] == 'You have **3** overdue invoices.'
        assert '<strong>3</strong>' in result['html']
        assert result['search_metadata']['result_count'] == 3
        assert result['session_metadata']['message_count'] == 2
        assert result['enhanced_context'] is True

        messages, total = await conversations.get_conversation_messages(result['conversation_id'], 'u1')
        assert total == 2
        assert messages[1].metadata['search_metadata']['strategy_used'] == 'enhanced_search'

    @pytest.mark.asyncio
    async def test_extracted_filters_are_passed_to_chat(self, agent, provider):
        await agent.handle_query('invoice from 2024-01-15', 'u1')

        options = provider.chat.await_args.args[3]
        assert options.use_enhanced_search is True
        assert options.filters.metadata == {'type': 'invoice', 'date': '2024-01-15'}

    @pytest.mark.asyncio
    async def test_repeated_query_is_served_from_cache(self, agent, provider, conversations):
        first = await agent.handle_query('Show overdue invoices', 'u1')

        with patch.object(conversations, 'add_message', wraps=conversations.add_message) as add_message:
            second = await agent.handle_query('  show OVERDUE invoices ', 'u1')

        assert second == first
        provider.chat.assert_awaited_once()
        add_message.assert_not_awaited()
        assert agent.metrics.cache_hits == 1
        assert agent.metrics.cache_misses == 1
        assert agent.metrics.query_count == 1

    @pytest.mark.asyncio
    async def test_cache_is_per_user(self, agent, provider):
        await agent.handle_query('Show overdue invoices', 'u1')
        await agent.handle_query('Show overdue invoices', 'u2')

        assert provider.chat.await_count == 2

    @pytest.mark.asyncio
    async def test_continue_existing_conversation(self, agent, conversations):
        conversation = await conversations.create_conversation('u1', 'Inventory')

        result = await agent.handle_query('How many bolts?', 'u1', conversation.id)

        assert result['conversation_id'] == conversation.id

    @pytest.mark.asyncio
    async def test_foreign_conversation_not_found(self, agent, conversations, provider):
        conversation = await conversations.create_conversation('u2', 'Private')

        with pytest.raises(NotFoundError):
            await agent.handle_query('hello', 'u1', conversation.id)

        provider.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generation_failure_propagates(self, agent, provider):
        provider.chat.side_effect = UpstreamError('Query processing failed')

        with pytest.raises(UpstreamError):
            await agent.handle_query('hello', 'u1')

        assert agent.metrics.query_count == 0

    @pytest.mark.asyncio
    async def test_assistant_message_failure_is_not_fatal(self, fake_index, provider, app_config):
        now = utc_now()
        conversations = MagicMock()
        conversations.initialize = AsyncMock()
        conversations.generate_conversation_title = MagicMock(return_value='hello')
        conversations.create_conversation = AsyncMock(return_value=Conversation('c1', 'u1', 'hello', now, now))
        conversations.add_message = AsyncMock(side_effect=[None, RuntimeError('database unavailable')])
        conversations.convert_to_safe_html = ConversationStore.convert_to_safe_html
        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, app_config=app_config)
        await agent.startup()

        try:
            result = await agent.handle_query('hello', 'u1')
        finally:
            await agent.shutdown()

        assert result['conversation_id'] == 'c1'
        assert agent.metrics.query_count == 1

    @pytest.mark.asyncio
    async def test_cache_errors_are_ignored(self, fake_index, provider, conversations, app_config):
        cache = MagicMock()
        cache.get = AsyncMock(side_effect=RuntimeError('cache down'))
        cache.set = AsyncMock(side_effect=RuntimeError('cache down'))
        agent = AgentService(index=fake_index, provider=provider, conversations=conversations, cache=cache, app_config=app_config)
        await agent.startup()

        try:
            result = await agent.handle_query('hello', 'u1')
        finally:
            await agent.shutdown()

        assert result['message']
        assert agent.metrics.cache_misses == 1

    @pytest.mark.asyncio
    async def test_enhanced_search_failure_is_wrapped(self, agent, provider):
        provider.enhanced_search.side_effect = RuntimeError('index timeout at 10.0.0.5')

        with pytest.raises(UpstreamError) as exc_info:
            await agent.enhanced_search('invoices')

        assert exc_info.value.message == 'Enhanced search failed'

    @pytest.mark.asyncio
    async def test_switch_provider(self, agent, provider):
        provider.get_current_provider.return_value = 'huggingface'

        assert await agent.switch_provider('huggingface') == 'huggingface'
        provider.switch_provider.assert_awaited_once_with('huggingface')

    @pytest.mark.asyncio
    async def test_health_check(self, agent):
        await agent.handle_query('hello', 'u1')

        health = agent.health_check()

        assert health['status'] is True
        assert health['services'] == {'llm': True, 'vector_store': True, 'conversation': True}
        assert health['performance']['query_count'] == 1
        assert health['timestamp']

    @pytest.mark.asyncio
    async def test_trigger_sync_records_metrics(self, agent, fake_index):
        summary = await agent.trigger_sync()

        assert summary['skipped'] is False
        assert summary['total_synced'] == 5
        assert agent.metrics.last_sync['trigger'] == 'manual'
        assert 'system_features' in agent.metrics.sync_durations

    @pytest.mark.asyncio
    async def test_clear_index_forgets_sync_state(self, agent, fake_index):
        await agent.trigger_sync()
        assert agent.get_sync_status('system_features')['checksum']

        await agent.clear_index()

        fake_index.clear.assert_awaited_once()
        assert agent.get_sync_status('system_features')['checksum'] == ''

    @pytest.mark.asyncio
    async def test_data_quality_report(self, agent):
        await agent.trigger_sync()

        report = agent.get_data_quality_report()

        assert report['summary']['synced_entities'] == 1
        assert report['summary']['total_documents'] == 5

    def test_cache_key_normalizes_query(self):
        assert AgentService.cache_key(' Hello ', 'u1') == AgentService.cache_key('hello', 'u1')
        assert AgentService.cache_key('hello', 'u1').startswith('ai_query:u1:')
        assert AgentService.cache_key('hello', 'u1') != AgentService.cache_key('hello', 'u2')
