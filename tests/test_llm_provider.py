import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_result
from store_agent.models.core import SearchFilters
from store_agent.services.llm_provider import ChatOptions, LanguageModelProvider
from store_agent.services.prompts import build_question, preprocess_query
from store_agent.utils.errors import InitializationError, UpstreamError, ValidationError


class TestLanguageModelProvider:

    @pytest.fixture
    def search(self):
        search = MagicMock()
        search.search = AsyncMock(return_value=[make_result()])
        search.build_context = MagicMock(return_value='SEARCH RESULTS:\n[1] invoices')
        search.extract_insights = MagicMock(return_value=['Most common document types: invoices (1)'])
        search.generate_recommendations = MagicMock(return_value=[])
        search.facets = MagicMock(return_value={'entity_types': {'invoices': 1}, 'date_ranges': {}})
        return search

    @pytest.fixture
    def huggingface_backend(self):
        backend = MagicMock()
        backend.generate = MagicMock(return_value='From Hugging Face.')
        backend.health_check = MagicMock(return_value=True)
        return backend

    @pytest.fixture
    async def provider(self, search, fake_backend, huggingface_backend, app_config):
        provider = LanguageModelProvider(search, {'ollama': fake_backend, 'huggingface': huggingface_backend}, app_config)
        await provider.initialize()
        return provider

    @pytest.mark.asyncio
    async def test_chat_before_initialize(self, search, fake_backend, app_config):
        provider = LanguageModelProvider(search, {'ollama': fake_backend}, app_config)

        with pytest.raises(InitializationError):
            await provider.chat('hello', 's1', 'u1')

    @pytest.mark.asyncio
    async def test_initialize_probes_default_backend(self, provider, fake_backend):
        fake_backend.health_check.assert_called_once()
        assert provider.is_ready()
        assert provider.get_current_provider() == 'ollama'

    @pytest.mark.asyncio
    async def test_unhealthy_backend_does_not_block_startup(self, search, fake_backend, app_config):
        fake_backend.health_check.return_value = False
        provider = LanguageModelProvider(search, {'ollama': fake_backend}, app_config)

        await provider.initialize()
        result = await provider.chat('hello', 's1', 'u1')

        assert not provider.is_ready()
        assert result.response == 'Here is the answer.'

    @pytest.mark.asyncio
    async def test_chat_with_enhanced_search(self, provider, search, fake_backend):
        filters = SearchFilters(metadata={'type': 'invoice'})

        result = await provider.chat('show invoices', 's1', 'u1', ChatOptions(filters=filters))

        assert result.response == 'Here is the answer.'
        assert result.session_id == 's1'
        assert result.metadata['strategy_used'] == 'enhanced_search'
        assert result.metadata['search_metadata']['result_count'] == 1
        assert result.metadata['search_metadata']['filters']['metadata'] == {'type': 'invoice'}
        assert result.metadata['message_count'] == 2
        search.search.assert_awaited_once_with('show invoices', filters, k=8)

        prompt = fake_backend.generate.call_args.args[0]
        assert 'SEARCH RESULTS' in prompt
        assert 'Question: show invoices' in prompt

    @pytest.mark.asyncio
    async def test_empty_filtered_search_falls_back_to_unfiltered(self, provider, search):
        search.search.side_effect = [[], [make_result()]]

        result = await provider.chat('invoice 2024-01-15', 's1', 'u1', ChatOptions(filters=SearchFilters(metadata={'type': 'invoice'})))

        assert result.metadata['strategy_used'] == 'moderate_context'
        assert result.metadata['search_metadata']['filters'] is None
        assert search.search.await_args_list[1].args == ('invoice 2024-01-15', None)
        assert search.search.await_args_list[1].kwargs == {'k': 4}

    @pytest.mark.asyncio
    async def test_slow_generation_falls_back(self, provider, fake_backend, app_config):
        app_config.llm.chat_timeout = 0.05

        def slow_generate(prompt):
            time.sleep(0.3)
            return 'too late'

        calls = []

        def generate(prompt):
            calls.append(prompt)
            if len(calls) == 1:
                return slow_generate(prompt)
            return 'Quick answer.'

        fake_backend.generate.side_effect = generate

        result = await provider.chat('hello', 's1', 'u1')

        assert result.response == 'Quick answer.'
        assert result.metadata['strategy_used'] == 'moderate_context'

    @pytest.mark.asyncio
    async def test_history_only_when_search_fails(self, provider, search):
        search.search.side_effect = UpstreamError('Vector search failed')

        result = await provider.chat('hello', 's1', 'u1')

        assert result.metadata['strategy_used'] == 'history_only'
        assert result.metadata['search_metadata']['result_count'] == 0

    @pytest.mark.asyncio
    async def test_all_strategies_failing_hides_backend_error(self, provider, fake_backend):
        fake_backend.generate.side_effect = RuntimeError('connection refused to 10.0.0.5')

        with pytest.raises(UpstreamError) as exc_info:
            await provider.chat('hello', 's1', 'u1')

        assert exc_info.value.message == 'Query processing failed'
        assert '10.0.0.5' not in str(exc_info.value)
        assert fake_backend.generate.call_count == 3
        assert provider.get_session_info('s1')['message_count'] == 0

    @pytest.mark.asyncio
    async def test_session_history_is_bounded(self, provider, fake_backend, app_config):
        app_config.llm.max_session_messages = 4

        for question in ('first', 'second', 'third'):
            await provider.chat(question, 's1', 'u1')

        assert provider.get_session_info('s1')['message_count'] == 4
        last_prompt = fake_backend.generate.call_args.args[0]
        assert 'User: first' in last_prompt
        assert 'User: second' in last_prompt

    @pytest.mark.asyncio
    async def test_expired_sessions_are_pruned(self, provider):
        await provider.chat('hello', 'old', 'u1')
        provider._sessions['old'].last_activity -= 10_000

        await provider.chat('hello', 'new', 'u1')

        assert provider.get_session_info('old') is None
        assert provider.get_session_info('new') is not None

    @pytest.mark.asyncio
    async def test_clear_session(self, provider):
        await provider.chat('hello', 's1', 'u1')

        assert provider.clear_session('s1') is True
        assert provider.clear_session('s1') is False

    @pytest.mark.asyncio
    async def test_switch_provider(self, provider, huggingface_backend):
        await provider.switch_provider('huggingface')
        result = await provider.chat('hello', 's1', 'u1')

        assert provider.get_current_provider() == 'huggingface'
        assert result.response == 'From Hugging Face.'
        assert result.metadata['provider'] == 'huggingface'

    @pytest.mark.asyncio
    async def test_switch_to_unknown_provider(self, provider):
        with pytest.raises(ValidationError):
            await provider.switch_provider('gpt-local')

        assert provider.get_current_provider() == 'ollama'

    @pytest.mark.asyncio
    async def test_switch_to_unhealthy_provider(self, provider, huggingface_backend):
        huggingface_backend.health_check.return_value = False

        with pytest.raises(UpstreamError):
            await provider.switch_provider('huggingface')

        assert provider.get_current_provider() == 'ollama'

    @pytest.mark.asyncio
    async def test_enhanced_search(self, provider, search):
        data = await provider.enhanced_search('acme invoices', SearchFilters(entity_types=['invoices'], limit=3))

        assert data['total_results'] == 1
        assert data['search_results'][0]['entity_type'] == 'invoices'
        assert data['insights']
        search.search.assert_awaited_once()
        assert search.search.await_args.kwargs == {'k': 3}

    def test_list_providers(self, search, fake_backend, app_config):
        provider = LanguageModelProvider(search, {'ollama': fake_backend}, app_config)

        providers = {entry['name']: entry for entry in provider.list_providers()}

        assert set(providers) == {'bedrock', 'ollama', 'huggingface'}
        assert providers['ollama']['active'] is True


class TestPrompts:

    def test_abbreviations_expanded(self):
        assert preprocess_query('Low INV items') == 'low inventory items'

    def test_arabic_question_gets_arabic_directive(self):
        question = build_question('ما هي الفواتير المتأخرة؟')

        assert 'Respond in Arabic only' in question

    def test_english_question_gets_english_directive(self):
        assert 'Respond in English only' in build_question('show overdue invoices')
