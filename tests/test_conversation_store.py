import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from store_agent.services.conversation_store import (ConversationStore, InMemoryConversationRepository,
                                                     OpenSearchConversationRepository)
from store_agent.utils.errors import NotFoundError, ValidationError
from store_agent.models.core import Conversation
from store_agent.utils.opensearch_client import CONVERSATIONS, MESSAGES


class SlowMessageRepository(InMemoryConversationRepository):
    """Holds save_message until released so other writes can interleave."""

    def __init__(self):
        super().__init__()
        self.saving = threading.Event()
        self.release = threading.Event()

    def save_message(self, message):
        self.saving.set()
        self.release.wait(5)
        super().save_message(message)


class TestConversationStore:

    @pytest.fixture
    def store(self, app_config):
        return ConversationStore(InMemoryConversationRepository(), app_config)

    @pytest.mark.asyncio
    async def test_create_with_default_title(self, store):
        conversation = await store.create_conversation('u1')

        assert conversation.title == 'New Conversation'
        assert conversation.user_id == 'u1'
        assert conversation.created_at == conversation.updated_at

    @pytest.mark.asyncio
    async def test_get_enforces_ownership(self, store):
        conversation = await store.create_conversation('u1', 'Stock questions')

        assert (await store.get_conversation(conversation.id, 'u1')).title == 'Stock questions'
        with pytest.raises(NotFoundError):
            await store.get_conversation(conversation.id, 'u2')
        with pytest.raises(NotFoundError):
            await store.get_conversation('missing', 'u1')

    @pytest.mark.asyncio
    async def test_add_message_bumps_updated_at(self, store):
        conversation = await store.create_conversation('u1')

        message = await store.add_message(conversation.id, 'How many widgets?', 'user', {'request_id': 'abc1234'})

        stored = await store.get_conversation(conversation.id, 'u1')
        assert stored.updated_at == message.created_at
        assert stored.updated_at >= conversation.created_at
        assert message.metadata == {'request_id': 'abc1234'}

    @pytest.mark.asyncio
    async def test_add_message_to_missing_conversation(self, store):
        with pytest.raises(NotFoundError):
            await store.add_message('missing', 'hello', 'user')

    @pytest.mark.asyncio
    async def test_add_message_with_invalid_role(self, store):
        conversation = await store.create_conversation('u1')

        with pytest.raises(ValidationError):
            await store.add_message(conversation.id, 'hello', 'system')

    @pytest.mark.asyncio
    async def test_messages_are_paginated_in_order(self, store):
        conversation = await store.create_conversation('u1')
        for number in range(5):
            await store.add_message(conversation.id, f'message {number}', 'user')

        messages, total = await store.get_conversation_messages(conversation.id, 'u1', limit=2, offset=1)

        assert total == 5
        assert [message.content for message in messages] == ['message 1', 'message 2']
        with pytest.raises(NotFoundError):
            await store.get_conversation_messages(conversation.id, 'u2')

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, store):
        conversation = await store.create_conversation('u1')
        await store.add_message(conversation.id, 'Overdue INVOICES for Acme', 'user')
        await store.add_message(conversation.id, 'Stock levels', 'assistant')

        matches = await store.search_conversation_messages(conversation.id, 'u1', 'invoices')

        assert [message.content for message in matches] == ['Overdue INVOICES for Acme']
        assert await store.search_conversation_messages(conversation.id, 'u1', '  ') == []

    @pytest.mark.asyncio
    async def test_list_conversations_most_recent_first(self, store):
        first = await store.create_conversation('u1', 'first')
        second = await store.create_conversation('u1', 'second')
        await store.create_conversation('u2', 'other user')
        await store.add_message(first.id, 'bump', 'user')

        conversations, total = await store.list_conversations('u1')

        assert total == 2
        assert [conversation.id for conversation in conversations] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_update_title_and_delete(self, store):
        conversation = await store.create_conversation('u1')

        renamed = await store.update_conversation_title(conversation.id, 'u1', '  Q1 invoices ')
        assert renamed.title == 'Q1 invoices'
        with pytest.raises(ValidationError):
            await store.update_conversation_title(conversation.id, 'u1', ' ')
        with pytest.raises(NotFoundError):
            await store.delete_conversation(conversation.id, 'u2')

        await store.delete_conversation(conversation.id, 'u1')
        with pytest.raises(NotFoundError):
            await store.get_conversation(conversation.id, 'u1')

    @pytest.mark.asyncio
    async def test_rename_during_add_message_is_kept(self, app_config):
        repository = SlowMessageRepository()
        store = ConversationStore(repository, app_config)
        conversation = await store.create_conversation('u1')

        adding = asyncio.create_task(store.add_message(conversation.id, 'hello', 'user'))
        assert await asyncio.to_thread(repository.saving.wait, 5)
        await store.update_conversation_title(conversation.id, 'u1', 'Renamed')
        repository.release.set()
        message = await adding

        stored = await store.get_conversation(conversation.id, 'u1')
        assert stored.title == 'Renamed'
        assert stored.updated_at == message.created_at

    @pytest.mark.asyncio
    async def test_get_with_messages_in_order(self, store):
        conversation = await store.create_conversation('u1')
        for number in range(3):
            await store.add_message(conversation.id, f'message {number}', 'user' if number % 2 == 0 else 'assistant')

        with patch('store_agent.services.conversation_store.MESSAGE_PAGE_SIZE', 2):
            loaded = await store.get_conversation(conversation.id, 'u1', include_messages=True)

        assert [message.content for message in loaded.messages] == ['message 0', 'message 1', 'message 2']
        assert [message['role'] for message in loaded.to_dict()['messages']] == ['user', 'assistant', 'user']
        assert (await store.get_conversation(conversation.id, 'u1')).messages == []
        assert 'messages' not in (await store.get_conversation(conversation.id, 'u1')).to_dict()

    @pytest.mark.asyncio
    async def test_saving_loaded_conversation_does_not_store_messages(self, store):
        conversation = await store.create_conversation('u1')
        await store.add_message(conversation.id, 'hello', 'user')
        loaded = await store.get_conversation(conversation.id, 'u1', include_messages=True)

        store.repository.save_conversation(loaded)

        assert store.repository.get_conversation(conversation.id).messages == []

    def test_generate_title(self, store):
        assert store.generate_conversation_title('  What are   my sales? ') == 'What are my sales?'
        assert store.generate_conversation_title('') == 'New Conversation'

        long_title = store.generate_conversation_title('x' * 80)
        assert long_title == 'x' * 50 + '...'


class TestSafeHtml:

    def test_markdown_is_rendered_and_scripts_removed(self):
        html = ConversationStore.convert_to_safe_html('**bold** <script>alert(1)</script>')

        assert '<strong>bold</strong>' in html
        assert '<script' not in html
        assert 'alert(1)' not in html

    def test_event_handlers_are_stripped(self):
        html = ConversationStore.convert_to_safe_html('<a href="https://example.com" onclick="steal()">link</a>')

        assert 'href="https://example.com"' in html
        assert 'onclick' not in html

    def test_tables_are_kept(self):
        html = ConversationStore.convert_to_safe_html('| Product | Stock |\n|---|---|\n| Bolt | 4 |')

        assert '<table>' in html
        assert '<td>Bolt</td>' in html

    def test_rendering_failure_returns_escaped_text(self):
        with patch('store_agent.services.conversation_store.markdown.markdown', side_effect=RuntimeError('bad input')):
            html = ConversationStore.convert_to_safe_html('<b>hi</b>')

        assert html == '&lt;b&gt;hi&lt;/b&gt;'


class TestOpenSearchConversationRepository:

    def test_search_escapes_wildcards(self):
        client = MagicMock()
        client.search.return_value = ([], 0)
        repository = OpenSearchConversationRepository(client)

        repository.search_messages('c1', '50%*off?', 10)

        query = client.search.call_args.args[0]
        wildcard = query['bool']['must'][0]['wildcard']['content.raw']
        assert wildcard == {'value': '*50%\\*off\\?*', 'case_insensitive': True}
        assert client.search.call_args.kwargs['index_type'] == MESSAGES

    def test_delete_removes_messages_first(self):
        client = MagicMock()
        client.delete_document.return_value = True
        repository = OpenSearchConversationRepository(client)

        assert repository.delete_conversation('c1') is True
        client.delete_by_query.assert_called_once_with({'term': {'conversation_id': 'c1'}}, index_type=MESSAGES)

    def test_update_writes_only_given_fields(self):
        client = MagicMock()
        client.update_document.return_value = True
        client.get_document.return_value = {
            'id': 'c1',
            'user_id': 'u1',
            'title': 'Renamed',
            'created_at': '2024-01-15T10:00:00+00:00',
            'updated_at': '2024-01-15T11:00:00+00:00'
        }
        repository = OpenSearchConversationRepository(client)

        updated = repository.update_conversation('c1', {'updated_at': datetime(2024, 1, 15, 11, tzinfo=timezone.utc)})

        client.update_document.assert_called_once_with('c1', {'updated_at': '2024-01-15T11:00:00+00:00'}, index_type=CONVERSATIONS)
        assert updated.title == 'Renamed'

    def test_update_missing_conversation(self):
        client = MagicMock()
        client.update_document.return_value = False
        repository = OpenSearchConversationRepository(client)

        assert repository.update_conversation('missing', {'title': 'x'}) is None
        client.get_document.assert_not_called()

    def test_save_leaves_messages_out(self):
        client = MagicMock()
        repository = OpenSearchConversationRepository(client)
        now = datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
        conversation = Conversation('c1', 'u1', 'Stock', now, now)
        conversation.messages = [MagicMock()]

        repository.save_conversation(conversation)

        document = client.index_document.call_args.args[0]
        assert 'messages' not in document
        assert document['title'] == 'Stock'
