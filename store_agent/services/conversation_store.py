"""
Conversation and message persistence with ownership checks and safe HTML rendering.
"""

import asyncio
import copy
import dataclasses
import html
import re
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import markdown
import nh3

from ..models.core import MESSAGE_ROLES, Conversation, Message
from ..utils.config import AppConfig, config
from ..utils.errors import NotFoundError, UpstreamError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import CONVERSATIONS, MESSAGES, OpenSearchClient
from ..utils.timestamp_utils import to_datetime, to_iso, utc_now

logger = get_logger(__name__)

DEFAULT_TITLE = 'New Conversation'

ALLOWED_TAGS = {
    'h3', 'h4', 'h5', 'h6', 'blockquote', 'p', 'a', 'ul', 'ol', 'li', 'b', 'i', 'strong', 'em', 'strike', 'code', 'hr', 'br',
    'div', 'table', 'thead', 'caption', 'tbody', 'tr', 'th', 'td', 'pre', 'img'
}
ALLOWED_ATTRIBUTES = {
    'a': {'href', 'name', 'target'},
    'img': {'src', 'alt', 'title', 'width', 'height'},
    '*': {'style'}
}
MARKDOWN_EXTENSIONS = ['tables', 'fenced_code']
MESSAGE_ORDER = [{'created_at': {'order': 'asc'}}]
DATE_FIELDS = ('created_at', 'updated_at')
MESSAGE_PAGE_SIZE = 100


class ConversationRepository(ABC):
    """Storage contract for conversations and their messages.

    Implementations are synchronous; the store runs them off the event loop.
    """

    def initialize(self) -> None:
        """Prepare backing storage; a no-op unless the backend needs it."""

    @abstractmethod
    def save_conversation(self, conversation: Conversation) -> None:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    def update_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> Optional[Conversation]:
        """Set the given fields on a stored conversation, leaving the rest as stored.

        Returns the updated conversation, or None if it does not exist.
        """

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and all of its messages."""

    @abstractmethod
    def list_conversations(self, user_id: str, limit: int, offset: int) -> Tuple[List[Conversation], int]:
        """Return a page of the user's conversations, most recently updated first, and the total."""

    @abstractmethod
    def save_message(self, message: Message) -> None:
        pass

    @abstractmethod
    def list_messages(self, conversation_id: str, limit: int, offset: int) -> Tuple[List[Message], int]:
        """Return a page of messages in creation order and the total."""

    @abstractmethod
    def search_messages(self, conversation_id: str, query: str, limit: int) -> List[Message]:
        """Return messages whose content contains query, ignoring case."""


class InMemoryConversationRepository(ConversationRepository):
    """Process-local repository, used for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}

    def save_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = dataclasses.replace(conversation, messages=[])
            self._messages.setdefault(conversation.id, [])

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return copy.copy(conversation) if conversation else None

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return None
            updated = dataclasses.replace(conversation, **fields)
            self._conversations[conversation_id] = updated
            return copy.copy(updated)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            self._messages.pop(conversation_id, None)
            return self._conversations.pop(conversation_id, None) is not None

    def list_conversations(self, user_id: str, limit: int, offset: int) -> Tuple[List[Conversation], int]:
        with self._lock:
            owned = [conversation for conversation in self._conversations.values() if conversation.user_id == user_id]
        owned.sort(key=lambda conversation: conversation.updated_at, reverse=True)
        return [copy.copy(conversation) for conversation in owned[offset:offset + limit]], len(owned)

    def save_message(self, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(message.conversation_id, []).append(message)

    def list_messages(self, conversation_id: str, limit: int, offset: int) -> Tuple[List[Message], int]:
        with self._lock:
            messages = list(self._messages.get(conversation_id, []))
        return messages[offset:offset + limit], len(messages)

    def search_messages(self, conversation_id: str, query: str, limit: int) -> List[Message]:
        needle = query.lower()
        with self._lock:
            messages = list(self._messages.get(conversation_id, []))
        return [message for message in messages if needle in message.content.lower()][:limit]


def _conversation_from_source(source: Dict[str, Any]) -> Conversation:
    return Conversation(id=source['id'],
                        user_id=source['user_id'],
                        title=source.get('title') or DEFAULT_TITLE,
                        created_at=to_datetime(source['created_at']),
                        updated_at=to_datetime(source['updated_at']))


def _message_from_source(source: Dict[str, Any]) -> Message:
    return Message(id=source['id'],
                   conversation_id=source['conversation_id'],
                   role=source['role'],
                   content=source['content'],
                   metadata=source.get('metadata') or {},
                   created_at=to_datetime(source['created_at']))


class OpenSearchConversationRepository(ConversationRepository):
    """Repository backed by the conversations and messages indices of the cluster."""

    def __init__(self, client: OpenSearchClient):
        self.client = client

    def initialize(self) -> None:
        for index_type in (CONVERSATIONS, MESSAGES):
            if self.client.create_index_if_not_exists(index_type) == 'failed':
                raise UpstreamError(f'Failed to create {index_type} index')

    def save_conversation(self, conversation: Conversation) -> None:
        document = conversation.to_dict()
        document.pop('messages', None)
        self.client.index_document(document, doc_id=conversation.id, index_type=CONVERSATIONS)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        source = self.client.get_document(conversation_id, index_type=CONVERSATIONS)
        return _conversation_from_source(source) if source else None

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> Optional[Conversation]:
        document = {key: to_iso(value) if key in DATE_FIELDS else value for key, value in fields.items()}
        if not self.client.update_document(conversation_id, document, index_type=CONVERSATIONS):
            return None
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        self.client.delete_by_query({'term': {'conversation_id': conversation_id}}, index_type=MESSAGES)
        return self.client.delete_document(conversation_id, index_type=CONVERSATIONS)

    def list_conversations(self, user_id: str, limit: int, offset: int) -> Tuple[List[Conversation], int]:
        query = {'term': {'user_id': user_id}}
        sort = [{'updated_at': {'order': 'desc'}}]
        sources, total = self.client.search(query, size=limit, offset=offset, sort=sort, index_type=CONVERSATIONS)
        return [_conversation_from_source(source) for source in sources], total

    def save_message(self, message: Message) -> None:
        self.client.index_document(message.to_dict(), doc_id=message.id, index_type=MESSAGES)

    def list_messages(self, conversation_id: str, limit: int, offset: int) -> Tuple[List[Message], int]:
        query = {'term': {'conversation_id': conversation_id}}
        sources, total = self.client.search(query, size=limit, offset=offset, sort=MESSAGE_ORDER, index_type=MESSAGES)
        return [_message_from_source(source) for source in sources], total

    def search_messages(self, conversation_id: str, query: str, limit: int) -> List[Message]:
        # content.raw is a keyword field, so the wildcard matches substrings of the whole message
        pattern = re.sub(r'([*?\\])', r'\\\1', query)
        search_query = {
            'bool': {
                'filter': [{'term': {'conversation_id': conversation_id}}],
                'must': [{'wildcard': {'content.raw': {'value': f'*{pattern}*', 'case_insensitive': True}}}]
            }
        }
        sources, _ = self.client.search(search_query, size=limit, sort=MESSAGE_ORDER, index_type=MESSAGES)
        return [_message_from_source(source) for source in sources]


def build_repository(app_config: Optional[AppConfig] = None) -> ConversationRepository:
    """Create the repository selected by ``conversation.backend``."""
    app_config = app_config or config
    if app_config.conversation.backend == 'opensearch':
        return OpenSearchConversationRepository(OpenSearchClient(app_config.opensearch))
    return InMemoryConversationRepository()


class ConversationStore:
    """Owns conversations and messages for the assistant.

    Every read or write that names a conversation on behalf of a user first checks
    that the user owns it; foreign and unknown ids are indistinguishable.
    """

    def __init__(self, repository: Optional[ConversationRepository] = None, app_config: Optional[AppConfig] = None):
        self.config = app_config or config
        self.repository = repository or InMemoryConversationRepository()

    async def initialize(self) -> None:
        await asyncio.to_thread(self.repository.initialize)

    async def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        now = utc_now()
        conversation = Conversation(id=str(uuid.uuid4()),
                                    user_id=user_id,
                                    title=(title or '').strip() or DEFAULT_TITLE,
                                    created_at=now,
                                    updated_at=now)
        await asyncio.to_thread(self.repository.save_conversation, conversation)
        logger.debug(f'Created conversation {conversation.id} for user {user_id}')
        return conversation

    async def get_conversation(self, conversation_id: str, user_id: str, include_messages: bool = False) -> Conversation:
        """Fetch a conversation owned by user_id.

        Args:
            conversation_id: Conversation to fetch
            user_id: Requesting user
            include_messages: Also load every message, oldest first, into ``messages``

        Raises:
            NotFoundError: If the conversation does not exist or belongs to another user
        """
        conversation = await asyncio.to_thread(self.repository.get_conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError('Conversation not found')
        if include_messages:
            conversation.messages = await asyncio.to_thread(self._all_messages, conversation_id)
        return conversation

    def _all_messages(self, conversation_id: str) -> List[Message]:
        messages: List[Message] = []
        while True:
            page, total = self.repository.list_messages(conversation_id, MESSAGE_PAGE_SIZE, len(messages))
            messages.extend(page)
            if not page or len(messages) >= total:
                return messages

    async def add_message(self, conversation_id: str, content: str, role: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        """Append a message and bump the conversation's updated_at.

        Raises:
            ValidationError: If role is not 'user' or 'assistant'
            NotFoundError: If the conversation does not exist
        """
        if role not in MESSAGE_ROLES:
            raise ValidationError(f'Invalid message role: {role}')

        conversation = await asyncio.to_thread(self.repository.get_conversation, conversation_id)
        if conversation is None:
            raise NotFoundError('Conversation not found')

        message = Message(id=str(uuid.uuid4()),
                          conversation_id=conversation_id,
                          role=role,
                          content=content,
                          metadata=copy.deepcopy(metadata or {}),
                          created_at=utc_now())
        await asyncio.to_thread(self.repository.save_message, message)
        await asyncio.to_thread(self.repository.update_conversation, conversation_id, {'updated_at': message.created_at})
        return message

    async def list_conversations(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Conversation], int]:
        return await asyncio.to_thread(self.repository.list_conversations, user_id, limit, offset)

    async def get_conversation_messages(self, conversation_id: str, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[Message], int]:
        await self.get_conversation(conversation_id, user_id)
        return await asyncio.to_thread(self.repository.list_messages, conversation_id, limit, offset)

    async def search_conversation_messages(self, conversation_id: str, user_id: str, query: str, limit: int = 20) -> List[Message]:
        await self.get_conversation(conversation_id, user_id)
        if not query or not query.strip():
            return []
        return await asyncio.to_thread(self.repository.search_messages, conversation_id, query.strip(), limit)

    async def update_conversation_title(self, conversation_id: str, user_id: str, title: str) -> Conversation:
        if not title or not title.strip():
            raise ValidationError('Title is required')

        await self.get_conversation(conversation_id, user_id)
        fields = {'title': title.strip(), 'updated_at': utc_now()}
        conversation = await asyncio.to_thread(self.repository.update_conversation, conversation_id, fields)
        if conversation is None:
            raise NotFoundError('Conversation not found')
        return conversation

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        await self.get_conversation(conversation_id, user_id)
        await asyncio.to_thread(self.repository.delete_conversation, conversation_id)
        logger.info(f'Deleted conversation {conversation_id} for user {user_id}')

    def generate_conversation_title(self, first_message: str) -> str:
        """Title from the first message: collapsed whitespace, cut at title_length with '...'."""
        text = ' '.join((first_message or '').split())
        if not text:
            return DEFAULT_TITLE
        max_length = self.config.conversation.title_length
        if len(text) > max_length:
            return text[:max_length] + '...'
        return text

    @staticmethod
    def convert_to_safe_html(markdown_text: str) -> str:
        """Render markdown and reduce it to the allowed tags and attributes.

        If rendering or sanitizing fails the text is returned HTML-escaped.
        """
        try:
            rendered = markdown.markdown(markdown_text or '', extensions=MARKDOWN_EXTENSIONS)
            return nh3.clean(rendered, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES)
        except Exception as e:
            logger.error(f'Failed to render markdown, returning escaped text: {e}')
            return html.escape(markdown_text or '')
