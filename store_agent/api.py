"""
HTTP interface for the store assistant.

Authentication happens upstream; the gateway forwards the caller's identity in the
X-User-Id and X-User-Role headers and this layer enforces roles per endpoint.

Run with:
    uvicorn store_agent.api:create_app --factory --port 8080
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .models.core import SearchFilters
from .services.agent import AgentService
from .utils.config import config
from .utils.errors import AgentError, AuthorizationError, ForbiddenError, UpstreamError, ValidationError
from .utils.logging_config import get_logger
from .utils.timestamp_utils import to_iso

logger = get_logger(__name__)

CHAT_ROLES = ('admin', 'cashier', 'accountant')
SEARCH_ROLES = ('admin', 'accountant')
ADMIN_ROLES = ('admin',)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(CamelModel):
    query: str = Field(..., max_length=4000)
    conversation_id: Optional[str] = Field(default=None, alias='conversationId')


class ChatResponse(CamelModel):
    success: bool = True
    message: str
    html: str
    data: Optional[Dict[str, Any]] = None
    timestamp: str
    conversation_id: str = Field(alias='conversationId')
    search_metadata: Dict[str, Any] = Field(default_factory=dict, alias='searchMetadata')


class EnhancedSearchRequest(CamelModel):
    query: str = Field(..., max_length=4000)
    entity_types: Optional[List[str]] = Field(default=None, alias='entityTypes')
    date_from: Optional[datetime] = Field(default=None, alias='dateFrom')
    date_to: Optional[datetime] = Field(default=None, alias='dateTo')
    limit: Optional[int] = Field(default=None, ge=1, le=50)


class SwitchProviderRequest(CamelModel):
    provider: str


class UpdateTitleRequest(CamelModel):
    title: str = Field(..., max_length=200)


class SyncRequest(CamelModel):
    entity_type: Optional[str] = Field(default=None, alias='entityType')
    force: bool = False


class HealthResponse(CamelModel):
    status: bool
    timestamp: str
    message: str
    details: Dict[str, Any]


@dataclass
class CurrentUser:
    id: str
    role: str


def get_agent(request: Request) -> AgentService:
    return request.app.state.agent


def get_current_user(x_user_id: Optional[str] = Header(default=None),
                     x_user_role: Optional[str] = Header(default=None)) -> CurrentUser:
    if not x_user_id or not x_user_id.strip():
        raise AuthorizationError('User authentication required')
    return CurrentUser(id=x_user_id.strip(), role=(x_user_role or '').strip().lower())


def require_roles(*roles: str):
    """Dependency factory restricting an endpoint to the given roles."""

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise ForbiddenError('Insufficient permissions')
        return user

    return dependency


router = APIRouter(prefix='/ai-agent', tags=['ai-agent'])


@router.post('/chat', response_model=ChatResponse)
async def chat(body: ChatRequest,
               user: CurrentUser = Depends(require_roles(*CHAT_ROLES)),
               agent: AgentService = Depends(get_agent)):
    """Ask the store assistant a question, optionally continuing a conversation."""
    result = await agent.handle_query(body.query, user.id, body.conversation_id)
    return ChatResponse(message=result['message'],
                        html=result['html'],
                        data={
                            'session_metadata': result.get('session_metadata'),
                            'enhanced_context': result.get('enhanced_context')
                        },
                        timestamp=result.get('timestamp') or to_iso(),
                        conversation_id=result['conversation_id'],
                        search_metadata=result.get('search_metadata') or {})


@router.post('/search/enhanced')
async def enhanced_search(body: EnhancedSearchRequest,
                          user: CurrentUser = Depends(require_roles(*SEARCH_ROLES)),
                          agent: AgentService = Depends(get_agent)):
    filters = SearchFilters(entity_types=body.entity_types, date_from=body.date_from, date_to=body.date_to, limit=body.limit)
    data = await agent.enhanced_search(body.query, filters)
    return {'success': True, 'message': 'Enhanced search completed', 'data': data, 'timestamp': to_iso()}


@router.get('/health', response_model=HealthResponse)
async def health(agent: AgentService = Depends(get_agent)):
    details = agent.health_check()
    message = 'AI Agent is healthy' if details['status'] else 'AI Agent is not ready'
    return HealthResponse(status=details['status'], timestamp=details['timestamp'], message=message, details=details)


@router.post('/provider/switch')
async def switch_provider(body: SwitchProviderRequest,
                          user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
                          agent: AgentService = Depends(get_agent)):
    try:
        provider = await agent.switch_provider(body.provider)
    except UpstreamError as e:
        raise ValidationError(e.message) from e
    logger.info(f'User {user.id} switched LLM provider to {provider}')
    return {'success': True, 'message': f'Switched to {provider}', 'provider': provider, 'timestamp': to_iso()}


@router.get('/provider/current')
async def current_provider(user: CurrentUser = Depends(get_current_user), agent: AgentService = Depends(get_agent)):
    return {'provider': agent.get_current_provider(), 'providers': agent.list_providers(), 'timestamp': to_iso()}


@router.get('/conversations')
async def list_conversations(limit: int = Query(default=20, ge=1, le=100),
                             offset: int = Query(default=0, ge=0),
                             user: CurrentUser = Depends(get_current_user),
                             agent: AgentService = Depends(get_agent)):
    conversations, total = await agent.conversations.list_conversations(user.id, limit, offset)
    return {'conversations': [conversation.to_dict() for conversation in conversations], 'total': total, 'limit': limit, 'offset': offset}


@router.get('/conversations/{conversation_id}')
async def get_conversation(conversation_id: str,
                           user: CurrentUser = Depends(get_current_user),
                           agent: AgentService = Depends(get_agent)):
    conversation = await agent.conversations.get_conversation(conversation_id, user.id, include_messages=True)
    return {**conversation.to_dict(), 'messages': [message.to_dict() for message in conversation.messages]}


@router.get('/conversations/{conversation_id}/messages')
async def conversation_messages(conversation_id: str,
                                limit: int = Query(default=50, ge=1, le=200),
                                offset: int = Query(default=0, ge=0),
                                user: CurrentUser = Depends(get_current_user),
                                agent: AgentService = Depends(get_agent)):
    messages, total = await agent.conversations.get_conversation_messages(conversation_id, user.id, limit, offset)
    return {'messages': [message.to_dict() for message in messages], 'total': total, 'limit': limit, 'offset': offset}


@router.get('/conversations/{conversation_id}/search')
async def search_conversation(conversation_id: str,
                              query: str = Query(..., max_length=500),
                              limit: int = Query(default=20, ge=1, le=100),
                              user: CurrentUser = Depends(get_current_user),
                              agent: AgentService = Depends(get_agent)):
    messages = await agent.conversations.search_conversation_messages(conversation_id, user.id, query, limit)
    return {'messages': [message.to_dict() for message in messages], 'total': len(messages)}


@router.patch('/conversations/{conversation_id}')
async def rename_conversation(conversation_id: str,
                              body: UpdateTitleRequest,
                              user: CurrentUser = Depends(get_current_user),
                              agent: AgentService = Depends(get_agent)):
    conversation = await agent.conversations.update_conversation_title(conversation_id, user.id, body.title)
    return conversation.to_dict()


@router.delete('/conversations/{conversation_id}')
async def delete_conversation(conversation_id: str,
                              user: CurrentUser = Depends(get_current_user),
                              agent: AgentService = Depends(get_agent)):
    await agent.conversations.delete_conversation(conversation_id, user.id)
    return {'success': True, 'message': 'Conversation deleted'}


admin_router = APIRouter(prefix='/ai-agent/admin', tags=['ai-agent-admin'], dependencies=[Depends(require_roles(*ADMIN_ROLES))])


@admin_router.get('/sync-status')
async def sync_status(entity_type: Optional[str] = Query(default=None, alias='entityType'), agent: AgentService = Depends(get_agent)):
    return agent.get_sync_status(entity_type)


@admin_router.post('/sync')
async def trigger_sync(body: SyncRequest, agent: AgentService = Depends(get_agent)):
    return await agent.trigger_sync(body.entity_type, force=body.force)


@admin_router.get('/index-stats')
async def index_stats(agent: AgentService = Depends(get_agent)):
    return await agent.get_index_stats()


@admin_router.delete('/index')
async def clear_index(agent: AgentService = Depends(get_agent)):
    return await agent.clear_index()


@admin_router.get('/health')
async def detailed_health(agent: AgentService = Depends(get_agent)):
    return await agent.get_detailed_health()


@admin_router.get('/data-quality')
async def data_quality(agent: AgentService = Depends(get_agent)):
    return agent.get_data_quality_report()


@admin_router.get('/performance')
async def performance(agent: AgentService = Depends(get_agent)):
    return agent.get_performance()


@admin_router.get('/similar')
async def similar_content(query: str = Query(..., max_length=500),
                          k: int = Query(default=5, ge=1, le=20),
                          agent: AgentService = Depends(get_agent)):
    return await agent.find_similar_content(query, k)


async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f'{request.method} {request.url.path} failed: {exc.message}')
    return JSONResponse(status_code=exc.status_code, content={'success': False, 'message': exc.message, 'timestamp': to_iso()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.debug(f'Invalid request to {request.url.path}: {exc.errors()}')
    return JSONResponse(status_code=400, content={'success': False, 'message': 'Invalid request', 'timestamp': to_iso()})


def create_app(service: Optional[AgentService] = None) -> FastAPI:
    """Build the FastAPI application around an agent service.

    The service is started and stopped with the application lifespan. Without
    a service, one is built from config, including the record sources named by
    AI_SYNC_SOURCES_FACTORY.
    """
    agent = service or AgentService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await agent.startup()
        yield
        await agent.shutdown()

    app = FastAPI(title='Store Agent API',
                  description='Retrieval-augmented assistant over inventory, sales, purchasing and accounting records',
                  version='1.0.0',
                  lifespan=lifespan)
    app.state.agent = agent
    app.add_exception_handler(AgentError, agent_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    app.include_router(admin_router)
    return app


if __name__ == '__main__':
    uvicorn.run(create_app(), host=config.api.host, port=config.api.port)
