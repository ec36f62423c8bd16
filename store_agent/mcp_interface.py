"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from store_agent.models.core import SearchFilters
from store_agent.services.agent import AgentService, ServiceState
from store_agent.utils.config import config
from store_agent.utils.errors import AgentError
from store_agent.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Store Assistant')
agent_service = AgentService()
_startup_lock = asyncio.Lock()


async def _get_agent() -> AgentService:
    async with _startup_lock:
        if agent_service.state == ServiceState.CREATED:
            await agent_service.startup()
    return agent_service


@mcp.tool()
async def ask_store_assistant(user_id: str, query: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
    """Ask the store assistant a question about inventory, sales, purchasing or accounting.

    Args:
        user_id: User ID
        query: Natural language question (English or Arabic)
        conversation_id: Conversation to continue (optional, a new one is created if omitted)

    Returns:
        Dictionary with the answer, its conversation ID and search metadata

    Raises:
        Exception: If the query fails
    """
    try:
        if not user_id or not user_id.strip():
            raise ValueError('User ID is required')

        agent = await _get_agent()
        result = await agent.handle_query(query, user_id.strip(), conversation_id)

        logger.debug(f'MCP query answered in conversation {result["conversation_id"]} for user {user_id}')
        return {
            'message': result['message'],
            'conversation_id': result['conversation_id'],
            'search_metadata': result['search_metadata']
        }

    except AgentError as e:
        logger.error(f'Agent error in MCP query: {e}')
        raise Exception(f'Store assistant query failed: {e.message}') from e
    except Exception as e:
        logger.error(f'Unexpected error in MCP query: {e}')
        raise Exception(f'Store assistant query failed: {e}') from e


@mcp.tool()
async def search_store_data(query: str, entity_types: Optional[List[str]] = None, limit: int = 8) -> List[Dict[str, Any]]:
    """Search synced store records by meaning.

    Args:
        query: Natural language query
        entity_types: Restrict to these types, e.g. ['invoices', 'products'] (optional)
        limit: Maximum number of results to return (default: 8)

    Returns:
        List of results with id, entity_type, content and relevance_score
    """
    if not query or not query.strip():
        return []

    try:
        agent = await _get_agent()
        data = await agent.enhanced_search(query, SearchFilters(entity_types=entity_types or None, limit=limit))
    except AgentError as e:
        logger.error(f'Agent error in MCP search: {e}')
        raise Exception(f'Store data search failed: {e.message}') from e

    results = [{
        'id': result['id'],
        'entity_type': result['entity_type'],
        'content': result['content'],
        'relevance_score': result['relevance_score']
    } for result in data['search_results']]

    logger.debug(f'MCP search returned {len(results)} results')
    return results


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
