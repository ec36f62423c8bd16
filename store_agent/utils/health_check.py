"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Iterable, Optional

from ..models.core import SyncStatus
from .config import AppConfig
from .logging_config import get_logger
from .timestamp_utils import to_iso

logger = get_logger(__name__)


def check_health(health_status: Dict[str, Dict[str, Any]]) -> bool:
    """Check whether every component in a health status report is healthy.

    Args:
        health_status: Output of get_health_status

    Returns:
        True if all components are healthy, False otherwise
    """
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Some system components are unhealthy: {unhealthy}')

    return all_healthy


def get_health_status(probes: Dict[str, Callable[[], bool]], details: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Probes are blocking; callers on the event loop run this in a worker thread.

    Args:
        probes: Component name to a zero-argument health check
        details: Extra static information reported per component

    Returns:
        Dictionary with health status of each component
    """
    details = details or {}
    health_status = {}

    for name, probe in probes.items():
        try:
            healthy = bool(probe())
            health_status[name] = {'healthy': healthy, **details.get(name, {})}
        except Exception as e:
            logger.warning(f'Health probe for {name} failed: {e}')
            health_status[name] = {'healthy': False, 'error': str(e), **details.get(name, {})}

    return health_status


def get_data_quality_report(statuses: Iterable[SyncStatus]) -> Dict[str, Any]:
    """Summarize synchronization coverage per entity type.

    Args:
        statuses: Current sync status of each entity type

    Returns:
        Dictionary with one entry per entity type and overall totals
    """
    statuses = list(statuses)
    return {
        'timestamp': to_iso(),
        'entities': [status.to_dict() for status in statuses],
        'summary': {
            'total_entities': len(statuses),
            'synced_entities': sum(1 for status in statuses if status.last_sync),
            'failed_entities': sum(1 for status in statuses if status.last_error),
            'total_documents': sum(status.document_count for status in statuses)
        }
    }


def get_system_info(app_config: AppConfig) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'store-agent',
        'version': '1.0.0',
        'configuration': {
            'environment': app_config.environment,
            'llm_provider': app_config.llm.provider,
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'ollama_model': app_config.ollama.chat_model,
            'huggingface_model': app_config.huggingface.model,
            'embed_provider': app_config.embed.provider,
            'index_name': app_config.opensearch.index_name,
            'sync_interval_minutes': app_config.sync.interval_minutes
        }
    }
