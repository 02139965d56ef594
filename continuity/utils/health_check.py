"""
Health check utilities for the continuity engine and its collaborators.
"""

from typing import Any, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def check_health(service: Optional[Any] = None, app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of every enabled component.

    Args:
        service: Running ContinuityService, adds breaker and store state when given
        app_config: Configuration to check against, uses default if None

    Returns:
        True if all enabled components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(service, app_config)
        all_healthy = all(status.get('healthy', False) for status in health_status.values() if status.get('enabled', True))

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(service: Optional[Any] = None, app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Disabled collaborators are reported with ``enabled: False`` and are not
    contacted; the engine runs without them.

    Args:
        service: Running ContinuityService, if any
        app_config: Configuration to check against, uses default if None

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status: Dict[str, Any] = {}

    # Embedding provider
    if app_config.bedrock_embed.enabled:
        try:
            embed = BedrockEmbed(app_config.bedrock_embed)
            health_status['bedrock_embed'] = {
                'healthy': embed.health_check(),
                'enabled': True,
                'service': 'Amazon Bedrock Embed',
                'model': app_config.bedrock_embed.model_id
            }
        except Exception as e:
            health_status['bedrock_embed'] = {'healthy': False, 'enabled': True, 'service': 'Amazon Bedrock Embed', 'error': str(e)}
    else:
        health_status['bedrock_embed'] = {'healthy': True, 'enabled': False, 'service': 'Amazon Bedrock Embed'}

    # Summarizer
    if app_config.bedrock_llm.summarization_enabled:
        try:
            llm = BedrockLLM(app_config.bedrock_llm)
            health_status['summarizer'] = {
                'healthy': llm.health_check(),
                'enabled': True,
                'service': 'Amazon Bedrock LLM',
                'model': app_config.bedrock_llm.model_id
            }
        except Exception as e:
            health_status['summarizer'] = {'healthy': False, 'enabled': True, 'service': 'Amazon Bedrock LLM', 'error': str(e)}
    else:
        health_status['summarizer'] = {'healthy': True, 'enabled': False, 'service': 'Amazon Bedrock LLM'}

    # Archive tier
    if app_config.opensearch.enabled:
        try:
            opensearch = OpenSearchClient(app_config.opensearch)
            health_status['archive'] = {
                'healthy': opensearch.health_check(),
                'enabled': True,
                'service': 'Amazon OpenSearch',
                'endpoint': app_config.opensearch.endpoint
            }
        except Exception as e:
            health_status['archive'] = {'healthy': False, 'enabled': True, 'service': 'Amazon OpenSearch', 'error': str(e)}
    else:
        health_status['archive'] = {'healthy': True, 'enabled': False, 'service': 'Amazon OpenSearch'}

    # In-process state: an open breaker is a degraded mode, not a failure
    if service is not None:
        similarity = service.engine.stats()
        health_status['similarity'] = {
            'healthy': True,
            'enabled': True,
            'breaker': similarity['breaker'],
            'last_strategy': similarity['last_strategy'],
        }
        health_status['memory_store'] = {
            'healthy': not service.store.check_consistency(),
            'enabled': True,
            **service.store.stats()
        }

    return health_status


def get_system_info(service: Optional[Any] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'Continuity Engine',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'retention_window': config.memory.retention_window,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status(service)
    }
