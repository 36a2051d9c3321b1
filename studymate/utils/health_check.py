"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .. import __version__
from .config import config
from .dynamodb_client import INDEXES, DynamoDBDocumentStore
from .logging_config import get_logger

logger = get_logger(__name__)


def check_health(store: Optional[DynamoDBDocumentStore] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(store)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(store: Optional[DynamoDBDocumentStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        store: Store to check (a new one from the global config if None)

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check DynamoDB
    try:
        store = store or DynamoDBDocumentStore(config.dynamodb, config.watch.poll_interval)
        health_status['dynamodb'] = {
            'healthy': store.health_check(),
            'service': 'Amazon DynamoDB',
            'tables': [store.table_name(collection) for collection in INDEXES]
        }
    except Exception as e:
        health_status['dynamodb'] = {'healthy': False, 'service': 'Amazon DynamoDB', 'error': str(e)}

    return health_status


def get_system_info(store: Optional[DynamoDBDocumentStore] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'StudyMate',
        'version': __version__,
        'configuration': {
            'environment': config.environment,
            'aws_region': config.dynamodb.region,
            'table_prefix': config.dynamodb.table_prefix,
            'transaction_attempts': config.dynamodb.transaction_attempts
        },
        'health_status': get_health_status(store)
    }
