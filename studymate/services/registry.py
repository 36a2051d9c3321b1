"""
Wiring of the services around one document store.
"""

from dataclasses import dataclass

from ..utils.document_store import DocumentStore
from ..utils.logging_config import get_logger
from .aggregation import AggregationService
from .social_graph import SocialGraphService
from .tracking import TrackingService
from .users import UserService

logger = get_logger(__name__)


@dataclass
class ServiceRegistry:
    """All services sharing a single store; build once at startup and close at shutdown."""
    store: DocumentStore
    users: UserService
    tracking: TrackingService
    aggregation: AggregationService
    social: SocialGraphService

    @classmethod
    def build(cls, store: DocumentStore) -> 'ServiceRegistry':
        aggregation = AggregationService(store)
        registry = cls(store=store,
                       users=UserService(store),
                       tracking=TrackingService(store),
                       aggregation=aggregation,
                       social=SocialGraphService(store, aggregation))
        logger.info(f'Initialized services on {type(store).__name__}')
        return registry

    def close(self) -> None:
        self.store.close()
