"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from core.pubsub import PubSubService
from services.messaging import MessagingService
from services.notifications import NotificationService
from services.realtime import RealtimeService
from services.security import SecurityMonitor
from services.storage import BucketStorage, DeliverableService
from services.user_auth import UserAuthService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Ephemeral layer: one registry and one cache per process
    pubsub = providers.Singleton(
        PubSubService
    )

    # Database (publishes change events, backs the SQLite cache)
    database = providers.Singleton(
        Database,
        settings=settings,
        pubsub=pubsub
    )

    # Cache service (uses Redis when available, SQLite otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    storage = providers.Singleton(
        BucketStorage,
        settings=settings
    )

    # Services
    security_monitor = providers.Factory(
        SecurityMonitor,
        database=database,
        cache=cache,
        settings=settings
    )

    user_auth_service = providers.Factory(
        UserAuthService,
        database=database,
        security=security_monitor,
        settings=settings
    )

    notification_service = providers.Factory(
        NotificationService,
        database=database,
        pubsub=pubsub,
        settings=settings
    )

    messaging_service = providers.Factory(
        MessagingService,
        database=database,
        pubsub=pubsub,
        notifications=notification_service,
        settings=settings
    )

    deliverable_service = providers.Factory(
        DeliverableService,
        database=database,
        storage=storage,
        notifications=notification_service,
        settings=settings
    )

    realtime_service = providers.Factory(
        RealtimeService,
        pubsub=pubsub
    )


# Global container instance
container = Container()
