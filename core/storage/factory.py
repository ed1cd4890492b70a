"""
Factories for the storage layer.

The database client and every repository are built once at startup and
handed to whoever needs them (the FastAPI lifespan, scripts, tests).
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from core.logging import get_logger
from core.storage.base import BaseRepository
from core.storage.client import ClientFactory, DatabaseClient
from core.storage.repositories import (
    AccountRepository,
    AssetRepository,
    BundleRepository,
    EventRepository,
    OrganizationRepository,
)


if TYPE_CHECKING:
    from core.config import Settings


logger = get_logger(__name__)


@dataclass
class Repositories:
    """All entity repositories sharing one DatabaseClient."""

    client: DatabaseClient
    events: EventRepository
    assets: AssetRepository
    bundles: BundleRepository
    accounts: AccountRepository
    organizations: OrganizationRepository

    def all(self) -> list[BaseRepository]:
        return [self.events, self.assets, self.bundles, self.accounts, self.organizations]


def create_database_client(
    settings: "Settings",
    client_factory: Optional[ClientFactory] = None,
) -> DatabaseClient:
    """
    Create the shared database client (not yet connected).

    Args:
        settings: Application settings
        client_factory: Optional driver client factory, used by tests
    """
    logger.info("Creating MongoDB client", database=settings.mongodb_database)
    return DatabaseClient(
        connection_string=settings.mongodb_url,
        database_name=settings.mongodb_database,
        client_factory=client_factory,
        server_selection_timeout_ms=settings.mongodb_server_selection_timeout_ms,
    )


def create_repositories(client: DatabaseClient) -> Repositories:
    """
    Create every entity repository on ``client``.

    Each repository queues its index provisioning on the client, so the
    indexes exist once the client's first connection completes.
    """
    return Repositories(
        client=client,
        events=EventRepository(client),
        assets=AssetRepository(client),
        bundles=BundleRepository(client),
        accounts=AccountRepository(client),
        organizations=OrganizationRepository(client),
    )
