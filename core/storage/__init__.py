"""
Storage layer.

Cursor paginated MongoDB repositories for the explorer entities:
- DatabaseClient: the shared, lazily opened connection
- APIQuery / MongoPagedResult: query input and page output
- BaseRepository and the entity repositories built on it
"""

from core.storage.base import BaseRepository, Index
from core.storage.client import DatabaseClient
from core.storage.factory import (
    Repositories,
    create_database_client,
    create_repositories,
)
from core.storage.pagination import MongoPagedResult
from core.storage.query import APIQuery
from core.storage.repositories import (
    AccountRepository,
    AssetRepository,
    BundleRepository,
    EventRepository,
    OrganizationRepository,
)

__all__ = [
    # Query model
    "APIQuery",
    "MongoPagedResult",
    # Connection
    "DatabaseClient",
    # Repositories
    "BaseRepository",
    "Index",
    "EventRepository",
    "AssetRepository",
    "BundleRepository",
    "AccountRepository",
    "OrganizationRepository",
    # Factory functions
    "Repositories",
    "create_database_client",
    "create_repositories",
]
