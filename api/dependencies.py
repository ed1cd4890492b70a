"""
FastAPI dependencies for dependency injection.

Provides the storage singletons built during the app lifespan to route
handlers.
"""

from typing import Optional

from core.storage import DatabaseClient, Repositories


# Global singleton (set during app lifespan)
_repositories: Optional[Repositories] = None


def set_repositories(repositories: Optional[Repositories]) -> None:
    """Set (or clear) the global repository set."""
    global _repositories
    _repositories = repositories


async def get_repositories() -> Repositories:
    """
    Dependency that provides every entity repository.

    Usage:
        @router.get("/events")
        async def list_events(
            repositories: Repositories = Depends(get_repositories)
        ):
            ...
    """
    if _repositories is None:
        raise RuntimeError("Repositories not initialized")
    return _repositories


async def get_database_client() -> DatabaseClient:
    """
    Dependency that provides the shared database client.
    """
    repositories = await get_repositories()
    return repositories.client
