"""
Database setup script.

Connects to MongoDB and creates every index the repositories declare.
The API does the same on startup; run this to provision a fresh database
ahead of a deployment.

Usage:
    python -m scripts.setup_db
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.config import settings
from core.logging import configure_logging, get_logger
from core.storage import create_database_client, create_repositories


logger = get_logger(__name__)


async def setup_database() -> None:
    """Connect and provision indexes for every collection."""
    configure_logging()
    client = create_database_client(settings)
    repositories = create_repositories(client)

    logger.info(
        "Provisioning indexes",
        database=settings.mongodb_database,
        collections=[repository.collection_name for repository in repositories.all()],
    )
    try:
        await client.connect()
        # Raises for the first collection whose indexes cannot be created.
        for repository in repositories.all():
            await repository.ensure_indexes()
    finally:
        await client.close()

    logger.info("Database setup complete")


if __name__ == "__main__":
    asyncio.run(setup_database())
