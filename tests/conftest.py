"""
Pytest configuration and fixtures.
"""

import os
import sys
import uuid
from pathlib import Path

import pytest
from mongomock_motor import AsyncMongoMockClient

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PAGINATION_DEFAULT", "50")
os.environ.setdefault("PAGINATION_MAX", "200")

from core.storage import DatabaseClient  # noqa: E402


@pytest.fixture
def database_client():
    """A DatabaseClient backed by a fresh in-memory MongoDB."""
    return DatabaseClient(
        "mongodb://localhost:27017",
        f"explorer_test_{uuid.uuid4().hex[:8]}",
        client_factory=lambda _: AsyncMongoMockClient(),
    )
