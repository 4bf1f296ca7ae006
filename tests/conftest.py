"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["TOPICKEYS_ADMIN_TOKEN"] = "test-admin-token"
os.environ["TOPICKEYS_DB"] = ":memory:"
# No background reconciler in tests; they run the job explicitly
os.environ["TOPICKEYS_CONSISTENCY_INTERVAL"] = "0"
os.environ.pop("TOPICKEYS_ENCRYPT_GROUPS", None)
os.environ.pop("TOPICKEYS_ENCRYPT_ENABLED", None)


import pytest
from topickeys import db
from topickeys.identity import generate_identity
from topickeys.metrics import metrics


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database and metrics before each test function.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    conn = db.get_connection()
    db.reset_db(conn)
    metrics.reset()
    yield
    db.close_db()  # Cleanup after test


# RSA key generation is slow; share a few identities across the session


@pytest.fixture(scope="session")
def alice_identity():
    return generate_identity()


@pytest.fixture(scope="session")
def bob_identity():
    return generate_identity()


@pytest.fixture(scope="session")
def legacy_identity():
    return generate_identity(version=0)
