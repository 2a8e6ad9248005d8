"""
Shared fixtures for msgsync tests.

Provides an in-memory database, a synced account, a test sync config and
an orchestrator factory that closes what it builds.
"""

import logging
from unittest.mock import MagicMock

import pytest

from msgsync.api.base import ConversationRef
from msgsync.config.sync_config import RetryConfig, SyncConfig
from msgsync.storage.db import SyncDatabase
from msgsync.sync.conversation import ConversationKind
from msgsync.sync.engine import SyncOrchestrator
from msgsync.utils.logging import ROOT_LOGGER_NAME


@pytest.fixture
def database():
    """Create an initialized in-memory database."""
    db = SyncDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def account(database):
    """Create the synced account used by most tests."""
    return database.add_account("team@example.com")


@pytest.fixture
def sync_config():
    """Create a Gmail-only config without pauses or propagation."""
    return SyncConfig(
        platforms=("gmail",),
        account_pause_seconds=0,
        max_fetch_workers=2,
        propagate_identities=False,
        retry=RetryConfig(max_retries=3, initial_delay=0.5, max_delay=2.0),
    )


@pytest.fixture
def make_orchestrator(database, sync_config):
    """Build orchestrators whose background executors are closed afterwards."""
    created: list[SyncOrchestrator] = []

    def factory(connectors, config=None, **kwargs):
        kwargs.setdefault("sleep", MagicMock())
        orchestrator = SyncOrchestrator(
            database, connectors, config=config or sync_config, **kwargs
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.close()


@pytest.fixture
def direct_message_ref():
    """Create an unnamed chat direct message listing."""
    return ConversationRef(id="spaces/DM1", kind=ConversationKind.DIRECT_MESSAGE)


@pytest.fixture
def restore_msgsync_logger():
    """Put the msgsync logger back the way it was after the test."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
