"""
Shared test fixtures and helpers for the docmapper test suite.
"""

import pytest

from docmapper.config import reset_config
from docmapper.db.engine import DocumentDatabase, reset_database, set_database
from docmapper.models.registry import ModelRegistry
from docmapper.models.signals import NOTIFICATIONS, model_prepared


def _reset_globals():
    ModelRegistry.reset()
    reset_config()
    reset_database()
    for signal in NOTIFICATIONS.values():
        signal.clear()
    model_prepared.clear()


@pytest.fixture(autouse=True)
def clean_state():
    """Each test declares its own models against a fresh registry."""
    _reset_globals()
    yield
    _reset_globals()


@pytest.fixture
async def db():
    """A connected in-memory database used by every model."""
    database = DocumentDatabase("memory://")
    await database.connect()
    ModelRegistry.set_database(database)
    set_database(database)
    yield database
    await database.disconnect()


@pytest.fixture
def rows(db):
    """Every stored row of a table, read straight from the memory adapter."""
    def _rows(table):
        return list(db.adapter._tables.get(table, {}).values())
    return _rows
