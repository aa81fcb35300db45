"""
Pytest fixtures for cl-volatility-fee tests.

Provides mock plugin, reference configuration, temporary database and
wired-up controller fixtures.
"""

import pytest
import tempfile
import os
import sys
from unittest.mock import MagicMock

# Add the project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from volfee.adapter import IntegrationAdapter
from volfee.config import Config
from volfee.database import Database
from volfee.events import EventDispatcher
from volfee.registry import ControllerRegistry


FIXED_NOW = 1_700_000_000


class FakeClock:
    """Deterministic time source for registry tests."""

    def __init__(self, now: int = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def config():
    """Reference configuration (alpha 3000/10000, fees 500..10000, thresholds 100..10000)."""
    return Config(db_path='')


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(config, mock_plugin, clock):
    """In-memory registry (no persistence)."""
    return ControllerRegistry(config, mock_plugin, clock=clock)


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Initialized SQLite database in a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def persistent_registry(config, mock_plugin, clock, database):
    """Registry writing through to the temporary database."""
    return ControllerRegistry(config, mock_plugin, database=database, clock=clock)


@pytest.fixture
def dispatcher(mock_plugin):
    return EventDispatcher(mock_plugin, buffer_size=30)


@pytest.fixture
def adapter(registry, dispatcher, mock_plugin):
    return IntegrationAdapter(registry, dispatcher, mock_plugin)


@pytest.fixture
def sample_entity_id():
    """Sample pool identifier."""
    return "0x" + "ab" * 32
