"""Shared fixtures for freshness service tests"""

import os
import tempfile

import pytest

from freshwatch.services.alerting import AlertService
from freshwatch.services.config_store import ConfigStore
from freshwatch.services.db_manager import Database
from freshwatch.services.freshness_tracker import FreshnessTracker
from freshwatch.services.refresh_scheduler import RefreshScheduler
from freshwatch.services.version_store import VersionStore


@pytest.fixture
def temp_dir():
    """Create temporary directory for test databases"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def database(temp_dir):
    """Initialized file-backed database"""
    db = Database(os.path.join(temp_dir, "freshness.db"), busy_timeout=10)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def config_store(database):
    """Configuration store seeded with defaults"""
    store = ConfigStore(database)
    store.load()
    return store


@pytest.fixture
def versions(database):
    return VersionStore(database)


@pytest.fixture
def tracker(database, config_store, versions):
    return FreshnessTracker(database, config_store, versions)


@pytest.fixture
def alerts(database):
    return AlertService(database)


@pytest.fixture
def scheduler(database, config_store, tracker, alerts):
    return RefreshScheduler(database, config_store, tracker, alerts)
