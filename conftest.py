"""
Pytest configuration and fixtures for profile crawler tests.
"""

import pytest
from hypothesis import settings, Verbosity
import tempfile
import shutil
from pathlib import Path
import os

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=10, deadline=5000, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=30000, verbosity=Verbosity.normal)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(scope="session")
def temp_db_dir():
    """Create a temporary directory for test databases."""
    temp_dir = tempfile.mkdtemp(prefix="profile_crawler_test_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def temp_db_path(temp_db_dir, request):
    """Unique database path for each test."""
    db_path = Path(temp_db_dir) / f"test_{os.getpid()}_{request.node.name}.db"
    yield str(db_path)
    for suffix in ("", "-wal", "-shm"):
        Path(str(db_path) + suffix).unlink(missing_ok=True)


@pytest.fixture
def db_manager(temp_db_path):
    """Initialized SQLite database manager."""
    from profile_crawler.data.sqlite_database import SQLiteDatabaseManager

    manager = SQLiteDatabaseManager(temp_db_path)
    manager.initialize()
    return manager


@pytest.fixture
def system_config(temp_db_path):
    """System configuration with delays shrunk for tests."""
    from config import (
        SystemConfig, RateLimitConfig, ConcurrencyConfig, BatchConfig,
        AuthConfig, NavigationConfig, DatabaseConfig
    )

    return SystemConfig(
        rate_limit=RateLimitConfig(
            max_requests_per_minute=1000,
            min_delay_ms=0,
            max_delay_ms=10,
            poll_interval_seconds=0.01,
            circuit_reset_time_ms=50,
        ),
        concurrency=ConcurrencyConfig(
            base_profile_delay_ms=0,
            min_profile_delay_ms=0,
        ),
        batch=BatchConfig(item_delay_ms=0, chunk_cooldown_ms=0),
        auth=AuthConfig(reauth_backoff_ms=0),
        navigation=NavigationConfig(page_delay_ms=0, navigation_retry_delay_ms=0),
        database=DatabaseConfig(sqlite_path=temp_db_path),
    )


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "property: hypothesis property-based test")
    config.addinivalue_line("markers", "integration: test spanning several components")
    config.addinivalue_line("markers", "unit: single component test")

    # Configure logging for tests
    import logging
    logging.getLogger("profile_crawler").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Mark property-based tests
        if "property" in item.name.lower() or "properties" in item.fspath.basename:
            item.add_marker(pytest.mark.property)

        if "integration" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
