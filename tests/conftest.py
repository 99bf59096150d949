"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- sqlite_config: MirrorConfig pointing the registration cache at a SQLite file
- db: DatabaseContext for that file, disposed after the test
"""
import logging

import pytest

from mesosync.client import DatabaseContext, MirrorConfig

logger = logging.getLogger(__name__)


@pytest.fixture
def sqlite_config(tmp_path):
    """Cache-enabled config backed by a throwaway SQLite database.
    """
    return MirrorConfig(
        cache_enabled=True,
        connection_string=f'sqlite:///{tmp_path / "cache.db"}',
        appname='test_',
    )


@pytest.fixture
def db(sqlite_config):
    context = DatabaseContext(sqlite_config)
    try:
        yield context
    finally:
        context.dispose()
