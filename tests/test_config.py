"""Tests for settings loading."""

import os
from unittest.mock import patch

from feedsync.config import Settings


def test_defaults_without_environment():
    """Test defaults when nothing is configured."""
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.max_consecutive_failures == 10
    assert settings.adaptive_sync_enabled is True
    assert settings.feed_username is None
    assert settings.detail_tablixes[0] == "Tablix1"


def test_environment_overrides():
    """Test that environment variables override defaults."""
    env = {
        "DATABASE_URL": "sqlite:///./test.db",
        "FEED_FETCH_TIMEOUT_SECONDS": "5",
        "FEED_USERNAME": "reports",
        "MAX_CONSECUTIVE_FAILURES": "3",
        "ADAPTIVE_SYNC_ENABLED": "false",
        "DETAIL_TABLIXES": '["Tablix1", "Tablix8"]',
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)

    assert settings.database_url == "sqlite:///./test.db"
    assert settings.feed_fetch_timeout_seconds == 5.0
    assert settings.feed_username == "reports"
    assert settings.max_consecutive_failures == 3
    assert settings.adaptive_sync_enabled is False
    assert settings.detail_tablixes == ["Tablix1", "Tablix8"]
