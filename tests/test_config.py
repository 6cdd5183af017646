"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from fab_installer.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "fab-installer" / "artifacts"
        assert settings.registry_repo == "ghcr.io"
        assert settings.registry_prefix == "githedgehog"
        assert settings.offline is False
        assert settings.log_level == "INFO"
        assert settings.download_workers >= 1

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "FAB_INSTALLER_OFFLINE": "true",
                "FAB_INSTALLER_LOG_LEVEL": "DEBUG",
                "FAB_INSTALLER_DOWNLOAD_WORKERS": "8",
                "FAB_INSTALLER_REGISTRY_REPO": "localhost:5000",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.download_workers == 8
            assert settings.registry_repo == "localhost:5000"

    def test_settings_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"FAB_INSTALLER_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "cache_dir" in parsed
        assert "work_dir" in parsed
        assert "registry_repo" in parsed
        assert "offline" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "cache_dir" in parsed
