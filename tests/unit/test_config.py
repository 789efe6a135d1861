"""Unit tests for configuration loading and platform-aware defaults."""

from __future__ import annotations

from pathlib import Path

import platformdirs
import pytest
from pydantic import ValidationError

from routethru.config import _DEFAULT_CACHE_DIR, _DEFAULT_DISK_DIR, CacheSettings, Settings


class TestPlatformDefaults:
    """Verify config defaults use platformdirs instead of hardcoded Unix paths."""

    def test_default_cache_dir_matches_platformdirs(self) -> None:
        assert platformdirs.user_cache_dir("routethru") == _DEFAULT_CACHE_DIR

    def test_default_disk_dir_under_cache_dir(self) -> None:
        assert _DEFAULT_DISK_DIR.startswith(_DEFAULT_CACHE_DIR)
        assert Path(_DEFAULT_DISK_DIR).name == "responses"

    def test_cache_settings_uses_platform_default(self) -> None:
        assert CacheSettings().disk_dir == _DEFAULT_DISK_DIR


class TestDefaults:
    def test_documented_defaults(self) -> None:
        settings = Settings()
        assert settings.server.port == 3000
        assert settings.fetcher.timeout_seconds == 30.0
        assert settings.cache.memory_capacity == 50
        assert settings.cache.memory_ttl_seconds == 300.0
        assert settings.cache.disk_ttl_hours == 24.0
        assert settings.cache.disk_max_bytes == 1024**3
        assert settings.rewriter.strip_security_policies is True
        assert settings.logging.format == "json"


class TestSources:
    def test_env_overrides_nested_fields(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROUTETHRU__SERVER__PORT", "8080")
        monkeypatch.setenv("ROUTETHRU__CACHE__MEMORY_CAPACITY", "200")
        monkeypatch.setenv("ROUTETHRU__REWRITER__REWRITE_SCRIPTS", "false")
        settings = Settings()
        assert settings.server.port == 8080
        assert settings.cache.memory_capacity == 200
        assert settings.rewriter.rewrite_scripts is False

    def test_constructor_args_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROUTETHRU__SERVER__PORT", "8080")
        assert Settings(server={"port": 9000}).server.port == 9000

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CacheSettings(memory_capacity=0)
        with pytest.raises(ValidationError):
            Settings(logging={"level": "LOUD"})
