"""Tests for retouch.core.config — configuration management.

Tests cover:
- Default values for the provider, batch and server fields.
- Environment variable overrides via the RETOUCH_ prefix.
- Provider key fallbacks (FAL_KEY / FAL_API_KEY).
- Automatic directory creation on initialisation.
- Pydantic validation constraints (port range, concurrency, literals).
"""

from __future__ import annotations

from pathlib import Path

import pytest

from retouch.core.config import ProviderSettings, RetouchConfig

_KEY_VARS = ("RETOUCH_PROVIDER_API_KEY", "FAL_API_KEY", "FAL_KEY", "PROVIDER_API_KEY")


def _make_config(temp_dir: Path, **overrides) -> RetouchConfig:
    return RetouchConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        objects_dir=temp_dir / "objects",
        **overrides,
    )


class TestConfigDefaults:
    """Verify that RetouchConfig provides sensible defaults."""

    def test_batch_defaults(self, monkeypatch, temp_dir: Path):
        """Chunks of 3, 500 ms pacing and 2 s polling by default."""
        for var in ("RETOUCH_CONCURRENCY_LIMIT", "RETOUCH_PACING_DELAY", "RETOUCH_POLL_INTERVAL"):
            monkeypatch.delenv(var, raising=False)
        cfg = _make_config(temp_dir)
        assert cfg.concurrency_limit == 3
        assert cfg.pacing_delay == 0.5
        assert cfg.poll_interval == 2.0

    def test_provider_defaults(self, monkeypatch, temp_dir: Path):
        """The default model is nano-banana on fal.run."""
        monkeypatch.delenv("RETOUCH_DEFAULT_MODEL", raising=False)
        monkeypatch.delenv("RETOUCH_PROVIDER_BASE_URL", raising=False)
        cfg = _make_config(temp_dir)
        assert cfg.default_model == "nano-banana"
        assert cfg.provider_base_url == "https://fal.run"

    def test_default_server_port(self, monkeypatch, temp_dir: Path):
        monkeypatch.delenv("RETOUCH_SERVER_PORT", raising=False)
        cfg = _make_config(temp_dir)
        assert cfg.server_port == 5000

    def test_default_resolution_strategy(self, test_config: RetouchConfig):
        assert test_config.resolution_strategy == "signed"
        assert test_config.signing_service_url is None


class TestConfigEnvironment:
    """Verify environment variable loading."""

    def test_prefixed_override(self, monkeypatch, temp_dir: Path):
        """RETOUCH_CONCURRENCY_LIMIT should override the default."""
        monkeypatch.setenv("RETOUCH_CONCURRENCY_LIMIT", "5")
        cfg = _make_config(temp_dir)
        assert cfg.concurrency_limit == 5

    def test_fal_key_fallback(self, monkeypatch, temp_dir: Path):
        """FAL_KEY is accepted as the provider API key."""
        for var in _KEY_VARS:
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setenv("FAL_KEY", "fal-secret")
        cfg = _make_config(temp_dir)
        assert cfg.provider_api_key == "fal-secret"

    def test_prefixed_key(self, monkeypatch, temp_dir: Path):
        for var in _KEY_VARS:
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setenv("RETOUCH_PROVIDER_API_KEY", "retouch-secret")
        cfg = _make_config(temp_dir)
        assert cfg.provider_api_key == "retouch-secret"

    def test_key_defaults_to_none(self, monkeypatch, temp_dir: Path):
        for var in _KEY_VARS:
            monkeypatch.delenv(var, raising=False)
        cfg = _make_config(temp_dir)
        assert cfg.provider_api_key is None


class TestConfigDirectoryCreation:
    """Verify that RetouchConfig creates required directories."""

    def test_data_and_objects_dirs_created(self, test_config: RetouchConfig):
        assert test_config.data_dir.is_dir()
        assert test_config.objects_dir.is_dir()

    def test_creates_nested_directories(self, temp_dir: Path):
        """Config should create deeply nested directories via parents=True."""
        cfg = RetouchConfig(
            _env_file=None,
            data_dir=temp_dir / "a" / "b" / "data",
            objects_dir=temp_dir / "a" / "b" / "objects",
        )
        assert cfg.data_dir.exists()
        assert cfg.objects_dir.exists()


class TestConfigValidation:
    """Verify Pydantic validation constraints on config fields."""

    def test_invalid_port_too_low(self, temp_dir: Path):
        with pytest.raises(Exception):
            _make_config(temp_dir, server_port=80)

    def test_zero_concurrency_rejected(self, temp_dir: Path):
        """A chunk size of zero can never make progress."""
        with pytest.raises(Exception):
            _make_config(temp_dir, concurrency_limit=0)

    def test_negative_pacing_rejected(self, temp_dir: Path):
        with pytest.raises(Exception):
            _make_config(temp_dir, pacing_delay=-1)

    def test_unknown_strategy_rejected(self, temp_dir: Path):
        with pytest.raises(Exception):
            _make_config(temp_dir, resolution_strategy="magic")


class TestProviderSettings:
    """Verify the immutable provider settings value."""

    def test_provider_settings_from_config(self, test_config: RetouchConfig):
        provider = test_config.provider_settings()
        assert isinstance(provider, ProviderSettings)
        assert provider.base_url == test_config.provider_base_url
        assert provider.api_key == "test-key"
        assert provider.timeout == test_config.provider_timeout

    def test_provider_settings_frozen(self):
        provider = ProviderSettings(api_key="k")
        with pytest.raises(Exception):
            provider.api_key = "other"
