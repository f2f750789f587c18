"""Tests for promptly.core.config - configuration management.

Tests cover:
- Default values for ledger, leaderboard and integration settings.
- Environment variable overrides via the PROMPTLY_ prefix.
- Automatic directory creation on initialisation.
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from promptly.core.config import PromptlyConfig


def _make(temp_dir: Path, **overrides) -> PromptlyConfig:
    return PromptlyConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        database_path=temp_dir / "data" / "promptly.db",
        **overrides,
    )


class TestConfigDefaults:
    """Verify that PromptlyConfig provides sensible defaults."""

    def test_ledger_defaults(self, temp_dir: Path):
        """Points and credit tunables should match the published rules."""
        cfg = _make(temp_dir)
        assert cfg.points_per_level == 500
        assert cfg.monthly_credits == 50
        assert cfg.welcome_credits == 50
        assert cfg.tshirt_purchase_bonus == 10
        assert cfg.guest_daily_limit == 3

    def test_leaderboard_defaults(self, temp_dir: Path):
        cfg = _make(temp_dir)
        assert cfg.leaderboard_default_limit == 10
        assert cfg.leaderboard_max_limit == 100

    def test_prodigi_defaults_to_sandbox(self, monkeypatch, temp_dir: Path):
        """Without overrides the Prodigi sandbox is used."""
        monkeypatch.delenv("PROMPTLY_PRODIGI_API_URL", raising=False)
        cfg = _make(temp_dir)
        assert cfg.prodigi_api_url == "https://api.sandbox.prodigi.com/v4.0"
        assert cfg.action_cache_ttl_seconds == 300

    def test_default_server_port(self, monkeypatch, temp_dir: Path):
        monkeypatch.delenv("PROMPTLY_SERVER_PORT", raising=False)
        assert _make(temp_dir).server_port == 8000


class TestConfigEnvironment:
    """Verify PROMPTLY_ environment variable overrides."""

    def test_env_overrides_points_per_level(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("PROMPTLY_POINTS_PER_LEVEL", "250")
        assert _make(temp_dir).points_per_level == 250

    def test_env_is_case_insensitive(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("promptly_currency", "GBP")
        assert _make(temp_dir).currency == "GBP"


class TestConfigDirectoryCreation:
    """Verify that PromptlyConfig creates required directories."""

    def test_data_dir_created(self, temp_dir: Path):
        cfg = _make(temp_dir)
        assert cfg.data_dir.is_dir()

    def test_database_parent_created(self, temp_dir: Path):
        """A database path outside data_dir should still get its parent."""
        cfg = PromptlyConfig(
            _env_file=None,
            data_dir=temp_dir / "data",
            database_path=temp_dir / "elsewhere" / "db.sqlite",
        )
        assert cfg.database_path.parent.is_dir()


class TestConfigValidation:
    """Verify Pydantic range constraints."""

    def test_port_below_range_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _make(temp_dir, server_port=80)

    def test_zero_points_per_level_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _make(temp_dir, points_per_level=0)

    def test_currency_must_be_three_letters(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _make(temp_dir, currency="DOLLARS")
