"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from pmm.config import Settings

KEY = "ab" * 32


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PRIVATE_KEY", "WALLET_ADDRESS", "POLY_API_KEY", "DRY_RUN", "LOG_LEVEL", "MARKET_SLUGS"):
        monkeypatch.delenv(name, raising=False)


def make_settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestDefaults:
    def test_safe_defaults(self):
        settings = make_settings()

        assert settings.dry_run is True
        assert settings.allow_short is False
        assert settings.target_spread == pytest.approx(0.03)
        assert settings.market_slugs == []
        assert not settings.is_trading_enabled()

    def test_trading_needs_all_credentials(self):
        settings = make_settings(private_key=KEY, poly_api_key="k", poly_api_secret="s")
        assert not settings.is_trading_enabled()

        settings = make_settings(
            private_key=KEY, poly_api_key="k", poly_api_secret="s", poly_api_passphrase="p"
        )
        assert settings.is_trading_enabled()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DRY_RUN", "false")
        monkeypatch.setenv("MARKET_SLUGS", '["will-it-rain-tomorrow"]')

        settings = make_settings()

        assert settings.dry_run is False
        assert settings.market_slugs == ["will-it-rain-tomorrow"]


class TestValidation:
    def test_private_key_gets_prefix(self):
        settings = make_settings(private_key=KEY)

        assert settings.private_key.get_secret_value() == "0x" + KEY

    def test_short_private_key_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(private_key="0x1234")

    def test_empty_values_are_unset(self):
        settings = make_settings(private_key="", wallet_address="")

        assert settings.private_key is None
        assert settings.wallet_address is None

    @pytest.mark.parametrize("address", ["0x1234", "ab" * 21])
    def test_bad_address_rejected(self, address):
        with pytest.raises(ValidationError):
            make_settings(wallet_address=address)

    def test_log_level_normalized(self):
        assert make_settings(log_level="debug").log_level == "DEBUG"

        with pytest.raises(ValidationError):
            make_settings(log_level="verbose")

    def test_bounds_enforced(self):
        with pytest.raises(ValidationError):
            make_settings(replace_cooldown_ms=10)
