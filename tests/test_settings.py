"""
Tests for configuration loading.
"""

import pytest

from ledger_sync.config import (
    AppSettings,
    CryptoSettings,
    StorageSettings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)


class TestSettings:
    """Tests for pydantic-settings models."""

    def test_defaults(self):
        sync = SyncSettings(client_id="client-a")
        assert sync.ledger_id == "default"
        assert sync.max_network_attempts == 5
        assert CryptoSettings().scrypt_n == 2 ** 15

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_SYNC_CLIENT_ID", "phone")
        monkeypatch.setenv("LEDGER_SYNC_MAX_NETWORK_ATTEMPTS", "2")
        monkeypatch.setenv("LEDGER_CRYPTO_SCRYPT_LOG_N", "12")

        assert SyncSettings().client_id == "phone"
        assert SyncSettings().max_network_attempts == 2
        assert CryptoSettings().scrypt_n == 4096

    def test_default_client_id_uses_hostname(self, monkeypatch):
        monkeypatch.delenv("LEDGER_SYNC_CLIENT_ID", raising=False)
        assert SyncSettings().client_id.startswith("client-")

    @pytest.mark.parametrize("log_n", [9, 21])
    def test_scrypt_cost_bounds(self, log_n):
        with pytest.raises(ValueError):
            CryptoSettings(scrypt_log_n=log_n)

    def test_backoff_bounds_must_be_ordered(self):
        with pytest.raises(ValueError):
            SyncSettings(client_id="a", backoff_min_seconds=5, backoff_max_seconds=1)

    def test_lease_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            SyncSettings(client_id="a", lease_ttl_seconds=0)

    def test_missing_remote_directory_warns(self, tmp_path):
        with pytest.warns(UserWarning):
            StorageSettings(remote_directory=str(tmp_path / "not-mounted"))

    def test_log_level_pattern(self):
        with pytest.raises(ValueError):
            AppSettings(log_level="LOUD")

    def test_validate_all_settings(self, monkeypatch):
        monkeypatch.setenv("LEDGER_CRYPTO_SCRYPT_LOG_N", "99")
        get_settings.cache_clear()
        try:
            results = validate_all_settings()
        finally:
            get_settings.cache_clear()

        assert results["crypto"] is False
        assert "crypto_error" in results
        assert results["sync"] is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
