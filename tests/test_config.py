from __future__ import annotations

import base64

import pytest

from order_engine.config import (
    POLYGON_EXCHANGE_SPENDERS,
    POLYGON_USDC_ADDRESS,
    decode_encryption_key,
    load_engine_config,
)
from order_engine.errors import ConfigError

_KEY_B64 = base64.b64encode(bytes(range(32))).decode("ascii")

_REQUIRED_ENV = {
    "LEDGER_DATABASE_URL": "sqlite:///ledger.db",
    "WALLET_ENCRYPTION_KEY": _KEY_B64,
}

_OPTIONAL_KEYS = (
    "EXCHANGE_BASE_URL",
    "MARKETS_BASE_URL",
    "EXCHANGE_API_KEY",
    "CHAIN_NAME",
    "CHAIN_RPC_URL",
    "STABLE_TOKEN_ADDRESS",
    "NATIVE_TOKEN_ADDRESS",
    "CONDITIONAL_TOKENS_ADDRESS",
    "EXCHANGE_SPENDER_ADDRESSES",
    "APPROVAL_CHECK_ENABLED",
    "HTTP_TIMEOUT_SECONDS",
    "SIGNER_TIMEOUT_SECONDS",
    "SIGNER_MAX_WORKERS",
    "SUBMIT_MAX_ATTEMPTS",
    "SUBMIT_BACKOFF_SECONDS",
    "RECONCILE_POLL_INTERVAL_SECONDS",
    "ORDER_STALE_AFTER_SECONDS",
    "BALANCE_POLL_INTERVAL_SECONDS",
    "MARKET_REFRESH_ENABLED",
    "MARKET_REFRESH_INTERVAL_SECONDS",
    "MARKET_PRICE_ENRICHMENT_ENABLED",
    "TRANSFER_LOOKBACK_BLOCKS",
    "WORKER_FAILURE_BACKOFF_SECONDS",
    "WORKER_MAX_CONSECUTIVE_FAILURES",
    "LOG_LEVEL",
)


def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _OPTIONAL_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in _REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)


def test_load_engine_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)

    cfg = load_engine_config()
    assert cfg.database_url == "sqlite:///ledger.db"
    assert cfg.wallet_encryption_key == bytes(range(32))
    assert cfg.exchange_base_url == "https://clob.polymarket.com"
    assert cfg.chain_name == "polygon"
    assert cfg.stable_token_address == POLYGON_USDC_ADDRESS
    assert cfg.signer_timeout_seconds == 30.0
    assert cfg.signer_max_workers == 4
    assert cfg.exchange_spender_addresses == POLYGON_EXCHANGE_SPENDERS
    assert cfg.approval_check_enabled is True
    assert cfg.market_price_enrichment_enabled is True
    assert cfg.submit_max_attempts == 3
    assert cfg.poll_interval_seconds == 15
    assert cfg.order_stale_after_seconds == 900
    assert cfg.balance_poll_interval_seconds == 60
    assert cfg.market_refresh_enabled is True
    assert cfg.market_refresh_interval_seconds == 300
    assert cfg.worker_max_consecutive_failures == 10
    assert cfg.log_level == "INFO"


def test_load_engine_config_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("EXCHANGE_BASE_URL", "https://clob.example.test/")
    monkeypatch.setenv("CHAIN_NAME", "Amoy")
    monkeypatch.setenv("MARKET_REFRESH_ENABLED", "off")
    monkeypatch.setenv("ORDER_STALE_AFTER_SECONDS", "120")
    monkeypatch.setenv("SUBMIT_BACKOFF_SECONDS", "0.25")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("EXCHANGE_SPENDER_ADDRESSES", " 0x" + "ab" * 20 + ", 0x" + "CD" * 20 + " ")
    monkeypatch.setenv("SIGNER_MAX_WORKERS", "8")

    cfg = load_engine_config()
    assert cfg.exchange_base_url == "https://clob.example.test"
    assert cfg.chain_name == "amoy"
    assert cfg.market_refresh_enabled is False
    assert cfg.order_stale_after_seconds == 120
    assert cfg.submit_backoff_seconds == 0.25
    assert cfg.log_level == "DEBUG"
    assert cfg.exchange_spender_addresses == ("0x" + "ab" * 20, "0x" + "CD" * 20)
    assert cfg.signer_max_workers == 8


@pytest.mark.parametrize("missing", sorted(_REQUIRED_ENV))
def test_load_engine_config_requires_keys(monkeypatch: pytest.MonkeyPatch, missing: str) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.delenv(missing)
    with pytest.raises(ConfigError, match=missing):
        load_engine_config()


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("MARKET_REFRESH_ENABLED", "maybe", "Invalid boolean"),
        ("SUBMIT_MAX_ATTEMPTS", "three", "Invalid integer"),
        ("SUBMIT_MAX_ATTEMPTS", "0", "must be >= 1"),
        ("SIGNER_TIMEOUT_SECONDS", "fast", "Invalid float"),
        ("LOG_LEVEL", "LOUD", "Invalid LOG_LEVEL"),
        ("EXCHANGE_SPENDER_ADDRESSES", "0x1234", "Invalid address"),
        ("SIGNER_MAX_WORKERS", "0", "must be >= 1"),
    ],
)
def test_load_engine_config_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch, key: str, value: str, message: str
) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv(key, value)
    with pytest.raises(ConfigError, match=message):
        load_engine_config()


def test_decode_encryption_key_rejects_bad_material() -> None:
    with pytest.raises(ConfigError, match="base64"):
        decode_encryption_key("not base64!")
    with pytest.raises(ConfigError, match="32 bytes"):
        decode_encryption_key(base64.b64encode(b"short").decode("ascii"))
