"""Environment-backed configuration for the order engine process."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import os

from order_engine.errors import ConfigError

POLYGON_USDC_ADDRESS = "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"
POLYGON_POL_ADDRESS = "0x0000000000000000000000000000000000001010"
POLYGON_CONDITIONAL_TOKENS_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
POLYGON_EXCHANGE_SPENDERS: tuple[str, ...] = (
    "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E",
    "0xC5d563A36AE78145C45a50134d48A1215220f80a",
    "0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296",
)


@dataclass(frozen=True)
class EngineConfig:
    """Canonical configuration surface for pipeline, signer and worker."""

    database_url: str
    wallet_encryption_key: bytes
    exchange_base_url: str
    markets_base_url: str
    exchange_api_key: str
    chain_name: str
    chain_rpc_url: str
    stable_token_address: str
    native_token_address: str
    conditional_tokens_address: str
    exchange_spender_addresses: tuple[str, ...]
    approval_check_enabled: bool
    http_timeout_seconds: float
    signer_timeout_seconds: float
    signer_max_workers: int
    submit_max_attempts: int
    submit_backoff_seconds: float
    poll_interval_seconds: int
    order_stale_after_seconds: int
    balance_poll_interval_seconds: int
    market_refresh_enabled: bool
    market_refresh_interval_seconds: int
    market_price_enrichment_enabled: bool
    transfer_lookback_blocks: int
    worker_failure_backoff_seconds: int
    worker_max_consecutive_failures: int
    log_level: str


_REQUIRED_KEYS: tuple[str, ...] = (
    "LEDGER_DATABASE_URL",
    "WALLET_ENCRYPTION_KEY",
)


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise ConfigError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid integer value for {name}: {raw}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid float value for {name}: {raw}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_addresses(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    addresses = tuple(item.strip() for item in raw.split(",") if item.strip())
    for address in addresses:
        body = address[2:]
        well_formed = address.startswith("0x") and len(body) == 40
        if not well_formed or any(ch not in "0123456789abcdefABCDEF" for ch in body):
            raise ConfigError(f"Invalid address in {name}: {address}")
    return addresses


def decode_encryption_key(raw: str) -> bytes:
    """Decode the base64 wallet master key and require AES-256 length."""
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigError("WALLET_ENCRYPTION_KEY must be base64 encoded") from exc
    if len(key) != 32:
        raise ConfigError(f"WALLET_ENCRYPTION_KEY must decode to 32 bytes, got {len(key)}")
    return key


def load_engine_config() -> EngineConfig:
    """Load and validate order-engine configuration from environment."""
    for key in _REQUIRED_KEYS:
        _read_env(key)

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"Invalid LOG_LEVEL: {log_level}")

    return EngineConfig(
        database_url=_read_env("LEDGER_DATABASE_URL"),
        wallet_encryption_key=decode_encryption_key(_read_env("WALLET_ENCRYPTION_KEY")),
        exchange_base_url=_read_env("EXCHANGE_BASE_URL", "https://clob.polymarket.com").rstrip("/"),
        markets_base_url=_read_env("MARKETS_BASE_URL", "https://gamma-api.polymarket.com").rstrip("/"),
        exchange_api_key=os.getenv("EXCHANGE_API_KEY", "").strip(),
        chain_name=_read_env("CHAIN_NAME", "polygon").lower(),
        chain_rpc_url=_read_env("CHAIN_RPC_URL", "https://polygon-rpc.com"),
        stable_token_address=_read_env("STABLE_TOKEN_ADDRESS", POLYGON_USDC_ADDRESS),
        native_token_address=_read_env("NATIVE_TOKEN_ADDRESS", POLYGON_POL_ADDRESS),
        conditional_tokens_address=_read_env("CONDITIONAL_TOKENS_ADDRESS", POLYGON_CONDITIONAL_TOKENS_ADDRESS),
        exchange_spender_addresses=_read_addresses("EXCHANGE_SPENDER_ADDRESSES", POLYGON_EXCHANGE_SPENDERS),
        approval_check_enabled=_read_bool("APPROVAL_CHECK_ENABLED", True),
        http_timeout_seconds=_read_float("HTTP_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        signer_timeout_seconds=_read_float("SIGNER_TIMEOUT_SECONDS", 30.0, minimum=0.1),
        signer_max_workers=_read_int("SIGNER_MAX_WORKERS", 4, minimum=1),
        submit_max_attempts=_read_int("SUBMIT_MAX_ATTEMPTS", 3, minimum=1),
        submit_backoff_seconds=_read_float("SUBMIT_BACKOFF_SECONDS", 0.5),
        poll_interval_seconds=_read_int("RECONCILE_POLL_INTERVAL_SECONDS", 15, minimum=1),
        order_stale_after_seconds=_read_int("ORDER_STALE_AFTER_SECONDS", 900, minimum=1),
        balance_poll_interval_seconds=_read_int("BALANCE_POLL_INTERVAL_SECONDS", 60, minimum=1),
        market_refresh_enabled=_read_bool("MARKET_REFRESH_ENABLED", True),
        market_refresh_interval_seconds=_read_int("MARKET_REFRESH_INTERVAL_SECONDS", 300, minimum=1),
        market_price_enrichment_enabled=_read_bool("MARKET_PRICE_ENRICHMENT_ENABLED", True),
        transfer_lookback_blocks=_read_int("TRANSFER_LOOKBACK_BLOCKS", 10),
        worker_failure_backoff_seconds=_read_int("WORKER_FAILURE_BACKOFF_SECONDS", 30),
        worker_max_consecutive_failures=_read_int("WORKER_MAX_CONSECUTIVE_FAILURES", 10, minimum=1),
        log_level=log_level,
    )
