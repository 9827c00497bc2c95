"""Shared decimal, hashing and clock helpers for the order engine."""

from __future__ import annotations

from dataclasses import dataclass
import enum
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN
from hashlib import sha256
from typing import Any, Iterable

NUMERIC_10 = Decimal("0.0000000001")
NUMERIC_18 = Decimal("0.000000000000000001")


def normalize_decimal(value: Decimal, scale: Decimal = NUMERIC_10) -> Decimal:
    """Quantize decimals to ledger precision."""
    return value.quantize(scale, rounding=ROUND_HALF_EVEN)


def to_decimal(value: Any) -> Decimal:
    """Coerce API/DB numerics to Decimal without float round-tripping."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_timestamp(value: datetime) -> str:
    """Normalize timestamps to UTC RFC3339."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(normalize_decimal(value), "f")
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, enum.Enum):
        return str(value.value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def parse_utc(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch seconds into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class EngineClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)
