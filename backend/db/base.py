"""SQLAlchemy declarative base and shared column types for ledger models."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, MetaData, Numeric
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

metadata = MetaData()

# Order amounts and outcome prices (0..1) are quantized to 10 places.
TRADE_NUMERIC = Numeric(28, 10)
# On-chain token values keep full ERC-20 precision.
CHAIN_NUMERIC = Numeric(38, 18)


class UtcDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC timestamp that round-trips as aware on every dialect."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime values are not accepted by UtcDateTime columns.")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""

    metadata = metadata
