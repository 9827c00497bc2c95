"""Exchange protocol and normalized exchange payload types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from backend.db.enums import OrderSide, OrderType


class ExchangeOrderStatus(str, enum.Enum):
    """Order state as reported by the exchange, independent of local status."""

    LIVE = "live"
    MATCHED = "matched"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SignedOrder:
    """Exchange order body plus the custodial wallet's signature over it."""

    intent_hash: str
    token_id: str
    side: OrderSide
    order_type: OrderType
    amount: Decimal
    price: Decimal
    maker_address: str
    payload: str
    signature: str


@dataclass(frozen=True)
class SubmissionReceipt:
    """Exchange acknowledgement of an accepted order."""

    order_hash: str
    status: ExchangeOrderStatus
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class ExchangeOrderState:
    """Point-in-time exchange view of one order."""

    order_hash: str
    status: ExchangeOrderStatus
    filled_amount: Decimal = Decimal("0")
    fill_price: Optional[Decimal] = None
    transaction_hash: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class MarketSnapshot:
    """Normalized market metadata ready for upsert."""

    external_market_id: str
    condition_id: Optional[str]
    question: str
    description: Optional[str]
    yes_token_id: Optional[str]
    no_token_id: Optional[str]
    yes_price: Decimal
    no_price: Decimal
    liquidity: Decimal
    volume_24h: Decimal
    is_active: bool
    is_archived: bool
    end_date: Optional[datetime]


@dataclass(frozen=True)
class OrderBookQuote:
    """Top of book for one outcome token."""

    token_id: str
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]

    @property
    def midpoint(self) -> Optional[Decimal]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2


class ExchangeClient(Protocol):
    """Canonical exchange interface used by the pipeline and the reconciliation worker."""

    def submit_order(self, order: SignedOrder) -> SubmissionReceipt:
        """Submit a signed order; intent_hash is the idempotency key."""

    def get_order(self, order_hash: str) -> Optional[ExchangeOrderState]:
        """Return the exchange view of an order, or None when unknown."""

    def find_order_by_client_id(self, intent_hash: str) -> Optional[ExchangeOrderState]:
        """Look up an order whose acknowledgement was lost, by idempotency key."""

    def cancel_order(self, order_hash: str) -> bool:
        """Request cancellation; returns True when the exchange accepted it."""

    def list_markets(self, *, limit: int, offset: int) -> Sequence[Mapping[str, Any]]:
        """Return raw market listing rows."""

    def get_order_book(self, token_id: str) -> Optional[OrderBookQuote]:
        """Return the best bid and ask for an outcome token, or None when it has no book."""
