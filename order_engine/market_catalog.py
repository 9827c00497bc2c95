"""Market catalog: normalize exchange market listings and upsert Market rows."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Any, Mapping, Optional

from order_engine.common import normalize_decimal, parse_utc, to_decimal
from order_engine.errors import ExchangeRejected, ExchangeUnavailable
from order_engine.exchange_client import ExchangeClient, MarketSnapshot
from order_engine.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class MarketSyncResult:
    fetched: int
    upserted: int
    skipped: int
    tradable: int
    enriched: int = 0


def _json_list(raw: Any) -> list[Any]:
    """Listing fields arrive either as JSON-encoded strings or as arrays."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    try:
        parsed = json.loads(str(raw))
    except ValueError:
        return []
    return list(parsed) if isinstance(parsed, list) else []


def _probability(raw: Any) -> Decimal:
    try:
        value = to_decimal(raw)
    except InvalidOperation:
        return ZERO
    if value.is_nan() or value < ZERO or value > ONE:
        return ZERO
    return normalize_decimal(value)


def _non_negative(raw: Any) -> Decimal:
    try:
        value = to_decimal(raw)
    except InvalidOperation:
        return ZERO
    return ZERO if value.is_nan() or value < ZERO else value


def parse_market(row: Mapping[str, Any]) -> Optional[MarketSnapshot]:
    """Return a snapshot for one listing row, or None when it lacks identity."""
    external_id = row.get("id") or row.get("conditionId")
    question = row.get("question")
    if not external_id or not question:
        return None

    token_ids = [str(token) for token in _json_list(row.get("clobTokenIds")) if token]
    prices = _json_list(row.get("outcomePrices"))
    yes_price = _probability(prices[0]) if len(prices) > 0 else ZERO
    no_price = _probability(prices[1]) if len(prices) > 1 else ZERO

    try:
        end_date = parse_utc(row.get("endDate"))
    except ValueError:
        end_date = None

    return MarketSnapshot(
        external_market_id=str(external_id),
        condition_id=row.get("conditionId"),
        question=str(question),
        description=row.get("description"),
        yes_token_id=token_ids[0] if len(token_ids) > 0 else None,
        no_token_id=token_ids[1] if len(token_ids) > 1 else None,
        yes_price=yes_price,
        no_price=no_price,
        liquidity=_non_negative(row.get("liquidityNum", row.get("liquidity"))),
        volume_24h=_non_negative(row.get("volume24hr")),
        is_active=bool(row.get("active", True)) and not bool(row.get("closed", False)),
        is_archived=bool(row.get("archived", False)),
        end_date=end_date,
    )


class MarketCatalog:
    """Keeps the local market table in step with the exchange listing."""

    def __init__(self, *, store: LedgerStore, exchange: ExchangeClient, enrich_prices: bool = True) -> None:
        self._store = store
        self._exchange = exchange
        self._enrich_prices = enrich_prices

    def _with_book_prices(self, snapshot: MarketSnapshot) -> Optional[MarketSnapshot]:
        """Reprice from the yes-token book midpoint; None keeps the listing prices."""
        if not self._enrich_prices or not snapshot.yes_token_id or not snapshot.no_token_id:
            return None
        try:
            quote = self._exchange.get_order_book(snapshot.yes_token_id)
        except (ExchangeUnavailable, ExchangeRejected) as exc:
            logger.warning("Order book read failed for market %s: %s", snapshot.external_market_id, exc)
            return None
        midpoint = None if quote is None else quote.midpoint
        if midpoint is None or not ZERO < midpoint < ONE:
            return None
        return replace(
            snapshot,
            yes_price=normalize_decimal(midpoint),
            no_price=normalize_decimal(ONE - midpoint),
        )

    def sync(self, *, limit: int = 100, offset: int = 0) -> MarketSyncResult:
        rows = self._exchange.list_markets(limit=limit, offset=offset)
        upserted = 0
        skipped = 0
        tradable = 0
        enriched = 0
        for row in rows:
            snapshot = parse_market(row)
            if snapshot is None:
                skipped += 1
                logger.warning("Skipping market listing row without id or question: %s", row.get("slug"))
                continue
            repriced = self._with_book_prices(snapshot)
            if repriced is not None:
                snapshot = repriced
                enriched += 1
            record = self._store.upsert_market(snapshot)
            upserted += 1
            if record.is_tradable:
                tradable += 1
        logger.info(
            "Market sync fetched=%d upserted=%d skipped=%d tradable=%d enriched=%d.",
            len(rows),
            upserted,
            skipped,
            tradable,
            enriched,
        )
        return MarketSyncResult(
            fetched=len(rows),
            upserted=upserted,
            skipped=skipped,
            tradable=tradable,
            enriched=enriched,
        )
