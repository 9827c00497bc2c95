"""HTTP adapter for the prediction-market CLOB and its market-listing API."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.db.enums import OrderType
from order_engine.common import to_decimal
from order_engine.errors import ExchangeRejected, ExchangeUnavailable
from order_engine.exchange_client import (
    ExchangeOrderState,
    ExchangeOrderStatus,
    OrderBookQuote,
    SignedOrder,
    SubmissionReceipt,
)

logger = logging.getLogger(__name__)

Requester = Callable[[str, str, dict[str, Any], Optional[dict[str, Any]]], Any]

_STATUS_ALIASES: dict[str, ExchangeOrderStatus] = {
    "live": ExchangeOrderStatus.LIVE,
    "delayed": ExchangeOrderStatus.LIVE,
    "unmatched": ExchangeOrderStatus.LIVE,
    "open": ExchangeOrderStatus.LIVE,
    "matched": ExchangeOrderStatus.MATCHED,
    "filled": ExchangeOrderStatus.MATCHED,
    "mined": ExchangeOrderStatus.MATCHED,
    "confirmed": ExchangeOrderStatus.MATCHED,
    "canceled": ExchangeOrderStatus.CANCELLED,
    "cancelled": ExchangeOrderStatus.CANCELLED,
    "rejected": ExchangeOrderStatus.REJECTED,
    "failed": ExchangeOrderStatus.REJECTED,
    "expired": ExchangeOrderStatus.EXPIRED,
}

# Market orders are fill-or-kill; limit orders rest until cancelled.
_TIME_IN_FORCE: dict[OrderType, str] = {OrderType.MARKET: "FOK", OrderType.LIMIT: "GTC"}


def parse_exchange_status(raw: Any) -> ExchangeOrderStatus:
    return _STATUS_ALIASES.get(str(raw or "").strip().lower(), ExchangeOrderStatus.UNKNOWN)


def _first_hash(row: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = row.get(key)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value:
            return str(value)
    return None


def _level_prices(levels: Any) -> list[Decimal]:
    prices: list[Decimal] = []
    for level in levels or ():
        if isinstance(level, dict) and level.get("price") is not None:
            prices.append(to_decimal(level["price"]))
    return prices


class ClobExchangeClient:
    """CLOB adapter with bounded read retries and typed transport errors."""

    def __init__(
        self,
        *,
        base_url: str,
        markets_base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        read_attempts: int = 3,
        requester: Optional[Requester] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._markets_base_url = markets_base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._read_attempts = max(1, read_attempts)
        self._requester = requester
        self._call_count = 0

    @property
    def call_count(self) -> int:
        """Return exchange request count."""
        return self._call_count

    def _request_json(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        self._call_count += 1
        params = params or {}
        if self._requester is not None:
            return self._requester(method, url, params, body)

        query = f"?{urlencode(params)}" if params else ""
        headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self._api_key:
            headers["POLY_API_KEY"] = self._api_key
        request = Request(url=f"{url}{query}", data=data, headers=headers, method=method)

        # Only reads are retried here; submission retries belong to the pipeline.
        attempts = self._read_attempts if method == "GET" else 1
        last_error: Exception | None = None
        for _ in range(attempts):
            try:
                with urlopen(request, timeout=self._timeout_seconds) as response:
                    payload = response.read().decode("utf-8")
                    return json.loads(payload) if payload else None
            except HTTPError as exc:
                if 400 <= exc.code < 500:
                    raise ExchangeRejected(self._error_message(exc)) from exc
                last_error = exc
            except (URLError, TimeoutError) as exc:
                last_error = exc

        if last_error is None:
            raise ExchangeUnavailable(f"Exchange request {method} {url} failed without an exception")
        raise ExchangeUnavailable(f"Exchange request {method} {url} failed: {last_error}") from last_error

    @staticmethod
    def _error_message(exc: HTTPError) -> str:
        try:
            payload = json.loads(exc.read().decode("utf-8"))
        except (ValueError, OSError, AttributeError):
            return f"HTTP {exc.code}"
        if isinstance(payload, dict):
            return str(payload.get("errorMsg") or payload.get("error") or f"HTTP {exc.code}")
        return f"HTTP {exc.code}"

    @staticmethod
    def _order_state(row: Mapping[str, Any]) -> ExchangeOrderState:
        fill_price = row.get("average_price") or row.get("price")
        return ExchangeOrderState(
            order_hash=str(row.get("id") or row.get("orderID") or row.get("order_hash")),
            status=parse_exchange_status(row.get("status")),
            filled_amount=to_decimal(row.get("size_matched")),
            fill_price=None if fill_price is None else to_decimal(fill_price),
            transaction_hash=_first_hash(row, "transaction_hash", "transactionsHashes", "transactions_hashes"),
            reason=row.get("errorMsg") or row.get("reason"),
        )

    def submit_order(self, order: SignedOrder) -> SubmissionReceipt:
        body = {
            "order": json.loads(order.payload),
            "signature": order.signature,
            "owner": order.maker_address,
            "orderType": _TIME_IN_FORCE[order.order_type],
            "clientOrderId": order.intent_hash,
        }
        payload = self._request_json("POST", f"{self._base_url}/order", body=body)
        if not isinstance(payload, dict):
            raise ExchangeUnavailable("Exchange returned a malformed submission response")
        if payload.get("success") is False or payload.get("errorMsg"):
            raise ExchangeRejected(str(payload.get("errorMsg") or "order rejected by exchange"))
        order_hash = _first_hash(payload, "orderID", "orderHash", "orderHashes")
        transaction_hash = _first_hash(payload, "transactionHash", "transactionsHashes", "txHash")
        if order_hash is None:
            # Some fills are acknowledged with only the settlement hash.
            order_hash = transaction_hash
        if order_hash is None:
            raise ExchangeUnavailable("Exchange accepted the order without an order hash")
        return SubmissionReceipt(
            order_hash=order_hash,
            status=parse_exchange_status(payload.get("status") or "live"),
            transaction_hash=transaction_hash,
        )

    def get_order(self, order_hash: str) -> Optional[ExchangeOrderState]:
        try:
            payload = self._request_json("GET", f"{self._base_url}/data/order/{order_hash}")
        except ExchangeRejected:
            return None
        if not isinstance(payload, dict) or not payload:
            return None
        return self._order_state(payload)

    def find_order_by_client_id(self, intent_hash: str) -> Optional[ExchangeOrderState]:
        payload = self._request_json(
            "GET",
            f"{self._base_url}/data/orders",
            params={"client_order_id": intent_hash},
        )
        rows = payload.get("data", ()) if isinstance(payload, dict) else (payload or ())
        for row in rows:
            return self._order_state(row)
        return None

    def cancel_order(self, order_hash: str) -> bool:
        payload = self._request_json("DELETE", f"{self._base_url}/order", body={"orderID": order_hash})
        if not isinstance(payload, dict):
            return False
        cancelled = payload.get("canceled") or ()
        if order_hash in cancelled:
            return True
        not_cancelled = payload.get("not_canceled") or {}
        if order_hash in not_cancelled:
            logger.info("Exchange declined cancel for %s: %s", order_hash, not_cancelled[order_hash])
        return False

    def list_markets(self, *, limit: int, offset: int) -> Sequence[Mapping[str, Any]]:
        payload = self._request_json(
            "GET",
            f"{self._markets_base_url}/markets",
            params={"limit": limit, "offset": offset, "active": "true", "closed": "false"},
        )
        if isinstance(payload, dict):
            payload = payload.get("data", ())
        return tuple(row for row in payload or () if isinstance(row, dict))

    def get_order_book(self, token_id: str) -> Optional[OrderBookQuote]:
        try:
            payload = self._request_json("GET", f"{self._base_url}/book", params={"token_id": token_id})
        except ExchangeRejected:
            return None
        if not isinstance(payload, dict):
            return None
        bids = _level_prices(payload.get("bids"))
        asks = _level_prices(payload.get("asks"))
        return OrderBookQuote(
            token_id=token_id,
            best_bid=max(bids) if bids else None,
            best_ask=min(asks) if asks else None,
        )


__all__ = ["ClobExchangeClient", "parse_exchange_status"]
