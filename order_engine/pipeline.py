"""Order submission pipeline: validate, reserve, sign, submit and record an order."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
import logging
import threading
import time
from typing import Callable, Optional
import uuid

from backend.db.enums import OrderSide, OrderStatus, OrderType, TokenSide
from order_engine.chain_indexer import ApprovalReader
from order_engine.common import EngineClock, normalize_decimal, stable_hash, to_decimal
from order_engine.errors import (
    ExchangeRejected,
    ExchangeUnavailable,
    FatalEngineError,
    IndexerUnavailable,
    InvalidOrderRequest,
    LedgerInvariantError,
    MarketNotTradable,
    OrderNotFound,
    SessionInvalid,
    SigningRejected,
)
from order_engine.exchange_client import ExchangeClient, ExchangeOrderStatus, SignedOrder, SubmissionReceipt
from order_engine.ledger_store import LedgerStore, NewOrder, OrderRecord
from order_engine.signer import CustodialSigner, SignatureResult, UserSession
from order_engine.state_machine import CANCELLABLE_STATUSES

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")

UNACKNOWLEDGED_REASON = "submission unacknowledged; awaiting reconciliation"
ALREADY_RESOLVED = "already resolved"


@dataclass(frozen=True)
class OrderRequest:
    """Trade intent as received from the presentation layer."""

    market_id: uuid.UUID
    token_side: TokenSide
    side: OrderSide
    amount: Decimal
    limit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    reason: str
    order: OrderRecord


def compute_intent_hash(
    *,
    user_id: uuid.UUID,
    market_id: uuid.UUID,
    token_id: str,
    side: OrderSide,
    amount: Decimal,
    price: Decimal,
) -> str:
    """Deterministic idempotency key for one trade intent."""
    return stable_hash(("order-intent", user_id, market_id, token_id, side, amount, price))


def build_order_payload(order: OrderRecord) -> str:
    """Canonical exchange order body that the custodial key signs."""
    body = {
        "clientOrderId": order.intent_hash,
        "orderType": order.order_type.value,
        "price": format(order.price, "f"),
        "side": order.side.value.upper(),
        "size": format(order.amount, "f"),
        "tokenID": order.token_id,
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"))


class OrderSubmissionPipeline:
    """Sequences signer -> exchange -> ledger for one order; no transaction spans an external call."""

    def __init__(
        self,
        *,
        store: LedgerStore,
        signer: CustodialSigner,
        exchange: ExchangeClient,
        chain_name: str,
        signer_timeout_seconds: float = 30.0,
        signer_max_workers: int = 4,
        submit_max_attempts: int = 3,
        submit_backoff_seconds: float = 0.5,
        approvals: Optional[ApprovalReader] = None,
        clock: EngineClock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._signer = signer
        self._exchange = exchange
        self._chain_name = chain_name
        self._signer_timeout_seconds = signer_timeout_seconds
        self._signer_max_workers = max(1, signer_max_workers)
        self._submit_max_attempts = max(1, submit_max_attempts)
        self._submit_backoff_seconds = submit_backoff_seconds
        self._approvals = approvals
        self._clock = clock or EngineClock()
        self._sleep = sleep
        # A timed-out signing call keeps its worker until the signer returns.
        self._executor = ThreadPoolExecutor(max_workers=self._signer_max_workers, thread_name_prefix="order-signer")
        self._in_flight: set[Future[SignatureResult]] = set()
        self._in_flight_lock = threading.Lock()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------ validation

    def _validate(self, user_id: uuid.UUID, request: OrderRequest) -> NewOrder:
        try:
            amount = to_decimal(request.amount)
            limit_price = None if request.limit_price is None else to_decimal(request.limit_price)
        except InvalidOperation as exc:
            raise InvalidOrderRequest(f"Order amount and price must be numeric: {exc}") from exc
        if not amount.is_finite() or amount <= ZERO:
            raise InvalidOrderRequest(f"Order amount must be positive, got {request.amount}.")
        if limit_price is not None and (not limit_price.is_finite() or not ZERO < limit_price < ONE):
            raise InvalidOrderRequest(f"Limit price must be strictly between 0 and 1, got {request.limit_price}.")

        self._store.require_user(user_id)
        market = self._store.get_market(request.market_id)
        if market is None:
            raise MarketNotTradable(f"Market {request.market_id} does not exist.")
        if not market.is_tradable:
            raise MarketNotTradable(f"Market {market.external_market_id} is missing outcome token ids.")
        token_id = market.token_id_for(request.token_side)
        if token_id is None:
            raise LedgerInvariantError(
                f"Tradable market {market.external_market_id} has no {request.token_side.value} token id."
            )

        price = normalize_decimal(limit_price if limit_price is not None else market.price_for(request.token_side))
        if not ZERO < price < ONE:
            raise MarketNotTradable(
                f"Market {market.external_market_id} has no usable {request.token_side.value} price ({price})."
            )
        amount = normalize_decimal(amount)
        if amount <= ZERO:
            raise InvalidOrderRequest(f"Order amount {request.amount} rounds to zero.")

        return NewOrder(
            user_id=user_id,
            market_id=market.market_id,
            token_side=request.token_side,
            token_id=token_id,
            side=request.side,
            order_type=OrderType.MARKET if limit_price is None else OrderType.LIMIT,
            amount=amount,
            price=price,
            total_cost=normalize_decimal(amount * price),
            intent_hash=compute_intent_hash(
                user_id=user_id,
                market_id=market.market_id,
                token_id=token_id,
                side=request.side,
                amount=amount,
                price=price,
            ),
        )

    # ---------------------------------------------------------------- submit

    def submit_order(self, user_id: uuid.UUID, request: OrderRequest, session: UserSession) -> OrderRecord:
        """Run one order through the pipeline and return its latest recorded state."""
        if not session.is_valid_for(user_id, self._clock.now_utc()):
            raise SessionInvalid(f"Session does not authorize orders for user {user_id}.")
        new_order = self._validate(user_id, request)
        order, created = self._store.create_pending_order(new_order, balance_chain=self._chain_name)
        if not created:
            logger.info("Duplicate submission for intent %s returned order %s.", new_order.intent_hash[:12], order.order_id)
            return order

        rejected = self._check_approvals(order)
        if rejected is not None:
            return rejected

        outcome = self._sign(order, session)
        if isinstance(outcome, OrderRecord):
            return outcome

        signed = self._store.transition_order(
            order.order_id,
            expected={OrderStatus.PENDING},
            target=OrderStatus.SIGNED,
            reason="signed by custodial wallet",
        )
        if not signed.applied:
            return signed.order
        return self._submit(signed.order, outcome)

    def _terminate(self, order: OrderRecord, target: OrderStatus, reason: str) -> OrderRecord:
        result = self._store.transition_order(order.order_id, expected={order.status}, target=target, reason=reason)
        return result.order

    def _check_approvals(self, order: OrderRecord) -> Optional[OrderRecord]:
        """Fail the order when the wallet has not approved the exchange contracts it needs."""
        if self._approvals is None:
            return None
        wallet = self._store.get_wallet(order.user_id)
        if wallet is None:
            return None
        try:
            approvals = self._approvals.fetch_trading_approvals(wallet.wallet_address, self._chain_name)
        except IndexerUnavailable as exc:
            logger.warning("Approval check skipped for order %s: %s", order.order_id, exc)
            return None

        if order.side is OrderSide.BUY:
            missing = approvals.stable_shortfall(order.total_cost)
            reason = "stable token allowance below order cost for"
        else:
            missing = approvals.unapproved_operators()
            reason = "outcome tokens not approved for"
        if not missing:
            return None
        logger.info("Order %s lacks exchange approvals: %s", order.order_id, ", ".join(missing))
        return self._terminate(order, OrderStatus.FAILED, f"{reason} {', '.join(missing)}")

    def _dispatch_signing(self, order: OrderRecord, session: UserSession) -> Optional[Future[SignatureResult]]:
        with self._in_flight_lock:
            self._in_flight = {future for future in self._in_flight if not future.done()}
            if len(self._in_flight) >= self._signer_max_workers:
                return None
            future = self._executor.submit(
                self._signer.decrypt_and_sign,
                order.user_id,
                build_order_payload(order),
                session,
            )
            self._in_flight.add(future)
            return future

    def _sign(self, order: OrderRecord, session: UserSession) -> SignatureResult | OrderRecord:
        future = self._dispatch_signing(order, session)
        if future is None:
            logger.warning(
                "All %d signer worker(s) are held by unfinished requests; failing order %s.",
                self._signer_max_workers,
                order.order_id,
            )
            return self._terminate(order, OrderStatus.FAILED, "signer busy")
        try:
            return future.result(timeout=self._signer_timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            logger.warning("Signer timed out after %.1fs for order %s.", self._signer_timeout_seconds, order.order_id)
            return self._terminate(order, OrderStatus.FAILED, "signer timeout")
        except SigningRejected:
            return self._terminate(order, OrderStatus.CANCELLED, "signing declined by user")
        except FatalEngineError as exc:
            logger.exception("Signing failed for order %s.", order.order_id)
            self._terminate(order, OrderStatus.FAILED, f"signing failed: {type(exc).__name__}")
            raise
        except Exception as exc:
            logger.exception("Unexpected signer error for order %s.", order.order_id)
            self._terminate(order, OrderStatus.FAILED, f"signing error: {type(exc).__name__}")
            raise

    def _submit(self, order: OrderRecord, signature: SignatureResult) -> OrderRecord:
        signed_order = SignedOrder(
            intent_hash=order.intent_hash,
            token_id=order.token_id,
            side=order.side,
            order_type=order.order_type,
            amount=order.amount,
            price=order.price,
            maker_address=signature.wallet_address,
            payload=build_order_payload(order),
            signature=signature.signature,
        )
        receipt: SubmissionReceipt | None = None
        for attempt in range(1, self._submit_max_attempts + 1):
            try:
                receipt = self._exchange.submit_order(signed_order)
                break
            except ExchangeRejected as exc:
                return self._terminate(order, OrderStatus.FAILED, f"exchange rejected: {exc}")
            except ExchangeUnavailable as exc:
                current = self._store.get_order(order.order_id)
                if current is None or current.status is not OrderStatus.SIGNED:
                    return current if current is not None else order
                if attempt == self._submit_max_attempts:
                    logger.warning(
                        "Exchange unreachable after %d attempt(s) for order %s: %s",
                        attempt,
                        order.order_id,
                        exc,
                    )
                    return self._terminate(current, OrderStatus.SUBMITTED, UNACKNOWLEDGED_REASON)
                delay = self._submit_backoff_seconds * (2 ** (attempt - 1))
                logger.info("Retrying submission of order %s in %.2fs (attempt %d).", order.order_id, delay, attempt)
                self._sleep(delay)
        if receipt is None:
            raise LedgerInvariantError(f"Submission loop for order {order.order_id} ended without a receipt.")

        submitted = self._store.transition_order(
            order.order_id,
            expected={OrderStatus.SIGNED},
            target=OrderStatus.SUBMITTED,
            reason="accepted by exchange",
            order_hash=receipt.order_hash,
            transaction_hash=receipt.transaction_hash,
        )
        if not submitted.applied:
            if submitted.order.status is OrderStatus.CANCELLED:
                logger.warning(
                    "Order %s was cancelled locally while the exchange accepted %s; cancelling upstream.",
                    order.order_id,
                    receipt.order_hash,
                )
                self._cancel_upstream(receipt.order_hash)
            return submitted.order

        if receipt.status in (ExchangeOrderStatus.LIVE, ExchangeOrderStatus.MATCHED):
            confirmed = self._store.transition_order(
                order.order_id,
                expected={OrderStatus.SUBMITTED},
                target=OrderStatus.CONFIRMED,
                reason=f"exchange reports {receipt.status.value}",
            )
            return confirmed.order
        return submitted.order

    def _cancel_upstream(self, order_hash: str) -> bool:
        try:
            return self._exchange.cancel_order(order_hash)
        except (ExchangeUnavailable, ExchangeRejected) as exc:
            logger.warning("Exchange cancel for %s failed: %s", order_hash, exc)
            return False

    # ---------------------------------------------------------------- cancel

    def cancel_order(self, user_id: uuid.UUID, order_id: uuid.UUID) -> CancelResult:
        """Cancel an active order; losing to a concurrent fill is a normal outcome."""
        order = self._store.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFound(f"Order {order_id} does not exist for user {user_id}.")
        if order.is_terminal:
            return CancelResult(cancelled=False, reason=ALREADY_RESOLVED, order=order)

        order_hash = order.order_hash
        if order_hash is None and order.status is OrderStatus.SUBMITTED:
            found = self._exchange.find_order_by_client_id(order.intent_hash)
            order_hash = None if found is None else found.order_hash
        if order_hash is not None:
            try:
                accepted = self._exchange.cancel_order(order_hash)
            except ExchangeRejected as exc:
                logger.info("Exchange rejected cancel of order %s: %s", order_id, exc)
                accepted = False
            if not accepted:
                latest = self._store.get_order(order_id) or order
                reason = ALREADY_RESOLVED if latest.is_terminal else "exchange declined cancellation"
                return CancelResult(cancelled=False, reason=reason, order=latest)

        result = self._store.transition_order(
            order_id,
            expected=CANCELLABLE_STATUSES,
            target=OrderStatus.CANCELLED,
            reason="cancelled by user",
        )
        if not result.applied:
            return CancelResult(cancelled=False, reason=ALREADY_RESOLVED, order=result.order)
        return CancelResult(cancelled=True, reason="cancelled", order=result.order)
