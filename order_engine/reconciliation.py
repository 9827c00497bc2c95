"""Reconciliation worker: converge local orders, positions and balances on exchange and chain truth."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import time
from typing import Callable, Optional, Sequence
import uuid

from sqlalchemy.exc import SQLAlchemyError

from backend.db.enums import OrderStatus
from order_engine.chain_indexer import BalanceSnapshot, ChainIndexer, TransferEvent
from order_engine.common import EngineClock
from order_engine.errors import (
    ExternalTransientError,
    FatalEngineError,
    IndexerUnavailable,
    LedgerEngineError,
)
from order_engine.exchange_client import ExchangeClient, ExchangeOrderState, ExchangeOrderStatus
from order_engine.ledger_store import FillApplication, LedgerStore, OrderRecord, TransferApplication
from order_engine.market_catalog import MarketCatalog, MarketSyncResult
from order_engine.state_machine import EXCHANGE_TRACKED_STATUSES

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
STALE_REASON = "reconciliation timeout"


@dataclass(frozen=True)
class FillEvent:
    """Exchange-reported execution of one order."""

    order_hash: str
    filled_amount: Decimal
    fill_price: Decimal
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class StepOutcome:
    name: str
    ok: bool
    detail: str


@dataclass(frozen=True)
class CycleReport:
    started_at: datetime
    steps: tuple[StepOutcome, ...]

    @property
    def all_failed(self) -> bool:
        return bool(self.steps) and all(not step.ok for step in self.steps)

    def as_dict(self) -> dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "steps": [{"name": step.name, "ok": step.ok, "detail": step.detail} for step in self.steps],
        }


class ReconciliationWorker:
    """Periodic convergence loop; every write it makes is idempotent."""

    def __init__(
        self,
        *,
        store: LedgerStore,
        exchange: ExchangeClient,
        indexer: ChainIndexer,
        chain_name: str,
        catalog: MarketCatalog | None = None,
        poll_interval_seconds: float = 15,
        order_stale_after_seconds: int = 900,
        balance_poll_interval_seconds: int = 60,
        market_refresh_enabled: bool = True,
        market_refresh_interval_seconds: int = 300,
        transfer_lookback_blocks: int = 10,
        failure_backoff_seconds: float = 30,
        max_consecutive_failures: int = 10,
        clock: EngineClock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._exchange = exchange
        self._indexer = indexer
        self._chain_name = chain_name
        self._catalog = catalog
        self._poll_interval_seconds = poll_interval_seconds
        self._stale_after = timedelta(seconds=order_stale_after_seconds)
        self._balance_interval = timedelta(seconds=balance_poll_interval_seconds)
        self._market_refresh_enabled = market_refresh_enabled and catalog is not None
        self._market_interval = timedelta(seconds=market_refresh_interval_seconds)
        self._lookback_blocks = transfer_lookback_blocks
        self._failure_backoff_seconds = failure_backoff_seconds
        self._max_consecutive_failures = max_consecutive_failures
        self._clock = clock or EngineClock()
        self._sleep = sleep
        self._next_block: dict[tuple[uuid.UUID, str], int] = {}
        self._last_balance_poll: datetime | None = None
        self._last_market_refresh: datetime | None = None
        self._unreachable_orders: set[uuid.UUID] = set()

    # ----------------------------------------------------- idempotent appliers

    def apply_fill(self, event: FillEvent) -> FillApplication:
        result = self._store.apply_fill(
            order_hash=event.order_hash,
            filled_amount=event.filled_amount,
            fill_price=event.fill_price,
            transaction_hash=event.transaction_hash,
        )
        if not result.applied:
            logger.debug("Fill for %s not applied: %s.", event.order_hash, result.reason)
        return result

    def apply_transfers(
        self,
        user_id: uuid.UUID,
        events: Sequence[TransferEvent],
        observed_balance: Optional[BalanceSnapshot] = None,
    ) -> TransferApplication:
        return self._store.apply_transfers(user_id, events, observed_balance=observed_balance)

    # -------------------------------------------------------------- order sync

    def _exchange_state(self, order: OrderRecord) -> tuple[OrderRecord, Optional[ExchangeOrderState]]:
        if order.order_hash is not None:
            return order, self._exchange.get_order(order.order_hash)
        state = self._exchange.find_order_by_client_id(order.intent_hash)
        if state is None:
            return order, None
        updated = self._store.attach_order_hash(
            order.order_id,
            state.order_hash,
            transaction_hash=state.transaction_hash,
        )
        return (updated or order), state

    def _reconcile_order(self, order: OrderRecord) -> bool:
        order, state = self._exchange_state(order)
        if state is None or state.status is ExchangeOrderStatus.UNKNOWN:
            return False
        if order.order_hash is None:
            return False

        if state.status is ExchangeOrderStatus.LIVE:
            if order.status is not OrderStatus.SUBMITTED:
                return False
            return self._store.transition_order(
                order.order_id,
                expected={OrderStatus.SUBMITTED},
                target=OrderStatus.CONFIRMED,
                reason="live on exchange",
            ).applied

        if state.status is ExchangeOrderStatus.MATCHED:
            filled = state.filled_amount if state.filled_amount > ZERO else order.amount
            return self.apply_fill(
                FillEvent(
                    order_hash=order.order_hash,
                    filled_amount=filled,
                    fill_price=state.fill_price if state.fill_price is not None else order.price,
                    transaction_hash=state.transaction_hash,
                )
            ).applied

        if state.status is ExchangeOrderStatus.CANCELLED:
            target, reason = OrderStatus.CANCELLED, state.reason or "cancelled by exchange"
        else:
            target, reason = OrderStatus.FAILED, f"exchange {state.status.value}: {state.reason or 'no reason given'}"
        return self._store.transition_order(
            order.order_id,
            expected=EXCHANGE_TRACKED_STATUSES,
            target=target,
            reason=reason,
        ).applied

    def sync_orders(self) -> int:
        """Pull exchange state for every submitted/confirmed order; returns applied changes."""
        orders = self._store.list_exchange_tracked_orders()
        changed = 0
        failures: list[ExternalTransientError] = []
        unreachable: set[uuid.UUID] = set()
        for order in orders:
            try:
                if self._reconcile_order(order):
                    changed += 1
            except ExternalTransientError as exc:
                logger.warning("Exchange lookup failed for order %s: %s", order.order_id, exc)
                failures.append(exc)
                unreachable.add(order.order_id)
        self._unreachable_orders = unreachable
        if failures and len(failures) == len(orders):
            raise failures[-1]
        return changed

    def expire_stale_orders(self) -> int:
        """Fail orders unresolved past the threshold, except those this cycle could not look up."""
        cutoff = self._clock.now_utc() - self._stale_after
        expired = 0
        for order in self._store.list_orders_in_status(EXCHANGE_TRACKED_STATUSES, updated_before=cutoff):
            if order.order_id in self._unreachable_orders:
                logger.info("Deferring expiry of order %s until the exchange answers.", order.order_id)
                continue
            result = self._store.transition_order(
                order.order_id,
                expected={order.status},
                target=OrderStatus.FAILED,
                reason=STALE_REASON,
            )
            if result.applied:
                expired += 1
                logger.warning("Order %s expired after no exchange resolution since %s.", order.order_id, order.updated_at)
        return expired

    # ----------------------------------------------------------- chain sync

    def _scan_start(self, user_id: uuid.UUID) -> int:
        candidates: list[int] = []
        recorded = self._store.last_transfer_block(user_id, self._chain_name)
        if recorded is not None:
            candidates.append(recorded)
        cursor = self._next_block.get((user_id, self._chain_name))
        if cursor is not None:
            candidates.append(cursor)
        if candidates:
            return max(candidates)
        return max(0, self._indexer.current_block(self._chain_name) - self._lookback_blocks)

    def sync_transfers(self) -> int:
        """Record unseen transfers per wallet; returns the number of new rows."""
        wallets = self._store.list_wallets()
        inserted = 0
        failures: list[IndexerUnavailable] = []
        for wallet in wallets:
            try:
                from_block = self._scan_start(wallet.user_id)
                events, next_block = self._indexer.fetch_transfers(wallet.wallet_address, self._chain_name, from_block)
                balance = self._indexer.fetch_balance(wallet.wallet_address, self._chain_name) if events else None
            except IndexerUnavailable as exc:
                logger.warning("Transfer scan failed for wallet %s: %s", wallet.wallet_address, exc)
                failures.append(exc)
                continue
            result = self.apply_transfers(wallet.user_id, events, balance)
            self._next_block[(wallet.user_id, self._chain_name)] = next_block
            inserted += len(result.inserted)
        if failures and len(failures) == len(wallets):
            raise failures[-1]
        return inserted

    def poll_balances(self, *, force: bool = False) -> int:
        """Replace every wallet balance with observed truth when the poll is due."""
        now = self._clock.now_utc()
        if not force and self._last_balance_poll is not None and now - self._last_balance_poll < self._balance_interval:
            return 0
        wallets = self._store.list_wallets()
        updated = 0
        failures: list[IndexerUnavailable] = []
        for wallet in wallets:
            try:
                snapshot = self._indexer.fetch_balance(wallet.wallet_address, self._chain_name)
            except IndexerUnavailable as exc:
                logger.warning("Balance read failed for wallet %s: %s", wallet.wallet_address, exc)
                failures.append(exc)
                continue
            self._store.replace_balance(wallet.user_id, snapshot)
            updated += 1
        if failures and len(failures) == len(wallets):
            raise failures[-1]
        self._last_balance_poll = now
        return updated

    def refresh_markets(self, *, force: bool = False) -> Optional[MarketSyncResult]:
        if self._catalog is None or not (self._market_refresh_enabled or force):
            return None
        now = self._clock.now_utc()
        if not force and self._last_market_refresh is not None and now - self._last_market_refresh < self._market_interval:
            return None
        result = self._catalog.sync()
        self._last_market_refresh = now
        return result

    # ------------------------------------------------------------------ cycle

    def _run_step(self, name: str, step: Callable[[], object]) -> StepOutcome:
        try:
            detail = step()
        except FatalEngineError:
            logger.exception("Reconciliation step %s hit a fatal error.", name)
            raise
        except LedgerEngineError as exc:
            logger.warning("Reconciliation step %s failed: %s: %s", name, type(exc).__name__, exc)
            return StepOutcome(name=name, ok=False, detail=f"{type(exc).__name__}: {exc}")
        except SQLAlchemyError as exc:
            logger.exception("Reconciliation step %s failed on the ledger database.", name)
            return StepOutcome(name=name, ok=False, detail=f"{type(exc).__name__}: {exc}")
        return StepOutcome(name=name, ok=True, detail="" if detail is None else str(detail))

    def run_once(self) -> CycleReport:
        """Execute one full reconciliation cycle; steps are isolated from each other."""
        started_at = self._clock.now_utc()
        steps = (
            self._run_step("order_sync", self.sync_orders),
            self._run_step("staleness", self.expire_stale_orders),
            self._run_step("transfer_sync", self.sync_transfers),
            self._run_step("balance_poll", self.poll_balances),
            self._run_step("market_refresh", self.refresh_markets),
        )
        report = CycleReport(started_at=started_at, steps=steps)
        failed = [step.name for step in steps if not step.ok]
        if failed:
            logger.warning("Reconciliation cycle finished with failed steps: %s.", ", ".join(failed))
        else:
            logger.debug("Reconciliation cycle finished cleanly.")
        return report

    def daemon_loop(self, *, max_cycles: int | None = None) -> None:
        """Run reconciliation until interrupted or max_cycles reached."""
        logger.info("Reconciliation daemon started (max_cycles=%s).", max_cycles if max_cycles is not None else "infinite")
        cycles = 0
        consecutive_failures = 0
        try:
            while True:
                try:
                    report = self.run_once()
                    if report.all_failed:
                        raise LedgerEngineError("every reconciliation step failed")
                    consecutive_failures = 0
                except LedgerEngineError as exc:
                    if isinstance(exc, FatalEngineError):
                        raise
                    consecutive_failures += 1
                    logger.warning(
                        "Reconciliation cycle failed (failure_count=%d): %s: %s",
                        consecutive_failures,
                        type(exc).__name__,
                        exc,
                    )
                    if consecutive_failures >= self._max_consecutive_failures:
                        raise RuntimeError(
                            f"Reconciliation daemon exceeded max consecutive failures ({self._max_consecutive_failures})"
                        ) from exc
                    self._sleep(self._failure_backoff_seconds)
                    continue

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    return
                self._sleep(self._poll_interval_seconds)
        finally:
            logger.info("Reconciliation daemon stopped after %d completed cycle(s).", cycles)
