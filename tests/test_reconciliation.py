from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from backend.db.enums import OrderStatus
from order_engine.errors import ExchangeUnavailable, IndexerUnavailable, LedgerInvariantError
from order_engine.exchange_client import ExchangeOrderStatus
from order_engine.ledger_store import LedgerStore, MarketRecord, OrderRecord, UserRecord, WalletRecord
from order_engine.reconciliation import STALE_REASON, FillEvent, ReconciliationWorker
from order_engine.signer import CustodialSigner
from tests.utils.fakes import CHAIN, FakeExchange, FakeIndexer, MutableClock, make_new_order, transfer


def _tracked_order(
    store: LedgerStore,
    exchange: FakeExchange,
    user: UserRecord,
    market: MarketRecord,
    **kwargs: str,
) -> OrderRecord:
    """Pending -> signed -> submitted with an exchange hash registered as live."""
    order, _ = store.create_pending_order(
        make_new_order(user_id=user.user_id, market_id=market.market_id, **kwargs), balance_chain=None
    )
    order_hash = "0xord" + order.intent_hash[:16]
    store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED, reason="signed")
    submitted = store.transition_order(
        order.order_id,
        expected={OrderStatus.SIGNED},
        target=OrderStatus.SUBMITTED,
        reason="accepted by exchange",
        order_hash=order_hash,
    ).order
    exchange.set_status(order_hash, ExchangeOrderStatus.LIVE)
    return submitted


def test_live_order_is_confirmed_once(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, user: UserRecord, market: MarketRecord
) -> None:
    order = _tracked_order(store, exchange, user, market)
    assert worker.sync_orders() == 1
    assert worker.sync_orders() == 0
    confirmed = store.get_order(order.order_id)
    assert confirmed.status is OrderStatus.CONFIRMED
    assert confirmed.status_reason == "live on exchange"


def test_matched_order_without_fill_details_uses_order_terms(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, user: UserRecord, market: MarketRecord
) -> None:
    order = _tracked_order(store, exchange, user, market, amount="8", price="0.25")
    exchange.set_status(order.order_hash, ExchangeOrderStatus.MATCHED)

    assert worker.sync_orders() == 1
    filled = store.get_order(order.order_id)
    assert filled.status is OrderStatus.FILLED
    assert (filled.filled_amount, filled.fill_price) == (Decimal("8"), Decimal("0.25"))


@pytest.mark.parametrize(
    ("exchange_status", "expected_status", "expected_reason"),
    [
        (ExchangeOrderStatus.CANCELLED, OrderStatus.CANCELLED, "cancelled by exchange"),
        (ExchangeOrderStatus.REJECTED, OrderStatus.FAILED, "exchange rejected: no reason given"),
        (ExchangeOrderStatus.EXPIRED, OrderStatus.FAILED, "exchange expired: no reason given"),
    ],
)
def test_exchange_terminal_states_are_mirrored(
    worker: ReconciliationWorker,
    store: LedgerStore,
    exchange: FakeExchange,
    user: UserRecord,
    market: MarketRecord,
    exchange_status: ExchangeOrderStatus,
    expected_status: OrderStatus,
    expected_reason: str,
) -> None:
    order = _tracked_order(store, exchange, user, market)
    exchange.set_status(order.order_hash, exchange_status)

    worker.sync_orders()
    latest = store.get_order(order.order_id)
    assert latest.status is expected_status
    assert latest.status_reason == expected_reason


def test_unknown_exchange_order_is_left_alone(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, user: UserRecord, market: MarketRecord
) -> None:
    order = _tracked_order(store, exchange, user, market)
    del exchange.orders[order.order_hash]
    assert worker.sync_orders() == 0
    assert store.get_order(order.order_id).status is OrderStatus.SUBMITTED


def test_one_unreachable_order_does_not_block_later_orders(
    worker: ReconciliationWorker,
    store: LedgerStore,
    exchange: FakeExchange,
    clock: MutableClock,
    user: UserRecord,
    market: MarketRecord,
) -> None:
    older = _tracked_order(store, exchange, user, market, amount="5")
    clock.advance(seconds=1)
    newer = _tracked_order(store, exchange, user, market, amount="6")
    exchange.unreachable_hashes.add(older.order_hash)
    exchange.fill(newer.order_hash, "6", "0.5")

    assert worker.sync_orders() == 1
    assert store.get_order(newer.order_id).status is OrderStatus.FILLED
    assert store.get_order(older.order_id).status is OrderStatus.SUBMITTED

    clock.advance(seconds=901)
    report = worker.run_once()
    assert [(step.name, step.ok) for step in report.steps][:2] == [("order_sync", False), ("staleness", True)]
    assert store.get_order(older.order_id).status is OrderStatus.SUBMITTED

    exchange.unreachable_hashes.clear()
    del exchange.orders[older.order_hash]
    worker.run_once()
    assert store.get_order(older.order_id).status_reason == STALE_REASON


def test_order_sync_fails_when_every_lookup_fails(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, user: UserRecord, market: MarketRecord
) -> None:
    _tracked_order(store, exchange, user, market)
    exchange.unavailable = True
    with pytest.raises(ExchangeUnavailable):
        worker.sync_orders()


def test_stale_order_fails_and_late_fill_is_discarded(
    worker: ReconciliationWorker,
    store: LedgerStore,
    exchange: FakeExchange,
    clock: MutableClock,
    user: UserRecord,
    market: MarketRecord,
) -> None:
    order = _tracked_order(store, exchange, user, market)
    del exchange.orders[order.order_hash]

    clock.advance(seconds=899)
    assert worker.expire_stale_orders() == 0
    clock.advance(seconds=2)
    assert worker.expire_stale_orders() == 1

    expired = store.get_order(order.order_id)
    assert expired.status is OrderStatus.FAILED
    assert expired.status_reason == STALE_REASON

    late = worker.apply_fill(
        FillEvent(order_hash=order.order_hash, filled_amount=Decimal("10"), fill_price=Decimal("0.5"))
    )
    assert not late.applied
    assert late.reason == "order already failed"
    assert store.get_position(user.user_id, market.market_id, "tok-yes") is None


def test_redelivered_fill_is_applied_once(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, user: UserRecord, market: MarketRecord
) -> None:
    order = _tracked_order(store, exchange, user, market)
    event = FillEvent(order_hash=order.order_hash, filled_amount=Decimal("10"), fill_price=Decimal("0.5"))

    assert worker.apply_fill(event).applied
    assert not worker.apply_fill(event).applied
    assert store.get_position(user.user_id, market.market_id, "tok-yes").amount == Decimal("10")


def test_transfer_sync_scans_from_lookback_then_cursor(
    worker: ReconciliationWorker,
    store: LedgerStore,
    indexer: FakeIndexer,
    user: UserRecord,
    wallet: WalletRecord,
) -> None:
    indexer.transfers[wallet.wallet_address] = [transfer("0xdep1", to_address=wallet.wallet_address, block=95)]
    indexer.balances[wallet.wallet_address] = ("1", "12.5")

    assert worker.sync_transfers() == 1
    assert worker.sync_transfers() == 0

    assert indexer.scan_starts == [90, 101]
    assert store.get_balance(user.user_id, CHAIN).stable_balance == Decimal("12.5")
    assert indexer.balance_reads == 1


def test_transfer_sync_resumes_from_recorded_block_after_restart(
    store: LedgerStore,
    exchange: FakeExchange,
    indexer: FakeIndexer,
    clock: MutableClock,
    user: UserRecord,
    wallet: WalletRecord,
) -> None:
    store.apply_transfers(user.user_id, [transfer("0xold", to_address=wallet.wallet_address, block=42)])
    fresh = ReconciliationWorker(store=store, exchange=exchange, indexer=indexer, chain_name=CHAIN, clock=clock)

    fresh.sync_transfers()
    assert indexer.scan_starts == [42]


def test_redelivered_transfers_do_not_touch_balance(
    worker: ReconciliationWorker,
    store: LedgerStore,
    indexer: FakeIndexer,
    user: UserRecord,
    wallet: WalletRecord,
) -> None:
    deposit = transfer("0xdep2", to_address=wallet.wallet_address, block=96)
    indexer.transfers[wallet.wallet_address] = [deposit]
    indexer.balances[wallet.wallet_address] = ("1", "12.5")
    worker.sync_transfers()

    indexer.balances[wallet.wallet_address] = ("1", "0")
    result = worker.apply_transfers(user.user_id, [deposit], indexer.fetch_balance(wallet.wallet_address, CHAIN))

    assert result.inserted == ()
    assert result.duplicate_count == 1
    assert store.get_balance(user.user_id, CHAIN).stable_balance == Decimal("12.5")
    assert len(store.list_transfers(user.user_id)) == 1


def test_transfer_between_service_wallets_is_recorded_for_both_users(
    worker: ReconciliationWorker,
    store: LedgerStore,
    signer: CustodialSigner,
    indexer: FakeIndexer,
    user: UserRecord,
    wallet: WalletRecord,
) -> None:
    recipient = store.ensure_user("tg-2002")
    recipient_wallet = signer.provision_wallet(recipient.user_id)
    payment = replace(
        transfer("0xabc", to_address=recipient_wallet.wallet_address, block=97, value="3"),
        from_address=wallet.wallet_address,
    )
    indexer.transfers[wallet.wallet_address] = [payment]
    indexer.transfers[recipient_wallet.wallet_address] = [payment]
    indexer.balances[wallet.wallet_address] = ("1", "7")
    indexer.balances[recipient_wallet.wallet_address] = ("1", "3")

    assert worker.sync_transfers() == 2

    assert [row.transaction_hash for row in store.list_transfers(user.user_id)] == ["0xabc"]
    assert [row.transaction_hash for row in store.list_transfers(recipient.user_id)] == ["0xabc"]
    assert store.get_balance(user.user_id, CHAIN).stable_balance == Decimal("7")
    assert store.get_balance(recipient.user_id, CHAIN).stable_balance == Decimal("3")


def test_transfer_sync_raises_when_every_wallet_fails(
    worker: ReconciliationWorker, indexer: FakeIndexer, wallet: WalletRecord
) -> None:
    indexer.unavailable = True
    with pytest.raises(IndexerUnavailable):
        worker.sync_transfers()


def test_balance_poll_respects_interval(
    worker: ReconciliationWorker,
    store: LedgerStore,
    indexer: FakeIndexer,
    clock: MutableClock,
    user: UserRecord,
    wallet: WalletRecord,
) -> None:
    indexer.balances[wallet.wallet_address] = ("2", "40")
    assert worker.poll_balances() == 1
    clock.advance(seconds=30)
    assert worker.poll_balances() == 0
    assert worker.poll_balances(force=True) == 1
    clock.advance(seconds=60)
    assert worker.poll_balances() == 1

    assert indexer.balance_reads == 3
    assert store.get_balance(user.user_id, CHAIN).stable_balance == Decimal("40")


def test_market_refresh_runs_on_interval(
    worker: ReconciliationWorker, store: LedgerStore, exchange: FakeExchange, clock: MutableClock
) -> None:
    exchange.markets = [
        {"id": "m-9", "question": "Rain tomorrow?", "clobTokenIds": '["y9","n9"]', "outcomePrices": '["0.3","0.7"]'}
    ]
    first = worker.refresh_markets()
    assert (first.upserted, first.tradable) == (1, 1)
    clock.advance(seconds=100)
    assert worker.refresh_markets() is None
    clock.advance(seconds=200)
    assert worker.refresh_markets() is not None
    assert exchange.market_calls == 2
    assert store.get_market_by_external_id("m-9").yes_price == Decimal("0.3")


def test_run_once_isolates_failing_steps(
    worker: ReconciliationWorker,
    store: LedgerStore,
    exchange: FakeExchange,
    indexer: FakeIndexer,
    user: UserRecord,
    wallet: WalletRecord,
    market: MarketRecord,
) -> None:
    order = _tracked_order(store, exchange, user, market)
    indexer.unavailable = True

    report = worker.run_once()
    outcomes = {step.name: step.ok for step in report.steps}

    assert outcomes == {
        "order_sync": True,
        "staleness": True,
        "transfer_sync": False,
        "balance_poll": False,
        "market_refresh": True,
    }
    assert not report.all_failed
    assert store.get_order(order.order_id).status is OrderStatus.CONFIRMED
    assert report.as_dict()["steps"][2]["detail"].startswith("IndexerUnavailable")


def test_run_once_reports_database_errors_as_failed_steps(
    worker: ReconciliationWorker, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken() -> int:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(worker, "sync_orders", broken)
    report = worker.run_once()
    assert [step.name for step in report.steps if not step.ok] == ["order_sync"]


def test_daemon_loop_sleeps_between_cycles(worker: ReconciliationWorker, sleeps: list[float]) -> None:
    worker.daemon_loop(max_cycles=2)
    assert sleeps == [15]


def test_daemon_loop_stops_after_consecutive_failures(
    worker: ReconciliationWorker, sleeps: list[float], monkeypatch: pytest.MonkeyPatch
) -> None:
    def down(*args: object, **kwargs: object) -> int:
        raise IndexerUnavailable("rpc down")

    for step in ("sync_orders", "expire_stale_orders", "sync_transfers", "poll_balances", "refresh_markets"):
        monkeypatch.setattr(worker, step, down)

    with pytest.raises(RuntimeError, match="exceeded max consecutive failures"):
        worker.daemon_loop(max_cycles=10)
    assert sleeps == [30, 30]


def test_daemon_loop_surfaces_fatal_errors(
    worker: ReconciliationWorker, sleeps: list[float], monkeypatch: pytest.MonkeyPatch
) -> None:
    def corrupt() -> int:
        raise LedgerInvariantError("position drifted")

    monkeypatch.setattr(worker, "sync_orders", corrupt)
    with pytest.raises(LedgerInvariantError):
        worker.daemon_loop(max_cycles=3)
    assert sleeps == []
