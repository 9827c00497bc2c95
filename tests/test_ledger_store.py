from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from itertools import permutations
import uuid

import pytest

from backend.db.enums import OrderSide, OrderStatus
from order_engine.errors import (
    InsufficientBalance,
    LedgerInvariantError,
    OrderNotFound,
    UserNotFound,
)
from order_engine.ledger_store import LedgerStore, MarketRecord, NewOrder, OrderRecord, UserRecord, accumulate_position
from tests.utils.fakes import CHAIN, MutableClock, balance, make_new_order, make_store, market_snapshot, transfer


def _submitted(store: LedgerStore, new_order: NewOrder, order_hash: str) -> OrderRecord:
    order, created = store.create_pending_order(new_order, balance_chain=None)
    assert created
    store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED, reason="signed")
    result = store.transition_order(
        order.order_id,
        expected={OrderStatus.SIGNED},
        target=OrderStatus.SUBMITTED,
        reason="accepted",
        order_hash=order_hash,
    )
    assert result.applied
    return result.order


def test_ensure_user_creates_then_refreshes(store: LedgerStore, clock: MutableClock) -> None:
    first = store.ensure_user("tg-42", username="bob")
    clock.advance(minutes=5)
    second = store.ensure_user("tg-42", first_name="Bob")

    assert second.user_id == first.user_id
    assert second.username == "bob"
    assert second.first_name == "Bob"
    assert second.created_at == first.created_at
    assert second.last_active_at == first.last_active_at + timedelta(minutes=5)
    assert store.counts()["users"] == 1


def test_wallet_is_never_overwritten(store: LedgerStore, user: UserRecord) -> None:
    store.insert_wallet(
        user_id=user.user_id,
        wallet_address="0x" + "1" * 40,
        encrypted_private_key=b"cipher",
        key_iv=b"i" * 12,
    )
    with pytest.raises(LedgerInvariantError, match="Wallet already exists"):
        store.insert_wallet(
            user_id=user.user_id,
            wallet_address="0x" + "2" * 40,
            encrypted_private_key=b"other",
            key_iv=b"j" * 12,
        )
    wallet = store.get_wallet(user.user_id)
    assert wallet is not None
    assert wallet.encrypted_private_key == b"cipher"


def test_insert_wallet_requires_user(store: LedgerStore) -> None:
    with pytest.raises(UserNotFound):
        store.insert_wallet(
            user_id=uuid.uuid4(),
            wallet_address="0x" + "3" * 40,
            encrypted_private_key=b"c",
            key_iv=b"i" * 12,
        )


def test_upsert_market_updates_in_place(store: LedgerStore) -> None:
    first = store.upsert_market(market_snapshot(yes_token_id=None))
    assert not first.is_tradable
    second = store.upsert_market(market_snapshot(yes_price="0.75", no_price="0.25"))

    assert second.market_id == first.market_id
    assert second.is_tradable
    assert second.yes_price == Decimal("0.75")
    assert store.get_market_by_token_id("tok-no").market_id == second.market_id
    assert store.get_market_by_external_id("mkt-1").market_id == second.market_id


def test_pending_order_dedups_on_active_intent(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    new_order = make_new_order(user_id=user.user_id, market_id=market.market_id)
    first, created = store.create_pending_order(new_order, balance_chain=None)
    again, created_again = store.create_pending_order(new_order, balance_chain=None)

    assert created and not created_again
    assert again.order_id == first.order_id
    events = store.order_events(first.order_id)
    assert [(event.from_status, event.to_status) for event in events] == [(None, OrderStatus.PENDING)]


def test_terminal_order_releases_intent(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    new_order = make_new_order(user_id=user.user_id, market_id=market.market_id)
    first, _ = store.create_pending_order(new_order, balance_chain=None)
    store.transition_order(first.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.FAILED, reason="boom")

    second, created = store.create_pending_order(new_order, balance_chain=None)
    assert created
    assert second.order_id != first.order_id


def test_buy_reservation_counts_other_active_buys(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    store.replace_balance(user.user_id, balance("5"))
    order, created = store.create_pending_order(
        make_new_order(user_id=user.user_id, market_id=market.market_id, amount="10", price="0.5"),
        balance_chain=CHAIN,
    )
    assert created
    assert store.reserved_buy_cost(user.user_id) == Decimal("5")

    with pytest.raises(InsufficientBalance, match="Insufficient balance"):
        store.create_pending_order(
            make_new_order(user_id=user.user_id, market_id=market.market_id, amount="2", price="0.5"),
            balance_chain=CHAIN,
        )

    _, sell_created = store.create_pending_order(
        make_new_order(user_id=user.user_id, market_id=market.market_id, side=OrderSide.SELL),
        balance_chain=CHAIN,
    )
    assert sell_created
    assert len(store.list_orders(user.user_id)) == 2


def test_buy_without_balance_row_is_rejected(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    with pytest.raises(InsufficientBalance):
        store.create_pending_order(
            make_new_order(user_id=user.user_id, market_id=market.market_id),
            balance_chain=CHAIN,
        )
    assert store.list_orders(user.user_id) == ()


def test_transition_is_compare_and_swap(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    order, _ = store.create_pending_order(
        make_new_order(user_id=user.user_id, market_id=market.market_id), balance_chain=None
    )
    won = store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED)
    lost = store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED)

    assert won.applied and won.order.status is OrderStatus.SIGNED
    assert not lost.applied and lost.order.status is OrderStatus.SIGNED
    assert len(store.order_events(order.order_id)) == 2


def test_transition_rejects_illegal_edges_and_unknown_orders(
    store: LedgerStore, user: UserRecord, market: MarketRecord
) -> None:
    order, _ = store.create_pending_order(
        make_new_order(user_id=user.user_id, market_id=market.market_id), balance_chain=None
    )
    with pytest.raises(LedgerInvariantError):
        store.transition_order(order.order_id, expected={OrderStatus.FILLED}, target=OrderStatus.CANCELLED, reason="x")
    with pytest.raises(OrderNotFound):
        store.transition_order(uuid.uuid4(), expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED)


def test_order_hash_is_immutable_once_set(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    order = _submitted(store, make_new_order(user_id=user.user_id, market_id=market.market_id), "0xaaa")

    assert store.attach_order_hash(order.order_id, "0xbbb").order_hash == "0xaaa"
    result = store.transition_order(
        order.order_id,
        expected={OrderStatus.SUBMITTED},
        target=OrderStatus.CONFIRMED,
        reason="live",
        order_hash="0xccc",
    )
    assert not result.applied
    assert result.order.order_hash == "0xaaa"
    assert result.order.status is OrderStatus.SUBMITTED
    assert store.get_order_by_hash("0xaaa").order_id == order.order_id


def test_apply_fill_is_idempotent(store: LedgerStore, user: UserRecord, market: MarketRecord) -> None:
    order = _submitted(store, make_new_order(user_id=user.user_id, market_id=market.market_id), "0xfill")

    first = store.apply_fill(order_hash="0xfill", filled_amount=Decimal("10"), fill_price=Decimal("0.5"))
    second = store.apply_fill(order_hash="0xfill", filled_amount=Decimal("10"), fill_price=Decimal("0.5"))

    assert first.applied
    assert first.order.status is OrderStatus.FILLED
    assert first.order.filled_amount == Decimal("10")
    assert not second.applied
    assert second.reason == "order already filled"
    position = store.get_position(user.user_id, market.market_id, "tok-yes")
    assert position.amount == Decimal("10")
    assert position.average_price == Decimal("0.5")
    assert position.side is OrderSide.BUY
    assert len(store.order_events(order.order_id)) == 4


def test_apply_fill_discards_unknown_and_empty_fills(store: LedgerStore) -> None:
    unknown = store.apply_fill(order_hash="0xnope", filled_amount=Decimal("1"), fill_price=Decimal("0.5"))
    empty = store.apply_fill(order_hash="0xnope", filled_amount=Decimal("0"), fill_price=Decimal("0.5"))
    assert (unknown.applied, unknown.reason) == (False, "unknown order hash")
    assert (empty.applied, empty.reason) == (False, "non-positive fill amount")


def test_position_amount_commutes_over_fill_order() -> None:
    fills = (
        ("0xa", OrderSide.BUY, "10", "0.5"),
        ("0xb", OrderSide.BUY, "6", "0.25"),
        ("0xc", OrderSide.SELL, "4", "0.75"),
    )
    amounts = set()
    for ordering in permutations(fills):
        engine, store = make_store(MutableClock())
        try:
            user = store.ensure_user("tg-perm")
            market = store.upsert_market(market_snapshot())
            for order_hash, side, amount, price in fills:
                _submitted(
                    store,
                    make_new_order(
                        user_id=user.user_id,
                        market_id=market.market_id,
                        side=side,
                        amount=amount,
                        price=price,
                    ),
                    order_hash,
                )
            for order_hash, _, amount, price in ordering:
                assert store.apply_fill(
                    order_hash=order_hash,
                    filled_amount=Decimal(amount),
                    fill_price=Decimal(price),
                ).applied
            amounts.add(store.get_position(user.user_id, market.market_id, "tok-yes").amount)
        finally:
            engine.dispose()
    assert amounts == {Decimal("12")}


@pytest.mark.parametrize(
    ("amount", "average", "delta", "price", "expected"),
    [
        ("0", "0", "10", "0.6", ("10", "0.6")),
        ("10", "0.6", "10", "0.4", ("20", "0.5")),
        ("20", "0.5", "-5", "0.9", ("15", "0.5")),
        ("10", "0.5", "-10", "0.7", ("0", "0.5")),
        ("10", "0.5", "-15", "0.75", ("-5", "0.75")),
        ("-5", "0.75", "-5", "0.25", ("-10", "0.5")),
    ],
)
def test_accumulate_position(amount: str, average: str, delta: str, price: str, expected: tuple[str, str]) -> None:
    new_amount, new_average = accumulate_position(Decimal(amount), Decimal(average), Decimal(delta), Decimal(price))
    assert (new_amount, new_average) == (Decimal(expected[0]), Decimal(expected[1]))


def test_apply_transfers_dedups_and_replaces_balance_once(store: LedgerStore, user: UserRecord) -> None:
    address = "0x" + "4" * 40
    events = [transfer("0xt1", to_address=address, block=95), transfer("0xt2", to_address=address, block=96)]

    first = store.apply_transfers(user.user_id, events, observed_balance=balance("25"))
    second = store.apply_transfers(user.user_id, events, observed_balance=balance("999"))

    assert len(first.inserted) == 2
    assert first.balance.stable_balance == Decimal("25")
    assert second.inserted == ()
    assert second.duplicate_count == 2
    assert second.balance is None
    assert store.get_balance(user.user_id, CHAIN).stable_balance == Decimal("25")
    assert len(store.list_transfers(user.user_id)) == 2
    assert store.last_transfer_block(user.user_id, CHAIN) == 96


def test_apply_transfers_dedups_within_one_batch(store: LedgerStore, user: UserRecord) -> None:
    address = "0x" + "5" * 40
    event = transfer("0xdup", to_address=address, block=10)
    result = store.apply_transfers(user.user_id, [event, event])
    assert len(result.inserted) == 1
    assert result.duplicate_count == 1
    assert store.last_transfer_block(user.user_id, "other-chain") is None


def test_replace_balance_overwrites(store: LedgerStore, user: UserRecord, clock: MutableClock) -> None:
    store.replace_balance(user.user_id, balance("10", native="2"))
    clock.advance(minutes=1)
    latest = store.replace_balance(user.user_id, balance("7.5", native="0.5", observed_at=clock.now_utc()))

    assert latest.stable_balance == Decimal("7.5")
    assert latest.native_balance == Decimal("0.5")
    assert latest.observed_at == clock.now_utc()
    assert len(store.list_balances(user.user_id)) == 1


def test_list_orders_in_status_filters_by_age(
    store: LedgerStore, user: UserRecord, market: MarketRecord, clock: MutableClock
) -> None:
    old = _submitted(store, make_new_order(user_id=user.user_id, market_id=market.market_id), "0xold")
    clock.advance(minutes=20)
    _submitted(store, make_new_order(user_id=user.user_id, market_id=market.market_id, amount="3"), "0xnew")

    stale = store.list_orders_in_status({OrderStatus.SUBMITTED}, updated_before=clock.now_utc() - timedelta(minutes=15))
    assert [order.order_id for order in stale] == [old.order_id]
    assert len(store.list_exchange_tracked_orders()) == 2
