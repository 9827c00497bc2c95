"""PostgreSQL-backed integration tests for the ledger schema and store."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
import importlib.util
from pathlib import Path
import threading
from typing import Any, Iterator
import uuid

import psycopg
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError

from backend.db.enums import OrderStatus
from order_engine.ledger_store import LedgerStore, MarketRecord, UserRecord
from order_engine.runtime import build_session_factory, normalize_database_url
from tests.utils.fakes import MutableClock, make_new_order, market_snapshot, transfer

MIGRATION_PATH = (
    Path(__file__).resolve().parents[2] / "backend" / "db" / "migrations" / "versions" / "0001_initial_schema.py"
)


class _PsycopgOp:
    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def execute(self, statement: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(statement)


def _plain_url(url: str) -> str:
    return url.replace("postgresql+psycopg://", "postgresql://", 1)


@pytest.fixture
def pg_store(pg_url: str, monkeypatch: pytest.MonkeyPatch) -> Iterator[LedgerStore]:
    schema = f"ledger_test_{uuid.uuid4().hex[:12]}"
    admin = psycopg.connect(_plain_url(pg_url), autocommit=True)
    admin.execute(f"CREATE SCHEMA {schema}")
    admin.execute(f"SET search_path TO {schema}")

    spec = importlib.util.spec_from_file_location("migration_0001_integration", MIGRATION_PATH)
    assert spec is not None and spec.loader is not None
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)
    monkeypatch.setattr(migration, "op", _PsycopgOp(admin))
    migration.upgrade()

    engine = create_engine(
        normalize_database_url(pg_url),
        connect_args={"options": f"-csearch_path={schema}"},
        pool_size=4,
    )
    try:
        yield LedgerStore(build_session_factory(engine), MutableClock())
    finally:
        engine.dispose()
        admin.execute(f"DROP SCHEMA {schema} CASCADE")
        admin.close()


@pytest.fixture
def pg_user(pg_store: LedgerStore) -> UserRecord:
    return pg_store.ensure_user("tg-pg-1")


@pytest.fixture
def pg_market(pg_store: LedgerStore) -> MarketRecord:
    return pg_store.upsert_market(market_snapshot())


def test_concurrent_duplicate_submissions_share_one_order(
    pg_store: LedgerStore, pg_user: UserRecord, pg_market: MarketRecord
) -> None:
    new_order = make_new_order(user_id=pg_user.user_id, market_id=pg_market.market_id)
    barrier = threading.Barrier(4)

    def submit() -> tuple[uuid.UUID, bool]:
        barrier.wait()
        order, created = pg_store.create_pending_order(new_order, balance_chain=None)
        return order.order_id, created

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: submit(), range(4)))

    assert len({order_id for order_id, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


def test_terminal_orders_are_frozen_by_trigger(
    pg_store: LedgerStore, pg_user: UserRecord, pg_market: MarketRecord
) -> None:
    order, _ = pg_store.create_pending_order(
        make_new_order(user_id=pg_user.user_id, market_id=pg_market.market_id), balance_chain=None
    )
    pg_store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.FAILED, reason="x")

    with pytest.raises(DBAPIError, match="is terminal"):
        with pg_store.transaction() as session:
            session.execute(
                text("UPDATE trade_order SET status = 'pending' WHERE order_id = :order_id"),
                {"order_id": order.order_id},
            )
    assert pg_store.get_order(order.order_id).status is OrderStatus.FAILED


def test_audit_and_transfer_rows_are_append_only(
    pg_store: LedgerStore, pg_user: UserRecord, pg_market: MarketRecord
) -> None:
    order, _ = pg_store.create_pending_order(
        make_new_order(user_id=pg_user.user_id, market_id=pg_market.market_id), balance_chain=None
    )
    pg_store.apply_transfers(pg_user.user_id, [transfer("0xpg1", to_address="0x" + "7" * 40, block=3)])

    with pytest.raises(DBAPIError, match="append-only violation"):
        with pg_store.transaction() as session:
            session.execute(text("DELETE FROM order_event WHERE order_id = :order_id"), {"order_id": order.order_id})
    with pytest.raises(DBAPIError, match="append-only violation"):
        with pg_store.transaction() as session:
            session.execute(text("UPDATE transfer SET value = 0 WHERE transaction_hash = '0xpg1'"))


def test_fill_updates_position_exactly(pg_store: LedgerStore, pg_user: UserRecord, pg_market: MarketRecord) -> None:
    for amount, price, order_hash in (("10", "0.6", "0xpga"), ("10", "0.4", "0xpgb")):
        order, _ = pg_store.create_pending_order(
            make_new_order(user_id=pg_user.user_id, market_id=pg_market.market_id, amount=amount, price=price),
            balance_chain=None,
        )
        pg_store.transition_order(order.order_id, expected={OrderStatus.PENDING}, target=OrderStatus.SIGNED)
        pg_store.transition_order(
            order.order_id,
            expected={OrderStatus.SIGNED},
            target=OrderStatus.SUBMITTED,
            order_hash=order_hash,
        )
        assert pg_store.apply_fill(order_hash=order_hash, filled_amount=Decimal(amount), fill_price=Decimal(price)).applied

    position = pg_store.get_position(pg_user.user_id, pg_market.market_id, "tok-yes")
    assert (position.amount, position.average_price) == (Decimal("20"), Decimal("0.5"))
