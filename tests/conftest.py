"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

from datetime import timedelta
import os
from typing import Iterator

import pytest

from order_engine.ledger_store import LedgerStore, MarketRecord, UserRecord, WalletRecord
from order_engine.market_catalog import MarketCatalog
from order_engine.pipeline import OrderSubmissionPipeline
from order_engine.query_facade import QueryFacade
from order_engine.reconciliation import ReconciliationWorker
from order_engine.secrets import KeyCipher
from order_engine.signer import CustodialSigner, UserSession
from tests.utils.fakes import CHAIN, MASTER_KEY, FakeExchange, FakeIndexer, MutableClock, balance, make_store, market_snapshot



@pytest.fixture(scope="session")
def pg_url() -> str:
    """PostgreSQL URL for integration tests."""
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL is not set; PostgreSQL integration tests skipped")
    return url


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store(clock: MutableClock) -> Iterator[LedgerStore]:
    engine, ledger = make_store(clock)
    try:
        yield ledger
    finally:
        engine.dispose()


@pytest.fixture
def cipher() -> KeyCipher:
    return KeyCipher(MASTER_KEY)


@pytest.fixture
def signer(store: LedgerStore, cipher: KeyCipher, clock: MutableClock) -> CustodialSigner:
    return CustodialSigner(store=store, cipher=cipher, clock=clock)


@pytest.fixture
def user(store: LedgerStore) -> UserRecord:
    return store.ensure_user("tg-1001", username="alice")


@pytest.fixture
def wallet(signer: CustodialSigner, user: UserRecord) -> WalletRecord:
    return signer.provision_wallet(user.user_id)


@pytest.fixture
def market(store: LedgerStore) -> MarketRecord:
    return store.upsert_market(market_snapshot())


@pytest.fixture
def funded(store: LedgerStore, user: UserRecord, wallet: WalletRecord) -> WalletRecord:
    store.replace_balance(user.user_id, balance("100"))
    return wallet


@pytest.fixture
def session(user: UserRecord, clock: MutableClock) -> UserSession:
    return UserSession(user_id=user.user_id, expires_at=clock.now_utc() + timedelta(hours=1))


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def indexer(clock: MutableClock) -> FakeIndexer:
    return FakeIndexer(clock)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def pipeline(
    store: LedgerStore,
    signer: CustodialSigner,
    exchange: FakeExchange,
    clock: MutableClock,
    sleeps: list[float],
) -> Iterator[OrderSubmissionPipeline]:
    pipe = OrderSubmissionPipeline(
        store=store,
        signer=signer,
        exchange=exchange,
        chain_name=CHAIN,
        signer_timeout_seconds=5.0,
        submit_max_attempts=3,
        submit_backoff_seconds=0.5,
        clock=clock,
        sleep=sleeps.append,
    )
    try:
        yield pipe
    finally:
        pipe.close()


@pytest.fixture
def worker(
    store: LedgerStore,
    exchange: FakeExchange,
    indexer: FakeIndexer,
    clock: MutableClock,
    sleeps: list[float],
) -> ReconciliationWorker:
    return ReconciliationWorker(
        store=store,
        exchange=exchange,
        indexer=indexer,
        chain_name=CHAIN,
        catalog=MarketCatalog(store=store, exchange=exchange),
        poll_interval_seconds=15,
        order_stale_after_seconds=900,
        balance_poll_interval_seconds=60,
        market_refresh_interval_seconds=300,
        transfer_lookback_blocks=10,
        failure_backoff_seconds=30,
        max_consecutive_failures=3,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def queries(store: LedgerStore) -> QueryFacade:
    return QueryFacade(store)
