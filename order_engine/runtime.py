"""Process wiring: build every collaborator once and inject it."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from order_engine.chain_indexer import ApprovalReader, ChainIndexer
from order_engine.clob_client import ClobExchangeClient
from order_engine.common import EngineClock
from order_engine.config import EngineConfig
from order_engine.exchange_client import ExchangeClient
from order_engine.ledger_store import LedgerStore
from order_engine.market_catalog import MarketCatalog
from order_engine.pipeline import OrderSubmissionPipeline
from order_engine.query_facade import QueryFacade
from order_engine.reconciliation import ReconciliationWorker
from order_engine.secrets import KeyCipher
from order_engine.signer import ConfirmHook, CustodialSigner
from order_engine.web3_indexer import Web3ChainIndexer

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Route bare PostgreSQL URLs through the psycopg (v3) driver."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def build_engine(database_url: str) -> Engine:
    url = normalize_database_url(database_url)
    if url.startswith("sqlite"):
        kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@dataclass
class EngineRuntime:
    """Every long-lived collaborator of one process."""

    config: EngineConfig
    engine: Engine
    store: LedgerStore
    signer: CustodialSigner
    exchange: ExchangeClient
    indexer: ChainIndexer
    catalog: MarketCatalog
    pipeline: OrderSubmissionPipeline
    worker: ReconciliationWorker
    queries: QueryFacade

    def close(self) -> None:
        self.pipeline.close()
        self.engine.dispose()
        logger.debug("Runtime closed.")


def build_runtime(
    config: EngineConfig,
    *,
    engine: Optional[Engine] = None,
    exchange: Optional[ExchangeClient] = None,
    indexer: Optional[ChainIndexer] = None,
    approvals: Optional[ApprovalReader] = None,
    clock: EngineClock | None = None,
    confirm_hook: Optional[ConfirmHook] = None,
) -> EngineRuntime:
    clock = clock or EngineClock()
    engine = engine or build_engine(config.database_url)
    store = LedgerStore(build_session_factory(engine), clock)
    signer = CustodialSigner(
        store=store,
        cipher=KeyCipher(config.wallet_encryption_key),
        clock=clock,
        confirm_hook=confirm_hook,
    )
    if exchange is None:
        exchange = ClobExchangeClient(
            base_url=config.exchange_base_url,
            markets_base_url=config.markets_base_url,
            api_key=config.exchange_api_key,
            timeout_seconds=config.http_timeout_seconds,
        )
    if indexer is None:
        chain_reader = Web3ChainIndexer(
            chain_name=config.chain_name,
            stable_token_address=config.stable_token_address,
            native_token_address=config.native_token_address,
            conditional_tokens_address=config.conditional_tokens_address,
            exchange_spenders=config.exchange_spender_addresses,
            rpc_url=config.chain_rpc_url,
            timeout_seconds=config.http_timeout_seconds,
            clock=clock,
        )
        indexer = chain_reader
        if approvals is None:
            approvals = chain_reader
    if not config.approval_check_enabled:
        approvals = None
    catalog = MarketCatalog(
        store=store,
        exchange=exchange,
        enrich_prices=config.market_price_enrichment_enabled,
    )
    pipeline = OrderSubmissionPipeline(
        store=store,
        signer=signer,
        exchange=exchange,
        chain_name=config.chain_name,
        signer_timeout_seconds=config.signer_timeout_seconds,
        signer_max_workers=config.signer_max_workers,
        submit_max_attempts=config.submit_max_attempts,
        submit_backoff_seconds=config.submit_backoff_seconds,
        approvals=approvals,
        clock=clock,
    )
    worker = ReconciliationWorker(
        store=store,
        exchange=exchange,
        indexer=indexer,
        chain_name=config.chain_name,
        catalog=catalog,
        poll_interval_seconds=config.poll_interval_seconds,
        order_stale_after_seconds=config.order_stale_after_seconds,
        balance_poll_interval_seconds=config.balance_poll_interval_seconds,
        market_refresh_enabled=config.market_refresh_enabled,
        market_refresh_interval_seconds=config.market_refresh_interval_seconds,
        transfer_lookback_blocks=config.transfer_lookback_blocks,
        failure_backoff_seconds=config.worker_failure_backoff_seconds,
        max_consecutive_failures=config.worker_max_consecutive_failures,
        clock=clock,
    )
    return EngineRuntime(
        config=config,
        engine=engine,
        store=store,
        signer=signer,
        exchange=exchange,
        indexer=indexer,
        catalog=catalog,
        pipeline=pipeline,
        worker=worker,
        queries=QueryFacade(store),
    )
