"""Prediction-market order lifecycle and ledger reconciliation engine."""

from order_engine.config import EngineConfig, load_engine_config
from order_engine.ledger_store import (
    BalanceRecord,
    LedgerStore,
    OrderRecord,
    PositionRecord,
    TransferRecord,
)
from order_engine.market_catalog import MarketCatalog, MarketSyncResult
from order_engine.pipeline import CancelResult, OrderRequest, OrderSubmissionPipeline
from order_engine.query_facade import PortfolioSnapshot, QueryFacade
from order_engine.reconciliation import CycleReport, FillEvent, ReconciliationWorker
from order_engine.runtime import EngineRuntime, build_runtime
from order_engine.signer import CustodialSigner, SignatureResult, UserSession

__all__ = [
    "BalanceRecord",
    "CancelResult",
    "CustodialSigner",
    "CycleReport",
    "EngineConfig",
    "EngineRuntime",
    "FillEvent",
    "LedgerStore",
    "MarketCatalog",
    "MarketSyncResult",
    "OrderRecord",
    "OrderRequest",
    "OrderSubmissionPipeline",
    "PortfolioSnapshot",
    "PositionRecord",
    "QueryFacade",
    "ReconciliationWorker",
    "SignatureResult",
    "TransferRecord",
    "UserSession",
    "build_runtime",
    "load_engine_config",
]
