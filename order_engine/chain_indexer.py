"""Chain indexer protocol and normalized transfer/balance payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Protocol, Sequence


@dataclass(frozen=True)
class TransferEvent:
    """One observed token movement touching a custodial wallet."""

    transaction_hash: str
    from_address: str
    to_address: str
    value: Decimal
    token: str
    chain: str
    block_number: int
    chain_timestamp: datetime


@dataclass(frozen=True)
class BalanceSnapshot:
    """Observed native and stable balances of one wallet on one chain."""

    chain: str
    native_balance: Decimal
    stable_balance: Decimal
    observed_at: datetime


@dataclass(frozen=True)
class TradingApprovals:
    """Spending rights a wallet has granted to the exchange contracts."""

    stable_allowances: Mapping[str, Decimal]
    outcome_token_operators: Mapping[str, bool]

    def stable_shortfall(self, amount: Decimal) -> tuple[str, ...]:
        return tuple(spender for spender, allowance in self.stable_allowances.items() if allowance < amount)

    def unapproved_operators(self) -> tuple[str, ...]:
        return tuple(operator for operator, approved in self.outcome_token_operators.items() if not approved)


class ChainIndexer(Protocol):
    """Canonical chain-read interface used by the reconciliation worker."""

    def current_block(self, chain: str) -> int:
        """Return the latest block number."""

    def fetch_transfers(
        self,
        address: str,
        chain: str,
        from_block: Optional[int],
    ) -> tuple[Sequence[TransferEvent], int]:
        """Return transfers touching address from from_block and the next block to scan."""

    def fetch_balance(self, address: str, chain: str) -> BalanceSnapshot:
        """Return the observed balances for address."""


class ApprovalReader(Protocol):
    """Reads the token approvals an order needs before it can settle on the exchange."""

    def fetch_trading_approvals(self, address: str, chain: str) -> TradingApprovals:
        """Return stable-token allowances and outcome-token operator approvals for address."""
