"""web3-backed chain indexer for ERC-20 transfer logs, wallet balances and exchange approvals."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Optional, Sequence

from web3 import Web3
from web3.exceptions import Web3Exception

from order_engine.chain_indexer import BalanceSnapshot, TradingApprovals, TransferEvent
from order_engine.common import NUMERIC_18, EngineClock, normalize_decimal
from order_engine.errors import IndexerUnavailable

logger = logging.getLogger(__name__)

MINIMAL_ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}, {"name": "_spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]

MINIMAL_ERC1155_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}, {"name": "operator", "type": "address"}],
        "name": "isApprovedForAll",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
NATIVE_DECIMALS = 18


def _topic_for_address(address: str) -> str:
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def _address_from_topic(topic: Any) -> str:
    raw = bytes(topic) if not isinstance(topic, str) else bytes.fromhex(topic.removeprefix("0x"))
    return Web3.to_checksum_address("0x" + raw[-20:].hex())


def _int_from_data(data: Any) -> int:
    if isinstance(data, str):
        return int(data, 16) if data not in ("", "0x") else 0
    return int.from_bytes(bytes(data), "big")


def scale_units(raw: int, decimals: int) -> Decimal:
    """Convert integer token units into a ledger decimal."""
    return normalize_decimal(Decimal(raw) / (Decimal(10) ** decimals), NUMERIC_18)


class Web3ChainIndexer:
    """Reads Transfer logs for the stable and native token contracts of one chain."""

    def __init__(
        self,
        *,
        chain_name: str,
        stable_token_address: str,
        native_token_address: str,
        conditional_tokens_address: Optional[str] = None,
        exchange_spenders: Sequence[str] = (),
        rpc_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        web3: Optional[Web3] = None,
        clock: EngineClock | None = None,
    ) -> None:
        if web3 is None:
            if not rpc_url:
                raise ValueError("rpc_url is required when no web3 instance is supplied")
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self._web3 = web3
        self._chain_name = chain_name
        self._stable_address = Web3.to_checksum_address(stable_token_address)
        self._native_address = Web3.to_checksum_address(native_token_address)
        self._conditional_tokens_address = (
            None if conditional_tokens_address is None else Web3.to_checksum_address(conditional_tokens_address)
        )
        self._exchange_spenders = tuple(Web3.to_checksum_address(spender) for spender in exchange_spenders)
        self._clock = clock or EngineClock()
        self._decimals_cache: dict[str, int] = {}

    @property
    def token_labels(self) -> dict[str, str]:
        return {self._stable_address: "USDC", self._native_address: "POL"}

    def _require_chain(self, chain: str) -> None:
        if chain != self._chain_name:
            raise ValueError(f"Indexer serves chain {self._chain_name}, not {chain}")

    def _decimals(self, token_address: str) -> int:
        if token_address == self._native_address:
            return NATIVE_DECIMALS
        cached = self._decimals_cache.get(token_address)
        if cached is None:
            contract = self._web3.eth.contract(address=token_address, abi=MINIMAL_ERC20_ABI)
            cached = int(contract.functions.decimals().call())
            self._decimals_cache[token_address] = cached
        return cached

    def current_block(self, chain: str) -> int:
        self._require_chain(chain)
        try:
            return int(self._web3.eth.block_number)
        except (Web3Exception, OSError, ValueError) as exc:
            raise IndexerUnavailable(f"Could not read block number on {chain}: {exc}") from exc

    def fetch_transfers(
        self,
        address: str,
        chain: str,
        from_block: Optional[int],
    ) -> tuple[Sequence[TransferEvent], int]:
        latest = self.current_block(chain)
        start = latest if from_block is None else from_block
        if start > latest:
            return (), start

        wallet_topic = _topic_for_address(address)
        block_times: dict[int, datetime] = {}
        events: list[TransferEvent] = []
        try:
            for token_address, label in self.token_labels.items():
                decimals = self._decimals(token_address)
                for topics in ([TRANSFER_TOPIC, wallet_topic], [TRANSFER_TOPIC, None, wallet_topic]):
                    logs = self._web3.eth.get_logs(
                        {
                            "fromBlock": start,
                            "toBlock": latest,
                            "address": token_address,
                            "topics": topics,
                        }
                    )
                    for log in logs:
                        block_number = int(log["blockNumber"])
                        if block_number not in block_times:
                            block = self._web3.eth.get_block(block_number)
                            block_times[block_number] = datetime.fromtimestamp(
                                int(block["timestamp"]), tz=timezone.utc
                            )
                        events.append(
                            TransferEvent(
                                transaction_hash=Web3.to_hex(log["transactionHash"]),
                                from_address=_address_from_topic(log["topics"][1]),
                                to_address=_address_from_topic(log["topics"][2]),
                                value=scale_units(_int_from_data(log["data"]), decimals),
                                token=label,
                                chain=chain,
                                block_number=block_number,
                                chain_timestamp=block_times[block_number],
                            )
                        )
        except (Web3Exception, OSError, ValueError) as exc:
            raise IndexerUnavailable(f"Transfer scan for {address} on {chain} failed: {exc}") from exc

        events.sort(key=lambda item: (item.block_number, item.transaction_hash))
        logger.debug("Scanned blocks %d-%d for %s: %d transfer(s).", start, latest, address, len(events))
        return events, latest + 1

    def fetch_balance(self, address: str, chain: str) -> BalanceSnapshot:
        self._require_chain(chain)
        owner = Web3.to_checksum_address(address)
        try:
            native_raw = int(self._web3.eth.get_balance(owner))
            stable_contract = self._web3.eth.contract(address=self._stable_address, abi=MINIMAL_ERC20_ABI)
            stable_raw = int(stable_contract.functions.balanceOf(owner).call())
            stable_decimals = self._decimals(self._stable_address)
        except (Web3Exception, OSError, ValueError) as exc:
            raise IndexerUnavailable(f"Balance read for {address} on {chain} failed: {exc}") from exc
        return BalanceSnapshot(
            chain=chain,
            native_balance=scale_units(native_raw, NATIVE_DECIMALS),
            stable_balance=scale_units(stable_raw, stable_decimals),
            observed_at=self._clock.now_utc(),
        )

    def fetch_trading_approvals(self, address: str, chain: str) -> TradingApprovals:
        """Read USDC allowances and conditional-token operator approvals for every exchange spender."""
        self._require_chain(chain)
        owner = Web3.to_checksum_address(address)
        try:
            stable_contract = self._web3.eth.contract(address=self._stable_address, abi=MINIMAL_ERC20_ABI)
            stable_decimals = self._decimals(self._stable_address)
            allowances = {
                spender: scale_units(int(stable_contract.functions.allowance(owner, spender).call()), stable_decimals)
                for spender in self._exchange_spenders
            }
            operators: dict[str, bool] = {}
            if self._conditional_tokens_address is not None:
                ctf_contract = self._web3.eth.contract(
                    address=self._conditional_tokens_address,
                    abi=MINIMAL_ERC1155_ABI,
                )
                operators = {
                    spender: bool(ctf_contract.functions.isApprovedForAll(owner, spender).call())
                    for spender in self._exchange_spenders
                }
        except (Web3Exception, OSError, ValueError) as exc:
            raise IndexerUnavailable(f"Approval read for {address} on {chain} failed: {exc}") from exc
        return TradingApprovals(stable_allowances=allowances, outcome_token_operators=operators)
