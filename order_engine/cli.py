"""Operator CLI for the order engine."""

from __future__ import annotations

import argparse
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import enum
import json
import logging
import sys
from typing import Any, Optional, Sequence
import uuid

from backend.db import create_schema
from backend.db.enums import OrderSide, TokenSide
from order_engine.config import load_engine_config
from order_engine.errors import ConfigError, ExternalRejection, ExternalTransientError, ValidationError
from order_engine.ledger_store import WalletRecord
from order_engine.pipeline import OrderRequest
from order_engine.runtime import EngineRuntime, build_runtime
from order_engine.signer import UserSession

logger = logging.getLogger(__name__)

OPERATOR_SESSION_TTL = timedelta(minutes=5)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _jsonable(item) for key, item in asdict(value).items() if not isinstance(item, bytes)}
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items() if not isinstance(item, bytes)}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _emit(payload: Any) -> None:
    print(json.dumps(_jsonable(payload), sort_keys=True))


def _wallet_view(wallet: WalletRecord) -> dict[str, Any]:
    return {
        "wallet_id": wallet.wallet_id,
        "user_id": wallet.user_id,
        "wallet_address": wallet.wallet_address,
        "key_version": wallet.key_version,
        "created_at": wallet.created_at,
    }


def _parse_decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a decimal: {value}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger-engine", description="Prediction-market order engine CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create ledger tables on the configured database")

    create_user = subparsers.add_parser("create-user", help="Create or refresh a user")
    create_user.add_argument("--external-id", required=True)
    create_user.add_argument("--username", default=None)
    create_user.add_argument("--first-name", default=None)
    create_user.add_argument("--last-name", default=None)

    create_wallet = subparsers.add_parser("create-wallet", help="Provision a custodial wallet")
    create_wallet.add_argument("--user-id", type=uuid.UUID, required=True)

    submit = subparsers.add_parser("submit-order", help="Submit an order on behalf of a user")
    submit.add_argument("--user-id", type=uuid.UUID, required=True)
    submit.add_argument("--market-id", type=uuid.UUID, required=True)
    submit.add_argument("--token-side", type=TokenSide, choices=list(TokenSide), required=True)
    submit.add_argument("--side", type=OrderSide, choices=list(OrderSide), required=True)
    submit.add_argument("--amount", type=_parse_decimal, required=True)
    submit.add_argument("--limit-price", type=_parse_decimal, default=None)

    cancel = subparsers.add_parser("cancel-order", help="Cancel an active order")
    cancel.add_argument("--user-id", type=uuid.UUID, required=True)
    cancel.add_argument("--order-id", type=uuid.UUID, required=True)

    positions = subparsers.add_parser("positions", help="List positions")
    positions.add_argument("--user-id", type=uuid.UUID, required=True)
    positions.add_argument("--open", action="store_true", help="Only non-zero positions")

    orders = subparsers.add_parser("orders", help="List order history")
    orders.add_argument("--user-id", type=uuid.UUID, required=True)
    orders.add_argument("--limit", type=int, default=50)

    balances = subparsers.add_parser("balances", help="Show balances")
    balances.add_argument("--user-id", type=uuid.UUID, required=True)

    sync_markets = subparsers.add_parser("sync-markets", help="Refresh markets from the listing API")
    sync_markets.add_argument("--limit", type=int, default=100)
    sync_markets.add_argument("--offset", type=int, default=0)

    subparsers.add_parser("run-once", help="Run one reconciliation cycle")

    daemon_cmd = subparsers.add_parser("daemon", help="Start the reconciliation loop")
    daemon_cmd.add_argument("--max-cycles", type=int, default=None)

    subparsers.add_parser("stats", help="Show ledger row counts")
    return parser


def _dispatch(args: argparse.Namespace, runtime: EngineRuntime) -> int:
    if args.command == "init-db":
        create_schema(runtime.engine)
        _emit({"status": "ok"})
        return 0

    if args.command == "create-user":
        _emit(
            runtime.store.ensure_user(
                args.external_id,
                username=args.username,
                first_name=args.first_name,
                last_name=args.last_name,
            )
        )
        return 0

    if args.command == "create-wallet":
        _emit(_wallet_view(runtime.signer.provision_wallet(args.user_id)))
        return 0

    if args.command == "submit-order":
        session = UserSession(user_id=args.user_id, expires_at=datetime.now().astimezone() + OPERATOR_SESSION_TTL)
        order = runtime.pipeline.submit_order(
            args.user_id,
            OrderRequest(
                market_id=args.market_id,
                token_side=args.token_side,
                side=args.side,
                amount=args.amount,
                limit_price=args.limit_price,
            ),
            session,
        )
        _emit(order)
        return 0

    if args.command == "cancel-order":
        _emit(runtime.pipeline.cancel_order(args.user_id, args.order_id))
        return 0

    if args.command == "positions":
        rows = runtime.queries.open_positions(args.user_id) if args.open else runtime.queries.positions(args.user_id)
        _emit(rows)
        return 0

    if args.command == "orders":
        _emit(runtime.queries.order_history(args.user_id, limit=args.limit))
        return 0

    if args.command == "balances":
        _emit(runtime.queries.balance_snapshot(args.user_id))
        return 0

    if args.command == "sync-markets":
        _emit(runtime.catalog.sync(limit=args.limit, offset=args.offset))
        return 0

    if args.command == "run-once":
        _emit(runtime.worker.run_once().as_dict())
        return 0

    if args.command == "daemon":
        runtime.worker.daemon_loop(max_cycles=args.max_cycles)
        return 0

    if args.command == "stats":
        _emit(runtime.queries.stats())
        return 0

    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_engine_config()
    except ConfigError as exc:
        print(json.dumps({"error": str(exc), "type": "ConfigError"}), file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime = build_runtime(config)
    try:
        return _dispatch(args, runtime)
    except (ValidationError, ExternalRejection, ExternalTransientError) as exc:
        logger.info("Command %s failed: %s", args.command, exc)
        _emit({"error": str(exc), "type": type(exc).__name__})
        return 1
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
