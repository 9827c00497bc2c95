"""Ledger store: durable rows, conditional order transitions and idempotent reconciliation writes.

Every public method runs in its own short transaction. Callers never hold a
transaction open across a signer, exchange or indexer round trip.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Iterable, Iterator, Optional, Sequence
import uuid

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.db.enums import OrderSide, OrderStatus, OrderType, TokenSide
from backend.db.models import Balance, Market, Order, OrderEvent, Position, Transfer, User, Wallet
from order_engine.common import EngineClock, normalize_decimal
from order_engine.errors import (
    InsufficientBalance,
    LedgerInvariantError,
    OrderNotFound,
    UserNotFound,
)
from order_engine.exchange_client import MarketSnapshot
from order_engine.chain_indexer import BalanceSnapshot, TransferEvent
from order_engine.state_machine import (
    ACTIVE_STATUSES,
    EXCHANGE_TRACKED_STATUSES,
    assert_transition,
    is_terminal,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class UserRecord:
    user_id: uuid.UUID
    external_auth_id: str
    username: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    created_at: datetime
    last_active_at: datetime


@dataclass(frozen=True)
class WalletRecord:
    wallet_id: uuid.UUID
    user_id: uuid.UUID
    wallet_address: str
    encrypted_private_key: bytes
    key_iv: bytes
    key_version: int
    created_at: datetime
    last_used_at: datetime


@dataclass(frozen=True)
class MarketRecord:
    market_id: uuid.UUID
    external_market_id: str
    condition_id: Optional[str]
    question: str
    description: Optional[str]
    yes_token_id: Optional[str]
    no_token_id: Optional[str]
    yes_price: Decimal
    no_price: Decimal
    liquidity: Decimal
    volume_24h: Decimal
    is_active: bool
    is_archived: bool
    end_date: Optional[datetime]
    updated_at: datetime

    @property
    def is_tradable(self) -> bool:
        return bool(self.yes_token_id) and bool(self.no_token_id)

    def token_id_for(self, token_side: TokenSide) -> Optional[str]:
        return self.yes_token_id if token_side is TokenSide.YES else self.no_token_id

    def price_for(self, token_side: TokenSide) -> Decimal:
        return self.yes_price if token_side is TokenSide.YES else self.no_price


@dataclass(frozen=True)
class OrderRecord:
    order_id: uuid.UUID
    user_id: uuid.UUID
    market_id: uuid.UUID
    token_side: TokenSide
    token_id: str
    side: OrderSide
    order_type: OrderType
    amount: Decimal
    price: Decimal
    total_cost: Decimal
    intent_hash: str
    status: OrderStatus
    status_reason: Optional[str]
    order_hash: Optional[str]
    transaction_hash: Optional[str]
    filled_amount: Optional[Decimal]
    fill_price: Optional[Decimal]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


@dataclass(frozen=True)
class OrderEventRecord:
    event_id: uuid.UUID
    order_id: uuid.UUID
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    reason: Optional[str]
    event_at: datetime


@dataclass(frozen=True)
class PositionRecord:
    position_id: uuid.UUID
    user_id: uuid.UUID
    market_id: uuid.UUID
    token_id: str
    side: OrderSide
    amount: Decimal
    average_price: Decimal
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class TransferRecord:
    transfer_id: uuid.UUID
    user_id: uuid.UUID
    transaction_hash: str
    from_address: str
    to_address: str
    value: Decimal
    token: str
    chain: str
    block_number: int
    chain_timestamp: datetime
    created_at: datetime


@dataclass(frozen=True)
class BalanceRecord:
    balance_id: uuid.UUID
    user_id: uuid.UUID
    chain: str
    native_balance: Decimal
    stable_balance: Decimal
    observed_at: datetime


@dataclass(frozen=True)
class NewOrder:
    """Validated order intent ready to be persisted in pending state."""

    user_id: uuid.UUID
    market_id: uuid.UUID
    token_side: TokenSide
    token_id: str
    side: OrderSide
    order_type: OrderType
    amount: Decimal
    price: Decimal
    total_cost: Decimal
    intent_hash: str


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a conditional order transition; applied=False means the CAS lost."""

    applied: bool
    order: OrderRecord


@dataclass(frozen=True)
class FillApplication:
    applied: bool
    reason: str
    order: Optional[OrderRecord]
    position: Optional[PositionRecord]


@dataclass(frozen=True)
class TransferApplication:
    inserted: tuple[TransferRecord, ...]
    duplicate_count: int
    balance: Optional[BalanceRecord]


def _user_record(row: User) -> UserRecord:
    return UserRecord(
        user_id=row.user_id,
        external_auth_id=row.external_auth_id,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=row.created_at,
        last_active_at=row.last_active_at,
    )


def _wallet_record(row: Wallet) -> WalletRecord:
    return WalletRecord(
        wallet_id=row.wallet_id,
        user_id=row.user_id,
        wallet_address=row.wallet_address,
        encrypted_private_key=bytes(row.encrypted_private_key),
        key_iv=bytes(row.key_iv),
        key_version=row.key_version,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
    )


def _market_record(row: Market) -> MarketRecord:
    return MarketRecord(
        market_id=row.market_id,
        external_market_id=row.external_market_id,
        condition_id=row.condition_id,
        question=row.question,
        description=row.description,
        yes_token_id=row.yes_token_id,
        no_token_id=row.no_token_id,
        yes_price=row.yes_price,
        no_price=row.no_price,
        liquidity=row.liquidity,
        volume_24h=row.volume_24h,
        is_active=row.is_active,
        is_archived=row.is_archived,
        end_date=row.end_date,
        updated_at=row.updated_at,
    )


def _order_record(row: Order) -> OrderRecord:
    return OrderRecord(
        order_id=row.order_id,
        user_id=row.user_id,
        market_id=row.market_id,
        token_side=row.token_side,
        token_id=row.token_id,
        side=row.side,
        order_type=row.order_type,
        amount=row.amount,
        price=row.price,
        total_cost=row.total_cost,
        intent_hash=row.intent_hash,
        status=row.status,
        status_reason=row.status_reason,
        order_hash=row.order_hash,
        transaction_hash=row.transaction_hash,
        filled_amount=row.filled_amount,
        fill_price=row.fill_price,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_record(row: OrderEvent) -> OrderEventRecord:
    return OrderEventRecord(
        event_id=row.event_id,
        order_id=row.order_id,
        from_status=row.from_status,
        to_status=row.to_status,
        reason=row.reason,
        event_at=row.event_at,
    )


def _position_record(row: Position) -> PositionRecord:
    return PositionRecord(
        position_id=row.position_id,
        user_id=row.user_id,
        market_id=row.market_id,
        token_id=row.token_id,
        side=row.side,
        amount=row.amount,
        average_price=row.average_price,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _transfer_record(row: Transfer) -> TransferRecord:
    return TransferRecord(
        transfer_id=row.transfer_id,
        user_id=row.user_id,
        transaction_hash=row.transaction_hash,
        from_address=row.from_address,
        to_address=row.to_address,
        value=row.value,
        token=row.token,
        chain=row.chain,
        block_number=row.block_number,
        chain_timestamp=row.chain_timestamp,
        created_at=row.created_at,
    )


def _balance_record(row: Balance) -> BalanceRecord:
    return BalanceRecord(
        balance_id=row.balance_id,
        user_id=row.user_id,
        chain=row.chain,
        native_balance=row.native_balance,
        stable_balance=row.stable_balance,
        observed_at=row.observed_at,
    )


def signed_fill_amount(side: OrderSide, filled_amount: Decimal) -> Decimal:
    """Buys add to the net holding, sells subtract."""
    return filled_amount if side is OrderSide.BUY else -filled_amount


def accumulate_position(
    amount: Decimal,
    average_price: Decimal,
    signed_delta: Decimal,
    fill_price: Decimal,
) -> tuple[Decimal, Decimal]:
    """Merge one signed fill into an aggregate holding and its weighted average price."""
    new_amount = normalize_decimal(amount + signed_delta)
    if amount == ZERO or (amount > ZERO) == (signed_delta > ZERO):
        total = abs(amount) + abs(signed_delta)
        weighted = abs(amount) * average_price + abs(signed_delta) * fill_price
        return new_amount, normalize_decimal(weighted / total)
    if new_amount == ZERO or (new_amount > ZERO) == (amount > ZERO):
        # Reducing exposure realizes at fill price; the remaining lot keeps its cost basis.
        return new_amount, average_price
    return new_amount, normalize_decimal(fill_price)


class LedgerStore:
    """Single system of record shared by the submission pipeline and the reconciliation worker."""

    def __init__(self, session_factory: sessionmaker[Session], clock: EngineClock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or EngineClock()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._session_factory.begin() as session:
            yield session

    def _now(self) -> datetime:
        return self._clock.now_utc()

    # ------------------------------------------------------------------ users

    def ensure_user(
        self,
        external_auth_id: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> UserRecord:
        """Create the user on first authentication, otherwise refresh profile and activity."""
        for attempt in range(2):
            try:
                with self.transaction() as session:
                    now = self._now()
                    row = session.execute(
                        select(User).where(User.external_auth_id == external_auth_id)
                    ).scalar_one_or_none()
                    if row is None:
                        row = User(
                            user_id=uuid.uuid4(),
                            external_auth_id=external_auth_id,
                            username=username,
                            first_name=first_name,
                            last_name=last_name,
                            created_at=now,
                            last_active_at=now,
                        )
                        session.add(row)
                        session.flush()
                        logger.info("Created user %s for external id %s.", row.user_id, external_auth_id)
                    else:
                        row.username = username if username is not None else row.username
                        row.first_name = first_name if first_name is not None else row.first_name
                        row.last_name = last_name if last_name is not None else row.last_name
                        row.last_active_at = now
                    return _user_record(row)
            except IntegrityError as exc:
                if attempt:
                    raise LedgerInvariantError(f"Could not upsert user {external_auth_id}.") from exc
        raise LedgerInvariantError("unreachable")

    def get_user(self, user_id: uuid.UUID) -> Optional[UserRecord]:
        with self.transaction() as session:
            row = session.get(User, user_id)
            return None if row is None else _user_record(row)

    def require_user(self, user_id: uuid.UUID) -> UserRecord:
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} does not exist.")
        return user

    # ---------------------------------------------------------------- wallets

    def insert_wallet(
        self,
        *,
        user_id: uuid.UUID,
        wallet_address: str,
        encrypted_private_key: bytes,
        key_iv: bytes,
    ) -> WalletRecord:
        """Store a new custodial wallet; an existing wallet is never overwritten."""
        try:
            with self.transaction() as session:
                if session.get(User, user_id) is None:
                    raise UserNotFound(f"User {user_id} does not exist.")
                now = self._now()
                row = Wallet(
                    wallet_id=uuid.uuid4(),
                    user_id=user_id,
                    wallet_address=wallet_address,
                    encrypted_private_key=encrypted_private_key,
                    key_iv=key_iv,
                    key_version=1,
                    created_at=now,
                    last_used_at=now,
                )
                session.add(row)
                session.flush()
                return _wallet_record(row)
        except IntegrityError as exc:
            raise LedgerInvariantError(
                f"Wallet already exists for user {user_id} or address {wallet_address}."
            ) from exc

    def get_wallet(self, user_id: uuid.UUID) -> Optional[WalletRecord]:
        with self.transaction() as session:
            row = session.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()
            return None if row is None else _wallet_record(row)

    def list_wallets(self) -> tuple[WalletRecord, ...]:
        with self.transaction() as session:
            rows = session.execute(select(Wallet).order_by(Wallet.created_at)).scalars().all()
            return tuple(_wallet_record(row) for row in rows)

    def touch_wallet(self, user_id: uuid.UUID) -> None:
        """Record a successful signing; key columns are never part of this write."""
        with self.transaction() as session:
            session.execute(
                update(Wallet)
                .where(Wallet.user_id == user_id)
                .values(last_used_at=self._now())
                .execution_options(synchronize_session=False)
            )

    # ---------------------------------------------------------------- markets

    def upsert_market(self, snapshot: MarketSnapshot) -> MarketRecord:
        for attempt in range(2):
            try:
                with self.transaction() as session:
                    row = session.execute(
                        select(Market).where(Market.external_market_id == snapshot.external_market_id)
                    ).scalar_one_or_none()
                    if row is None:
                        row = Market(market_id=uuid.uuid4(), external_market_id=snapshot.external_market_id)
                        session.add(row)
                    row.condition_id = snapshot.condition_id
                    row.question = snapshot.question
                    row.description = snapshot.description
                    row.yes_token_id = snapshot.yes_token_id
                    row.no_token_id = snapshot.no_token_id
                    row.yes_price = normalize_decimal(snapshot.yes_price)
                    row.no_price = normalize_decimal(snapshot.no_price)
                    row.liquidity = snapshot.liquidity
                    row.volume_24h = snapshot.volume_24h
                    row.is_active = snapshot.is_active
                    row.is_archived = snapshot.is_archived
                    row.end_date = snapshot.end_date
                    row.updated_at = self._now()
                    session.flush()
                    return _market_record(row)
            except IntegrityError as exc:
                if attempt:
                    raise LedgerInvariantError(
                        f"Could not upsert market {snapshot.external_market_id}."
                    ) from exc
        raise LedgerInvariantError("unreachable")

    def get_market(self, market_id: uuid.UUID) -> Optional[MarketRecord]:
        with self.transaction() as session:
            row = session.get(Market, market_id)
            return None if row is None else _market_record(row)

    def get_market_by_external_id(self, external_market_id: str) -> Optional[MarketRecord]:
        with self.transaction() as session:
            row = session.execute(
                select(Market).where(Market.external_market_id == external_market_id)
            ).scalar_one_or_none()
            return None if row is None else _market_record(row)

    def get_market_by_token_id(self, token_id: str) -> Optional[MarketRecord]:
        with self.transaction() as session:
            row = session.execute(
                select(Market).where(or_(Market.yes_token_id == token_id, Market.no_token_id == token_id))
            ).scalars().first()
            return None if row is None else _market_record(row)

    def list_markets(self, *, tradable_only: bool = False, limit: int = 100) -> tuple[MarketRecord, ...]:
        with self.transaction() as session:
            stmt = select(Market).where(Market.is_active.is_(True), Market.is_archived.is_(False))
            if tradable_only:
                stmt = stmt.where(Market.yes_token_id.is_not(None), Market.no_token_id.is_not(None))
            rows = session.execute(stmt.order_by(Market.volume_24h.desc()).limit(limit)).scalars().all()
            return tuple(_market_record(row) for row in rows)

    # ----------------------------------------------------------------- orders

    def find_active_order(self, *, user_id: uuid.UUID, intent_hash: str) -> Optional[OrderRecord]:
        with self.transaction() as session:
            row = self._active_order_for_intent(session, user_id, intent_hash)
            return None if row is None else _order_record(row)

    @staticmethod
    def _active_order_for_intent(session: Session, user_id: uuid.UUID, intent_hash: str) -> Optional[Order]:
        return session.execute(
            select(Order).where(
                Order.user_id == user_id,
                Order.intent_hash == intent_hash,
                Order.status.in_(ACTIVE_STATUSES),
            )
        ).scalars().first()

    @staticmethod
    def _reserved_buy_cost(session: Session, user_id: uuid.UUID) -> Decimal:
        reserved = session.execute(
            select(func.coalesce(func.sum(Order.total_cost), 0)).where(
                Order.user_id == user_id,
                Order.side == OrderSide.BUY,
                Order.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one()
        return Decimal(str(reserved))

    def reserved_buy_cost(self, user_id: uuid.UUID) -> Decimal:
        """Total cost of the user's active buy orders (locally reserved stable balance)."""
        with self.transaction() as session:
            return self._reserved_buy_cost(session, user_id)

    def create_pending_order(self, new_order: NewOrder, *, balance_chain: Optional[str]) -> tuple[OrderRecord, bool]:
        """Insert a pending order, or return the active order already holding this intent.

        For buys, the user's balance row on ``balance_chain`` is row-locked while the
        reservation check runs so concurrent buys for one user serialize.
        """
        try:
            with self.transaction() as session:
                existing = self._active_order_for_intent(session, new_order.user_id, new_order.intent_hash)
                if existing is not None:
                    return _order_record(existing), False

                if new_order.side is OrderSide.BUY and balance_chain is not None:
                    balance = session.execute(
                        select(Balance)
                        .where(Balance.user_id == new_order.user_id, Balance.chain == balance_chain)
                        .with_for_update()
                    ).scalar_one_or_none()
                    stable = ZERO if balance is None else balance.stable_balance
                    available = stable - self._reserved_buy_cost(session, new_order.user_id)
                    if available < new_order.total_cost:
                        raise InsufficientBalance(
                            f"Insufficient balance: order costs {new_order.total_cost}, "
                            f"available {normalize_decimal(max(available, ZERO))}."
                        )

                now = self._now()
                row = Order(
                    order_id=uuid.uuid4(),
                    user_id=new_order.user_id,
                    market_id=new_order.market_id,
                    token_side=new_order.token_side,
                    token_id=new_order.token_id,
                    side=new_order.side,
                    order_type=new_order.order_type,
                    amount=new_order.amount,
                    price=new_order.price,
                    total_cost=new_order.total_cost,
                    intent_hash=new_order.intent_hash,
                    status=OrderStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                session.add(
                    OrderEvent(
                        event_id=uuid.uuid4(),
                        order_id=row.order_id,
                        from_status=None,
                        to_status=OrderStatus.PENDING,
                        reason="order created",
                        event_at=now,
                    )
                )
                session.flush()
                logger.info("Order %s created pending (intent=%s).", row.order_id, new_order.intent_hash[:12])
                return _order_record(row), True
        except IntegrityError as exc:
            winner = self.find_active_order(user_id=new_order.user_id, intent_hash=new_order.intent_hash)
            if winner is None:
                raise LedgerInvariantError(
                    f"Order insert for intent {new_order.intent_hash} violated a constraint."
                ) from exc
            logger.info("Concurrent duplicate submission resolved to order %s.", winner.order_id)
            return winner, False

    def get_order(self, order_id: uuid.UUID) -> Optional[OrderRecord]:
        with self.transaction() as session:
            row = session.get(Order, order_id)
            return None if row is None else _order_record(row)

    def get_order_by_hash(self, order_hash: str) -> Optional[OrderRecord]:
        with self.transaction() as session:
            row = session.execute(select(Order).where(Order.order_hash == order_hash)).scalar_one_or_none()
            return None if row is None else _order_record(row)

    def transition_order(
        self,
        order_id: uuid.UUID,
        *,
        expected: Iterable[OrderStatus],
        target: OrderStatus,
        reason: Optional[str] = None,
        order_hash: Optional[str] = None,
        transaction_hash: Optional[str] = None,
    ) -> TransitionResult:
        """Compare-and-swap the order status from one of ``expected`` to ``target``.

        Returns applied=False with the current row when the order is no longer in an
        expected status; the caller treats that as a lost race, not an error.
        """
        expected_statuses = frozenset(expected)
        for status in expected_statuses:
            assert_transition(status, target)
        try:
            with self.transaction() as session:
                row = session.get(Order, order_id)
                if row is None:
                    raise OrderNotFound(f"Order {order_id} does not exist.")
                current = row.status
                if current not in expected_statuses:
                    return TransitionResult(applied=False, order=_order_record(row))

                now = self._now()
                values: dict[str, object] = {"status": target, "updated_at": now}
                if reason is not None:
                    values["status_reason"] = reason
                stmt = update(Order).where(Order.order_id == order_id, Order.status == current)
                if order_hash is not None:
                    values["order_hash"] = order_hash
                    stmt = stmt.where(or_(Order.order_hash.is_(None), Order.order_hash == order_hash))
                if transaction_hash is not None:
                    values["transaction_hash"] = transaction_hash
                    stmt = stmt.where(
                        or_(Order.transaction_hash.is_(None), Order.transaction_hash == transaction_hash)
                    )
                result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
                if result.rowcount != 1:
                    session.refresh(row)
                    return TransitionResult(applied=False, order=_order_record(row))

                session.add(
                    OrderEvent(
                        event_id=uuid.uuid4(),
                        order_id=order_id,
                        from_status=current,
                        to_status=target,
                        reason=reason,
                        event_at=now,
                    )
                )
                session.flush()
                session.refresh(row)
                logger.info(
                    "Order %s %s -> %s%s.",
                    order_id,
                    current.value,
                    target.value,
                    f" ({reason})" if reason else "",
                )
                return TransitionResult(applied=True, order=_order_record(row))
        except IntegrityError as exc:
            raise LedgerInvariantError(
                f"Order {order_id} transition to {target.value} violated a uniqueness constraint "
                f"(order_hash={order_hash}, transaction_hash={transaction_hash})."
            ) from exc

    def attach_order_hash(
        self,
        order_id: uuid.UUID,
        order_hash: str,
        *,
        transaction_hash: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        """Record an exchange hash learned after the fact; never overwrites a set hash."""
        try:
            with self.transaction() as session:
                values: dict[str, object] = {"order_hash": order_hash, "updated_at": self._now()}
                if transaction_hash is not None:
                    values["transaction_hash"] = func.coalesce(Order.transaction_hash, transaction_hash)
                result = session.execute(
                    update(Order)
                    .where(
                        Order.order_id == order_id,
                        Order.order_hash.is_(None),
                        Order.status.in_(ACTIVE_STATUSES),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                row = session.get(Order, order_id, populate_existing=True)
                if row is None:
                    raise OrderNotFound(f"Order {order_id} does not exist.")
                if result.rowcount == 1:
                    logger.info("Order %s matched exchange order %s.", order_id, order_hash)
                return _order_record(row)
        except IntegrityError as exc:
            raise LedgerInvariantError(
                f"Exchange order {order_hash} is already attached to another order."
            ) from exc

    def list_orders_in_status(
        self,
        statuses: Iterable[OrderStatus],
        *,
        updated_before: Optional[datetime] = None,
        limit: int = 500,
    ) -> tuple[OrderRecord, ...]:
        with self.transaction() as session:
            stmt = select(Order).where(Order.status.in_(frozenset(statuses)))
            if updated_before is not None:
                stmt = stmt.where(Order.updated_at < updated_before)
            rows = session.execute(stmt.order_by(Order.updated_at, Order.order_id).limit(limit)).scalars().all()
            return tuple(_order_record(row) for row in rows)

    def list_exchange_tracked_orders(self, *, limit: int = 500) -> tuple[OrderRecord, ...]:
        return self.list_orders_in_status(EXCHANGE_TRACKED_STATUSES, limit=limit)

    def list_orders(
        self,
        user_id: uuid.UUID,
        *,
        limit: int = 50,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> tuple[OrderRecord, ...]:
        with self.transaction() as session:
            stmt = select(Order).where(Order.user_id == user_id)
            if statuses is not None:
                stmt = stmt.where(Order.status.in_(frozenset(statuses)))
            rows = session.execute(
                stmt.order_by(Order.created_at.desc(), Order.order_id).limit(limit)
            ).scalars().all()
            return tuple(_order_record(row) for row in rows)

    def order_events(self, order_id: uuid.UUID) -> tuple[OrderEventRecord, ...]:
        with self.transaction() as session:
            rows = session.execute(
                select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.event_at)
            ).scalars().all()
            return tuple(_event_record(row) for row in rows)

    # ------------------------------------------------------------------ fills

    def apply_fill(
        self,
        *,
        order_hash: str,
        filled_amount: Decimal,
        fill_price: Decimal,
        transaction_hash: Optional[str] = None,
    ) -> FillApplication:
        """Mark the order filled and merge the fill into its position, exactly once."""
        if filled_amount <= ZERO:
            return FillApplication(applied=False, reason="non-positive fill amount", order=None, position=None)
        for attempt in range(2):
            try:
                return self._apply_fill_once(order_hash, filled_amount, fill_price, transaction_hash)
            except IntegrityError as exc:
                if attempt:
                    raise LedgerInvariantError(f"Fill for order_hash={order_hash} could not be applied.") from exc
                logger.warning("Concurrent position insert for order_hash=%s; retrying fill.", order_hash)
        raise LedgerInvariantError("unreachable")

    def _apply_fill_once(
        self,
        order_hash: str,
        filled_amount: Decimal,
        fill_price: Decimal,
        transaction_hash: Optional[str],
    ) -> FillApplication:
        with self.transaction() as session:
            order = session.execute(
                select(Order).where(Order.order_hash == order_hash).with_for_update()
            ).scalar_one_or_none()
            if order is None:
                logger.debug("Discarding fill for unknown order_hash=%s.", order_hash)
                return FillApplication(applied=False, reason="unknown order hash", order=None, position=None)
            if is_terminal(order.status):
                logger.debug("Discarding fill for order %s already %s.", order.order_id, order.status.value)
                return FillApplication(
                    applied=False,
                    reason=f"order already {order.status.value}",
                    order=_order_record(order),
                    position=None,
                )
            current = order.status
            assert_transition(current, OrderStatus.FILLED)

            amount = normalize_decimal(filled_amount)
            price = normalize_decimal(fill_price)
            if amount > order.amount:
                logger.warning(
                    "Order %s filled %s above requested %s; recording exchange amount.",
                    order.order_id,
                    amount,
                    order.amount,
                )
            now = self._now()
            values: dict[str, object] = {
                "status": OrderStatus.FILLED,
                "updated_at": now,
                "filled_amount": amount,
                "fill_price": price,
                "status_reason": f"filled {amount} @ {price}",
            }
            stmt = update(Order).where(Order.order_id == order.order_id, Order.status == current)
            if transaction_hash is not None and order.transaction_hash is None:
                values["transaction_hash"] = transaction_hash
            result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if result.rowcount != 1:
                session.refresh(order)
                return FillApplication(
                    applied=False, reason="order changed concurrently", order=_order_record(order), position=None
                )
            session.add(
                OrderEvent(
                    event_id=uuid.uuid4(),
                    order_id=order.order_id,
                    from_status=current,
                    to_status=OrderStatus.FILLED,
                    reason=str(values["status_reason"]),
                    event_at=now,
                )
            )

            position = session.execute(
                select(Position)
                .where(
                    Position.user_id == order.user_id,
                    Position.market_id == order.market_id,
                    Position.token_id == order.token_id,
                )
                .with_for_update()
            ).scalar_one_or_none()
            delta = signed_fill_amount(order.side, amount)
            if position is None:
                position = Position(
                    position_id=uuid.uuid4(),
                    user_id=order.user_id,
                    market_id=order.market_id,
                    token_id=order.token_id,
                    side=OrderSide.BUY if delta >= ZERO else OrderSide.SELL,
                    amount=delta,
                    average_price=price,
                    created_at=now,
                    updated_at=now,
                )
                session.add(position)
            else:
                new_amount, new_average = accumulate_position(position.amount, position.average_price, delta, price)
                position.amount = new_amount
                position.average_price = new_average
                position.side = OrderSide.BUY if new_amount >= ZERO else OrderSide.SELL
                position.updated_at = now
            session.flush()
            session.refresh(order)
            logger.info(
                "Order %s %s -> filled; position %s/%s now %s @ %s.",
                order.order_id,
                current.value,
                order.market_id,
                order.token_id,
                position.amount,
                position.average_price,
            )
            return FillApplication(
                applied=True,
                reason="applied",
                order=_order_record(order),
                position=_position_record(position),
            )

    # -------------------------------------------------------------- positions

    def get_position(self, user_id: uuid.UUID, market_id: uuid.UUID, token_id: str) -> Optional[PositionRecord]:
        with self.transaction() as session:
            row = session.execute(
                select(Position).where(
                    Position.user_id == user_id,
                    Position.market_id == market_id,
                    Position.token_id == token_id,
                )
            ).scalar_one_or_none()
            return None if row is None else _position_record(row)

    def list_positions(self, user_id: uuid.UUID, *, open_only: bool = False) -> tuple[PositionRecord, ...]:
        with self.transaction() as session:
            stmt = select(Position).where(Position.user_id == user_id)
            if open_only:
                stmt = stmt.where(Position.amount != 0)
            rows = session.execute(stmt.order_by(Position.updated_at.desc(), Position.position_id)).scalars().all()
            return tuple(_position_record(row) for row in rows)

    # ------------------------------------------------------ transfers/balances

    def last_transfer_block(self, user_id: uuid.UUID, chain: str) -> Optional[int]:
        with self.transaction() as session:
            value = session.execute(
                select(func.max(Transfer.block_number)).where(Transfer.user_id == user_id, Transfer.chain == chain)
            ).scalar_one()
            return None if value is None else int(value)

    def apply_transfers(
        self,
        user_id: uuid.UUID,
        events: Sequence[TransferEvent],
        *,
        observed_balance: Optional[BalanceSnapshot] = None,
    ) -> TransferApplication:
        """Insert unseen transfers; replace the balance only when something new landed."""
        for attempt in range(2):
            try:
                return self._apply_transfers_once(user_id, events, observed_balance)
            except IntegrityError as exc:
                if attempt:
                    raise LedgerInvariantError(f"Transfers for user {user_id} could not be applied.") from exc
                logger.warning("Concurrent transfer insert for user %s; retrying.", user_id)
        raise LedgerInvariantError("unreachable")

    def _apply_transfers_once(
        self,
        user_id: uuid.UUID,
        events: Sequence[TransferEvent],
        observed_balance: Optional[BalanceSnapshot],
    ) -> TransferApplication:
        with self.transaction() as session:
            hashes = {event.transaction_hash for event in events}
            existing = set()
            if hashes:
                existing = set(
                    session.execute(
                        select(Transfer.transaction_hash).where(
                            Transfer.user_id == user_id, Transfer.transaction_hash.in_(hashes)
                        )
                    ).scalars()
                )
            now = self._now()
            inserted: list[Transfer] = []
            duplicates = 0
            for event in events:
                if event.transaction_hash in existing:
                    duplicates += 1
                    continue
                row = Transfer(
                    transfer_id=uuid.uuid4(),
                    user_id=user_id,
                    transaction_hash=event.transaction_hash,
                    from_address=event.from_address,
                    to_address=event.to_address,
                    value=event.value,
                    token=event.token,
                    chain=event.chain,
                    block_number=event.block_number,
                    chain_timestamp=event.chain_timestamp,
                    created_at=now,
                )
                session.add(row)
                inserted.append(row)
                existing.add(event.transaction_hash)
            session.flush()

            balance: Optional[BalanceRecord] = None
            if inserted and observed_balance is not None:
                balance = self._replace_balance(session, user_id, observed_balance)
            if duplicates:
                logger.debug("Discarded %d duplicate transfer(s) for user %s.", duplicates, user_id)
            return TransferApplication(
                inserted=tuple(_transfer_record(row) for row in inserted),
                duplicate_count=duplicates,
                balance=balance,
            )

    def _replace_balance(self, session: Session, user_id: uuid.UUID, snapshot: BalanceSnapshot) -> BalanceRecord:
        row = session.execute(
            select(Balance).where(Balance.user_id == user_id, Balance.chain == snapshot.chain).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            row = Balance(balance_id=uuid.uuid4(), user_id=user_id, chain=snapshot.chain)
            session.add(row)
        row.native_balance = snapshot.native_balance
        row.stable_balance = snapshot.stable_balance
        row.observed_at = snapshot.observed_at
        session.flush()
        return _balance_record(row)

    def replace_balance(self, user_id: uuid.UUID, snapshot: BalanceSnapshot) -> BalanceRecord:
        """Overwrite the (user, chain) balance with observed truth."""
        for attempt in range(2):
            try:
                with self.transaction() as session:
                    return self._replace_balance(session, user_id, snapshot)
            except IntegrityError as exc:
                if attempt:
                    raise LedgerInvariantError(f"Balance for user {user_id} could not be replaced.") from exc
        raise LedgerInvariantError("unreachable")

    def get_balance(self, user_id: uuid.UUID, chain: str) -> Optional[BalanceRecord]:
        with self.transaction() as session:
            row = session.execute(
                select(Balance).where(Balance.user_id == user_id, Balance.chain == chain)
            ).scalar_one_or_none()
            return None if row is None else _balance_record(row)

    def list_balances(self, user_id: uuid.UUID) -> tuple[BalanceRecord, ...]:
        with self.transaction() as session:
            rows = session.execute(
                select(Balance).where(Balance.user_id == user_id).order_by(Balance.chain)
            ).scalars().all()
            return tuple(_balance_record(row) for row in rows)

    def list_transfers(self, user_id: uuid.UUID, *, limit: int = 50) -> tuple[TransferRecord, ...]:
        with self.transaction() as session:
            rows = session.execute(
                select(Transfer)
                .where(Transfer.user_id == user_id)
                .order_by(Transfer.block_number.desc(), Transfer.transaction_hash)
                .limit(limit)
            ).scalars().all()
            return tuple(_transfer_record(row) for row in rows)

    def counts(self) -> dict[str, int]:
        with self.transaction() as session:
            return {
                "users": int(session.execute(select(func.count()).select_from(User)).scalar_one()),
                "wallets": int(session.execute(select(func.count()).select_from(Wallet)).scalar_one()),
                "positions": int(session.execute(select(func.count()).select_from(Position)).scalar_one()),
                "orders": int(session.execute(select(func.count()).select_from(Order)).scalar_one()),
            }
