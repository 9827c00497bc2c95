"""Initial production schema for the prediction-market ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE order_side_enum AS ENUM ('buy', 'sell');",
    "CREATE TYPE token_side_enum AS ENUM ('yes', 'no');",
    "CREATE TYPE order_type_enum AS ENUM ('market', 'limit');",
    "CREATE TYPE order_status_enum AS ENUM "
    "('pending', 'signed', 'submitted', 'confirmed', 'filled', 'failed', 'cancelled');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE app_user (
        user_id UUID NOT NULL,
        external_auth_id TEXT NOT NULL,
        username TEXT,
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_app_user PRIMARY KEY (user_id),
        CONSTRAINT uq_app_user_external_auth_id UNIQUE (external_auth_id),
        CONSTRAINT ck_app_user_external_auth_id_not_blank CHECK (length(trim(external_auth_id)) > 0)
    );
    """,
    """
    CREATE TABLE wallet (
        wallet_id UUID NOT NULL,
        user_id UUID NOT NULL,
        wallet_address TEXT NOT NULL,
        encrypted_private_key BYTEA NOT NULL,
        key_iv BYTEA NOT NULL,
        key_version SMALLINT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_wallet PRIMARY KEY (wallet_id),
        CONSTRAINT uq_wallet_user_id UNIQUE (user_id),
        CONSTRAINT uq_wallet_address UNIQUE (wallet_address),
        CONSTRAINT fk_wallet_user FOREIGN KEY (user_id)
            REFERENCES app_user (user_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_wallet_address_length CHECK (length(wallet_address) = 42),
        CONSTRAINT ck_wallet_key_version_pos CHECK (key_version > 0)
    );
    """,
    """
    CREATE TABLE market (
        market_id UUID NOT NULL,
        external_market_id TEXT NOT NULL,
        condition_id TEXT,
        question TEXT NOT NULL,
        description TEXT,
        yes_token_id TEXT,
        no_token_id TEXT,
        yes_price NUMERIC(28,10) NOT NULL,
        no_price NUMERIC(28,10) NOT NULL,
        liquidity NUMERIC(38,18) NOT NULL,
        volume_24h NUMERIC(38,18) NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_archived BOOLEAN NOT NULL DEFAULT FALSE,
        end_date TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_market PRIMARY KEY (market_id),
        CONSTRAINT uq_market_external_market_id UNIQUE (external_market_id),
        CONSTRAINT ck_market_yes_price_range CHECK (yes_price >= 0 AND yes_price <= 1),
        CONSTRAINT ck_market_no_price_range CHECK (no_price >= 0 AND no_price <= 1),
        CONSTRAINT ck_market_liquidity_nonneg CHECK (liquidity >= 0),
        CONSTRAINT ck_market_volume_nonneg CHECK (volume_24h >= 0)
    );
    """,
    """
    CREATE TABLE position (
        position_id UUID NOT NULL,
        user_id UUID NOT NULL,
        market_id UUID NOT NULL,
        token_id TEXT NOT NULL,
        side order_side_enum NOT NULL,
        amount NUMERIC(28,10) NOT NULL,
        average_price NUMERIC(28,10) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_position PRIMARY KEY (position_id),
        CONSTRAINT uq_position_user_market_token UNIQUE (user_id, market_id, token_id),
        CONSTRAINT fk_position_user FOREIGN KEY (user_id)
            REFERENCES app_user (user_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_position_market FOREIGN KEY (market_id)
            REFERENCES market (market_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_position_average_price_range CHECK (average_price >= 0 AND average_price <= 1)
    );
    """,
    """
    CREATE TABLE trade_order (
        order_id UUID NOT NULL,
        user_id UUID NOT NULL,
        market_id UUID NOT NULL,
        token_side token_side_enum NOT NULL,
        token_id TEXT NOT NULL,
        side order_side_enum NOT NULL,
        order_type order_type_enum NOT NULL,
        amount NUMERIC(28,10) NOT NULL,
        price NUMERIC(28,10) NOT NULL,
        total_cost NUMERIC(28,10) NOT NULL,
        intent_hash CHAR(64) NOT NULL,
        status order_status_enum NOT NULL,
        status_reason TEXT,
        order_hash TEXT,
        transaction_hash TEXT,
        filled_amount NUMERIC(28,10),
        fill_price NUMERIC(28,10),
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_trade_order PRIMARY KEY (order_id),
        CONSTRAINT uq_trade_order_order_hash UNIQUE (order_hash),
        CONSTRAINT uq_trade_order_transaction_hash UNIQUE (transaction_hash),
        CONSTRAINT fk_trade_order_user FOREIGN KEY (user_id)
            REFERENCES app_user (user_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_trade_order_market FOREIGN KEY (market_id)
            REFERENCES market (market_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_trade_order_amount_pos CHECK (amount > 0),
        CONSTRAINT ck_trade_order_price_range CHECK (price > 0 AND price < 1),
        CONSTRAINT ck_trade_order_total_cost_nonneg CHECK (total_cost >= 0),
        CONSTRAINT ck_trade_order_fill_only_when_filled CHECK (filled_amount IS NULL OR status = 'filled'),
        CONSTRAINT ck_trade_order_terminal_reason
            CHECK (status NOT IN ('failed', 'cancelled') OR status_reason IS NOT NULL)
    );
    """,
    """
    CREATE TABLE order_event (
        event_id UUID NOT NULL,
        order_id UUID NOT NULL,
        from_status order_status_enum,
        to_status order_status_enum NOT NULL,
        reason TEXT,
        event_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_order_event PRIMARY KEY (event_id),
        CONSTRAINT fk_order_event_order FOREIGN KEY (order_id)
            REFERENCES trade_order (order_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_order_event_status_changes CHECK (from_status IS NULL OR from_status <> to_status)
    );
    """,
    """
    CREATE TABLE transfer (
        transfer_id UUID NOT NULL,
        user_id UUID NOT NULL,
        transaction_hash TEXT NOT NULL,
        from_address TEXT NOT NULL,
        to_address TEXT NOT NULL,
        value NUMERIC(38,18) NOT NULL,
        token TEXT NOT NULL,
        chain TEXT NOT NULL,
        block_number BIGINT NOT NULL,
        chain_timestamp TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_transfer PRIMARY KEY (transfer_id),
        CONSTRAINT uq_transfer_user_transaction_hash UNIQUE (user_id, transaction_hash),
        CONSTRAINT fk_transfer_user FOREIGN KEY (user_id)
            REFERENCES app_user (user_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_transfer_value_nonneg CHECK (value >= 0),
        CONSTRAINT ck_transfer_block_nonneg CHECK (block_number >= 0)
    );
    """,
    """
    CREATE TABLE balance (
        balance_id UUID NOT NULL,
        user_id UUID NOT NULL,
        chain TEXT NOT NULL,
        native_balance NUMERIC(38,18) NOT NULL,
        stable_balance NUMERIC(38,18) NOT NULL,
        observed_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_balance PRIMARY KEY (balance_id),
        CONSTRAINT uq_balance_user_chain UNIQUE (user_id, chain),
        CONSTRAINT fk_balance_user FOREIGN KEY (user_id)
            REFERENCES app_user (user_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_balance_native_nonneg CHECK (native_balance >= 0),
        CONSTRAINT ck_balance_stable_nonneg CHECK (stable_balance >= 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_position_user_updated ON position (user_id, updated_at);",
    """
    CREATE UNIQUE INDEX uq_trade_order_active_intent
    ON trade_order (user_id, market_id, token_id, side, intent_hash)
    WHERE status IN ('pending', 'signed', 'submitted', 'confirmed');
    """,
    "CREATE INDEX idx_trade_order_status_updated ON trade_order (status, updated_at);",
    "CREATE INDEX idx_trade_order_user_created ON trade_order (user_id, created_at);",
    "CREATE INDEX idx_trade_order_intent_hash ON trade_order (intent_hash);",
    "CREATE INDEX idx_order_event_order_ts ON order_event (order_id, event_at);",
    "CREATE INDEX idx_transfer_user_chain_block ON transfer (user_id, chain, block_number);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_transfer_append_only
    BEFORE UPDATE OR DELETE ON transfer
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_order_event_append_only
    BEFORE UPDATE OR DELETE ON order_event
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE OR REPLACE FUNCTION fn_trade_order_guard()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'trade_order rows are never deleted';
        END IF;
        IF OLD.status IN ('filled', 'failed', 'cancelled') THEN
            RAISE EXCEPTION 'trade_order % is terminal (%)', OLD.order_id, OLD.status;
        END IF;
        IF OLD.order_hash IS NOT NULL AND NEW.order_hash IS DISTINCT FROM OLD.order_hash THEN
            RAISE EXCEPTION 'trade_order.order_hash is immutable once set';
        END IF;
        IF OLD.transaction_hash IS NOT NULL AND NEW.transaction_hash IS DISTINCT FROM OLD.transaction_hash THEN
            RAISE EXCEPTION 'trade_order.transaction_hash is immutable once set';
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_trade_order_guard
    BEFORE UPDATE OR DELETE ON trade_order
    FOR EACH ROW EXECUTE FUNCTION fn_trade_order_guard();
    """,
    """
    CREATE OR REPLACE FUNCTION fn_wallet_key_immutable()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'wallet rows are never deleted';
        END IF;
        IF NEW.encrypted_private_key IS DISTINCT FROM OLD.encrypted_private_key
           OR NEW.key_iv IS DISTINCT FROM OLD.key_iv
           OR NEW.wallet_address IS DISTINCT FROM OLD.wallet_address THEN
            RAISE EXCEPTION 'wallet key material is never overwritten in place';
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_wallet_key_immutable
    BEFORE UPDATE OR DELETE ON wallet
    FOR EACH ROW EXECUTE FUNCTION fn_wallet_key_immutable();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_wallet_key_immutable ON wallet;",
            "DROP TRIGGER IF EXISTS trg_trade_order_guard ON trade_order;",
            "DROP TRIGGER IF EXISTS trg_order_event_append_only ON order_event;",
            "DROP TRIGGER IF EXISTS trg_transfer_append_only ON transfer;",
            "DROP FUNCTION IF EXISTS fn_wallet_key_immutable();",
            "DROP FUNCTION IF EXISTS fn_trade_order_guard();",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS balance;",
            "DROP TABLE IF EXISTS transfer;",
            "DROP TABLE IF EXISTS order_event;",
            "DROP TABLE IF EXISTS trade_order;",
            "DROP TABLE IF EXISTS position;",
            "DROP TABLE IF EXISTS market;",
            "DROP TABLE IF EXISTS wallet;",
            "DROP TABLE IF EXISTS app_user;",
            "DROP TYPE IF EXISTS order_status_enum;",
            "DROP TYPE IF EXISTS order_type_enum;",
            "DROP TYPE IF EXISTS token_side_enum;",
            "DROP TYPE IF EXISTS order_side_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
