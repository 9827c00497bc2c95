"""Exception taxonomy for the order engine."""

from __future__ import annotations


class LedgerEngineError(RuntimeError):
    """Base class for every order-engine error."""


class ConfigError(LedgerEngineError):
    """Raised when process configuration is missing or malformed."""


class ValidationError(LedgerEngineError):
    """Rejected synchronously before any external call; never retried."""


class InvalidOrderRequest(ValidationError):
    """Order request fields are out of range."""


class MarketNotTradable(ValidationError):
    """Market is unknown or does not expose both outcome-token ids."""


class InsufficientBalance(ValidationError):
    """Local stable balance does not cover the buy cost."""


class UserNotFound(ValidationError):
    """No user row for the given id."""


class OrderNotFound(ValidationError):
    """No order row for the given id and user."""


class ExternalTransientError(LedgerEngineError):
    """Network-level failure talking to an external collaborator."""


class ExchangeUnavailable(ExternalTransientError):
    """Exchange could not be reached or answered with a server error."""


class IndexerUnavailable(ExternalTransientError):
    """Chain indexer could not be reached."""


class ExternalRejection(LedgerEngineError):
    """External collaborator explicitly refused the request."""


class ExchangeRejected(ExternalRejection):
    """Exchange rejected the order."""


class SigningRejected(ExternalRejection):
    """User declined the interactive signing confirmation."""


class FatalEngineError(LedgerEngineError):
    """Data-corruption or security-relevant fault; always surfaced."""


class KeyNotFound(FatalEngineError):
    """User has no custodial wallet row."""


class DecryptionFailed(FatalEngineError):
    """Wallet ciphertext could not be decrypted with the configured key."""


class SessionInvalid(FatalEngineError):
    """Caller does not hold a valid session for the user."""


class LedgerInvariantError(FatalEngineError):
    """A ledger invariant was observed broken."""
