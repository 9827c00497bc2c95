"""Custodial signer: wallet provisioning and decrypt-use-discard signing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable, Optional
import uuid

from eth_account import Account
from eth_account.messages import encode_defunct

from order_engine.common import EngineClock
from order_engine.errors import (
    DecryptionFailed,
    KeyNotFound,
    LedgerInvariantError,
    SessionInvalid,
    SigningRejected,
)
from order_engine.ledger_store import LedgerStore, WalletRecord
from order_engine.secrets import KeyCipher, SecretKeyMaterial

logger = logging.getLogger(__name__)

ConfirmHook = Callable[[uuid.UUID, str], bool]


@dataclass(frozen=True)
class UserSession:
    """Authenticated caller context issued by the presentation layer."""

    user_id: uuid.UUID
    expires_at: datetime

    def is_valid_for(self, user_id: uuid.UUID, now: datetime) -> bool:
        return self.user_id == user_id and now < self.expires_at


@dataclass(frozen=True)
class SignatureResult:
    user_id: uuid.UUID
    wallet_address: str
    message_hash: str
    signature: str


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


class CustodialSigner:
    """Holds one encrypted key per user and signs without exposing plaintext."""

    def __init__(
        self,
        *,
        store: LedgerStore,
        cipher: KeyCipher,
        clock: EngineClock | None = None,
        confirm_hook: Optional[ConfirmHook] = None,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._clock = clock or EngineClock()
        self._confirm_hook = confirm_hook

    def provision_wallet(self, user_id: uuid.UUID) -> WalletRecord:
        """Generate, encrypt and store a new custodial wallet for the user."""
        self._store.require_user(user_id)
        if self._store.get_wallet(user_id) is not None:
            raise LedgerInvariantError(f"User {user_id} already has a custodial wallet.")

        account = Account.create()
        address = account.address
        with SecretKeyMaterial(bytearray(bytes(account.key))) as material:
            ciphertext, iv = self._cipher.encrypt(material.reveal(), associated_data=address.encode("ascii"))
        del account
        wallet = self._store.insert_wallet(
            user_id=user_id,
            wallet_address=address,
            encrypted_private_key=ciphertext,
            key_iv=iv,
        )
        logger.info("Provisioned custodial wallet %s for user %s.", address, user_id)
        return wallet

    def decrypt_and_sign(self, user_id: uuid.UUID, payload: str, session: UserSession) -> SignatureResult:
        """Sign payload (EIP-191 personal message) with the user's custodial key."""
        if not session.is_valid_for(user_id, self._clock.now_utc()):
            raise SessionInvalid(f"Session does not authorize signing for user {user_id}.")

        wallet = self._store.get_wallet(user_id)
        if wallet is None:
            raise KeyNotFound(f"No custodial wallet for user {user_id}.")

        if self._confirm_hook is not None and not self._confirm_hook(user_id, payload):
            raise SigningRejected("signing declined by user")

        message = encode_defunct(text=payload)
        with self._cipher.decrypt(
            wallet.encrypted_private_key,
            wallet.key_iv,
            associated_data=wallet.wallet_address.encode("ascii"),
        ) as material:
            signed = Account.sign_message(message, private_key=material.reveal())

        signer_address = Account.recover_message(message, signature=signed.signature)
        if signer_address != wallet.wallet_address:
            raise DecryptionFailed(f"Decrypted key for user {user_id} does not match wallet address.")

        self._store.touch_wallet(user_id)
        logger.debug("Signed payload for user %s with wallet %s.", user_id, wallet.wallet_address)
        return SignatureResult(
            user_id=user_id,
            wallet_address=wallet.wallet_address,
            message_hash=_hex(signed.message_hash),
            signature=_hex(signed.signature),
        )
