"""Scoped handling of custodial private keys.

Plaintext key bytes only ever live in a ``SecretKeyMaterial`` bytearray, which
is overwritten with zeros when its ``with`` block exits.
"""

from __future__ import annotations

import logging
import os
from types import TracebackType
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from order_engine.errors import DecryptionFailed

logger = logging.getLogger(__name__)

IV_LENGTH = 12
KEY_LENGTH = 32


class SecretKeyMaterial:
    """Mutable plaintext buffer that is zeroed on every exit path."""

    def __init__(self, material: bytearray) -> None:
        self._material = material
        self._open = True

    def __enter__(self) -> "SecretKeyMaterial":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.wipe()

    def wipe(self) -> None:
        for index in range(len(self._material)):
            self._material[index] = 0
        self._open = False

    @property
    def is_wiped(self) -> bool:
        return not self._open

    def reveal(self) -> bytes:
        if not self._open:
            raise DecryptionFailed("Key material was already wiped")
        return bytes(self._material)

    def __repr__(self) -> str:
        return "SecretKeyMaterial(<redacted>)"


class KeyCipher:
    """AES-256-GCM envelope for wallet private keys under the process master key."""

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_LENGTH:
            raise ValueError(f"master key must be {KEY_LENGTH} bytes")
        self._aead = AESGCM(master_key)

    def encrypt(self, plaintext: bytes | bytearray, *, associated_data: bytes) -> tuple[bytes, bytes]:
        """Return (ciphertext, iv) using a fresh random IV."""
        iv = os.urandom(IV_LENGTH)
        return self._aead.encrypt(iv, bytes(plaintext), associated_data), iv

    def decrypt(self, ciphertext: bytes, iv: bytes, *, associated_data: bytes) -> SecretKeyMaterial:
        if len(iv) != IV_LENGTH:
            raise DecryptionFailed(f"Wallet IV must be {IV_LENGTH} bytes, got {len(iv)}")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext, associated_data)
        except InvalidTag as exc:
            raise DecryptionFailed("Wallet key failed authentication under the configured master key") from exc
        material = SecretKeyMaterial(bytearray(plaintext))
        del plaintext
        return material
