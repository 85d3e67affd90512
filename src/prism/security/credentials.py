"""AES-256-GCM encryption for platform credentials stored on connections.

Blob format is ``iv:authTag:ciphertext``, each part hex encoded. The core
treats the blob as opaque; only adapters call :meth:`CredentialCipher.decrypt`.
"""

from __future__ import annotations

import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from prism.errors import ConfigurationError, InvalidCredentialError

IV_LENGTH = 16
TAG_LENGTH = 16


class CredentialCipher:
    """Encrypt/decrypt credential strings with a 32-byte hex key."""

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise ConfigurationError("Credential encryption key must be hex encoded") from None
        if len(key) != 32:
            raise ConfigurationError("Credential encryption key must be 32 bytes (64 hex chars)")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str | None) -> str:
        """Decrypt a stored credential.

        Raises InvalidCredentialError for anything that is not a valid blob
        produced with this key: empty, plain text, malformed or tampered.
        """
        if not blob:
            raise InvalidCredentialError("Credential is missing")
        parts = blob.split(":")
        if len(parts) != 3:
            raise InvalidCredentialError("Credential is not encrypted")
        try:
            iv, tag, ciphertext = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError):
            raise InvalidCredentialError("Credential is malformed") from None
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise InvalidCredentialError("Credential is malformed")
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise InvalidCredentialError("Credential failed authentication") from None
        return plaintext.decode("utf-8")
