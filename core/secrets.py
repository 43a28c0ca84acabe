"""
Connection password codec.

Passwords are stored as ``base64(iv | tag | ciphertext)`` using AES-256-GCM
with a 16 byte IV. The AES key is derived from ``ENCRYPTION_KEY`` with scrypt
and a fixed salt, so any service holding the same key can read the blobs.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from core.exceptions import DecryptionError, EncryptionKeyMissing

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KDF_SALT = b"connection-secret"


class SecretCodec:
    """
    Symmetric encrypt/decrypt of connection passwords.

    The key is validated lazily: constructing a codec without a key is fine,
    using it is not.
    """

    def __init__(self, key: Optional[str]):
        self._key = key
        self._aes: Optional[AESGCM] = None

    def _cipher(self) -> AESGCM:
        if self._aes is not None:
            return self._aes

        if not self._key or len(self._key) < MIN_KEY_LENGTH:
            raise EncryptionKeyMissing(
                f"ENCRYPTION_KEY must be set and at least {MIN_KEY_LENGTH} characters long",
                context={"key_length": len(self._key or "")}
            )

        kdf = Scrypt(salt=KDF_SALT, length=32, n=2**14, r=8, p=1)
        self._aes = AESGCM(kdf.derive(self._key.encode("utf-8")))
        return self._aes

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a password. An empty password stays empty."""
        if not plaintext:
            return ""

        aes = self._cipher()
        iv = os.urandom(IV_LENGTH)
        sealed = aes.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag; the stored layout puts it first
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a stored password blob.

        Raises:
            EncryptionKeyMissing: If no usable key is configured
            DecryptionError: If the blob is empty, corrupt or sealed with another key
        """
        aes = self._cipher()

        if not blob:
            raise DecryptionError("Encrypted password is empty")

        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Encrypted password is not valid base64", original_exception=e)

        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise DecryptionError(
                "Encrypted password is truncated",
                context={"length": len(raw)}
            )

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH:]

        try:
            plaintext = aes.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError(
                "Encrypted password could not be authenticated (corrupt or wrong key)",
                original_exception=e
            )

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted password is not valid UTF-8", original_exception=e)
