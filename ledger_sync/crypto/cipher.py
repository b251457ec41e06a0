"""
Symmetric Encryption for Ledger Data

DESIGN DECISION: We use AES-256-GCM (via the `cryptography` package) because:
1. It is authenticated: tampering or a wrong key is DETECTED, not decrypted
   into garbage
2. A 96-bit random nonce per call is safe far beyond any realistic number
   of encryptions for a personal ledger

The key is derived from the user password with scrypt. The salt is
generated once per ledger and stored alongside (never derived from) the
password; where it is stored is the caller's business.

BLOB LAYOUT (fields and payloads alike):

    version (1 byte) || nonce (12 bytes) || ciphertext + tag (16 bytes)

Fields and payloads use different associated data, so a field blob can
never be passed off as a payload or vice versa.

CRITICAL: Every integrity failure raises AuthenticationFailedError.
Callers must abort, never ignore it.
"""

import os
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ledger_sync.config import CryptoSettings, get_settings


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
BLOB_VERSION = 1

MIN_SALT_SIZE = 16

_FIELD_CONTEXT = b"ledger-sync:field:v1"
_PAYLOAD_CONTEXT = b"ledger-sync:payload:v1"


class CryptoError(Exception):
    """Base exception for crypto errors."""
    pass


class AuthenticationFailedError(CryptoError):
    """Ciphertext failed its integrity check (wrong password or corrupted data)."""
    pass


class KeyDerivationError(CryptoError):
    """Could not derive a key from the given password and salt."""
    pass


def generate_salt(size: Optional[int] = None) -> bytes:
    """
    Generate a fresh random salt for a new ledger.

    Call this ONCE per ledger and store the result next to the ledger.
    """
    size = size or get_settings().crypto.salt_size
    if size < MIN_SALT_SIZE:
        raise KeyDerivationError(f"Salt must be at least {MIN_SALT_SIZE} bytes")
    return os.urandom(size)


def derive_key(
    password: Union[str, bytes],
    salt: bytes,
    settings: Optional[CryptoSettings] = None,
) -> bytes:
    """
    Derive a 256-bit key from a password with scrypt.

    Args:
        password: The user's password
        salt: The ledger's salt (see generate_salt)
        settings: scrypt parameters; defaults to configured ones

    Returns:
        32 bytes of key material

    Raises:
        KeyDerivationError: On empty password, short salt or bad parameters
    """
    settings = settings or get_settings().crypto

    if isinstance(password, str):
        password = password.encode("utf-8")
    if not password:
        raise KeyDerivationError("Password must not be empty")
    if len(salt) < MIN_SALT_SIZE:
        raise KeyDerivationError(f"Salt must be at least {MIN_SALT_SIZE} bytes")

    try:
        kdf = Scrypt(
            salt=salt,
            length=KEY_SIZE,
            n=settings.scrypt_n,
            r=settings.scrypt_r,
            p=settings.scrypt_p,
        )
        return kdf.derive(password)
    except Exception as e:
        raise KeyDerivationError(f"Key derivation failed: {e}") from e


class LedgerCipher:
    """
    Encrypts and decrypts ledger fields and whole sync payloads.

    Holds an already-derived key; it never sees the password.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise CryptoError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_password(
        cls,
        password: Union[str, bytes],
        salt: bytes,
        settings: Optional[CryptoSettings] = None,
    ) -> "LedgerCipher":
        """Derive the key and build a cipher in one step."""
        return cls(derive_key(password, salt, settings))

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def encrypt_field(self, plaintext: bytes) -> bytes:
        """Encrypt a single field value (name, amount, balance...)."""
        return self._seal(plaintext, _FIELD_CONTEXT)

    def decrypt_field(self, blob: bytes) -> bytes:
        """
        Decrypt a single field value.

        Raises:
            AuthenticationFailedError: If the blob was tampered with or
                was encrypted under another key
        """
        return self._open(blob, _FIELD_CONTEXT)

    # -------------------------------------------------------------------------
    # Payloads
    # -------------------------------------------------------------------------

    def encrypt_payload(self, payload: bytes) -> bytes:
        """Encrypt a whole serialized document exchanged with the remote."""
        return self._seal(payload, _PAYLOAD_CONTEXT)

    def decrypt_payload(self, blob: bytes) -> bytes:
        """
        Decrypt a whole serialized document received from the remote.

        Raises:
            AuthenticationFailedError: On any integrity failure
        """
        return self._open(blob, _PAYLOAD_CONTEXT)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _seal(self, plaintext: bytes, context: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, bytes(plaintext), context)
        return bytes([BLOB_VERSION]) + nonce + ciphertext

    def _open(self, blob: bytes, context: bytes) -> bytes:
        if len(blob) < 1 + NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailedError("Ciphertext is truncated")
        if blob[0] != BLOB_VERSION:
            raise AuthenticationFailedError(
                f"Unsupported ciphertext version: {blob[0]}"
            )

        nonce = blob[1:1 + NONCE_SIZE]
        ciphertext = blob[1 + NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, context)
        except InvalidTag as e:
            raise AuthenticationFailedError(
                "Ciphertext failed integrity check (wrong password or corrupted data)"
            ) from e
