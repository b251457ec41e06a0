"""Crypto layer package."""

from ledger_sync.crypto.cipher import (
    AuthenticationFailedError,
    CryptoError,
    KeyDerivationError,
    LedgerCipher,
    derive_key,
    generate_salt,
)
from ledger_sync.crypto.sealing import (
    FieldSealer,
    SealedRecord,
    StateSealer,
)

__all__ = [
    "AuthenticationFailedError",
    "CryptoError",
    "FieldSealer",
    "KeyDerivationError",
    "LedgerCipher",
    "SealedRecord",
    "StateSealer",
    "derive_key",
    "generate_salt",
]
