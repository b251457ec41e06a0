"""
Shared fixtures.

Key derivation uses a small scrypt cost so the suite stays fast; every
other setting is the production default unless a test overrides it.
"""

import pytest

from ledger_sync.config import CryptoSettings, SyncSettings
from ledger_sync.crypto import LedgerCipher
from ledger_sync.audit import AuditLogger
from ledger_sync.services.remote import InMemoryRemoteStore, RemoteUnreachableError
from ledger_sync.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage
from ledger_sync.sync import SyncSession


SALT = b"0123456789abcdef"
PASSWORD = "correct horse battery staple"


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def crypto_settings():
    return CryptoSettings(scrypt_log_n=10)


@pytest.fixture
def cipher(crypto_settings):
    return LedgerCipher.from_password(PASSWORD, SALT, crypto_settings)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


def make_sync_settings(client_id: str, **overrides) -> SyncSettings:
    values = {
        "client_id": client_id,
        "ledger_id": "household",
        "max_network_attempts": 3,
        "backoff_multiplier": 0.0,
        "backoff_min_seconds": 0.0,
        "backoff_max_seconds": 0.0,
        "lease_retry_attempts": 3,
        "lease_retry_delay_seconds": 0.0,
    }
    values.update(overrides)
    return SyncSettings(**values)


def make_session(storage, remote, cipher, client_id, audit_storage=None, **overrides) -> SyncSession:
    return SyncSession(
        storage=storage,
        remote=remote,
        cipher=cipher,
        settings=make_sync_settings(client_id, **overrides),
        audit_logger=AuditLogger(audit_storage),
        sleep=no_sleep,
    )


@pytest.fixture
def client_a(remote, cipher, audit_storage):
    storage = InMemoryLedgerStorage()
    return storage, make_session(storage, remote, cipher, "client-a", audit_storage)


@pytest.fixture
def client_b(remote, cipher, audit_storage):
    storage = InMemoryLedgerStorage()
    return storage, make_session(storage, remote, cipher, "client-b", audit_storage)


class FlakyRemote(InMemoryRemoteStore):
    """In-memory remote whose named operations fail a number of times first."""

    def __init__(self, failures: dict[str, int]):
        super().__init__()
        self.failures = dict(failures)
        self.calls: dict[str, int] = {}

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if self.failures.get(operation, 0) > 0:
            self.failures[operation] -= 1
            raise RemoteUnreachableError(f"{operation}: connection reset")

    async def fetch_canonical(self, ledger_id):
        self._maybe_fail("fetch_canonical")
        return await super().fetch_canonical(ledger_id)

    async def push(self, ledger_id, payload, expected_revision, lease):
        self._maybe_fail("push")
        return await super().push(ledger_id, payload, expected_revision, lease)
