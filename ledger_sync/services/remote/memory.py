"""
In-Memory Remote Implementation

A remote that lives in the current process. Several clients (sessions)
can share one instance to simulate devices syncing through the same
store.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from ledger_sync.services.remote.interface import (
    Lease,
    LeaseContentionError,
    LeaseLostError,
    PushAck,
    RemoteBlob,
    RemoteTransportInterface,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRemoteStore(RemoteTransportInterface):
    """Canonical blobs and leases kept in dictionaries."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._blobs: dict[str, RemoteBlob] = {}
        self._leases: dict[str, Lease] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self.push_count = 0

    def revision(self, ledger_id: str) -> int:
        blob = self._blobs.get(ledger_id)
        return blob.revision if blob else 0

    def lease_of(self, ledger_id: str) -> Optional[Lease]:
        return self._leases.get(ledger_id)

    async def fetch_canonical(self, ledger_id: str) -> Optional[RemoteBlob]:
        return self._blobs.get(ledger_id)

    async def push(
        self,
        ledger_id: str,
        payload: bytes,
        expected_revision: int,
        lease: Lease,
    ) -> PushAck:
        async with self._lock:
            self._check_lease(ledger_id, lease)

            current = self.revision(ledger_id)
            if current != expected_revision:
                return PushAck(
                    accepted=False,
                    revision=current,
                    reason=f"expected revision {expected_revision}, remote is at {current}",
                )

            self._blobs[ledger_id] = RemoteBlob(payload=payload, revision=current + 1)
            self.push_count += 1
            return PushAck(accepted=True, revision=current + 1)

    async def acquire_lease(
        self,
        ledger_id: str,
        holder: str,
        ttl_seconds: float,
    ) -> Lease:
        async with self._lock:
            now = self._clock()
            existing = self._leases.get(ledger_id)
            if existing and existing.holder != holder and not existing.is_expired(now):
                raise LeaseContentionError(
                    f"Ledger {ledger_id} is leased by {existing.holder} "
                    f"until {existing.expires_at.isoformat()}"
                )

            lease = Lease(
                ledger_id=ledger_id,
                holder=holder,
                token=uuid4().hex,
                expires_at=Lease.expiry(ttl_seconds, now),
            )
            self._leases[ledger_id] = lease
            return lease

    async def release_lease(self, lease: Lease) -> bool:
        async with self._lock:
            current = self._leases.get(lease.ledger_id)
            if current is None or current.token != lease.token:
                return False
            del self._leases[lease.ledger_id]
            return True

    def _check_lease(self, ledger_id: str, lease: Lease) -> None:
        current = self._leases.get(ledger_id)
        if current is None or current.token != lease.token:
            raise LeaseLostError(f"Lease on {ledger_id} is no longer held by {lease.holder}")
        if current.is_expired(self._clock()):
            raise LeaseLostError(f"Lease on {ledger_id} expired at {current.expires_at.isoformat()}")
