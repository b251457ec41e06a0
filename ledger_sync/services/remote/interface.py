"""
Abstract Remote Transport Interface

The remote is a dumb, untrusted store. It holds one opaque encrypted blob
per ledger plus a revision number, and hands out an exclusive lease so
that at most one client merges into a ledger at a time.

DESIGN DECISION: The remote never merges anything. The client holding
the lease pulls the canonical blob, merges locally and pushes the result.
This keeps the remote free of plaintext and of business logic, so any
storage that can do compare-and-swap on a file (a shared directory, an
object store, a tiny HTTP service) can play the role.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# MODELS
# =============================================================================

class RemoteBlob(BaseModel):
    """The encrypted canonical state as stored on the remote."""

    payload: bytes = Field(
        ...,
        description="Sealed canonical state (opaque to the remote)"
    )
    revision: int = Field(
        ...,
        ge=1,
        description="Monotonic revision assigned by the remote"
    )


class PushAck(BaseModel):
    """The remote's answer to a push."""

    accepted: bool
    revision: int = Field(
        ...,
        ge=0,
        description="Revision now current on the remote"
    )
    reason: Optional[str] = Field(
        default=None,
        description="Why the push was refused, if it was"
    )


class Lease(BaseModel):
    """Exclusive right to merge into one ledger until expires_at."""

    ledger_id: str
    holder: str = Field(
        ...,
        description="Client identifier of the lease holder"
    )
    token: str = Field(
        ...,
        description="Opaque token proving ownership"
    )
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    @staticmethod
    def expiry(ttl_seconds: float, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=ttl_seconds)


# =============================================================================
# INTERFACE
# =============================================================================

class RemoteTransportInterface(ABC):
    """
    Abstract interface for the centralized remote store.

    Every method may raise RemoteUnreachableError; callers retry those.
    """

    @abstractmethod
    async def fetch_canonical(self, ledger_id: str) -> Optional[RemoteBlob]:
        """
        Download the current canonical blob of a ledger.

        Args:
            ledger_id: Ledger to fetch

        Returns:
            The blob, or None if nothing was ever pushed for this ledger

        Raises:
            RemoteUnreachableError: If the remote cannot be reached
        """
        pass

    @abstractmethod
    async def push(
        self,
        ledger_id: str,
        payload: bytes,
        expected_revision: int,
        lease: Lease,
    ) -> PushAck:
        """
        Upload a new canonical blob (compare-and-swap on the revision).

        Args:
            ledger_id: Ledger to update
            payload: Sealed canonical state
            expected_revision: Revision the payload was merged on top of
                (0 if the ledger had no blob yet)
            lease: The lease held by the pushing client

        Returns:
            PushAck with the new revision, or accepted=False when the
            current revision is not expected_revision

        Raises:
            LeaseLostError: If lease is not the ledger's current lease
            RemoteUnreachableError: If the remote cannot be reached
        """
        pass

    @abstractmethod
    async def acquire_lease(
        self,
        ledger_id: str,
        holder: str,
        ttl_seconds: float,
    ) -> Lease:
        """
        Take the exclusive merge lease of a ledger.

        A lease that expired, or that is held by the same holder (a round
        of that client that died), is taken over.

        Raises:
            LeaseContentionError: If another client holds a live lease
            RemoteUnreachableError: If the remote cannot be reached
        """
        pass

    @abstractmethod
    async def release_lease(self, lease: Lease) -> bool:
        """
        Give a lease back.

        Returns:
            True if the lease was released, False if it was no longer held
        """
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RemoteError(Exception):
    """Base exception for remote transport operations."""
    pass


class RemoteUnreachableError(RemoteError):
    """The remote could not be reached (network or mount failure)."""
    pass


class LeaseContentionError(RemoteError):
    """Another client holds the ledger lease."""
    pass


class LeaseLostError(RemoteError):
    """The lease expired or was taken over before the push."""
    pass
