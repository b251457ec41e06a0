"""
Remote Transport Package

The centralized, untrusted store that holds each ledger's encrypted
canonical state and its merge lease.
"""

from ledger_sync.services.remote.interface import (
    Lease,
    LeaseContentionError,
    LeaseLostError,
    PushAck,
    RemoteBlob,
    RemoteError,
    RemoteTransportInterface,
    RemoteUnreachableError,
)
from ledger_sync.services.remote.memory import InMemoryRemoteStore
from ledger_sync.services.remote.directory import DirectoryRemoteStore

__all__ = [
    # Interface and models
    "Lease",
    "PushAck",
    "RemoteBlob",
    "RemoteTransportInterface",
    # Exceptions
    "LeaseContentionError",
    "LeaseLostError",
    "RemoteError",
    "RemoteUnreachableError",
    # Implementations
    "DirectoryRemoteStore",
    "InMemoryRemoteStore",
]
