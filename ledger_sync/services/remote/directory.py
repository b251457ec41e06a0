"""
Directory Remote Implementation

Uses a plain directory as the remote: a NAS share, a mounted drive or a
folder replicated by Syncthing. Layout per ledger:

    <root>/<ledger_id>/HEAD               current revision number
    <root>/<ledger_id>/canonical.<rev>    sealed canonical state
    <root>/<ledger_id>/lease.json         exclusive merge lease

DESIGN DECISION: A new revision is written to its own file first and
HEAD is switched with os.replace, which is atomic on POSIX and Windows.
A reader sees either the old revision or the new one, never a torn file.

The lease file is created with O_CREAT | O_EXCL, so two clients racing
for it cannot both succeed. A lease file that does not parse is still being
written by its creator and counts as held.

Any OSError is reported as RemoteUnreachableError: for a network mount
that is what a failing filesystem call means.
"""

import os
from pathlib import Path
from typing import Optional, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError

from ledger_sync.services.remote.interface import (
    Lease,
    LeaseContentionError,
    LeaseLostError,
    PushAck,
    RemoteBlob,
    RemoteTransportInterface,
    RemoteUnreachableError,
)


logger = structlog.get_logger("ledger_sync.remote")

HEAD_FILE = "HEAD"
LEASE_FILE = "lease.json"
BLOB_PREFIX = "canonical."


class DirectoryRemoteStore(RemoteTransportInterface):
    """Remote backed by a shared directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def _ledger_dir(self, ledger_id: str) -> Path:
        if not ledger_id or "/" in ledger_id or "\\" in ledger_id or ledger_id.startswith("."):
            raise ValueError(f"Invalid ledger id: {ledger_id!r}")
        return self.root / ledger_id

    def _read_revision(self, ledger_dir: Path) -> int:
        head = ledger_dir / HEAD_FILE
        if not head.exists():
            return 0
        try:
            return int(head.read_text().strip())
        except ValueError as e:
            raise RemoteUnreachableError(f"Malformed HEAD in {ledger_dir}: {e}") from e

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _read_lease(self, ledger_dir: Path) -> Optional[Lease]:
        path = ledger_dir / LEASE_FILE
        try:
            return Lease.model_validate_json(path.read_bytes())
        except FileNotFoundError:
            return None
        except ValidationError as e:
            # Empty or half written: another client is creating it right now
            raise LeaseContentionError(f"Unreadable lease in {ledger_dir}: {e}") from e

    # =========================================================================
    # INTERFACE
    # =========================================================================

    async def fetch_canonical(self, ledger_id: str) -> Optional[RemoteBlob]:
        ledger_dir = self._ledger_dir(ledger_id)
        try:
            revision = self._read_revision(ledger_dir)
            if revision == 0:
                return None
            payload = (ledger_dir / f"{BLOB_PREFIX}{revision}").read_bytes()
        except OSError as e:
            raise RemoteUnreachableError(f"Cannot read ledger {ledger_id} from {self.root}: {e}") from e
        return RemoteBlob(payload=payload, revision=revision)

    async def push(
        self,
        ledger_id: str,
        payload: bytes,
        expected_revision: int,
        lease: Lease,
    ) -> PushAck:
        ledger_dir = self._ledger_dir(ledger_id)
        try:
            try:
                current_lease = self._read_lease(ledger_dir)
            except LeaseContentionError as e:
                raise LeaseLostError(f"Lease on {ledger_id} is no longer readable") from e
            if current_lease is None or current_lease.token != lease.token:
                raise LeaseLostError(f"Lease on {ledger_id} is no longer held by {lease.holder}")
            if current_lease.is_expired():
                raise LeaseLostError(
                    f"Lease on {ledger_id} expired at {current_lease.expires_at.isoformat()}"
                )

            current = self._read_revision(ledger_dir)
            if current != expected_revision:
                return PushAck(
                    accepted=False,
                    revision=current,
                    reason=f"expected revision {expected_revision}, remote is at {current}",
                )

            new_revision = current + 1
            self._write_atomic(ledger_dir / f"{BLOB_PREFIX}{new_revision}", payload)
            self._write_atomic(ledger_dir / HEAD_FILE, str(new_revision).encode("ascii"))

            previous = ledger_dir / f"{BLOB_PREFIX}{current}"
            if current and previous.exists():
                previous.unlink()
        except OSError as e:
            raise RemoteUnreachableError(f"Cannot write ledger {ledger_id} to {self.root}: {e}") from e

        logger.info("canonical_pushed", ledger_id=ledger_id, revision=new_revision, size=len(payload))
        return PushAck(accepted=True, revision=new_revision)

    async def acquire_lease(
        self,
        ledger_id: str,
        holder: str,
        ttl_seconds: float,
    ) -> Lease:
        ledger_dir = self._ledger_dir(ledger_id)
        lease = Lease(
            ledger_id=ledger_id,
            holder=holder,
            token=uuid4().hex,
            expires_at=Lease.expiry(ttl_seconds),
        )
        try:
            ledger_dir.mkdir(parents=True, exist_ok=True)
            path = ledger_dir / LEASE_FILE

            existing = self._read_lease(ledger_dir)
            if existing is not None:
                if existing.holder != holder and not existing.is_expired():
                    raise LeaseContentionError(
                        f"Ledger {ledger_id} is leased by {existing.holder} "
                        f"until {existing.expires_at.isoformat()}"
                    )
                logger.info(
                    "lease_taken_over",
                    ledger_id=ledger_id,
                    previous_holder=existing.holder,
                    holder=holder,
                )
                path.unlink(missing_ok=True)

            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError as e:
                raise LeaseContentionError(f"Ledger {ledger_id} was leased concurrently") from e
            with os.fdopen(fd, "w") as f:
                f.write(lease.model_dump_json())
        except OSError as e:
            raise RemoteUnreachableError(f"Cannot lease ledger {ledger_id} in {self.root}: {e}") from e

        return lease

    async def release_lease(self, lease: Lease) -> bool:
        ledger_dir = self._ledger_dir(lease.ledger_id)
        try:
            try:
                current = self._read_lease(ledger_dir)
            except LeaseContentionError:
                return False
            if current is None or current.token != lease.token:
                return False
            (ledger_dir / LEASE_FILE).unlink(missing_ok=True)
        except OSError as e:
            raise RemoteUnreachableError(f"Cannot release lease on {lease.ledger_id}: {e}") from e
        return True
