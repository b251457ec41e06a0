"""
Sync Protocol State Machine

Drives one client through a sync round against the remote:

    idle -> pulling -> merging -> pushing -> committing -> idle
                  \\         \\          \\            \\
                   +---------+----------+------------+--> aborted -> idle

PHASES:
- pulling: take the ledger lease (retried on contention), download the
  canonical blob (retried with backoff) and decrypt it
- merging: load local state, marker and snapshot, compute the diff, merge
  it into the canonical state and project the result back
- pushing: seal and upload the merged state; skipped when the merge left
  the canonical state unchanged
- committing: apply changes, id remap, marker and snapshot locally in one
  storage transaction
- aborted: the round failed; the error is re-raised to the caller and
  the session returns to idle, ready for the next attempt

CRITICAL: Local state is only ever written in committing, in one
transaction. An abort in any earlier phase leaves it untouched. An abort
after a successful push is recovered by the next round: the canonical
state remembers what it already merged from this client instance, so
re-merging the same diff changes nothing.

The lease is released at the end of every round, whatever the outcome.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Optional, TypeVar
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from ledger_sync.audit.logger import AuditLogger, create_correlation_id
from ledger_sync.config.settings import SyncSettings
from ledger_sync.crypto.cipher import LedgerCipher
from ledger_sync.crypto.sealing import StateSealer
from ledger_sync.diff.engine import DiffEngine, diff_counts
from ledger_sync.models.ledger import MERGE_ORDER, LedgerState, is_local
from ledger_sync.models.sync import (
    CanonicalState,
    Diff,
    IdRemap,
    SyncMarker,
    SyncPhase,
    SyncReport,
)
from ledger_sync.reconciliation.engine import Reconciler
from ledger_sync.services.remote.interface import (
    Lease,
    LeaseContentionError,
    LeaseLostError,
    RemoteError,
    RemoteTransportInterface,
    RemoteUnreachableError,
)
from ledger_sync.services.storage.interface import LocalStorageInterface


logger = structlog.get_logger("ledger_sync.sync")

T = TypeVar("T")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class SyncError(Exception):
    """Base exception for sync protocol errors."""
    pass


class SyncInProgressError(SyncError):
    """run() was called while a round is already running."""
    pass


class SyncCancelledError(SyncError):
    """The round was cancelled through cancel()."""
    pass


class InvalidTransitionError(SyncError):
    """The state machine was asked to make an illegal phase change."""
    pass


# =============================================================================
# STATE MACHINE
# =============================================================================

TRANSITIONS: dict[SyncPhase, frozenset[SyncPhase]] = {
    SyncPhase.IDLE: frozenset({SyncPhase.PULLING}),
    SyncPhase.PULLING: frozenset({SyncPhase.MERGING, SyncPhase.ABORTED}),
    SyncPhase.MERGING: frozenset({SyncPhase.PUSHING, SyncPhase.ABORTED}),
    SyncPhase.PUSHING: frozenset({SyncPhase.COMMITTING, SyncPhase.ABORTED}),
    SyncPhase.COMMITTING: frozenset({SyncPhase.IDLE, SyncPhase.ABORTED}),
    SyncPhase.ABORTED: frozenset({SyncPhase.IDLE}),
}


class SyncSession:
    """
    Runs sync rounds for one client and one ledger.

    A session runs at most one round at a time. Several sessions (one per
    client) may share a remote; the lease serializes their merges.
    """

    def __init__(
        self,
        storage: LocalStorageInterface,
        remote: RemoteTransportInterface,
        cipher: LedgerCipher,
        settings: Optional[SyncSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        diff_engine: Optional[DiffEngine] = None,
        reconciler: Optional[Reconciler] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize a sync session.

        Args:
            storage: This client's local ledger
            remote: The shared remote store
            cipher: Cipher derived from the ledger password
            settings: Identity, retry and lease settings
            audit_logger: Where round events go (local-only logging if None)
            diff_engine: Diff engine (default instance if None)
            reconciler: Reconciler (default instance if None)
            sleep: Coroutine used for retry waits
        """
        self._storage = storage
        self._remote = remote
        self._sealer = StateSealer(cipher)
        self._settings = settings or SyncSettings()
        self._audit_logger = audit_logger or AuditLogger()
        self._diff_engine = diff_engine or DiffEngine()
        self._reconciler = reconciler or Reconciler()
        self._sleep = sleep

        self._phase = SyncPhase.IDLE
        self._cancel_requested = False
        self.last_error: Optional[BaseException] = None

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def client_id(self) -> str:
        return self._settings.client_id

    @property
    def ledger_id(self) -> str:
        return self._settings.ledger_id

    def cancel(self) -> None:
        """
        Ask the running round to abort at its next checkpoint.

        Has no effect once the push was accepted: from there the round
        always commits.
        """
        if self._phase is not SyncPhase.IDLE:
            self._cancel_requested = True

    def _transition(self, target: SyncPhase) -> None:
        if target not in TRANSITIONS[self._phase]:
            raise InvalidTransitionError(
                f"Cannot move from {self._phase.value} to {target.value}"
            )
        logger.debug(
            "sync_phase_changed",
            ledger_id=self.ledger_id,
            client_id=self.client_id,
            source=self._phase.value,
            target=target.value,
        )
        self._phase = target

    def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise SyncCancelledError(f"Sync round cancelled during {self._phase.value}")

    # =========================================================================
    # ROUND
    # =========================================================================

    async def run(self) -> SyncReport:
        """
        Run one complete sync round.

        Returns:
            SyncReport describing the committed round

        Raises:
            SyncInProgressError: If a round is already running
            SyncCancelledError: If cancel() was called
            AuthenticationFailedError: Wrong password or tampered canonical state
            RemoteUnreachableError: Remote still unreachable after all retries
            LeaseContentionError: Lease still held by another client after all retries
            LeaseLostError: Lease lost before the push
            StorageError: Local commit failed (local state unchanged)
        """
        if self._phase is not SyncPhase.IDLE:
            raise SyncInProgressError(
                f"A sync round for {self.ledger_id} is already {self._phase.value}"
            )

        self._transition(SyncPhase.PULLING)
        self._cancel_requested = False
        self.last_error = None
        correlation_id = create_correlation_id()
        started_at = datetime.now(timezone.utc)
        lease: Optional[Lease] = None

        try:
            # --- pulling ---------------------------------------------------
            instance_id = await self._storage.get_instance_id()
            marker = await self._storage.get_last_sync_marker()
            await self._audit_logger.log_round_started(
                ledger_id=self.ledger_id,
                client_id=self.client_id,
                base_revision=marker.revision if marker else None,
                correlation_id=correlation_id,
            )

            lease = await self._acquire_lease(instance_id, correlation_id)
            canonical, base_revision = await self._pull(correlation_id)
            self._checkpoint()

            # --- merging ---------------------------------------------------
            self._transition(SyncPhase.MERGING)
            local_state = await self._storage.load_state()
            snapshot = await self._storage.load_snapshot()

            diff = self._diff_engine.compute_diff(
                local_state, marker, snapshot, self.client_id, instance_id=instance_id
            )
            await self._audit_logger.log_diff_computed(
                ledger_id=self.ledger_id,
                client_id=self.client_id,
                counts=diff_counts(diff),
                correlation_id=correlation_id,
            )

            merge = self._reconciler.merge(canonical, diff)
            changes = self._reconciler.project(local_state, merge.state.ledger, merge.id_remap)
            await self._audit_logger.log_merge_completed(
                ledger_id=self.ledger_id,
                client_id=self.client_id,
                assigned=len(merge.id_remap),
                rejected=merge.rejected,
                correlation_id=correlation_id,
            )
            self._checkpoint()

            # --- pushing ---------------------------------------------------
            self._transition(SyncPhase.PUSHING)
            revision = base_revision
            pushed = merge.changed
            if pushed:
                revision = await self._push(merge.state, base_revision, lease, correlation_id)

            # --- committing ------------------------------------------------
            self._transition(SyncPhase.COMMITTING)
            await self._storage.commit_round(
                changes=changes,
                id_remap=merge.id_remap,
                baseline=local_state,
                marker=SyncMarker(revision=revision),
                snapshot=self._next_snapshot(merge.state.ledger, diff, merge.id_remap),
            )
            await self._audit_logger.log_round_committed(
                ledger_id=self.ledger_id,
                client_id=self.client_id,
                revision=revision,
                applied=changes.size,
                correlation_id=correlation_id,
            )
            self._transition(SyncPhase.IDLE)

            return SyncReport(
                round_id=correlation_id,
                client_id=self.client_id,
                instance_id=instance_id,
                ledger_id=self.ledger_id,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                revision=revision,
                pushed=pushed,
                diff_size=diff.size,
                applied_changes=changes.size,
                id_remap=merge.id_remap,
                rejected=merge.rejected,
            )

        except (Exception, asyncio.CancelledError) as e:
            await self._abort(e, correlation_id)
            raise

        finally:
            if lease is not None:
                await self._release_lease(lease)

    async def _abort(self, error: BaseException, correlation_id: UUID) -> None:
        if self._phase is SyncPhase.IDLE:
            return
        failed_phase = self._phase
        self.last_error = error
        self._transition(SyncPhase.ABORTED)
        try:
            await self._audit_logger.log_round_aborted(
                ledger_id=self.ledger_id,
                client_id=self.client_id,
                phase=failed_phase.value,
                error=error,
                correlation_id=correlation_id,
            )
        finally:
            self._cancel_requested = False
            self._transition(SyncPhase.IDLE)

    # =========================================================================
    # PHASE STEPS
    # =========================================================================

    async def _pull(self, correlation_id: UUID) -> tuple[CanonicalState, int]:
        blob = await self._with_network_retry(
            "fetch_canonical",
            lambda: self._remote.fetch_canonical(self.ledger_id),
            correlation_id,
        )
        if blob is None:
            canonical, revision = CanonicalState(), 0
        else:
            # AuthenticationFailedError propagates: wrong password or tampering
            canonical, revision = self._sealer.open_state(blob.payload), blob.revision

        await self._audit_logger.log_state_pulled(
            ledger_id=self.ledger_id,
            client_id=self.client_id,
            revision=revision,
            correlation_id=correlation_id,
        )
        return canonical, revision

    async def _push(
        self,
        state: CanonicalState,
        base_revision: int,
        lease: Lease,
        correlation_id: UUID,
    ) -> int:
        payload = self._sealer.seal_state(state)
        ack = await self._with_network_retry(
            "push",
            lambda: self._remote.push(self.ledger_id, payload, base_revision, lease),
            correlation_id,
        )
        if not ack.accepted:
            raise LeaseLostError(f"Remote refused push for {self.ledger_id}: {ack.reason}")

        await self._audit_logger.log_state_pushed(
            ledger_id=self.ledger_id,
            client_id=self.client_id,
            revision=ack.revision,
            payload_size=len(payload),
            correlation_id=correlation_id,
        )
        return ack.revision

    def _next_snapshot(self, merged: LedgerState, diff: Diff, id_remap: IdRemap) -> LedgerState:
        """
        The canonical ledger plus the local-only tombstones this round sent.

        Items created and removed between two syncs never reach the remote;
        remembering their tombstones keeps them out of later diffs.
        """
        snapshot = merged.clone()
        for kind in MERGE_ORDER:
            for item_id in diff.of(kind).removed:
                if is_local(item_id) and id_remap.lookup(kind, item_id) is None:
                    snapshot.of(kind).removed.add(item_id)
        return snapshot

    # =========================================================================
    # REMOTE CALLS
    # =========================================================================

    async def _with_network_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        correlation_id: UUID,
    ) -> T:
        """Run a remote call, retrying RemoteUnreachableError with exponential backoff."""
        settings = self._settings
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RemoteUnreachableError),
            stop=stop_after_attempt(settings.max_network_attempts),
            wait=wait_exponential(
                multiplier=settings.backoff_multiplier,
                min=settings.backoff_min_seconds,
                max=settings.backoff_max_seconds,
            ),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                self._checkpoint()
                try:
                    result = await call()
                except RemoteUnreachableError as e:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number < settings.max_network_attempts:
                        await self._audit_logger.log_network_retry(
                            ledger_id=self.ledger_id,
                            client_id=self.client_id,
                            operation=operation,
                            attempt=attempt_number,
                            error_message=str(e),
                            correlation_id=correlation_id,
                        )
                    raise
        return result

    async def _acquire_lease(self, instance_id: str, correlation_id: UUID) -> Lease:
        """
        Take the ledger lease, waiting a fixed delay while another client holds it.

        The lease is held by the local store's instance id, not the client
        name, so two stores under one name never share a lease.
        """
        settings = self._settings
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(LeaseContentionError),
            stop=stop_after_attempt(settings.lease_retry_attempts),
            wait=wait_fixed(settings.lease_retry_delay_seconds),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                try:
                    lease = await self._with_network_retry(
                        "acquire_lease",
                        lambda: self._remote.acquire_lease(
                            self.ledger_id,
                            instance_id,
                            settings.lease_ttl_seconds,
                        ),
                        correlation_id,
                    )
                except LeaseContentionError:
                    await self._audit_logger.log_lease_contention(
                        ledger_id=self.ledger_id,
                        client_id=self.client_id,
                        attempt=attempt.retry_state.attempt_number,
                        correlation_id=correlation_id,
                    )
                    raise
        return lease

    async def _release_lease(self, lease: Lease) -> None:
        try:
            released = await self._remote.release_lease(lease)
        except RemoteError as e:
            # The lease expires on its own; the round outcome stands
            logger.warning(
                "lease_release_failed",
                ledger_id=lease.ledger_id,
                client_id=self.client_id,
                error=str(e),
            )
            return
        if not released:
            logger.warning("lease_already_gone", ledger_id=lease.ledger_id, client_id=self.client_id)
