"""
Worker registry domain service - single-active-worker state machine.

Pool States
===========

- EMPTY:    no active worker recorded
- ACTIVE:   active worker recorded, last heartbeat within the ping timeout
- STALE:    active worker recorded, heartbeat older than the ping timeout
- ROTATING: a registration passed attestation and holds an unexpired claim
            while it waits on the key registrar

Registration (two-phase, evict-then-install)
============================================

    precondition checks           (pool exists, not ACTIVE, not ROTATING, caller not incumbent,
                                   worker password matches an existing record)
    -> attestation                (all-or-nothing, no state touched)
    -> begin_transition           (claims the pool; concurrent registrations see ROTATING)
    -> evict incumbent key        (only when STALE and the key is still installed)
       -> on_incumbent_key_evicted     failure: transition aborted, pool stays STALE
    -> install new key
       -> on_worker_key_installed      failure: transition aborted, pool unchanged
                                       success: commit_registration, pool ACTIVE

The continuations are the only place persistent pool/worker state changes.
Local records never name an active worker whose key was not confirmed
installed. Events raised along the way are delivered only on commit.

A claim is valid for rotation_timeout_ms. After that the next registration
reclaims the pool, and every repository write of the original registration
is scoped to its own claim (started_at_ms), so a late continuation cannot
touch the new claimant's state. A cancelled or crashed registration
releases its claim on the way out.

Worker credentials
==================

The first registration of an account records a bcrypt hash of the worker
password. Re-registration and heartbeats require the same password.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .admin import hash_password, verify_password
from .attestation import AttestationService
from .exceptions import (
    InvalidWorkerCredentials,
    KeyEvictionFailed,
    KeyInstallationFailed,
    NotActiveWorker,
    PoolNotFound,
    PoolOccupied,
    RotationExpired,
    UnapprovedMeasurement,
    WorkerAlreadyRegistered,
    WorkerNotFound,
)
from .models import (
    AttestationEvidence,
    PendingTransition,
    Pool,
    PoolState,
    RegistryEvent,
    TransitionPhase,
    Worker,
)
from .ports import EventSink, KeyOperationOutcome, KeyRegistrar, RegistryRepository

logger = logging.getLogger(__name__)


def current_time_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class WorkerRegistryService:
    """
    Domain service for worker admission, replacement and liveness.

    Orchestrates the registration saga across the attestation service, the
    external key registrar and the repository.
    """

    repository: RegistryRepository
    attestation: AttestationService
    key_registrar: KeyRegistrar
    events: EventSink
    registry_account_id: str
    intents_account_id: str
    ping_timeout_ms: int
    rotation_timeout_ms: int = 300_000
    bcrypt_cost: int = 10
    clock: Callable[[], int] = field(default=current_time_ms)

    def pool_account_id(self, pool_id: int) -> str:
        """Account of the per-pool key vault."""
        return f"pool-{pool_id}.{self.registry_account_id}"

    def get_pool(self, pool_id: int) -> Pool:
        pool = self.repository.get_pool(pool_id)
        if pool is None:
            raise PoolNotFound(pool_id)
        return pool

    def pool_state(self, pool_id: int) -> PoolState:
        pool = self.get_pool(pool_id)
        if self._live_transition(pool_id) is not None:
            return PoolState.ROTATING
        return pool.state(self.clock(), self.ping_timeout_ms)

    def is_active(self, pool_id: int) -> bool:
        return self.get_pool(pool_id).has_active_worker(self.clock(), self.ping_timeout_ms)

    def authenticate_worker(self, account_id: str, password: str) -> Worker:
        """
        Check a worker's password.

        Unknown accounts cost the same bcrypt comparison as a wrong password.

        Raises:
            InvalidWorkerCredentials: unknown account or wrong password
        """
        worker = self.repository.get_worker(account_id)
        if not verify_password(password, worker.credential_hash if worker else None):
            raise InvalidWorkerCredentials(account_id)
        return worker

    async def register(
        self,
        pool_id: int,
        evidence: AttestationEvidence,
        checksum: str,
        caller: str,
        public_key: str,
        password: str,
    ) -> Worker:
        """
        Register caller as the pool's worker.

        Args:
            pool_id: Pool to join
            evidence: Parsed attestation evidence
            checksum: Opaque workload identifier recorded with the worker
            caller: Registering account
            public_key: Caller's public key, bound into the quote's report data
            password: Worker password; must match the recorded one when the
                account has registered before

        Returns:
            The committed Worker record

        Raises:
            PoolNotFound, PoolOccupied, WorkerAlreadyRegistered,
            InvalidWorkerCredentials: preconditions
            AttestationRejected, IdentityMismatch, ReplayMismatch,
            UnapprovedMeasurement, MalformedInput: attestation
            KeyEvictionFailed, KeyInstallationFailed: key registrar
            RotationExpired: the claim expired before the rotation finished
        """
        self._check_preconditions(pool_id, caller)
        existing = self.repository.get_worker(caller)
        if existing is not None and not verify_password(password, existing.credential_hash):
            raise InvalidWorkerCredentials(caller)

        result = await self.attestation.verify(evidence, public_key, self.clock() // 1000)
        credential_hash = hash_password(password, self.bcrypt_cost)

        transition = self._begin_transition(
            pool_id,
            PendingTransition(
                pool_id=pool_id,
                worker_id=caller,
                public_key=public_key,
                reference_measurement=result.reference_measurement,
                checksum=checksum,
                image_digest=result.image_digest,
                phase=TransitionPhase.INSTALLING,
                started_at_ms=self.clock(),
                credential_hash=credential_hash,
            ),
        )

        try:
            if transition.phase == TransitionPhase.EVICTING:
                outcome = await self.key_registrar.evict(
                    self.pool_account_id(pool_id),
                    self.intents_account_id,
                    transition.incumbent_public_key,
                )
                transition = self.on_incumbent_key_evicted(transition, outcome)

            outcome = await self.key_registrar.install(
                self.pool_account_id(pool_id), self.intents_account_id, public_key
            )
            try:
                return self.on_worker_key_installed(transition, outcome)
            except RotationExpired:
                await self._withdraw_key(pool_id, public_key)
                raise
        except (KeyEvictionFailed, KeyInstallationFailed):
            raise
        except BaseException:
            # Failure or cancellation mid-rotation: release the claim, keep prior state
            self.repository.abort_transition(pool_id, transition.started_at_ms)
            raise

    def on_incumbent_key_evicted(
        self, transition: PendingTransition, outcome: KeyOperationOutcome
    ) -> PendingTransition:
        """
        Continuation for the incumbent key eviction.

        Raises:
            KeyEvictionFailed: eviction failed; the pool is left STALE with the
                incumbent's record intact
            RotationExpired: the claim was released while the eviction ran
        """
        pool_id = transition.pool_id
        if not outcome.succeeded:
            self.repository.abort_transition(pool_id, transition.started_at_ms)
            logger.warning("Failed to remove inactive worker key for pool %s: %s", pool_id, outcome.detail)
            raise KeyEvictionFailed("Failed to remove inactive worker key")

        try:
            transition = self.repository.record_eviction(pool_id, transition.started_at_ms)
        except LookupError:
            logger.warning("Key rotation claim for pool %s expired during eviction", pool_id)
            raise RotationExpired("Key rotation claim expired") from None
        logger.info("Inactive worker key removed: pool=%s worker=%s", pool_id, transition.incumbent_id)
        return transition

    def on_worker_key_installed(self, transition: PendingTransition, outcome: KeyOperationOutcome) -> Worker:
        """
        Continuation for the new worker key installation; sole commit point.

        Raises:
            KeyInstallationFailed: installation failed; pool state unchanged
            RotationExpired: the claim was released while the installation ran
        """
        pool_id = transition.pool_id
        if not outcome.succeeded:
            self.repository.abort_transition(pool_id, transition.started_at_ms)
            logger.warning("Failed to add worker key for pool %s: %s", pool_id, outcome.detail)
            raise KeyInstallationFailed("Failed to add worker key")

        worker = Worker(
            account_id=transition.worker_id,
            pool_id=pool_id,
            public_key=transition.public_key,
            reference_measurement=transition.reference_measurement,
            checksum=transition.checksum,
            credential_hash=transition.credential_hash,
        )
        incumbent = (
            self.repository.get_worker(transition.incumbent_id)
            if transition.incumbent_evicted and transition.incumbent_id
            else None
        )
        if not self.repository.commit_registration(worker, self.clock(), transition.started_at_ms):
            logger.warning("Key rotation claim for pool %s expired during installation", pool_id)
            raise RotationExpired("Key rotation claim expired")
        logger.info("Worker registered: pool=%s worker=%s", pool_id, worker.account_id)
        if incumbent is not None:
            self.events.emit(
                RegistryEvent(
                    "worker_removed",
                    {
                        "worker_id": incumbent.account_id,
                        "pool_id": pool_id,
                        "public_key": incumbent.public_key,
                        "codehash": incumbent.reference_measurement,
                        "checksum": incumbent.checksum,
                    },
                )
            )
        self.events.emit(
            RegistryEvent(
                "worker_registered",
                {
                    "worker_id": worker.account_id,
                    "pool_id": pool_id,
                    "public_key": worker.public_key,
                    "codehash": worker.reference_measurement,
                    "image_digest": transition.image_digest,
                    "checksum": worker.checksum,
                },
            )
        )
        return worker

    def ping(self, caller: str, pool_id: int | None = None) -> int:
        """
        Heartbeat from the pool's active worker.

        The caller must already be authenticated (see authenticate_worker).

        Returns:
            The recorded heartbeat timestamp (ms)

        Raises:
            WorkerNotFound: caller never registered
            NotActiveWorker: caller is not the pool's active worker, its key
                was evicted, or it is being replaced
            UnapprovedMeasurement: caller is the active worker but its
                measurement has been revoked
        """
        worker = self.repository.get_worker(caller)
        if worker is None:
            raise WorkerNotFound(caller)
        if pool_id is not None and worker.pool_id != pool_id:
            raise NotActiveWorker("Only the registered worker can ping")

        pool = self.get_pool(worker.pool_id)
        if pool.active_worker != caller or not worker.key_installed:
            raise NotActiveWorker("Only the registered worker can ping")
        if self._live_transition(worker.pool_id) is not None:
            raise NotActiveWorker("Worker is being replaced")
        if not self.attestation.allowlist.contains(worker.reference_measurement):
            raise UnapprovedMeasurement(worker.reference_measurement)

        now_ms = self.clock()
        if not self.repository.update_heartbeat(worker.pool_id, caller, now_ms):
            raise NotActiveWorker("Only the registered worker can ping")

        self.events.emit(
            RegistryEvent(
                "worker_pinged",
                {"pool_id": worker.pool_id, "worker_id": caller, "timestamp_ms": now_ms},
            )
        )
        return now_ms

    def _check_preconditions(self, pool_id: int, caller: str) -> Pool:
        """Cheap local checks, run before any attestation or external call."""
        pool = self.get_pool(pool_id)
        transition = self.repository.get_transition(pool_id)
        if transition is not None:
            if not self._expired(transition):
                raise PoolOccupied("Key rotation already in progress for this pool")
            logger.warning(
                "Reclaiming expired key rotation claim: pool=%s worker=%s", pool_id, transition.worker_id
            )
            self.repository.abort_transition(pool_id, transition.started_at_ms)
        if pool.has_active_worker(self.clock(), self.ping_timeout_ms):
            raise PoolOccupied("Only one active worker is allowed per pool")
        if pool.active_worker == caller:
            raise WorkerAlreadyRegistered(caller)

        # A worker record is keyed by account; do not orphan a slot held elsewhere
        existing = self.repository.get_worker(caller)
        if existing is not None and existing.pool_id != pool_id and existing.key_installed:
            other = self.repository.get_pool(existing.pool_id)
            if other is not None and other.active_worker == caller:
                raise WorkerAlreadyRegistered(caller)
        return pool

    def _begin_transition(self, pool_id: int, transition: PendingTransition) -> PendingTransition:
        """
        Claim the pool for this registration.

        The incumbent is read before the claim and the pool is re-read after
        it: another registration may have committed, or the incumbent may
        have pinged, while this one was being attested.
        """
        pool = self._check_preconditions(pool_id, transition.worker_id)
        incumbent = self.repository.get_worker(pool.active_worker) if pool.active_worker else None
        if incumbent is not None and incumbent.key_installed:
            transition.incumbent_id = incumbent.account_id
            transition.incumbent_public_key = incumbent.public_key
            transition.phase = TransitionPhase.EVICTING

        if not self.repository.begin_transition(transition):
            raise PoolOccupied("Key rotation already in progress for this pool")

        current = self.get_pool(pool_id)
        if (current.active_worker, current.last_heartbeat_ms) != (
            pool.active_worker,
            pool.last_heartbeat_ms,
        ):
            self.repository.abort_transition(pool_id, transition.started_at_ms)
            raise PoolOccupied("Pool changed during attestation")
        return transition

    def _expired(self, transition: PendingTransition) -> bool:
        return self.clock() >= transition.started_at_ms + self.rotation_timeout_ms

    def _live_transition(self, pool_id: int) -> PendingTransition | None:
        transition = self.repository.get_transition(pool_id)
        if transition is None or self._expired(transition):
            return None
        return transition

    async def _withdraw_key(self, pool_id: int, public_key: str) -> None:
        """Remove a key installed under an expired claim, unless a newer registration uses it."""
        pool = self.get_pool(pool_id)
        active = self.repository.get_worker(pool.active_worker) if pool.active_worker else None
        pending = self.repository.get_transition(pool_id)
        if (active is not None and active.public_key == public_key) or (
            pending is not None and pending.public_key == public_key
        ):
            return

        outcome = await self.key_registrar.evict(self.pool_account_id(pool_id), self.intents_account_id, public_key)
        if not outcome.succeeded:
            logger.error("Failed to withdraw key installed under expired claim: pool=%s: %s", pool_id, outcome.detail)
