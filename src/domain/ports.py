"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the interfaces (ports) that the domain requires
from infrastructure. Adapters implement these protocols.
"""

from dataclasses import dataclass
from typing import Protocol

from .models import (
    AttestationEvidence,
    OwnerRecord,
    PendingTransition,
    Pool,
    RegistryEvent,
    Worker,
)


@dataclass(frozen=True)
class VerifiedReport:
    """
    Fields of a quote that the external verifier vouched for.

    Register digests are lowercase hex; report_data is the raw 64-byte field.
    """

    report_data: bytes
    rtmr0: str
    rtmr1: str
    rtmr2: str
    rtmr3: str

    def register(self, index: int) -> str:
        return (self.rtmr0, self.rtmr1, self.rtmr2, self.rtmr3)[index]


@dataclass(frozen=True)
class KeyOperationOutcome:
    """Result of one key registrar call, as observed by its continuation."""

    succeeded: bool
    detail: str = ""


class AttestationVerifier(Protocol):
    """Port interface for hardware quote verification."""

    async def verify(self, evidence: AttestationEvidence, now_s: int) -> VerifiedReport:
        """
        Verify quote signature chain, collateral freshness and TCB status.

        Raises:
            AttestationRejected: quote or collateral rejected
            VerificationFailed: verifier unreachable or answer unusable
        """
        ...


class KeyRegistrar(Protocol):
    """
    Port interface for a pool's external key vault.

    Calls are one-shot. Failures come back as an unsuccessful outcome,
    never as an exception.
    """

    async def install(
        self, pool_account: str, owner_account: str, public_key: str
    ) -> KeyOperationOutcome:
        """Authorize public_key to act for owner_account in the pool vault."""
        ...

    async def evict(
        self, pool_account: str, owner_account: str, public_key: str
    ) -> KeyOperationOutcome:
        """Remove a previously authorized public_key from the pool vault."""
        ...


class EventSink(Protocol):
    """Port interface for audit event delivery."""

    def emit(self, event: RegistryEvent) -> None:
        ...


class RegistryRepository(Protocol):
    """
    Port interface for registry persistence.

    Each method is atomic on its own. commit_registration is the single
    point where a pending transition turns into an active worker.
    """

    def get_owner(self) -> OwnerRecord | None:
        ...

    def set_owner(self, account_id: str, password_hash: str) -> None:
        ...

    def create_pool(self, token_ids: tuple[str, str], fee_bps: int) -> Pool:
        """Append a pool with the next sequential id."""
        ...

    def get_pool(self, pool_id: int) -> Pool | None:
        ...

    def list_pools(self, offset: int, limit: int) -> list[Pool]:
        ...

    def pool_count(self) -> int:
        ...

    def update_heartbeat(self, pool_id: int, worker_id: str, now_ms: int) -> bool:
        """Refresh the heartbeat only if worker_id is still the pool's active worker."""
        ...

    def get_worker(self, account_id: str) -> Worker | None:
        ...

    def list_workers(self, offset: int, limit: int) -> list[Worker]:
        ...

    def worker_count(self) -> int:
        ...

    def add_measurement(self, measurement: str) -> bool:
        """Returns False if the measurement was already present."""
        ...

    def remove_measurement(self, measurement: str) -> bool:
        """Returns False if the measurement was absent."""
        ...

    def has_measurement(self, measurement: str) -> bool:
        ...

    def list_measurements(self) -> list[str]:
        ...

    def begin_transition(self, transition: PendingTransition) -> bool:
        """Claim the pool for a key rotation. Returns False if one is already in flight."""
        ...

    def get_transition(self, pool_id: int) -> PendingTransition | None:
        ...

    def record_eviction(self, pool_id: int, started_at_ms: int | None = None) -> PendingTransition:
        """
        Mark the incumbent's key as removed and move the transition to INSTALLING.

        With started_at_ms, only the claim that started at that time is updated.
        Raises LookupError when there is no matching transition.
        """
        ...

    def abort_transition(self, pool_id: int, started_at_ms: int | None = None) -> bool:
        """Release the claim; with started_at_ms, only if it is still that claim."""
        ...

    def commit_registration(self, worker: Worker, now_ms: int, started_at_ms: int | None = None) -> bool:
        """
        Write the worker, make it the pool's active worker and drop the transition.

        With started_at_ms, nothing is written unless the pool's pending claim
        started at that time; returns False in that case.
        """
        ...
