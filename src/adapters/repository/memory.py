"""
In-memory repository adapter - Implements RegistryRepository protocol.

Process-local storage for tests and single-process deployments
(STORAGE_BACKEND=memory). Records are copied on the way in and out so
callers can never mutate stored state behind the repository's back.
A single lock makes every method atomic across threads.
"""

import threading
from dataclasses import replace

from src.domain.models import OwnerRecord, PendingTransition, Pool, TransitionPhase, Worker


class InMemoryRegistryRepository:
    """
    Implements RegistryRepository protocol with plain dicts.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owner: OwnerRecord | None = None
        self._pools: list[Pool] = []
        self._workers: dict[str, Worker] = {}
        self._measurements: dict[str, None] = {}
        self._transitions: dict[int, PendingTransition] = {}

    def get_owner(self) -> OwnerRecord | None:
        with self._lock:
            return replace(self._owner) if self._owner else None

    def set_owner(self, account_id: str, password_hash: str) -> None:
        with self._lock:
            self._owner = OwnerRecord(account_id, password_hash)

    def create_pool(self, token_ids: tuple[str, str], fee_bps: int) -> Pool:
        with self._lock:
            pool = Pool(pool_id=len(self._pools), token_ids=tuple(token_ids), fee_bps=fee_bps)
            self._pools.append(pool)
            return replace(pool)

    def get_pool(self, pool_id: int) -> Pool | None:
        with self._lock:
            if 0 <= pool_id < len(self._pools):
                return replace(self._pools[pool_id])
            return None

    def list_pools(self, offset: int, limit: int) -> list[Pool]:
        with self._lock:
            return [replace(pool) for pool in self._pools[offset : offset + limit]]

    def pool_count(self) -> int:
        with self._lock:
            return len(self._pools)

    def update_heartbeat(self, pool_id: int, worker_id: str, now_ms: int) -> bool:
        with self._lock:
            pool = self._pools[pool_id]
            if pool.active_worker != worker_id:
                return False
            pool.last_heartbeat_ms = now_ms
            return True

    def get_worker(self, account_id: str) -> Worker | None:
        with self._lock:
            worker = self._workers.get(account_id)
            return replace(worker) if worker else None

    def list_workers(self, offset: int, limit: int) -> list[Worker]:
        with self._lock:
            workers = list(self._workers.values())[offset : offset + limit]
            return [replace(worker) for worker in workers]

    def worker_count(self) -> int:
        with self._lock:
            return len(self._workers)

    def add_measurement(self, measurement: str) -> bool:
        with self._lock:
            if measurement in self._measurements:
                return False
            self._measurements[measurement] = None
            return True

    def remove_measurement(self, measurement: str) -> bool:
        with self._lock:
            if measurement not in self._measurements:
                return False
            del self._measurements[measurement]
            return True

    def has_measurement(self, measurement: str) -> bool:
        with self._lock:
            return measurement in self._measurements

    def list_measurements(self) -> list[str]:
        with self._lock:
            return list(self._measurements)

    def begin_transition(self, transition: PendingTransition) -> bool:
        with self._lock:
            if transition.pool_id in self._transitions:
                return False
            self._transitions[transition.pool_id] = replace(transition)
            return True

    def get_transition(self, pool_id: int) -> PendingTransition | None:
        with self._lock:
            transition = self._transitions.get(pool_id)
            return replace(transition) if transition else None

    def _claim(self, pool_id: int, started_at_ms: int | None) -> PendingTransition | None:
        transition = self._transitions.get(pool_id)
        if transition is None or started_at_ms is None or transition.started_at_ms == started_at_ms:
            return transition
        return None

    def record_eviction(self, pool_id: int, started_at_ms: int | None = None) -> PendingTransition:
        with self._lock:
            transition = self._claim(pool_id, started_at_ms)
            if transition is None:
                raise LookupError(f"No pending transition for pool {pool_id}")
            if transition.incumbent_id and transition.incumbent_id in self._workers:
                self._workers[transition.incumbent_id].key_installed = False
            transition.phase = TransitionPhase.INSTALLING
            transition.incumbent_evicted = True
            return replace(transition)

    def abort_transition(self, pool_id: int, started_at_ms: int | None = None) -> bool:
        with self._lock:
            if self._claim(pool_id, started_at_ms) is None:
                return False
            del self._transitions[pool_id]
            return True

    def commit_registration(self, worker: Worker, now_ms: int, started_at_ms: int | None = None) -> bool:
        with self._lock:
            if started_at_ms is not None and self._claim(worker.pool_id, started_at_ms) is None:
                return False
            pool = self._pools[worker.pool_id]
            self._workers[worker.account_id] = replace(worker, key_installed=True)
            pool.active_worker = worker.account_id
            pool.last_heartbeat_ms = now_ms
            self._transitions.pop(worker.pool_id, None)
            return True
