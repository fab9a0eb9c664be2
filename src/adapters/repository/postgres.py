"""
PostgreSQL repository adapter - Implements RegistryRepository protocol.

This module provides the PostgreSQL implementation of the domain's
repository port using psycopg3 with raw SQL.

Atomicity Design:
-----------------
1. **pending_transitions primary key**: begin_transition is an
   INSERT ... ON CONFLICT DO NOTHING on pool_id, so exactly one
   registration per pool can hold the key-rotation claim, across processes.

2. **commit_registration**: the worker upsert, the pool's active worker and
   heartbeat update, and the transition delete run in one transaction. No
   reader ever sees a committed worker without its pool slot or the reverse.
   When a claim timestamp is given, the delete must match it or the whole
   commit is rolled back: a registration whose claim was reclaimed cannot
   overwrite the new claimant. record_eviction and abort_transition are
   scoped the same way.

3. **update_heartbeat**: guarded by `active_worker = %s` in the WHERE clause,
   so a replaced worker's late ping cannot refresh the new worker's slot.

4. **create_pool**: takes an EXCLUSIVE lock on pools so sequential ids
   are assigned without gaps or duplicates.
"""

import logging
from pathlib import Path

from psycopg_pool import ConnectionPool

from src.domain.models import OwnerRecord, PendingTransition, Pool, TransitionPhase, Worker

logger = logging.getLogger(__name__)

_POOL_COLUMNS = "pool_id, token_a, token_b, fee_bps, active_worker, last_heartbeat_ms"
_WORKER_COLUMNS = (
    "account_id, pool_id, public_key, reference_measurement, checksum, key_installed, credential_hash"
)
_TRANSITION_COLUMNS = (
    "pool_id, worker_id, public_key, reference_measurement, checksum, image_digest, "
    "phase, incumbent_id, incumbent_public_key, incumbent_evicted, started_at_ms, credential_hash"
)


def _pool_from_row(row: tuple) -> Pool:
    return Pool(
        pool_id=row[0],
        token_ids=(row[1], row[2]),
        fee_bps=row[3],
        active_worker=row[4],
        last_heartbeat_ms=row[5],
    )


def _worker_from_row(row: tuple) -> Worker:
    return Worker(*row)


def _transition_from_row(row: tuple) -> PendingTransition:
    return PendingTransition(
        pool_id=row[0],
        worker_id=row[1],
        public_key=row[2],
        reference_measurement=row[3],
        checksum=row[4],
        image_digest=row[5],
        phase=TransitionPhase(row[6]),
        incumbent_id=row[7],
        incumbent_public_key=row[8],
        incumbent_evicted=row[9],
        started_at_ms=row[10],
        credential_hash=row[11],
    )


class PostgresRegistryRepository:
    """
    Implements RegistryRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries for security.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """
        Initialize repository with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
        """
        self._pool = pool

    def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    def get_owner(self) -> OwnerRecord | None:
        row = self._fetchone("SELECT account_id, password_hash FROM registry_owner WHERE id = 1")
        return OwnerRecord(*row) if row else None

    def set_owner(self, account_id: str, password_hash: str) -> None:
        sql = """
            INSERT INTO registry_owner (id, account_id, password_hash, updated_at)
            VALUES (1, %s, %s, NOW())
            ON CONFLICT (id) DO UPDATE
            SET account_id = EXCLUDED.account_id,
                password_hash = EXCLUDED.password_hash,
                updated_at = NOW()
        """
        self._execute(sql, (account_id, password_hash))

    def create_pool(self, token_ids: tuple[str, str], fee_bps: int) -> Pool:
        sql = f"""
            INSERT INTO pools (pool_id, token_a, token_b, fee_bps)
            SELECT COALESCE(MAX(pool_id) + 1, 0), %s, %s, %s FROM pools
            RETURNING {_POOL_COLUMNS}
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute("LOCK TABLE pools IN EXCLUSIVE MODE")
            cursor.execute(sql, (token_ids[0], token_ids[1], fee_bps))
            row = cursor.fetchone()
            conn.commit()
        return _pool_from_row(row)

    def get_pool(self, pool_id: int) -> Pool | None:
        row = self._fetchone(f"SELECT {_POOL_COLUMNS} FROM pools WHERE pool_id = %s", (pool_id,))
        return _pool_from_row(row) if row else None

    def list_pools(self, offset: int, limit: int) -> list[Pool]:
        rows = self._fetchall(
            f"SELECT {_POOL_COLUMNS} FROM pools ORDER BY pool_id OFFSET %s LIMIT %s",
            (offset, limit),
        )
        return [_pool_from_row(row) for row in rows]

    def pool_count(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM pools")[0]

    def update_heartbeat(self, pool_id: int, worker_id: str, now_ms: int) -> bool:
        sql = """
            UPDATE pools
            SET last_heartbeat_ms = %s
            WHERE pool_id = %s AND active_worker = %s
        """
        return self._execute(sql, (now_ms, pool_id, worker_id)) == 1

    def get_worker(self, account_id: str) -> Worker | None:
        row = self._fetchone(
            f"SELECT {_WORKER_COLUMNS} FROM workers WHERE account_id = %s", (account_id,)
        )
        return _worker_from_row(row) if row else None

    def list_workers(self, offset: int, limit: int) -> list[Worker]:
        rows = self._fetchall(
            f"SELECT {_WORKER_COLUMNS} FROM workers "
            "ORDER BY registered_at, account_id OFFSET %s LIMIT %s",
            (offset, limit),
        )
        return [_worker_from_row(row) for row in rows]

    def worker_count(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM workers")[0]

    def add_measurement(self, measurement: str) -> bool:
        sql = """
            INSERT INTO approved_measurements (measurement)
            VALUES (%s)
            ON CONFLICT (measurement) DO NOTHING
        """
        return self._execute(sql, (measurement,)) == 1

    def remove_measurement(self, measurement: str) -> bool:
        sql = "DELETE FROM approved_measurements WHERE measurement = %s"
        return self._execute(sql, (measurement,)) == 1

    def has_measurement(self, measurement: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM approved_measurements WHERE measurement = %s", (measurement,)
        )
        return row is not None

    def list_measurements(self) -> list[str]:
        rows = self._fetchall(
            "SELECT measurement FROM approved_measurements ORDER BY approved_at, measurement"
        )
        return [row[0] for row in rows]

    def begin_transition(self, transition: PendingTransition) -> bool:
        sql = f"""
            INSERT INTO pending_transitions ({_TRANSITION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (pool_id) DO NOTHING
        """
        params = (
            transition.pool_id,
            transition.worker_id,
            transition.public_key,
            transition.reference_measurement,
            transition.checksum,
            transition.image_digest,
            transition.phase.value,
            transition.incumbent_id,
            transition.incumbent_public_key,
            transition.incumbent_evicted,
            transition.started_at_ms,
            transition.credential_hash,
        )
        return self._execute(sql, params) == 1

    def get_transition(self, pool_id: int) -> PendingTransition | None:
        row = self._fetchone(
            f"SELECT {_TRANSITION_COLUMNS} FROM pending_transitions WHERE pool_id = %s",
            (pool_id,),
        )
        return _transition_from_row(row) if row else None

    def record_eviction(self, pool_id: int, started_at_ms: int | None = None) -> PendingTransition:
        update_transition_sql = f"""
            UPDATE pending_transitions
            SET phase = %s, incumbent_evicted = TRUE
            WHERE pool_id = %s AND (%s::BIGINT IS NULL OR started_at_ms = %s)
            RETURNING {_TRANSITION_COLUMNS}
        """
        revoke_key_sql = """
            UPDATE workers
            SET key_installed = FALSE
            WHERE account_id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                update_transition_sql,
                (TransitionPhase.INSTALLING.value, pool_id, started_at_ms, started_at_ms),
            )
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                raise LookupError(f"No pending transition for pool {pool_id}")
            transition = _transition_from_row(row)
            if transition.incumbent_id:
                cursor.execute(revoke_key_sql, (transition.incumbent_id,))
            conn.commit()
        return transition

    def abort_transition(self, pool_id: int, started_at_ms: int | None = None) -> bool:
        sql = """
            DELETE FROM pending_transitions
            WHERE pool_id = %s AND (%s::BIGINT IS NULL OR started_at_ms = %s)
        """
        return self._execute(sql, (pool_id, started_at_ms, started_at_ms)) == 1

    def commit_registration(self, worker: Worker, now_ms: int, started_at_ms: int | None = None) -> bool:
        release_claim_sql = """
            DELETE FROM pending_transitions
            WHERE pool_id = %s AND (%s::BIGINT IS NULL OR started_at_ms = %s)
        """
        upsert_worker_sql = """
            INSERT INTO workers
                (account_id, pool_id, public_key, reference_measurement, checksum,
                 key_installed, credential_hash, registered_at)
            VALUES (%s, %s, %s, %s, %s, TRUE, %s, NOW())
            ON CONFLICT (account_id) DO UPDATE
            SET pool_id = EXCLUDED.pool_id,
                public_key = EXCLUDED.public_key,
                reference_measurement = EXCLUDED.reference_measurement,
                checksum = EXCLUDED.checksum,
                key_installed = TRUE,
                credential_hash = EXCLUDED.credential_hash,
                registered_at = NOW()
        """
        activate_sql = """
            UPDATE pools
            SET active_worker = %s, last_heartbeat_ms = %s
            WHERE pool_id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(release_claim_sql, (worker.pool_id, started_at_ms, started_at_ms))
            if started_at_ms is not None and cursor.rowcount != 1:
                conn.rollback()
                return False
            cursor.execute(
                upsert_worker_sql,
                (
                    worker.account_id,
                    worker.pool_id,
                    worker.public_key,
                    worker.reference_measurement,
                    worker.checksum,
                    worker.credential_hash,
                ),
            )
            cursor.execute(activate_sql, (worker.account_id, now_ms, worker.pool_id))
            conn.commit()
        return True


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: src/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            sql_content = sql_file.read_text()

            with pool.connection() as conn:
                conn.execute(sql_content)

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
