"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
"""

from pydantic import BaseModel, Field

from src.domain.models import Pool, PoolState, Worker

PUBLIC_KEY_PATTERN = r"^(ed25519|secp256k1):[1-9A-HJ-NP-Za-km-z]+$"
ACCOUNT_ID_PATTERN = r"^[a-z0-9_\-.]{2,64}$"


class RegisterWorkerRequest(BaseModel):
    """Request model for worker registration with TEE attestation."""

    account_id: str = Field(..., pattern=ACCOUNT_ID_PATTERN, description="Registering account")
    public_key: str = Field(
        ..., pattern=PUBLIC_KEY_PATTERN, description="Worker public key bound into the quote"
    )
    quote_hex: str = Field(..., min_length=2, description="Hex-encoded TDX quote")
    collateral: str = Field(..., min_length=2, description="Quote collateral as a JSON string")
    checksum: str = Field(..., min_length=1, max_length=256, description="Workload checksum")
    tcb_info: str = Field(..., min_length=2, description="TCB info (event log + app compose) as JSON")
    password: str = Field(
        ...,
        min_length=16,
        max_length=72,
        description="Worker password for heartbeats and re-registration (16-72 characters)",
    )


class WorkerInfo(BaseModel):
    """Worker record."""

    account_id: str
    pool_id: int
    public_key: str
    codehash: str
    checksum: str
    key_installed: bool

    @classmethod
    def from_worker(cls, worker: Worker) -> "WorkerInfo":
        return cls(
            account_id=worker.account_id,
            pool_id=worker.pool_id,
            public_key=worker.public_key,
            codehash=worker.reference_measurement,
            checksum=worker.checksum,
            key_installed=worker.key_installed,
        )


class RegisterWorkerResponse(BaseModel):
    """Response model for successful registration."""

    message: str
    worker: WorkerInfo


class PingResponse(BaseModel):
    """Response model for a recorded heartbeat."""

    message: str
    pool_id: int
    timestamp_ms: int


class PoolInfo(BaseModel):
    """Pool record with its current worker slot state."""

    pool_id: int
    token_ids: list[str]
    fee_bps: int
    worker_id: str | None
    last_ping_timestamp_ms: int
    state: PoolState

    @classmethod
    def from_pool(cls, pool: Pool, state: PoolState) -> "PoolInfo":
        return cls(
            pool_id=pool.pool_id,
            token_ids=list(pool.token_ids),
            fee_bps=pool.fee_bps,
            worker_id=pool.active_worker,
            last_ping_timestamp_ms=pool.last_heartbeat_ms,
            state=state,
        )


class CreatePoolRequest(BaseModel):
    """Request model for pool creation."""

    token_ids: list[str] = Field(..., min_length=2, max_length=2)
    fee_bps: int = Field(..., ge=0, lt=10_000, description="Fee in basis points")


class MeasurementRequest(BaseModel):
    """Request model for approving a reference measurement."""

    measurement: str = Field(..., description="Hex-encoded 48-byte compose measurement")


class MeasurementResponse(BaseModel):
    """Allow-list membership of a reference measurement."""

    measurement: str
    approved: bool


class ChangeOwnerRequest(BaseModel):
    """Request model for ownership transfer."""

    new_owner_id: str = Field(..., pattern=ACCOUNT_ID_PATTERN)
    new_password: str = Field(..., min_length=8, description="New owner password (min 8 characters)")


class OwnerResponse(BaseModel):
    """Current registry owner."""

    owner_id: str | None


class RegistryConfigResponse(BaseModel):
    """Registry-wide configuration and counters."""

    owner_id: str | None
    worker_ping_timeout_ms: int
    pool_count: int
    worker_count: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
