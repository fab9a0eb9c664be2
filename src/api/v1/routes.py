"""
API v1 routes.

Defines REST endpoints for the worker registry:
- Worker surface: register with attestation, heartbeat
- Admin surface (owner, HTTP BASIC AUTH): allow-list, ownership, pools
- Read surface: pools, workers, allow-list, registry configuration
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.dependencies import (
    get_admin_service,
    get_allowlist,
    get_owner_account,
    get_registry_service,
    get_repository,
    get_worker_account,
)
from src.api.models import (
    ChangeOwnerRequest,
    CreatePoolRequest,
    ErrorResponse,
    MeasurementRequest,
    MeasurementResponse,
    OwnerResponse,
    PingResponse,
    PoolInfo,
    RegisterWorkerRequest,
    RegisterWorkerResponse,
    RegistryConfigResponse,
    WorkerInfo,
)
from src.domain.admin import AdminService
from src.domain.allowlist import MeasurementAllowList
from src.domain.exceptions import (
    AttestationRejected,
    IdentityMismatch,
    InvalidPool,
    InvalidWorkerCredentials,
    KeyOperationFailed,
    MalformedInput,
    NotActiveWorker,
    NotFound,
    NotOwner,
    PoolNotFound,
    PoolOccupied,
    RegistryError,
    ReplayMismatch,
    RotationExpired,
    UnapprovedMeasurement,
    VerificationFailed,
    WorkerAlreadyRegistered,
    WorkerNotFound,
)
from src.domain.models import AttestationEvidence
from src.domain.ports import RegistryRepository
from src.domain.registry import WorkerRegistryService

router = APIRouter(tags=["v1"])

# First match wins: subclasses before their bases
_ERROR_STATUS: list[tuple[type[RegistryError], int, str]] = [
    (MalformedInput, status.HTTP_400_BAD_REQUEST, "Malformed input"),
    (InvalidPool, status.HTTP_400_BAD_REQUEST, "Invalid pool"),
    (AttestationRejected, status.HTTP_403_FORBIDDEN, "Attestation verification failed"),
    (VerificationFailed, status.HTTP_502_BAD_GATEWAY, "Quote verifier unavailable"),
    (IdentityMismatch, status.HTTP_403_FORBIDDEN, "Report data does not match public key"),
    (ReplayMismatch, status.HTTP_403_FORBIDDEN, "Event log replay mismatch"),
    (UnapprovedMeasurement, status.HTTP_403_FORBIDDEN, "Invalid compose hash"),
    (InvalidWorkerCredentials, status.HTTP_401_UNAUTHORIZED, "Invalid worker credentials"),
    (NotOwner, status.HTTP_403_FORBIDDEN, "Only the owner can perform this action"),
    (PoolNotFound, status.HTTP_404_NOT_FOUND, "Pool not found"),
    (WorkerNotFound, status.HTTP_404_NOT_FOUND, "Worker not found"),
    (NotFound, status.HTTP_404_NOT_FOUND, "Measurement not found"),
    (RotationExpired, status.HTTP_409_CONFLICT, "Key rotation expired before it completed"),
    (PoolOccupied, status.HTTP_409_CONFLICT, "Only one active worker is allowed per pool"),
    (WorkerAlreadyRegistered, status.HTTP_409_CONFLICT, "Worker already registered"),
    (NotActiveWorker, status.HTTP_409_CONFLICT, "Only the registered worker can ping"),
    (KeyOperationFailed, status.HTTP_502_BAD_GATEWAY, "Key registrar operation failed"),
]

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed input"},
    401: {"model": ErrorResponse, "description": "Invalid credentials"},
    403: {"model": ErrorResponse, "description": "Attestation or authorization rejected"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Pool occupied or caller not active worker"},
    502: {"model": ErrorResponse, "description": "External collaborator failed"},
}


def _http_error(exc: RegistryError) -> HTTPException:
    """Map a domain error to an HTTP error with a stable message."""
    for error_type, status_code, detail in _ERROR_STATUS:
        if isinstance(exc, error_type):
            if isinstance(exc, MalformedInput) and str(exc):
                detail = str(exc)
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request rejected")


@router.post(
    "/pools/{pool_id}/workers",
    response_model=RegisterWorkerResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERROR_RESPONSES, 422: {"description": "Validation error"}},
    summary="Register a worker with TEE attestation",
    description="Submit a TDX quote, its collateral and the TCB info. The worker "
    "becomes the pool's active worker once its key is installed in the pool vault.",
)
async def register_worker(
    pool_id: int,
    request_data: RegisterWorkerRequest,
    service: WorkerRegistryService = Depends(get_registry_service),
) -> RegisterWorkerResponse:
    try:
        evidence = AttestationEvidence.parse(
            request_data.quote_hex, request_data.collateral, request_data.tcb_info
        )
        worker = await service.register(
            pool_id,
            evidence,
            request_data.checksum,
            caller=request_data.account_id,
            public_key=request_data.public_key,
            password=request_data.password,
        )
    except RegistryError as exc:
        raise _http_error(exc) from None
    return RegisterWorkerResponse(message="Worker registered", worker=WorkerInfo.from_worker(worker))


@router.post(
    "/workers/{account_id}/ping",
    response_model=PingResponse,
    responses=_ERROR_RESPONSES,
    summary="Worker heartbeat",
    description="Authenticated with HTTP BASIC AUTH: the path account id and the password "
    "the worker registered with.",
)
async def ping(
    pool_id: int | None = Query(default=None, ge=0),
    caller: str = Depends(get_worker_account),
    service: WorkerRegistryService = Depends(get_registry_service),
) -> PingResponse:
    try:
        timestamp_ms = service.ping(caller, pool_id)
        worker_pool_id = service.repository.get_worker(caller).pool_id
    except RegistryError as exc:
        raise _http_error(exc) from None
    return PingResponse(message="Heartbeat recorded", pool_id=worker_pool_id, timestamp_ms=timestamp_ms)


@router.get("/pools", response_model=list[PoolInfo], summary="List pools")
async def list_pools(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    service: WorkerRegistryService = Depends(get_registry_service),
) -> list[PoolInfo]:
    return [
        PoolInfo.from_pool(pool, service.pool_state(pool.pool_id))
        for pool in service.repository.list_pools(offset, limit)
    ]


@router.get(
    "/pools/{pool_id}",
    response_model=PoolInfo,
    responses={404: {"model": ErrorResponse, "description": "Pool not found"}},
    summary="Get pool",
)
async def get_pool(
    pool_id: int,
    service: WorkerRegistryService = Depends(get_registry_service),
) -> PoolInfo:
    try:
        return PoolInfo.from_pool(service.get_pool(pool_id), service.pool_state(pool_id))
    except RegistryError as exc:
        raise _http_error(exc) from None


@router.get("/workers", response_model=list[WorkerInfo], summary="List workers")
async def list_workers(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    repository: RegistryRepository = Depends(get_repository),
) -> list[WorkerInfo]:
    return [WorkerInfo.from_worker(worker) for worker in repository.list_workers(offset, limit)]


@router.get(
    "/workers/{account_id}",
    response_model=WorkerInfo,
    responses={404: {"model": ErrorResponse, "description": "Worker not found"}},
    summary="Get worker",
)
async def get_worker(
    account_id: str,
    repository: RegistryRepository = Depends(get_repository),
) -> WorkerInfo:
    worker = repository.get_worker(account_id)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Worker not found")
    return WorkerInfo.from_worker(worker)


@router.get("/measurements", response_model=list[str], summary="List approved measurements")
async def list_measurements(
    allowlist: MeasurementAllowList = Depends(get_allowlist),
) -> list[str]:
    return allowlist.measurements()


@router.get(
    "/measurements/{measurement}",
    response_model=MeasurementResponse,
    summary="Check whether a measurement is approved",
)
async def get_measurement(
    measurement: str,
    allowlist: MeasurementAllowList = Depends(get_allowlist),
) -> MeasurementResponse:
    return MeasurementResponse(measurement=measurement, approved=allowlist.contains(measurement))


@router.get("/config", response_model=RegistryConfigResponse, summary="Registry configuration")
async def get_config(
    service: WorkerRegistryService = Depends(get_registry_service),
    admin: AdminService = Depends(get_admin_service),
) -> RegistryConfigResponse:
    return RegistryConfigResponse(
        owner_id=admin.owner_id(),
        worker_ping_timeout_ms=service.ping_timeout_ms,
        pool_count=service.repository.pool_count(),
        worker_count=service.repository.worker_count(),
    )


@router.post(
    "/admin/measurements",
    response_model=MeasurementResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Approve a reference measurement",
)
async def approve_measurement(
    request_data: MeasurementRequest,
    owner: str = Depends(get_owner_account),
    allowlist: MeasurementAllowList = Depends(get_allowlist),
) -> MeasurementResponse:
    try:
        measurement = allowlist.approve(owner, request_data.measurement)
    except RegistryError as exc:
        raise _http_error(exc) from None
    return MeasurementResponse(measurement=measurement, approved=True)


@router.delete(
    "/admin/measurements/{measurement}",
    response_model=MeasurementResponse,
    responses=_ERROR_RESPONSES,
    summary="Remove an approved reference measurement",
)
async def revoke_measurement(
    measurement: str,
    owner: str = Depends(get_owner_account),
    allowlist: MeasurementAllowList = Depends(get_allowlist),
) -> MeasurementResponse:
    try:
        removed = allowlist.revoke(owner, measurement)
    except RegistryError as exc:
        raise _http_error(exc) from None
    return MeasurementResponse(measurement=removed, approved=False)


@router.post(
    "/admin/owner",
    response_model=OwnerResponse,
    responses=_ERROR_RESPONSES,
    summary="Transfer registry ownership",
)
async def change_owner(
    request_data: ChangeOwnerRequest,
    owner: str = Depends(get_owner_account),
    admin: AdminService = Depends(get_admin_service),
) -> OwnerResponse:
    try:
        admin.change_owner(owner, request_data.new_owner_id, request_data.new_password)
    except RegistryError as exc:
        raise _http_error(exc) from None
    return OwnerResponse(owner_id=request_data.new_owner_id)


@router.post(
    "/admin/pools",
    response_model=PoolInfo,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Create a pool",
)
async def create_pool(
    request_data: CreatePoolRequest,
    owner: str = Depends(get_owner_account),
    admin: AdminService = Depends(get_admin_service),
    service: WorkerRegistryService = Depends(get_registry_service),
) -> PoolInfo:
    try:
        pool = admin.create_pool(owner, request_data.token_ids, request_data.fee_bps)
    except RegistryError as exc:
        raise _http_error(exc) from None
    return PoolInfo.from_pool(pool, service.pool_state(pool.pool_id))
