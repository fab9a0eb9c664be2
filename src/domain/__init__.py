"""
Domain layer - Pure business logic with zero framework imports.

This package contains the worker registry: the measurement replay engine,
the measurement allow-list, the attestation check chain and the
single-active-worker state machine. It defines its own port interfaces for
infrastructure abstraction, ensuring true hexagonal architecture decoupling.
"""

from .admin import AdminService
from .allowlist import MeasurementAllowList
from .attestation import AttestationResult, AttestationService, encode_and_pad
from .exceptions import (
    AttestationRejected,
    IdentityMismatch,
    InvalidPool,
    InvalidWorkerCredentials,
    KeyEvictionFailed,
    KeyInstallationFailed,
    KeyOperationFailed,
    MalformedConfiguration,
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
from .models import (
    AttestationEvidence,
    EventLogEntry,
    PendingTransition,
    Pool,
    PoolState,
    RegistryEvent,
    TcbDocument,
    TransitionPhase,
    Worker,
)
from .ports import (
    AttestationVerifier,
    EventSink,
    KeyOperationOutcome,
    KeyRegistrar,
    RegistryRepository,
    VerifiedReport,
)
from .registry import WorkerRegistryService

__all__ = [
    "AdminService",
    "AttestationEvidence",
    "AttestationRejected",
    "AttestationResult",
    "AttestationService",
    "AttestationVerifier",
    "EventLogEntry",
    "EventSink",
    "IdentityMismatch",
    "InvalidPool",
    "InvalidWorkerCredentials",
    "KeyEvictionFailed",
    "KeyInstallationFailed",
    "KeyOperationFailed",
    "KeyOperationOutcome",
    "KeyRegistrar",
    "MalformedConfiguration",
    "MalformedInput",
    "MeasurementAllowList",
    "NotActiveWorker",
    "NotFound",
    "NotOwner",
    "PendingTransition",
    "Pool",
    "PoolNotFound",
    "PoolOccupied",
    "PoolState",
    "RegistryError",
    "RegistryEvent",
    "RegistryRepository",
    "ReplayMismatch",
    "RotationExpired",
    "TcbDocument",
    "TransitionPhase",
    "UnapprovedMeasurement",
    "VerificationFailed",
    "VerifiedReport",
    "Worker",
    "WorkerAlreadyRegistered",
    "WorkerNotFound",
    "WorkerRegistryService",
    "encode_and_pad",
]
