"""
Domain exceptions - Semantic error types for the worker registry.

Every exception is terminal for the invocation that raised it: nothing is
retried automatically and no partial state is left behind. Callers resubmit.
"""


class RegistryError(Exception):
    """Base class for worker registry domain errors."""

    pass


class MalformedInput(RegistryError):
    """Evidence or argument could not be decoded (bad hex, bad JSON, missing field)."""

    pass


class MalformedConfiguration(MalformedInput):
    """Configuration document lacks a field the measurement engine requires."""

    pass


class VerificationFailed(RegistryError):
    """External quote verifier could not be reached or returned an unusable answer."""

    pass


class AttestationRejected(VerificationFailed):
    """External quote verifier rejected the quote or its collateral."""

    pass


class IdentityMismatch(RegistryError):
    """Quote report data is not bound to the caller's public key."""

    pass


class ReplayMismatch(RegistryError):
    """Event log does not reproduce the reported register, or the configuration was not measured."""

    pass


class UnapprovedMeasurement(RegistryError):
    """Reference measurement is not in the allow-list."""

    pass


class PoolNotFound(RegistryError):
    """No pool exists with the requested id."""

    pass


class InvalidPool(RegistryError):
    """Pool parameters violate the pool invariants (two distinct tokens, fee below 100%)."""

    pass


class PoolOccupied(RegistryError):
    """Pool has a live active worker or a key rotation in flight."""

    pass


class WorkerAlreadyRegistered(RegistryError):
    """Caller is already the pool's active worker."""

    pass


class WorkerNotFound(RegistryError):
    """No worker record exists for the account."""

    pass


class NotActiveWorker(RegistryError):
    """Caller is not the pool's current active worker."""

    pass


class KeyOperationFailed(RegistryError):
    """External key registrar reported failure."""

    pass


class KeyEvictionFailed(KeyOperationFailed):
    """Incumbent worker key could not be removed from the pool vault."""

    pass


class KeyInstallationFailed(KeyOperationFailed):
    """New worker key could not be added to the pool vault."""

    pass


class NotOwner(RegistryError):
    """Caller is not the registry owner."""

    pass


class NotFound(RegistryError):
    """Allow-list entry does not exist."""

    pass


class InvalidWorkerCredentials(RegistryError):
    """Worker password does not match the one recorded for the account."""

    pass


class RotationExpired(PoolOccupied):
    """The registration's key rotation claim expired and was released before it completed."""

    pass
