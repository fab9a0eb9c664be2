"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting
domain services and infrastructure adapters into routes.
"""

import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from src.adapters.events.console import ConsoleEventSink
from src.adapters.registrar.http import HttpKeyRegistrar
from src.adapters.verifier.http import HttpAttestationVerifier
from src.config.settings import get_settings
from src.domain.admin import AdminService
from src.domain.allowlist import MeasurementAllowList
from src.domain.attestation import AttestationService
from src.domain.exceptions import InvalidWorkerCredentials, NotOwner
from src.domain.ports import AttestationVerifier, KeyRegistrar, RegistryRepository
from src.domain.registry import WorkerRegistryService

# Module-level singleton - ConsoleEventSink is stateless
_event_sink = ConsoleEventSink()


def get_repository(request: Request) -> RegistryRepository:
    """
    Get repository from app state.

    The repository is created during app lifespan startup and stored in app.state.
    """
    return request.app.state.repository


def get_event_sink() -> ConsoleEventSink:
    """Get console event sink (singleton)."""
    return _event_sink


def get_attestation_verifier() -> HttpAttestationVerifier:
    settings = get_settings()
    return HttpAttestationVerifier(settings.verifier_url, settings.verifier_timeout_seconds)


def get_key_registrar() -> HttpKeyRegistrar:
    settings = get_settings()
    return HttpKeyRegistrar(settings.key_registrar_url, settings.key_registrar_timeout_seconds)


def get_admin_service(request: Request) -> AdminService:
    return AdminService(
        repository=get_repository(request),
        events=get_event_sink(),
        bcrypt_cost=get_settings().bcrypt_cost,
    )


def get_allowlist(request: Request) -> MeasurementAllowList:
    return MeasurementAllowList(
        repository=get_repository(request),
        admin=get_admin_service(request),
        events=get_event_sink(),
    )


def get_registry_service(
    request: Request,
    verifier: AttestationVerifier = Depends(get_attestation_verifier),
    key_registrar: KeyRegistrar = Depends(get_key_registrar),
) -> WorkerRegistryService:
    """
    Create worker registry service with injected dependencies.

    Wires together the repository, attestation chain, key registrar and
    event sink for the domain service. The external collaborators are
    Depends() so they can be overridden.
    """
    settings = get_settings()
    attestation = AttestationService(verifier=verifier, allowlist=get_allowlist(request))
    return WorkerRegistryService(
        repository=get_repository(request),
        attestation=attestation,
        key_registrar=key_registrar,
        events=get_event_sink(),
        registry_account_id=settings.registry_account_id,
        intents_account_id=settings.intents_account_id,
        ping_timeout_ms=settings.worker_ping_timeout_ms,
        rotation_timeout_ms=settings.key_rotation_timeout_ms,
        bcrypt_cost=settings.bcrypt_cost,
    )


# HTTP BASIC AUTH security scheme for OpenAPI documentation
http_basic = HTTPBasic()


def get_owner_account(
    credentials: HTTPBasicCredentials = Depends(http_basic),
    admin: AdminService = Depends(get_admin_service),
) -> str:
    """
    Authenticate the registry owner from HTTP BASIC AUTH.

    FastAPI's HTTPBasic automatically returns 401 for a missing or malformed
    Authorization header. Wrong credentials also return 401 with a generic
    message.

    Returns:
        The authenticated owner account id
    """
    try:
        return admin.authenticate(credentials.username.strip(), credentials.password)
    except NotOwner:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid owner credentials",
            headers={"WWW-Authenticate": "Basic"},
        ) from None


def get_worker_account(
    account_id: str,
    credentials: HTTPBasicCredentials = Depends(http_basic),
    service: WorkerRegistryService = Depends(get_registry_service),
) -> str:
    """
    Authenticate a worker from HTTP BASIC AUTH.

    The username must be the account_id in the path and the password the one
    the worker registered with. Every failure is the same 401.

    Returns:
        The authenticated worker account id
    """
    username_valid = secrets.compare_digest(credentials.username.strip().encode(), account_id.encode())
    try:
        service.authenticate_worker(account_id, credentials.password)
        password_valid = True
    except InvalidWorkerCredentials:
        password_valid = False
    if not (username_valid and password_valid):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid worker credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return account_id
