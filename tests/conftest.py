"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- Attestation bundles (quote, collateral, TCB info) that pass the check chain
- Stub verifier and key registrar with controllable outcomes
- In-memory repository and fully wired domain services
- A controllable millisecond clock
"""

import asyncio
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from unittest.mock import Mock

import pytest

from src.adapters.repository.memory import InMemoryRegistryRepository
from src.domain.admin import AdminService
from src.domain.allowlist import MeasurementAllowList
from src.domain.attestation import AttestationService, encode_and_pad
from src.domain.measurement import derive_configuration_digest, replay_register
from src.domain.models import AttestationEvidence, EventLogEntry
from src.domain.ports import KeyOperationOutcome, VerifiedReport
from src.domain.registry import WorkerRegistryService

OWNER_ID = "owner.testnet"
OWNER_PASSWORD = "owner-password"
REGISTRY_ACCOUNT_ID = "registry.testnet"
INTENTS_ACCOUNT_ID = "intents.testnet"
PING_TIMEOUT_MS = 600_000
ROTATION_TIMEOUT_MS = 300_000
START_MS = 1_700_000_000_000

PUBLIC_KEYS = {
    "alice.testnet": "ed25519:7fXmQp3RzKw9BvN2hTcY5dJs8aGuE4kPnMr6tWqZxCbV",
    "bob.testnet": "ed25519:3HnVpT8wYkQ2rZcB6mJ9sXdF4gRuK7aEhNz5tWqPxLbC",
    "carol.testnet": "ed25519:9aKdR4nWzX2pQv7TcM5jB8sHfYe3GuN6kPrE1tZwVxSq",
    "dave.testnet": "ed25519:5tGhW2qLxN8bV4cR7mZ3kJ9pDsE6yFuA1nHwQrTz",
    "erin.testnet": "ed25519:8uPzC3vKmY6wR2nT9hB5xLq4jFsG7dEaN1kVrWcH",
    "frank.testnet": "ed25519:2bNw7sXgT4kM9qZ5rH3vC8pJyL6fDuE1aKtWnRzG",
}
IMAGE_DIGEST = "5b1f0e4a" * 8

COLLATERAL = {
    "tcb_info_issuer_chain": "-----BEGIN CERTIFICATE-----\nMIIC\n-----END CERTIFICATE-----\n",
    "tcb_info": '{"id":"TDX","version":3}',
    "tcb_info_signature": "a1b2c3d4",
    "qe_identity_issuer_chain": "-----BEGIN CERTIFICATE-----\nMIIC\n-----END CERTIFICATE-----\n",
    "qe_identity": '{"id":"TD_QE","version":2}',
    "qe_identity_signature": "d4c3b2a1",
    "pck_crl_issuer_chain": "-----BEGIN CERTIFICATE-----\nMIIC\n-----END CERTIFICATE-----\n",
    "root_ca_crl": "3082",
    "pck_crl": "3083",
}


def _sha384_hex(label: str) -> str:
    return hashlib.sha384(label.encode()).hexdigest()


@dataclass
class AttestationBundle:
    """Raw registration inputs plus the report a verifier would vouch for."""

    account_id: str
    public_key: str
    password: str
    quote_hex: str
    collateral: str
    tcb_info: str
    app_compose: str
    measurement: str
    image_digest: str
    report: VerifiedReport

    def evidence(self) -> AttestationEvidence:
        return AttestationEvidence.parse(self.quote_hex, self.collateral, self.tcb_info)

    def request_body(self, checksum: str = "checksum-v1") -> dict:
        return {
            "account_id": self.account_id,
            "public_key": self.public_key,
            "quote_hex": self.quote_hex,
            "collateral": self.collateral,
            "checksum": checksum,
            "tcb_info": self.tcb_info,
            "password": self.password,
        }


def worker_password(account_id: str) -> str:
    return f"{account_id}-worker-password"


def build_app_compose(image_digest: str = IMAGE_DIGEST, name: str = "worker") -> str:
    compose_file = (
        "services:\n"
        "  worker:\n"
        f"    image: ghcr.io/example/worker@sha256:{image_digest}\n"
        "    restart: always\n"
    )
    return json.dumps(
        {
            "manifest_version": 2,
            "name": name,
            "runner": "docker-compose",
            "docker_compose_file": compose_file,
        }
    )


def build_bundle(
    account_id: str = "alice.testnet",
    app_compose: str | None = None,
    compose_event_digest: str | None = None,
) -> AttestationBundle:
    """
    Build a consistent attestation bundle for one worker.

    compose_event_digest overrides the digest recorded in the compose-hash
    event; the reported rtmr3 still matches the resulting log.
    """
    public_key = PUBLIC_KEYS[account_id]
    app_compose = app_compose if app_compose is not None else build_app_compose()
    measurement = derive_configuration_digest(app_compose).hex()

    event_log = [
        {"imr": 0, "event_type": 2147483659, "digest": _sha384_hex("td-hob"), "event": "", "event_payload": ""},
        {"imr": 1, "event_type": 2147483651, "digest": _sha384_hex("kernel"), "event": "", "event_payload": ""},
        {"imr": 2, "event_type": 6, "digest": _sha384_hex("cmdline"), "event": "", "event_payload": ""},
        {
            "imr": 3,
            "event_type": 134217729,
            "digest": _sha384_hex("system-preparing"),
            "event": "system-preparing",
            "event_payload": "",
        },
        {
            "imr": 3,
            "event_type": 134217729,
            "digest": compose_event_digest or measurement,
            "event": "compose-hash",
            "event_payload": hashlib.sha256(app_compose.encode()).hexdigest(),
        },
        {
            "imr": 3,
            "event_type": 134217729,
            "digest": _sha384_hex(f"instance-id:{account_id}"),
            "event": "instance-id",
            "event_payload": "",
        },
        {
            "imr": 3,
            "event_type": 134217729,
            "digest": _sha384_hex("system-ready"),
            "event": "system-ready",
            "event_payload": "",
        },
    ]
    rtmr3 = replay_register([EventLogEntry.from_dict(entry) for entry in event_log], 3).hex()

    return AttestationBundle(
        account_id=account_id,
        public_key=public_key,
        password=worker_password(account_id),
        quote_hex=hashlib.sha256(public_key.encode()).hexdigest() * 4,
        collateral=json.dumps(COLLATERAL),
        tcb_info=json.dumps({"mrtd": "00" * 48, "event_log": event_log, "app_compose": app_compose}),
        app_compose=app_compose,
        measurement=measurement,
        image_digest=IMAGE_DIGEST,
        report=VerifiedReport(encode_and_pad(public_key), "00" * 48, "00" * 48, "00" * 48, rtmr3),
    )


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@dataclass
class StubVerifier:
    """Returns the registered report for a quote; yields once so registrations can interleave."""

    reports: dict[bytes, VerifiedReport] = field(default_factory=dict)
    calls: list[int] = field(default_factory=list)
    error: Exception | None = None

    def add(self, bundle: AttestationBundle) -> None:
        self.reports[bytes.fromhex(bundle.quote_hex)] = bundle.report

    async def verify(self, evidence: AttestationEvidence, now_s: int) -> VerifiedReport:
        self.calls.append(now_s)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.reports[evidence.quote_bytes]


@dataclass
class StubKeyRegistrar:
    """Records key operations; outcomes are configurable per operation."""

    install_succeeds: bool = True
    evict_succeeds: bool = True
    installs: list[tuple[str, str, str]] = field(default_factory=list)
    evictions: list[tuple[str, str, str]] = field(default_factory=list)

    async def install(self, pool_account: str, owner_account: str, public_key: str) -> KeyOperationOutcome:
        self.installs.append((pool_account, owner_account, public_key))
        await asyncio.sleep(0)
        return KeyOperationOutcome(self.install_succeeds, "" if self.install_succeeds else "vault refused")

    async def evict(self, pool_account: str, owner_account: str, public_key: str) -> KeyOperationOutcome:
        self.evictions.append((pool_account, owner_account, public_key))
        await asyncio.sleep(0)
        return KeyOperationOutcome(self.evict_succeeds, "" if self.evict_succeeds else "vault refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_repository() -> InMemoryRegistryRepository:
    return InMemoryRegistryRepository()


@pytest.fixture
def events() -> Mock:
    """Event sink mock; inspect events.emit.call_args_list."""
    return Mock()


@pytest.fixture
def verifier() -> StubVerifier:
    return StubVerifier()


@pytest.fixture
def key_registrar() -> StubKeyRegistrar:
    return StubKeyRegistrar()


@pytest.fixture
def admin(memory_repository: InMemoryRegistryRepository, events: Mock) -> AdminService:
    service = AdminService(repository=memory_repository, events=events, bcrypt_cost=10)
    service.bootstrap_owner(OWNER_ID, OWNER_PASSWORD)
    return service


@pytest.fixture
def allowlist(
    memory_repository: InMemoryRegistryRepository, admin: AdminService, events: Mock
) -> MeasurementAllowList:
    return MeasurementAllowList(repository=memory_repository, admin=admin, events=events)


@pytest.fixture
def attestation(verifier: StubVerifier, allowlist: MeasurementAllowList) -> AttestationService:
    return AttestationService(verifier=verifier, allowlist=allowlist)


@pytest.fixture
def registry(
    memory_repository: InMemoryRegistryRepository,
    attestation: AttestationService,
    key_registrar: StubKeyRegistrar,
    events: Mock,
    clock: FakeClock,
) -> WorkerRegistryService:
    return WorkerRegistryService(
        repository=memory_repository,
        attestation=attestation,
        key_registrar=key_registrar,
        events=events,
        registry_account_id=REGISTRY_ACCOUNT_ID,
        intents_account_id=INTENTS_ACCOUNT_ID,
        ping_timeout_ms=PING_TIMEOUT_MS,
        rotation_timeout_ms=ROTATION_TIMEOUT_MS,
        bcrypt_cost=4,
        clock=clock,
    )


@pytest.fixture
def pool_id(admin: AdminService) -> int:
    return admin.create_pool(OWNER_ID, ["wrap.near", "usdc.near"], 30).pool_id


@pytest.fixture
def attested(
    verifier: StubVerifier, allowlist: MeasurementAllowList
) -> Callable[..., AttestationBundle]:
    """
    Factory for a bundle whose quote the stub verifier accepts and whose
    measurement is approved.
    """

    def make(account_id: str = "alice.testnet", approve: bool = True, **kwargs) -> AttestationBundle:
        bundle = build_bundle(account_id, **kwargs)
        verifier.add(bundle)
        if approve:
            allowlist.approve(OWNER_ID, bundle.measurement)
        return bundle

    return make


@pytest.fixture
def owner_id() -> str:
    return OWNER_ID


@pytest.fixture
def owner_password() -> str:
    return OWNER_PASSWORD


@pytest.fixture
def public_keys() -> dict[str, str]:
    return dict(PUBLIC_KEYS)


@pytest.fixture
def bundle_factory() -> Callable[..., AttestationBundle]:
    """Factory for bundles that are not registered with the stub verifier."""
    return build_bundle


@pytest.fixture
def compose_factory() -> Callable[..., str]:
    return build_app_compose
