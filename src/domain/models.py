"""
Domain entities and per-call evidence.

Pool and Worker are the persisted records. AttestationEvidence and its parts
are parsed from the raw strings a worker submits and never outlive the
registration call that parsed them.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import InvalidPool, MalformedInput

MAX_FEE_BPS = 10_000


class PoolState(str, Enum):
    """
    Lifecycle state of a pool's worker slot.

    EMPTY -> ACTIVE (first registration committed)
    ACTIVE -> STALE (heartbeat older than the ping timeout)
    STALE -> ROTATING (replacement registration issued key operations)
    ROTATING -> ACTIVE (installation confirmed) or back to EMPTY/STALE (failure)
    """

    EMPTY = "EMPTY"
    ACTIVE = "ACTIVE"
    STALE = "STALE"
    ROTATING = "ROTATING"


class TransitionPhase(str, Enum):
    """Which external key operation a pending transition is waiting on."""

    EVICTING = "EVICTING"
    INSTALLING = "INSTALLING"


@dataclass
class Pool:
    pool_id: int
    token_ids: tuple[str, str]
    fee_bps: int
    active_worker: str | None = None
    last_heartbeat_ms: int = 0

    @staticmethod
    def validate(token_ids: list[str] | tuple[str, ...], fee_bps: int) -> tuple[str, str]:
        """Check pool invariants and return the normalized token pair."""
        if len(token_ids) != 2:
            raise InvalidPool("Must have exactly 2 tokens")
        first, second = (token.strip() for token in token_ids)
        if not first or not second:
            raise InvalidPool("Token ids must not be empty")
        if first == second:
            raise InvalidPool("The two tokens cannot be identical")
        if not 0 <= fee_bps < MAX_FEE_BPS:
            raise InvalidPool("Fee must be less than 100%")
        return first, second

    def has_active_worker(self, now_ms: int, timeout_ms: int) -> bool:
        """A worker is live while its last ping is within the timeout."""
        return self.active_worker is not None and now_ms < self.last_heartbeat_ms + timeout_ms

    def state(self, now_ms: int, timeout_ms: int) -> PoolState:
        if self.active_worker is None:
            return PoolState.EMPTY
        if self.has_active_worker(now_ms, timeout_ms):
            return PoolState.ACTIVE
        return PoolState.STALE


@dataclass
class Worker:
    account_id: str
    pool_id: int
    public_key: str
    reference_measurement: str
    checksum: str
    key_installed: bool = True
    credential_hash: str = field(default="", repr=False)


@dataclass
class PendingTransition:
    """
    A registration that has passed attestation and is waiting on the key registrar.

    At most one exists per pool. Until it expires (started_at_ms plus the
    rotation timeout) the pool counts as occupied.
    """

    pool_id: int
    worker_id: str
    public_key: str
    reference_measurement: str
    checksum: str
    image_digest: str
    phase: TransitionPhase
    incumbent_id: str | None = None
    incumbent_public_key: str | None = None
    incumbent_evicted: bool = False
    started_at_ms: int = 0
    credential_hash: str = field(default="", repr=False)


@dataclass
class OwnerRecord:
    account_id: str
    password_hash: str


@dataclass(frozen=True)
class RegistryEvent:
    """Audit event delivered to the event sink."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)


def decode_hex(value: str, what: str) -> bytes:
    """Decode a hex string, accepting an optional 0x prefix."""
    if not isinstance(value, str):
        raise MalformedInput(f"Invalid {what}: expected hex string")
    token = value.strip()
    if token.startswith(("0x", "0X")):
        token = token[2:]
    try:
        return bytes.fromhex(token)
    except ValueError:
        raise MalformedInput(f"Invalid {what} hex") from None


def _load_json_object(raw: str, what: str) -> dict[str, Any]:
    try:
        document = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedInput(f"Invalid {what} format") from None
    if not isinstance(document, dict):
        raise MalformedInput(f"Invalid {what} format: expected JSON object")
    return document


@dataclass(frozen=True)
class EventLogEntry:
    """One measured event: which register it extended and with what digest."""

    imr: int
    digest: str
    event: str = ""
    event_type: int = 0
    event_payload: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "EventLogEntry":
        if not isinstance(raw, dict):
            raise MalformedInput("Invalid event log entry")
        imr = raw.get("imr")
        if isinstance(imr, bool) or not isinstance(imr, int) or imr < 0:
            raise MalformedInput("Invalid event log entry: imr must be a non-negative integer")
        digest = raw.get("digest")
        decode_hex(digest, "event digest")
        event = raw.get("event", "")
        event_type = raw.get("event_type", 0)
        event_payload = raw.get("event_payload", "")
        if not isinstance(event, str) or not isinstance(event_payload, str):
            raise MalformedInput("Invalid event log entry: event fields must be strings")
        if isinstance(event_type, bool) or not isinstance(event_type, int):
            raise MalformedInput("Invalid event log entry: event_type must be an integer")
        return cls(
            imr=imr,
            digest=digest.strip().lower(),
            event=event,
            event_type=event_type,
            event_payload=event_payload,
        )


@dataclass(frozen=True)
class TcbDocument:
    """Event log plus the configuration document that was measured into it."""

    event_log: tuple[EventLogEntry, ...]
    app_compose: str

    @classmethod
    def from_json(cls, raw: str) -> "TcbDocument":
        document = _load_json_object(raw, "TCB info")
        event_log = document.get("event_log")
        if not isinstance(event_log, list):
            raise MalformedInput("Invalid TCB info format: event_log must be a list")
        app_compose = document.get("app_compose")
        if not isinstance(app_compose, str):
            raise MalformedInput("Invalid TCB info format: app_compose must be a string")
        return cls(
            event_log=tuple(EventLogEntry.from_dict(entry) for entry in event_log),
            app_compose=app_compose,
        )


@dataclass(frozen=True)
class QuoteCollateral:
    """Certificate chains, CRLs and signed TCB/QE metadata for quote verification."""

    tcb_info_issuer_chain: str
    tcb_info: str
    tcb_info_signature: bytes
    qe_identity_issuer_chain: str
    qe_identity: str
    qe_identity_signature: bytes
    pck_crl_issuer_chain: str
    root_ca_crl: bytes
    pck_crl: bytes

    TEXT_FIELDS = (
        "tcb_info_issuer_chain",
        "tcb_info",
        "qe_identity_issuer_chain",
        "qe_identity",
        "pck_crl_issuer_chain",
    )
    HEX_FIELDS = ("tcb_info_signature", "qe_identity_signature", "root_ca_crl", "pck_crl")

    @classmethod
    def from_json(cls, raw: str) -> "QuoteCollateral":
        document = _load_json_object(raw, "collateral")
        values: dict[str, Any] = {}
        for name in cls.TEXT_FIELDS:
            value = document.get(name)
            if not isinstance(value, str):
                raise MalformedInput(f"Invalid collateral format: missing {name}")
            values[name] = value
        for name in cls.HEX_FIELDS:
            if name not in document:
                raise MalformedInput(f"Invalid collateral format: missing {name}")
            values[name] = decode_hex(document[name], name)
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        """Wire form: text fields as-is, binary fields hex-encoded."""
        payload = {name: getattr(self, name) for name in self.TEXT_FIELDS}
        payload.update({name: getattr(self, name).hex() for name in self.HEX_FIELDS})
        return payload


@dataclass(frozen=True)
class AttestationEvidence:
    quote_bytes: bytes
    collateral: QuoteCollateral
    tcb_document: TcbDocument

    @classmethod
    def parse(cls, quote_hex: str, collateral_json: str, tcb_info_json: str) -> "AttestationEvidence":
        """Decode the raw strings a worker submits. Raises MalformedInput on any defect."""
        quote_bytes = decode_hex(quote_hex, "quote")
        if not quote_bytes:
            raise MalformedInput("Invalid quote: empty")
        return cls(
            quote_bytes=quote_bytes,
            collateral=QuoteCollateral.from_json(collateral_json),
            tcb_document=TcbDocument.from_json(tcb_info_json),
        )
