"""
Measurement replay engine - recompute trust measurements from raw evidence.

Pure functions with no external calls and no registry state:

- replay_register folds an event log into a runtime measurement register
  the same way the hardware extends it: digest = SHA384(digest || event.digest),
  starting from 48 zero bytes, in log order.
- derive_configuration_digest reproduces the digest the enclave's boot
  chain records for a configuration document in its "compose-hash" event.
- extract_image_digest pulls the pinned container image digest out of the
  configuration's embedded compose file.

Nothing in the event log is trusted beyond what is hash-chained into the
register; a log only counts once its replay matches a verified report.
"""

import hashlib
import json
from collections.abc import Iterable

import yaml

from .exceptions import MalformedConfiguration, MalformedInput
from .models import EventLogEntry, decode_hex

DIGEST_SIZE = 48
ZERO_DIGEST = bytes(DIGEST_SIZE)

COMPOSE_HASH_EVENT = "compose-hash"
# Event type tag prefixed to runtime events before hashing (0x08000001, little-endian).
COMPOSE_HASH_EVENT_TAG = bytes([0x01, 0x00, 0x00, 0x08])

IMAGE_DIGEST_DELIMITER = "@sha256:"
IMAGE_DIGEST_HEX_LENGTH = 64

# Register that carries runtime (application) measurements.
APPLICATION_REGISTER = 3


def replay_register(event_log: Iterable[EventLogEntry], register_index: int) -> bytes:
    """
    Recompute a register by extending every matching event in log order.

    Returns the all-zero digest when no entry targets register_index.
    """
    digest = ZERO_DIGEST
    for entry in event_log:
        if entry.imr != register_index:
            continue
        digest = hashlib.sha384(digest + decode_hex(entry.digest, "event digest")).digest()
    return digest


def derive_configuration_digest(configuration_document: str) -> bytes:
    """
    Digest a "compose-hash" event carries for this configuration document.

    SHA384(tag || ":" || "compose-hash" || ":" || SHA256(document))
    """
    payload = hashlib.sha256(configuration_document.encode("utf-8")).digest()
    hasher = hashlib.sha384()
    hasher.update(COMPOSE_HASH_EVENT_TAG)
    hasher.update(b":")
    hasher.update(COMPOSE_HASH_EVENT.encode("ascii"))
    hasher.update(b":")
    hasher.update(payload)
    return hasher.digest()


def find_event_digests(event_log: Iterable[EventLogEntry], event_name: str) -> list[str]:
    """Digests (lowercase hex) of every entry tagged with event_name, in log order."""
    return [entry.digest for entry in event_log if entry.event == event_name]


def normalize_digest_hex(value: str, size: int = DIGEST_SIZE) -> str:
    """
    Canonical form of a digest string: lowercase hex, no prefix.

    Raises MalformedInput unless the value decodes to exactly size bytes.
    """
    raw = decode_hex(value, "digest")
    if len(raw) != size:
        raise MalformedInput(f"Invalid digest: expected {size} bytes, got {len(raw)}")
    return raw.hex()


def _compose_file(configuration_document: str) -> str:
    # App compose manifests embed the compose file as a JSON string field;
    # a bare compose file is accepted as-is.
    try:
        manifest = json.loads(configuration_document)
    except ValueError:
        return configuration_document
    if isinstance(manifest, dict):
        compose_file = manifest.get("docker_compose_file")
        if isinstance(compose_file, str):
            return compose_file
        if "services" in manifest:
            return configuration_document
    raise MalformedConfiguration("Configuration has no docker_compose_file")


def extract_image_digest(configuration_document: str) -> str:
    """
    Return the sha256 digest pinned by the first service's image reference.

    The image must be referenced as name[:tag]@sha256:<hex>.
    """
    try:
        compose = yaml.safe_load(_compose_file(configuration_document))
    except yaml.YAMLError:
        raise MalformedConfiguration("Compose file is not valid YAML") from None

    services = compose.get("services") if isinstance(compose, dict) else None
    if not isinstance(services, dict):
        raise MalformedConfiguration("Compose file declares no services")

    for service in services.values():
        if not isinstance(service, dict) or "image" not in service:
            continue
        image = service["image"]
        if not isinstance(image, str) or IMAGE_DIGEST_DELIMITER not in image:
            raise MalformedConfiguration("Image reference is not pinned by sha256 digest")
        digest = image.split(IMAGE_DIGEST_DELIMITER, 1)[1].strip().lower()
        if len(digest) != IMAGE_DIGEST_HEX_LENGTH:
            raise MalformedConfiguration("Image digest has wrong length")
        try:
            bytes.fromhex(digest)
        except ValueError:
            raise MalformedConfiguration("Image digest is not hex") from None
        return digest

    raise MalformedConfiguration("Compose file has no image field")
