"""
Attestation domain service - tie verified hardware evidence to local replay.

The check chain runs in this order and stops at the first failure:

1. The external verifier validates quote + collateral (AttestationRejected).
2. The report's report_data must equal encode_and_pad(caller public key)
   (IdentityMismatch), binding the enclave to the registering account.
3. Replaying register 3 from the event log must reproduce the reported
   register, and some "compose-hash" event must carry the digest derived
   from the attached configuration document (ReplayMismatch).
4. That configuration digest must be an approved reference measurement
   (UnapprovedMeasurement).
5. The pinned image digest is extracted for the worker's record. It is
   not gated; image control is deferred to the approved configuration.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass

from .allowlist import MeasurementAllowList
from .exceptions import IdentityMismatch, ReplayMismatch, UnapprovedMeasurement
from .measurement import (
    APPLICATION_REGISTER,
    COMPOSE_HASH_EVENT,
    derive_configuration_digest,
    extract_image_digest,
    find_event_digests,
    replay_register,
)
from .models import AttestationEvidence
from .ports import AttestationVerifier

logger = logging.getLogger(__name__)

REPORT_DATA_SIZE = 64
REPORT_DATA_VERSION = 1


def encode_and_pad(public_key: str) -> bytes:
    """
    Expected report_data for a worker key.

    Layout: [version (2 bytes, big-endian) | SHA384(public key) | zero padding] = 64 bytes.
    """
    body = REPORT_DATA_VERSION.to_bytes(2, "big") + hashlib.sha384(public_key.encode("utf-8")).digest()
    return body.ljust(REPORT_DATA_SIZE, b"\x00")


@dataclass(frozen=True)
class AttestationResult:
    reference_measurement: str
    image_digest: str


@dataclass
class AttestationService:
    verifier: AttestationVerifier
    allowlist: MeasurementAllowList

    async def verify(
        self, evidence: AttestationEvidence, public_key: str, now_s: int
    ) -> AttestationResult:
        """
        Run the full check chain for one registration attempt.

        Returns:
            The approved reference measurement and the image digest

        Raises:
            AttestationRejected / VerificationFailed, IdentityMismatch,
            ReplayMismatch, UnapprovedMeasurement, MalformedConfiguration
        """
        report = await self.verifier.verify(evidence, now_s)

        expected_report_data = encode_and_pad(public_key)
        if not secrets.compare_digest(report.report_data, expected_report_data):
            raise IdentityMismatch("Report data is not bound to the caller's public key")

        tcb = evidence.tcb_document
        replayed = replay_register(tcb.event_log, APPLICATION_REGISTER).hex()
        if replayed != report.register(APPLICATION_REGISTER).lower():
            raise ReplayMismatch("Invalid rtmr3")

        configuration_digest = derive_configuration_digest(tcb.app_compose).hex()
        if configuration_digest not in find_event_digests(tcb.event_log, COMPOSE_HASH_EVENT):
            raise ReplayMismatch("Invalid compose hash")

        if not self.allowlist.contains(configuration_digest):
            raise UnapprovedMeasurement(configuration_digest)

        image_digest = extract_image_digest(tcb.app_compose)
        logger.info(
            "Attestation verified: measurement=%s image=%s", configuration_digest, image_digest
        )
        return AttestationResult(
            reference_measurement=configuration_digest,
            image_digest=image_digest,
        )
