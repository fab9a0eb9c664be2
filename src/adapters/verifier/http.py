"""
HTTP attestation verifier adapter - Implements AttestationVerifier protocol.

Delegates quote verification (signature chain, collateral freshness,
revocation, TCB status) to an external verifier service:

    POST {verifier_url}/verify
    {"quote": "<hex>", "collateral": {...}, "now": <unix seconds>}

A verified answer looks like:

    {"is_valid": true,
     "details": {"quote_verified": true, "report_data": "<hex>",
                 "rtmr0": "<hex>", ..., "rtmr3": "<hex>"}}
"""

import logging

import aiohttp

from src.domain.exceptions import AttestationRejected, VerificationFailed
from src.domain.models import AttestationEvidence
from src.domain.ports import VerifiedReport

logger = logging.getLogger(__name__)

REGISTER_COUNT = 4


class HttpAttestationVerifier:
    """
    Implements AttestationVerifier protocol via aiohttp.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, verifier_url: str, timeout_seconds: int = 60) -> None:
        self.verifier_url = verifier_url
        self.timeout_seconds = timeout_seconds

    def _endpoint(self) -> str:
        url = self.verifier_url.rstrip("/")
        if not url.endswith("/verify"):
            url = f"{url}/verify"
        return url

    async def _call_verifier(self, payload: dict) -> dict:
        if not self.verifier_url:
            raise VerificationFailed("Quote verifier URL is not configured")

        url = self._endpoint()
        logger.info(f"[VERIFIER REQUEST] Posting to {url}")

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as response:
                    if response.status >= 400:
                        snippet = await response.text()
                        snippet = snippet[:200] if snippet else "<empty>"
                        raise VerificationFailed(
                            f"Verifier request returned {response.status}: {snippet}"
                        )
                    try:
                        return await response.json()
                    except (aiohttp.ContentTypeError, ValueError) as exc:
                        raise VerificationFailed("Verifier response was not JSON") from exc
        except aiohttp.ClientError as exc:
            raise VerificationFailed(f"Verifier unreachable: {exc}") from exc
        except TimeoutError as exc:
            raise VerificationFailed("Verifier request timed out") from exc

    @staticmethod
    def _normalise_hex(value: object) -> str | None:
        if not isinstance(value, str) or not value.strip():
            return None
        token = value.strip().lower()
        if token.startswith("0x"):
            token = token[2:]
        try:
            bytes.fromhex(token)
        except ValueError:
            return None
        return token

    def _parse_report(self, verifier_payload: dict) -> VerifiedReport:
        if not isinstance(verifier_payload, dict):
            raise VerificationFailed("Verifier response was not a JSON object")
        details = verifier_payload.get("details")
        if not isinstance(details, dict):
            raise VerificationFailed("Verifier response missing details section")

        is_valid = bool(verifier_payload.get("is_valid"))
        quote_verified = bool(details.get("quote_verified"))
        if not (is_valid and quote_verified):
            reason = details.get("reason") or verifier_payload.get("reason") or "quote rejected"
            raise AttestationRejected(f"Verifier rejected quote: {reason}")

        report_data = self._normalise_hex(details.get("report_data"))
        registers = [self._normalise_hex(details.get(f"rtmr{i}")) for i in range(REGISTER_COUNT)]
        if report_data is None or any(register is None for register in registers):
            raise VerificationFailed("Verifier response missing report fields")

        return VerifiedReport(bytes.fromhex(report_data), *registers)

    async def verify(self, evidence: AttestationEvidence, now_s: int) -> VerifiedReport:
        payload = {
            "quote": evidence.quote_bytes.hex(),
            "collateral": evidence.collateral.to_dict(),
            "now": now_s,
        }
        report = self._parse_report(await self._call_verifier(payload))
        logger.info("Quote verified by external verifier")
        return report
