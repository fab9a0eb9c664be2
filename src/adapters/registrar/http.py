"""
HTTP key registrar adapter - Implements KeyRegistrar protocol.

Thin client for the gateway in front of the per-pool key vaults:

    POST {key_registrar_url}/add_public_key
    POST {key_registrar_url}/remove_public_key
    {"pool_account": "...", "owner_account": "...", "public_key": "..."}

Every call is one-shot. Transport errors and HTTP errors become a failed
KeyOperationOutcome; deciding what to do about a failure is the caller's job.
"""

import logging

import aiohttp

from src.domain.ports import KeyOperationOutcome

logger = logging.getLogger(__name__)


class HttpKeyRegistrar:
    """
    Implements KeyRegistrar protocol via aiohttp.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, registrar_url: str, timeout_seconds: int = 30) -> None:
        self.registrar_url = registrar_url
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, payload: dict[str, str]) -> KeyOperationOutcome:
        if not self.registrar_url:
            return KeyOperationOutcome(False, "Key registrar URL is not configured")

        url = f"{self.registrar_url.rstrip('/')}/{operation}"
        logger.info(
            "[REGISTRAR REQUEST] %s for %s on %s", operation, payload["public_key"], payload["pool_account"]
        )

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as response:
                    if response.status >= 400:
                        snippet = await response.text()
                        snippet = snippet[:200] if snippet else "<empty>"
                        return KeyOperationOutcome(False, f"{operation} returned {response.status}: {snippet}")
                    return KeyOperationOutcome(True)
        except aiohttp.ClientError as exc:
            return KeyOperationOutcome(False, f"{operation} failed: {exc}")
        except TimeoutError:
            return KeyOperationOutcome(False, f"{operation} timed out")

    async def install(self, pool_account: str, owner_account: str, public_key: str) -> KeyOperationOutcome:
        return await self._call(
            "add_public_key",
            {"pool_account": pool_account, "owner_account": owner_account, "public_key": public_key},
        )

    async def evict(self, pool_account: str, owner_account: str, public_key: str) -> KeyOperationOutcome:
        return await self._call(
            "remove_public_key",
            {"pool_account": pool_account, "owner_account": owner_account, "public_key": public_key},
        )
