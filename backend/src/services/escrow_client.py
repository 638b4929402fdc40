"""
Escrow service client.

HTTP client for the escrow service that holds ticket stakes. Exposes the two
operations the lifecycle engine needs:
- release(event_id, ticket_id, wallet): return the stake to a checked-in guest
- forfeit(event_id, ticket_id, wallet): claim a no-show's stake for the organizer

Both are coroutines and return an EscrowResult instead of raising on transport or service
errors, so hooks can log and move on. Without a configured base URL the
client runs in no-signer mode: calls are logged and succeed with a
synthetic transaction hash.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from backend.src.utils.logging_config import get_logger


logger = get_logger("hooks")


# ============================================================================
# Constants
# ============================================================================

API_BASE_PATH = "/api/escrow"
DEFAULT_TIMEOUT = 30.0  # seconds
USER_AGENT = "EventLifecycle-Engine/1.0"
NO_SIGNER_TX_HASH = "mock-no-signer"


@dataclass(frozen=True)
class EscrowResult:
    """Outcome of an escrow call."""
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


# ============================================================================
# EscrowClient Class
# ============================================================================


class EscrowClient:
    """
    HTTP client for the escrow service.

    Attributes:
        base_url: Base URL of the escrow service ("" = no-signer mode)
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the escrow client.

        Args:
            base_url: Base URL of the escrow service, empty for no-signer mode
            token: Optional bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self._base_url = (base_url or "").rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

        if self._base_url:
            headers = {
                "User-Agent": USER_AGENT,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if token:
                headers["Authorization"] = f"Bearer {token}"

            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=timeout,
                transport=transport,
            )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def no_signer(self) -> bool:
        """True when no escrow service is configured."""
        return self._client is None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def release(self, event_id: str, ticket_id: str, wallet_address: Optional[str]) -> EscrowResult:
        """Release a checked-in guest's stake back to their wallet."""
        return await self._call("release", event_id, ticket_id, wallet_address)

    async def forfeit(self, event_id: str, ticket_id: str, wallet_address: Optional[str]) -> EscrowResult:
        """Forfeit a no-show's stake to the organizer."""
        return await self._call("forfeit", event_id, ticket_id, wallet_address)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _call(
        self,
        operation: str,
        event_id: str,
        ticket_id: str,
        wallet_address: Optional[str],
    ) -> EscrowResult:
        if self._client is None:
            logger.warning(
                f"No escrow signer configured, skipping on-chain {operation} "
                f"for ticket {ticket_id}"
            )
            return EscrowResult(success=True, tx_hash=NO_SIGNER_TX_HASH)

        payload: dict[str, Any] = {
            "event_id": event_id,
            "ticket_id": ticket_id,
            "wallet_address": wallet_address,
        }

        try:
            response = await self._client.post(f"{API_BASE_PATH}/{operation}", json=payload)
        except httpx.ConnectError as e:
            return EscrowResult(success=False, error=f"Failed to connect to escrow service: {e}")
        except httpx.TimeoutException as e:
            return EscrowResult(success=False, error=f"Escrow request timed out: {e}")
        except httpx.HTTPError as e:
            return EscrowResult(success=False, error=f"Escrow request failed: {e}")

        if response.status_code != 200:
            return EscrowResult(
                success=False,
                error=f"Escrow {operation} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            return EscrowResult(
                success=False,
                error="Escrow service returned invalid JSON",
                status_code=response.status_code,
            )

        if not body.get("success"):
            return EscrowResult(
                success=False,
                error=body.get("error") or f"Escrow {operation} was not successful",
                status_code=response.status_code,
            )

        return EscrowResult(
            success=True,
            tx_hash=body.get("tx_hash"),
            status_code=response.status_code,
        )
