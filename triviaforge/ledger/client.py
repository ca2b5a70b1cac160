"""
Ledger client.

Submits mint and burn transactions to the signing service that holds the
single policy key, and reports transaction confirmation.

There is exactly one signing authority, so `HttpLedgerClient` serializes
its submissions. The service answers 429/503 while its queue is full;
that surfaces as a transient `LedgerBusyError`.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Protocol

import httpx

from triviaforge.config import settings
from triviaforge.models.failure import FailureKind, KnownError

logger = logging.getLogger(__name__)

BUSY_STATUS_CODES = frozenset({429, 503})


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class LedgerSubmissionError(KnownError):
    """
    The signing service did not accept a transaction.

    `transient` is True when the same submission may be retried.
    """

    def __init__(self, message: str, detail: str | None = None, transient: bool = True):
        self.transient = transient
        super().__init__(
            kind=FailureKind.LEDGER_UNAVAILABLE,
            message=message,
            detail=detail,
            suggestion="Try again in a few minutes.",
            status_code=503,
        )


class LedgerBusyError(LedgerSubmissionError):
    """The signing service is applying backpressure."""

    def __init__(self, detail: str | None = None):
        super().__init__("Ledger signing service is busy", detail=detail, transient=True)


class UnknownOutcomeError(KnownError):
    """Confirmation polling ran out before the ledger gave an answer."""

    def __init__(self, tx_ref: str | None, attempts: int):
        self.tx_ref = tx_ref
        self.attempts = attempts
        super().__init__(
            kind=FailureKind.UNKNOWN_OUTCOME,
            message="Transaction outcome unknown after confirmation timeout",
            detail=f"tx_ref={tx_ref} attempts={attempts}",
            suggestion="Contact support; the transaction needs manual reconciliation.",
            status_code=502,
        )


class LedgerClient(Protocol):
    """Transaction submission capability used by the orchestrators."""

    async def submit_mint(
        self, owner_key: str, asset_names: list[str], metadata: dict[str, Any]
    ) -> str: ...

    async def submit_burn(self, owner_key: str, asset_names: list[str]) -> str: ...

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus: ...


class HttpLedgerClient:
    """
    Client for the signing service HTTP API.

    POST /transactions/mint and /transactions/burn return {"tx_ref": ...};
    GET /transactions/{tx_ref} returns {"status": "pending"|"confirmed"|"rejected"}.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        policy_id: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the ledger client.

        Args:
            base_url: Signing service base URL. Defaults to settings.ledger_url.
            api_key: Bearer token. Defaults to settings.ledger_api_key.
            policy_id: Minting policy. Defaults to settings.policy_id.
            timeout: Request timeout in seconds.
        """
        self.base_url = (base_url or settings.ledger_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ledger_api_key
        self.policy_id = policy_id if policy_id is not None else settings.policy_id
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_seconds
        self._submit_lock = asyncio.Lock()

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _submit(self, path: str, payload: dict[str, Any]) -> str:
        async with self._submit_lock:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        f"{self.base_url}{path}",
                        json=payload,
                        headers=self._headers(),
                    )
            except httpx.TimeoutException as e:
                # The request may have reached the signer; do not resubmit blindly
                raise LedgerSubmissionError(
                    "Ledger submission timed out", detail=type(e).__name__, transient=False
                ) from e
            except httpx.TransportError as e:
                raise LedgerSubmissionError(
                    "Ledger signing service unreachable", detail=type(e).__name__
                ) from e

        if response.status_code in BUSY_STATUS_CODES:
            logger.info("LEDGER_BUSY", extra={"path": path, "status": response.status_code})
            raise LedgerBusyError(detail=f"HTTP {response.status_code}")
        if response.status_code >= 500:
            raise LedgerSubmissionError(
                "Ledger signing service error", detail=f"HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise LedgerSubmissionError(
                "Ledger rejected the submission",
                detail=f"HTTP {response.status_code}: {response.text[:200]}",
                transient=False,
            )

        tx_ref = response.json().get("tx_ref")
        if not tx_ref:
            raise LedgerSubmissionError(
                "Ledger response missing tx_ref", detail=path, transient=False
            )
        logger.info("LEDGER_SUBMITTED", extra={"path": path, "tx_ref": tx_ref})
        return str(tx_ref)

    async def submit_mint(
        self, owner_key: str, asset_names: list[str], metadata: dict[str, Any]
    ) -> str:
        """Submit a mint of one unit per asset name to `owner_key`."""
        return await self._submit(
            "/transactions/mint",
            {
                "policy_id": self.policy_id,
                "owner_key": owner_key,
                "assets": [{"asset_name": name, "quantity": 1} for name in asset_names],
                "metadata": metadata,
            },
        )

    async def submit_burn(self, owner_key: str, asset_names: list[str]) -> str:
        """Submit a negative-quantity transaction burning every asset name."""
        return await self._submit(
            "/transactions/burn",
            {
                "policy_id": self.policy_id,
                "owner_key": owner_key,
                "assets": [{"asset_name": name, "quantity": -1} for name in asset_names],
            },
        )

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        """
        Get confirmation status of a submitted transaction.

        A transaction the service does not know yet reports as pending.

        Raises:
            LedgerSubmissionError: If the service cannot be reached
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/transactions/{tx_ref}",
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise LedgerSubmissionError(
                "Ledger status check failed", detail=type(e).__name__
            ) from e

        if response.status_code == 404:
            return TransactionStatus.PENDING
        if response.status_code >= 400:
            raise LedgerSubmissionError(
                "Ledger status check failed", detail=f"HTTP {response.status_code}"
            )

        status = response.json().get("status", TransactionStatus.PENDING.value)
        try:
            return TransactionStatus(status)
        except ValueError:
            logger.warning("LEDGER_UNKNOWN_STATUS", extra={"tx_ref": tx_ref, "status": status})
            return TransactionStatus.PENDING

    async def health_check(self) -> bool:
        """
        Check if the signing service is available.

        Returns:
            True if the service is healthy, False otherwise
        """
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False


# Default client instance
_client: HttpLedgerClient | None = None


def get_ledger_client() -> HttpLedgerClient:
    """
    Get the default ledger client instance.

    The instance is shared so every submission goes through one lock.
    """
    global _client
    if _client is None:
        _client = HttpLedgerClient()
    return _client
