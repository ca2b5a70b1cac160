"""Tests for the HTTP ledger client."""

import httpx
import pytest
import respx

from triviaforge.ledger.client import (
    HttpLedgerClient,
    LedgerBusyError,
    LedgerSubmissionError,
    TransactionStatus,
)

BASE_URL = "http://ledger.test"


@pytest.fixture
def client() -> HttpLedgerClient:
    return HttpLedgerClient(base_url=BASE_URL, api_key="secret", policy_id="policy-1", timeout=5)


class TestSubmit:
    @respx.mock
    async def test_submit_mint(self, client: HttpLedgerClient) -> None:
        route = respx.post(f"{BASE_URL}/transactions/mint").mock(
            return_value=httpx.Response(200, json={"tx_ref": "tx-abc"})
        )

        tx_ref = await client.submit_mint("owner-1", ["TNFT_V1_SCI_REG_12b3de7d"], {"tier": "x"})

        assert tx_ref == "tx-abc"
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret"
        body = request.read()
        assert b'"quantity":1' in body.replace(b" ", b"")
        assert b"policy-1" in body

    @respx.mock
    async def test_submit_burn_uses_negative_quantity(self, client: HttpLedgerClient) -> None:
        route = respx.post(f"{BASE_URL}/transactions/burn").mock(
            return_value=httpx.Response(200, json={"tx_ref": "tx-burn"})
        )

        tx_ref = await client.submit_burn("owner-1", ["a-token", "b-token"])

        assert tx_ref == "tx-burn"
        body = route.calls.last.request.read().replace(b" ", b"")
        assert body.count(b'"quantity":-1') == 2

    @pytest.mark.parametrize("status_code", [429, 503])
    @respx.mock
    async def test_backpressure_is_busy(self, client: HttpLedgerClient, status_code: int) -> None:
        respx.post(f"{BASE_URL}/transactions/mint").mock(
            return_value=httpx.Response(status_code)
        )

        with pytest.raises(LedgerBusyError) as exc_info:
            await client.submit_mint("owner-1", ["x"], {})
        assert exc_info.value.transient

    @respx.mock
    async def test_server_error_is_transient(self, client: HttpLedgerClient) -> None:
        respx.post(f"{BASE_URL}/transactions/mint").mock(return_value=httpx.Response(500))

        with pytest.raises(LedgerSubmissionError) as exc_info:
            await client.submit_mint("owner-1", ["x"], {})
        assert exc_info.value.transient

    @respx.mock
    async def test_client_error_is_permanent(self, client: HttpLedgerClient) -> None:
        respx.post(f"{BASE_URL}/transactions/burn").mock(
            return_value=httpx.Response(400, text="asset not owned")
        )

        with pytest.raises(LedgerSubmissionError) as exc_info:
            await client.submit_burn("owner-1", ["x"])
        assert not exc_info.value.transient
        assert "asset not owned" in (exc_info.value.detail or "")

    @respx.mock
    async def test_connection_error_is_transient(self, client: HttpLedgerClient) -> None:
        respx.post(f"{BASE_URL}/transactions/mint").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(LedgerSubmissionError) as exc_info:
            await client.submit_mint("owner-1", ["x"], {})
        assert exc_info.value.transient

    @respx.mock
    async def test_timeout_is_not_retried(self, client: HttpLedgerClient) -> None:
        """A timed-out submission may have landed, so it is not transient."""
        respx.post(f"{BASE_URL}/transactions/burn").mock(
            side_effect=httpx.ReadTimeout("slow")
        )

        with pytest.raises(LedgerSubmissionError) as exc_info:
            await client.submit_burn("owner-1", ["x"])
        assert not exc_info.value.transient

    @respx.mock
    async def test_missing_tx_ref(self, client: HttpLedgerClient) -> None:
        respx.post(f"{BASE_URL}/transactions/mint").mock(
            return_value=httpx.Response(200, json={})
        )

        with pytest.raises(LedgerSubmissionError):
            await client.submit_mint("owner-1", ["x"], {})


class TestTransactionStatus:
    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"status": "confirmed"}, TransactionStatus.CONFIRMED),
            ({"status": "rejected"}, TransactionStatus.REJECTED),
            ({"status": "pending"}, TransactionStatus.PENDING),
            ({"status": "weird"}, TransactionStatus.PENDING),
            ({}, TransactionStatus.PENDING),
        ],
    )
    @respx.mock
    async def test_status_mapping(
        self, client: HttpLedgerClient, payload: dict[str, str], expected: TransactionStatus
    ) -> None:
        respx.get(f"{BASE_URL}/transactions/tx-1").mock(
            return_value=httpx.Response(200, json=payload)
        )

        assert await client.get_transaction_status("tx-1") is expected

    @respx.mock
    async def test_unknown_transaction_is_pending(self, client: HttpLedgerClient) -> None:
        respx.get(f"{BASE_URL}/transactions/tx-new").mock(return_value=httpx.Response(404))

        assert await client.get_transaction_status("tx-new") is TransactionStatus.PENDING

    @respx.mock
    async def test_unreachable_raises(self, client: HttpLedgerClient) -> None:
        respx.get(f"{BASE_URL}/transactions/tx-1").mock(side_effect=httpx.ConnectError("down"))

        with pytest.raises(LedgerSubmissionError):
            await client.get_transaction_status("tx-1")


class TestHealthCheck:
    @respx.mock
    async def test_healthy(self, client: HttpLedgerClient) -> None:
        respx.get(f"{BASE_URL}/health").mock(return_value=httpx.Response(200))
        assert await client.health_check() is True

    @respx.mock
    async def test_unreachable(self, client: HttpLedgerClient) -> None:
        respx.get(f"{BASE_URL}/health").mock(side_effect=httpx.ConnectError("down"))
        assert await client.health_check() is False
