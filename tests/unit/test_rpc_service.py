"""Unit tests for RPCService.

Requests are answered by an ``httpx.MockTransport``; no request leaves the
process.
"""

import json

import httpx
import pytest
from solders.pubkey import Pubkey

from solana_context.services.rpc_service import RPCService
from solana_context.utils.config import SolanaSettings
from solana_context.utils.errors import (
    RpcConnectionError,
    RpcError,
    SimulationFailedError,
    ValidationError
)


class RpcNode:
    """Mock JSON-RPC node replaying queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(json.loads(request.content))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, **response})


def make_service(node, max_retries=2):
    return RPCService(
        "https://rpc.example.com",
        max_retries=max_retries,
        retry_delay=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(node)),
    )


class TestRPCService:
    """Test suite for RPCService."""

    @pytest.mark.asyncio
    async def test_get_account_info(self):
        """Test the account value is unwrapped from the response context."""
        address = str(Pubkey.new_unique())
        value = {"data": ["AQI=", "base64"], "owner": "11111111111111111111111111111111", "lamports": 1}
        node = RpcNode({"result": {"context": {"slot": 1}, "value": value}})
        service = make_service(node)

        assert await service.get_account_info(address) == value
        assert node.requests[0]["method"] == "getAccountInfo"
        assert node.requests[0]["params"] == [address, {"encoding": "base64", "commitment": "confirmed"}]

    @pytest.mark.asyncio
    async def test_request_ids_increase(self):
        """Test every request carries a fresh id."""
        node = RpcNode({"result": 7})
        service = make_service(node)

        await service.get_slot()
        await service.get_slot()

        assert [request["id"] for request in node.requests] == [1, 2]

    @pytest.mark.asyncio
    async def test_invalid_address_is_rejected(self):
        """Test malformed addresses fail before any request."""
        node = RpcNode({"result": None})
        service = make_service(node)

        with pytest.raises(ValidationError, match="Invalid account address"):
            await service.get_multiple_accounts(["not-an-address!"])
        assert node.requests == []

    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected(self):
        """Test malformed signatures fail before any request."""
        service = make_service(RpcNode({"result": None}))

        with pytest.raises(ValidationError, match="Invalid transaction signature"):
            await service.get_transaction("0OIl")

    @pytest.mark.asyncio
    async def test_preflight_failure_carries_logs(self):
        """Test preflight failures become SimulationFailedError with the program logs."""
        node = RpcNode({"error": {
            "code": -32002,
            "message": "Transaction simulation failed: Blockhash not found",
            "data": {"err": "BlockhashNotFound", "logs": ["Program log: nope"]},
        }})
        service = make_service(node)

        with pytest.raises(SimulationFailedError) as exc_info:
            await service.send_transaction("AQ==")

        assert exc_info.value.logs == ["Program log: nope"]
        assert "Blockhash not found" in str(exc_info.value)
        assert len(node.requests) == 1

    @pytest.mark.asyncio
    async def test_rpc_error_includes_data(self):
        """Test other JSON-RPC errors keep the method and error data."""
        node = RpcNode({"error": {"code": -32602, "message": "Invalid params", "data": {"field": "x"}}})
        service = make_service(node)

        with pytest.raises(RpcError, match=r"Solana RPC error \(getSlot\): Invalid params") as exc_info:
            await service.get_slot()

        assert exc_info.value.details["rpc_error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_retries_on_retriable_status(self):
        """Test retriable HTTP statuses are retried."""
        node = RpcNode(httpx.Response(429), httpx.Response(503), {"result": 42})
        service = make_service(node)

        assert await service.get_slot() == 42
        assert len(node.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_on_rate_limit(self):
        """Test JSON-RPC rate limit errors are retried."""
        node = RpcNode({"error": {"code": -32005, "message": "Node is behind"}}, {"result": 5})
        service = make_service(node)

        assert await service.get_slot() == 5
        assert len(node.requests) == 2

    @pytest.mark.asyncio
    async def test_http_error_after_retries(self):
        """Test a retriable status fails once retries are exhausted."""
        node = RpcNode(httpx.Response(502))
        service = make_service(node, max_retries=1)

        with pytest.raises(RpcError, match="status 502"):
            await service.get_slot()
        assert len(node.requests) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """Test non-retriable statuses fail immediately."""
        node = RpcNode(httpx.Response(401))
        service = make_service(node)

        with pytest.raises(RpcError, match="status 401"):
            await service.get_slot()
        assert len(node.requests) == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Test connection failures become RpcConnectionError after retries."""
        node = RpcNode(httpx.ConnectError("refused"))
        service = make_service(node, max_retries=1)

        with pytest.raises(RpcConnectionError, match="refused"):
            await service.get_epoch_info()
        assert len(node.requests) == 2

    @pytest.mark.asyncio
    async def test_send_transaction_config(self):
        """Test the send configuration is passed through."""
        node = RpcNode({"result": "sig"})
        service = make_service(node)

        assert await service.send_transaction("AQ==", skip_preflight=True, max_retries=0) == "sig"
        assert node.requests[0]["params"][1] == {
            "encoding": "base64",
            "skipPreflight": True,
            "preflightCommitment": "confirmed",
            "maxRetries": 0,
        }

    @pytest.mark.asyncio
    async def test_rent_and_airdrop(self):
        """Test the plain numeric and signature results."""
        address = str(Pubkey.new_unique())
        node = RpcNode({"result": 890880}, {"result": "airdrop-signature"})
        service = make_service(node)

        assert await service.get_minimum_balance_for_rent_exemption(0) == 890880
        assert await service.request_airdrop(address, 1_000_000_000) == "airdrop-signature"
        assert node.requests[1]["params"] == [address, 1_000_000_000]

    @pytest.mark.asyncio
    async def test_from_settings(self):
        """Test the service is configured from SolanaSettings."""
        settings = SolanaSettings(
            RPC_URL="https://api.devnet.solana.com",
            CLUSTER="devnet",
            REQUEST_TIMEOUT=5.0,
            MAX_RETRIES=1,
            COMMITMENT="finalized",
        )

        service = RPCService.from_settings(settings)
        try:
            assert service.rpc_url == settings.RPC_URL
            assert service.timeout == 5.0
            assert service.max_retries == 1
            assert service.commitment == "finalized"
        finally:
            await service.close()
