"""Unit tests for the JSON-RPC chain sources against a mocked node."""

import json
from decimal import Decimal

import httpx
import pytest

from chainsettle.chains.evm import EvmChainSource
from chainsettle.chains.solana import SolanaChainSource
from chainsettle.errors import TransientSourceError
from tests.fakes import EVM_MERCHANT, SOL_MERCHANT, SOL_OTHER


def rpc_node(results: dict, calls: list = None):
    """Build an httpx client answering JSON-RPC methods from a dict.

    Values may be callables taking the params list.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body["method"])
        result = results[body["method"]]
        if callable(result):
            result = result(body["params"])
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestEvmChainSource:
    """Test transaction + receipt normalization."""

    @pytest.mark.asyncio
    async def test_native_transfer_normalized(self):
        client = rpc_node(
            {
                "eth_getTransactionByHash": {"to": EVM_MERCHANT, "value": hex(4_480_000_000_000_000)},
                "eth_getTransactionReceipt": {"status": "0x1"},
            }
        )
        source = EvmChainSource("https://bsc.test", client=client)

        tx = await source.get_transaction_by_reference("0xabc")

        assert tx.succeeded
        assert len(tx.transfers) == 1
        assert tx.transfers[0].destination == EVM_MERCHANT
        assert tx.transfers[0].amount == Decimal("0.00448")
        await source.close()

    @pytest.mark.asyncio
    async def test_reverted_transaction(self):
        client = rpc_node(
            {
                "eth_getTransactionByHash": {"to": EVM_MERCHANT, "value": "0x1"},
                "eth_getTransactionReceipt": {"status": "0x0"},
            }
        )
        tx = await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")

        assert not tx.succeeded

    @pytest.mark.asyncio
    async def test_unknown_hash_returns_none(self):
        calls = []
        client = rpc_node({"eth_getTransactionByHash": None}, calls)

        assert await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc") is None
        assert calls == ["eth_getTransactionByHash"]

    @pytest.mark.asyncio
    async def test_unmined_transaction_is_transient(self):
        client = rpc_node(
            {
                "eth_getTransactionByHash": {"to": EVM_MERCHANT, "value": "0x1"},
                "eth_getTransactionReceipt": None,
            }
        )
        with pytest.raises(TransientSourceError):
            await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")

    @pytest.mark.asyncio
    async def test_rpc_error_is_transient(self):
        client = rpc_node({"eth_getTransactionByHash": {"error": {"code": -32005, "message": "rate limited"}}})

        with pytest.raises(TransientSourceError):
            await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")

    @pytest.mark.asyncio
    async def test_http_failure_is_transient(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))

        with pytest.raises(TransientSourceError):
            await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")

    @pytest.mark.asyncio
    async def test_non_object_response_is_transient(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=["unexpected"])))

        with pytest.raises(TransientSourceError):
            await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")

    @pytest.mark.asyncio
    async def test_string_rpc_error_is_transient(self):
        client = rpc_node({"eth_getTransactionByHash": {"error": "node overloaded"}})

        with pytest.raises(TransientSourceError):
            await EvmChainSource("https://bsc.test", client=client).get_transaction_by_reference("0xabc")


@pytest.mark.unit
class TestSolanaChainSource:
    """Test balance-delta normalization and activity polling."""

    @pytest.mark.asyncio
    async def test_positive_deltas_become_legs(self):
        client = rpc_node(
            {
                "getTransaction": {
                    "meta": {
                        "err": None,
                        "preBalances": [5_000_000_000, 0],
                        "postBalances": [3_999_995_000, 1_000_000_000],
                    },
                    "transaction": {"message": {"accountKeys": [{"pubkey": SOL_OTHER}, {"pubkey": SOL_MERCHANT}]}},
                }
            }
        )
        source = SolanaChainSource("https://sol.test", client=client)

        tx = await source.get_transaction_by_reference("sig1")

        assert tx.succeeded
        assert [leg.destination for leg in tx.transfers] == [SOL_MERCHANT]
        assert tx.transfers[0].amount == Decimal("1")

    @pytest.mark.asyncio
    async def test_failed_transaction(self):
        client = rpc_node(
            {
                "getTransaction": {
                    "meta": {"err": {"InstructionError": [0, "Custom"]}, "preBalances": [1], "postBalances": [1]},
                    "transaction": {"message": {"accountKeys": [SOL_MERCHANT]}},
                }
            }
        )
        tx = await SolanaChainSource("https://sol.test", client=client).get_transaction_by_reference("sig1")

        assert not tx.succeeded

    @pytest.mark.asyncio
    async def test_malformed_payload_is_transient(self):
        client = rpc_node({"getTransaction": {"meta": {}}})

        with pytest.raises(TransientSourceError):
            await SolanaChainSource("https://sol.test", client=client).get_transaction_by_reference("sig1")

    @pytest.mark.asyncio
    async def test_recent_references_newest_first(self):
        client = rpc_node({"getSignaturesForAddress": [{"signature": "sig-2"}, {"signature": "sig-1"}]})

        refs = await SolanaChainSource("https://sol.test", client=client).list_recent_references(SOL_MERCHANT, 10)

        assert refs == ["sig-2", "sig-1"]

    @pytest.mark.asyncio
    async def test_malformed_signature_list_is_transient(self):
        client = rpc_node({"getSignaturesForAddress": [{"sig": "sig-2"}]})

        with pytest.raises(TransientSourceError):
            await SolanaChainSource("https://sol.test", client=client).list_recent_references(SOL_MERCHANT, 10)

    @pytest.mark.asyncio
    async def test_malformed_balance_is_transient(self):
        client = rpc_node({"getBalance": {"value": None}})

        with pytest.raises(TransientSourceError):
            await SolanaChainSource("https://sol.test", client=client).get_balance(SOL_MERCHANT)

    @pytest.mark.asyncio
    async def test_activity_yields_on_balance_change(self):
        balances = iter([100, 100, 150])
        client = rpc_node({"getBalance": lambda params: {"value": next(balances)}})
        source = SolanaChainSource("https://sol.test", poll_interval=0, client=client)

        stream = source.subscribe_to_address_activity(SOL_MERCHANT)
        event = await stream.__anext__()
        await stream.aclose()

        assert event.address == SOL_MERCHANT
        assert event.balance == 150
