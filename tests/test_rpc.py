"""Tests for the JSON-RPC client."""

import pytest
import requests

from stakerecon.utils.rpc import AsyncRpc, JsonRpcClient, RpcError


class FakeResponse:
    def __init__(self, body=None, status=200, invalid_json=False):
        self.body = body
        self.status = status
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append(json)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def client(*responses):
    session = FakeSession(*responses)
    return JsonRpcClient("http://rpc", rate_limit_per_second=1000, session=session), session


def test_block_number():
    rpc, session = client(FakeResponse({"jsonrpc": "2.0", "id": 1, "result": "0x10"}))
    assert rpc.block_number() == 16
    assert session.posts[0]["method"] == "eth_blockNumber"


def test_get_logs_sends_hex_range():
    rpc, session = client(FakeResponse({"result": []}))
    assert rpc.get_logs("0xabc", [["0x01"]], 16, 31) == []
    params = session.posts[0]["params"][0]
    assert (params["fromBlock"], params["toBlock"], params["address"]) == ("0x10", "0x1f", "0xabc")


def test_eth_call_block_tag():
    rpc, session = client(FakeResponse({"result": "0x"}), FakeResponse({"result": "0x"}))
    rpc.eth_call("0xabc", "0x1234")
    rpc.eth_call("0xabc", "0x1234", 255)
    assert session.posts[0]["params"][1] == "latest"
    assert session.posts[1]["params"][1] == "0xff"


def test_error_member_raises():
    rpc, _ = client(FakeResponse({"error": {"code": -32005, "message": "query returned more than 10000 results"}}))
    with pytest.raises(RpcError, match="10000 results"):
        rpc.get_logs("0xabc", [], 0, 1)


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(status=503),
        FakeResponse(invalid_json=True),
        requests.ConnectionError("reset by peer"),
    ],
)
def test_transport_failures_raise_rpc_error(response):
    rpc, _ = client(response)
    with pytest.raises(RpcError):
        rpc.block_number()


def test_non_list_logs_rejected():
    rpc, _ = client(FakeResponse({"result": None}))
    with pytest.raises(RpcError):
        rpc.get_logs("0xabc", [], 0, 1)


@pytest.mark.asyncio
async def test_async_wrapper_runs_in_thread():
    rpc, _ = client(FakeResponse({"result": "0x2a"}))
    assert await AsyncRpc(rpc).block_number() == 42
