import asyncio
import itertools
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Union

import requests


class RpcError(RuntimeError):
    pass


BlockTag = Union[int, str]


def _block_param(block: Optional[BlockTag]) -> str:
    if block is None:
        return "latest"
    if isinstance(block, int):
        return hex(block)
    return block


class JsonRpcClient:
    def __init__(
        self,
        url: str,
        rate_limit_per_second: float = 5.0,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.rate_limit_per_second = rate_limit_per_second
        self.timeout = timeout
        self._last_request_at = 0.0
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.session = session or requests.Session()

    def _sleep_for_rate_limit(self) -> None:
        min_interval = 1.0 / max(self.rate_limit_per_second, 0.1)
        with self._lock:
            elapsed = time.time() - self._last_request_at
            if elapsed < min_interval:
                time.sleep(min_interval - elapsed)
            self._last_request_at = time.time()

    def call(self, method: str, params: Sequence[Any]) -> Any:
        self._sleep_for_rate_limit()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers={"content-type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise RpcError(f"{method} request failed: {exc}") from exc
        if "error" in body:
            raise RpcError(f"{method} returned error: {body['error']}")
        return body.get("result")

    def block_number(self) -> int:
        return int(self.call("eth_blockNumber", []), 16)

    def get_logs(
        self,
        address: str,
        topics: List[Any],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        result = self.call(
            "eth_getLogs",
            [{
                "address": address,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "topics": topics,
            }],
        )
        if not isinstance(result, list):
            raise RpcError(f"eth_getLogs returned {type(result).__name__}, expected list")
        return result

    def eth_call(self, to: str, data: str, block: Optional[BlockTag] = None) -> str:
        return self.call("eth_call", [{"to": to, "data": data}, _block_param(block)])


class AsyncRpc:
    """Runs the blocking client on worker threads so RPC calls yield to the loop."""

    def __init__(self, client: JsonRpcClient) -> None:
        self.client = client

    async def block_number(self) -> int:
        return await asyncio.to_thread(self.client.block_number)

    async def get_logs(self, address: str, topics: List[Any], from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.client.get_logs, address, topics, from_block, to_block)

    async def eth_call(self, to: str, data: str, block: Optional[BlockTag] = None) -> str:
        return await asyncio.to_thread(self.client.eth_call, to, data, block)
