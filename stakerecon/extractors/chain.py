import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak

from stakerecon.config import NetworkProfile
from stakerecon.models import ChainBatch, ChainEvent, ChunkGap, EntityKey, Observation, dedupe_highest
from stakerecon.transformers.stake_logs import DELEGATOR_TOPIC, NODE_TOPIC, decode_stake_logs
from stakerecon.utils.retry import RetryExhausted, RetryPolicy
from stakerecon.utils.rpc import AsyncRpc

logger = logging.getLogger(__name__)

Chunk = Tuple[int, int]
ProgressHook = Callable[[ChainBatch], Awaitable[None]]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def partition(from_block: int, to_block: int, chunk_size: int) -> List[Chunk]:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if from_block > to_block:
        return []
    return [
        (start, min(start + chunk_size - 1, to_block))
        for start in range(from_block, to_block + 1, chunk_size)
    ]


def completed_prefix(from_block: int, chunks: List[Chunk], done: Set[Chunk]) -> int:
    through = from_block - 1
    for chunk in chunks:
        if chunk not in done:
            break
        through = chunk[1]
    return through


def selector(signature: str) -> str:
    return "0x" + keccak(text=signature)[:4].hex()


def call_data(signature: str, types: List[str], args: List[Any]) -> str:
    return selector(signature) + abi_encode(types, args).hex()


def decode_result(types: List[str], result: str) -> Tuple[Any, ...]:
    return abi_decode(types, bytes.fromhex(result[2:] if result.startswith("0x") else result))


def uint_topic(value: int) -> str:
    return "0x" + format(value, "064x")


class ChainSource:
    def __init__(
        self,
        profile: NetworkProfile,
        rpc: AsyncRpc,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.profile = profile
        self.rpc = rpc
        self._sleep = sleep
        self._addresses: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return self.profile.name

    async def _retry(self, policy: RetryPolicy, fn: Callable[..., Awaitable[Any]], *args: Any, describe: str) -> Any:
        return await policy.run(fn, *args, describe=f"[{self.name}] {describe}", sleep=self._sleep)

    async def head(self) -> int:
        return await self._retry(self.profile.retry, self.rpc.block_number, describe="eth_blockNumber")

    async def safe_head(self) -> int:
        return max(await self.head() - self.profile.confirmations, 0)

    async def resolve_contract(self, contract_name: str, fallback: str) -> str:
        if contract_name in self._addresses:
            return self._addresses[contract_name]
        address = ""
        if self.profile.hub_address:
            data = call_data("getContractAddress(string)", ["string"], [contract_name])
            try:
                result = await self._retry(
                    self.profile.retry, self.rpc.eth_call, self.profile.hub_address, data,
                    describe=f"Hub.getContractAddress({contract_name})",
                )
                (address,) = decode_result(["address"], result)
            except Exception as exc:
                logger.warning("[%s] Hub lookup for %s failed, using fallback: %s", self.name, contract_name, exc)
                address = ""
        if not address or address.lower() == ZERO_ADDRESS:
            if not fallback:
                raise RuntimeError(f"[{self.name}] no address for {contract_name}")
            address = fallback
        self._addresses[contract_name] = address
        return address

    async def staking_address(self) -> str:
        return await self.resolve_contract("StakingStorage", self.profile.staking_storage_address)

    async def knowledge_collection_address(self) -> str:
        return await self.resolve_contract(
            "KnowledgeCollectionStorage", self.profile.knowledge_collection_storage_address
        )

    @staticmethod
    def topics_for(entity: Optional[EntityKey]) -> List[Any]:
        if entity is None:
            return [[NODE_TOPIC, DELEGATOR_TOPIC]]
        if entity.delegator_key is None:
            return [NODE_TOPIC, uint_topic(entity.node_id)]
        return [DELEGATOR_TOPIC, uint_topic(entity.node_id), entity.delegator_key]

    async def fetch_events(
        self,
        from_block: int,
        to_block: int,
        entity: Optional[EntityKey] = None,
        cancel: Optional[asyncio.Event] = None,
        policy: Optional[RetryPolicy] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> ChainBatch:
        """Fetch stake events for ``[from_block, to_block]`` in chunks.

        At most ``profile.concurrency`` chunks are in flight. A chunk that
        exhausts its retries is recorded as a gap and the rest carry on. When
        ``cancel`` is set, in-flight chunks finish and no new chunk starts.
        ``completed_through`` only covers the contiguous run of finished chunks
        from ``from_block``, so callers never advance past a hole.
        """
        policy = policy or self.profile.retry
        address = await self.staking_address()
        topics = self.topics_for(entity)
        chunks = partition(from_block, to_block, self.profile.chunk_size)
        batch = ChainBatch(from_block=from_block, to_block=to_block, completed_through=from_block - 1)
        results: Dict[Chunk, List[ChainEvent]] = {}
        pending = iter(enumerate(chunks, 1))
        total = len(chunks)

        def assemble() -> None:
            batch.events = [event for chunk in chunks if chunk in results for event in results[chunk]]
            batch.completed_through = completed_prefix(from_block, chunks, set(results))

        async def fetch_chunk(index: int, chunk: Chunk) -> None:
            start, end = chunk
            describe = f"eth_getLogs chunk {index}/{total} ({start}-{end})"
            try:
                logs = await self._retry(policy, self.rpc.get_logs, address, topics, start, end, describe=describe)
                events = decode_stake_logs(logs)
            except RetryExhausted as exc:
                error = exc.last_error
                batch.gaps.append(ChunkGap(start, end, exc.attempts, str(error), type(error).__name__))
                return
            except Exception as exc:
                logger.error("[%s] %s failed permanently: %s", self.name, describe, exc)
                batch.gaps.append(ChunkGap(start, end, 1, str(exc), type(exc).__name__))
                return
            results[chunk] = events
            logger.info("[%s] %s: %d events", self.name, describe, len(events))
            if on_progress is not None:
                previous = batch.completed_through
                assemble()
                if batch.completed_through > previous:
                    await on_progress(batch)

        async def worker() -> None:
            for index, chunk in pending:
                if cancel is not None and cancel.is_set():
                    return
                await fetch_chunk(index, chunk)

        workers = min(self.profile.concurrency, total)
        if workers:
            await asyncio.gather(*(worker() for _ in range(workers)))

        assemble()
        batch.gaps.sort(key=lambda gap: gap.from_block)
        batch.cancelled = cancel is not None and cancel.is_set() and len(results) + len(batch.gaps) < total
        if batch.gaps:
            logger.error(
                "[%s] %d of %d chunks left as gaps; coverage ends at block %d",
                self.name, len(batch.gaps), total, batch.completed_through,
            )
        return batch

    async def series(
        self, entity: EntityKey, from_block: int, to_block: int
    ) -> Tuple[List[Observation], List[ChunkGap]]:
        batch = await self.fetch_events(from_block, to_block, entity=entity)
        observations = [Observation(e.block_number, e.value) for e in batch.events if e.key == entity]
        return dedupe_highest(observations), batch.gaps

    async def _read(self, to: str, data: str, types: List[str], block: Optional[int], describe: str) -> Tuple[Any, ...]:
        result = await self._retry(self.profile.retry, self.rpc.eth_call, to, data, block, describe=describe)
        return decode_result(types, result)

    async def node_stake(self, node_id: int, block: Optional[int] = None) -> int:
        data = call_data("getNodeStake(uint72)", ["uint72"], [node_id])
        (stake,) = await self._read(await self.staking_address(), data, ["uint96"], block, f"getNodeStake({node_id})")
        return stake

    async def delegator_stake_base(self, node_id: int, delegator_key: str, block: Optional[int] = None) -> int:
        key = bytes.fromhex(delegator_key[2:])
        data = call_data("getDelegatorStakeBase(uint72,bytes32)", ["uint72", "bytes32"], [node_id, key])
        (stake,) = await self._read(
            await self.staking_address(), data, ["uint96"], block, f"getDelegatorStakeBase({node_id})"
        )
        return stake

    async def latest_knowledge_collection_id(self, block: Optional[int] = None) -> int:
        data = selector("getLatestKnowledgeCollectionId()")
        (latest_id,) = await self._read(
            await self.knowledge_collection_address(), data, ["uint256"], block, "getLatestKnowledgeCollectionId()"
        )
        return latest_id
