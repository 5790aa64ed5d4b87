"""Per-network snapshot of on-chain stake events.

The cache is a plain value: ``merge`` returns a new ``EventCache`` and
``CacheStore`` persists it. One run owns a network's cache file at a time.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from stakerecon.extractors.chain import ChainSource
from stakerecon.models import (
    ChainBatch,
    ChainEvent,
    EntityKey,
    Observation,
    dedupe_highest,
    normalize_delegator_key,
)
from stakerecon.utils.files import write_json_atomic

logger = logging.getLogger(__name__)


class CacheError(RuntimeError):
    pass


def group_events(events: Iterable[ChainEvent]) -> Dict[EntityKey, List[Observation]]:
    groups: Dict[EntityKey, List[Observation]] = {}
    for event in events:
        groups.setdefault(event.key, []).append(Observation(event.block_number, event.value))
    return groups


@dataclass(frozen=True)
class EventCache:
    network: str
    events: Tuple[ChainEvent, ...]
    last_processed_block: int
    groups: Dict[EntityKey, List[Observation]]

    @classmethod
    def empty(cls, network: str, last_processed_block: int = -1) -> "EventCache":
        return cls(network, (), last_processed_block, {})

    @classmethod
    def from_events(cls, network: str, events: Iterable[ChainEvent], last_processed_block: int) -> "EventCache":
        events = tuple(events)
        return cls(network, events, last_processed_block, group_events(events))

    @property
    def node_events(self) -> List[ChainEvent]:
        return [e for e in self.events if e.key.delegator_key is None]

    @property
    def delegator_events(self) -> List[ChainEvent]:
        return [e for e in self.events if e.key.delegator_key is not None]

    def series(self, key: EntityKey) -> List[Observation]:
        return dedupe_highest(self.groups.get(key, []))

    def delegators_of(self, node_id: int) -> Dict[EntityKey, List[Observation]]:
        return {
            key: dedupe_highest(obs)
            for key, obs in self.groups.items()
            if key.node_id == node_id and key.delegator_key is not None
        }


def merge(existing: EventCache, batch: ChainBatch) -> EventCache:
    """Fold a chain batch into the cache.

    Only events above the high-water mark and inside the batch's contiguous
    coverage are taken, so merging the same batch twice is a no-op and a
    batch at or below the mark leaves the cache untouched.
    """
    mark = existing.last_processed_block
    if batch.from_block > mark + 1 and batch.completed_through >= batch.from_block:
        raise CacheError(
            f"{existing.network}: batch starts at {batch.from_block}, cache covers only up to {mark}"
        )
    upper = batch.completed_through
    fresh = [e for e in batch.events if mark < e.block_number <= upper]
    new_mark = max(mark, upper)
    if not fresh and new_mark == mark:
        return existing
    return EventCache.from_events(existing.network, existing.events + tuple(fresh), new_mark)


def _event_to_doc(event: ChainEvent) -> Dict[str, Any]:
    if event.key.delegator_key is None:
        return {"blockNumber": event.block_number, "identityId": str(event.key.node_id), "stake": str(event.value)}
    return {
        "blockNumber": event.block_number,
        "identityId": str(event.key.node_id),
        "delegatorKey": event.key.delegator_key,
        "stakeBase": str(event.value),
    }


def to_document(cache: EventCache, updated_at: Optional[datetime] = None) -> Dict[str, Any]:
    node_events_by_node: Dict[str, List[Dict[str, Any]]] = {}
    delegator_events_by_node: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
    for key, observations in cache.groups.items():
        node = str(key.node_id)
        if key.delegator_key is None:
            node_events_by_node[node] = [{"blockNumber": b, "stake": str(v)} for b, v in observations]
        else:
            delegator_events_by_node.setdefault(node, {})[key.delegator_key] = [
                {"blockNumber": b, "stakeBase": str(v)} for b, v in observations
            ]
    node_events = [_event_to_doc(e) for e in cache.node_events]
    delegator_events = [_event_to_doc(e) for e in cache.delegator_events]
    return {
        "network": cache.network,
        "nodeEvents": node_events,
        "delegatorEvents": delegator_events,
        "nodeEventsByNode": node_events_by_node,
        "delegatorEventsByNode": delegator_events_by_node,
        "totalNodeEvents": len(node_events),
        "totalDelegatorEvents": len(delegator_events),
        "lastProcessedBlock": cache.last_processed_block,
        "lastUpdated": (updated_at or datetime.now(timezone.utc)).isoformat(),
    }


def _events_from_raw(doc: Dict[str, Any]) -> List[ChainEvent]:
    events = []
    for item in doc.get("nodeEvents") or []:
        events.append(ChainEvent(EntityKey(int(item["identityId"])), int(item["blockNumber"]), int(item["stake"])))
    for item in doc.get("delegatorEvents") or []:
        key = EntityKey(int(item["identityId"]), normalize_delegator_key(str(item["delegatorKey"])))
        events.append(ChainEvent(key, int(item["blockNumber"]), int(item["stakeBase"])))
    return events


def _events_from_grouped(doc: Dict[str, Any]) -> List[ChainEvent]:
    events = []
    for node, observations in (doc.get("nodeEventsByNode") or {}).items():
        for item in observations:
            events.append(ChainEvent(EntityKey(int(node)), int(item["blockNumber"]), int(item["stake"])))
    for node, delegators in (doc.get("delegatorEventsByNode") or {}).items():
        for delegator_key, observations in delegators.items():
            key = EntityKey(int(node), normalize_delegator_key(delegator_key))
            for item in observations:
                events.append(ChainEvent(key, int(item["blockNumber"]), int(item["stakeBase"])))
    events.sort(key=lambda e: e.block_number)
    return events


def from_document(network: str, doc: Dict[str, Any]) -> EventCache:
    try:
        if "nodeEvents" in doc or "delegatorEvents" in doc:
            events = _events_from_raw(doc)
        elif "nodeEventsByNode" in doc or "delegatorEventsByNode" in doc:
            events = _events_from_grouped(doc)
        else:
            raise CacheError(f"{network}: unrecognised cache document (keys: {sorted(doc)})")
    except (KeyError, TypeError, ValueError) as exc:
        raise CacheError(f"{network}: malformed cache document: {exc}") from exc
    mark = doc.get("lastProcessedBlock")
    if mark is None:
        mark = max((e.block_number for e in events), default=-1)
    return EventCache.from_events(network, events, int(mark))


class CacheStore:
    def __init__(self, cache_dir: str = "cache") -> None:
        self.cache_dir = Path(cache_dir)

    def path_for(self, network: str) -> Path:
        return self.cache_dir / f"{network.lower()}_cache.json"

    def load(self, network: str) -> Optional[EventCache]:
        path = self.path_for(network)
        if not path.exists():
            return None
        try:
            doc = json.loads(path.read_text())
        except ValueError as exc:
            raise CacheError(f"{path}: not valid JSON: {exc}") from exc
        cache = from_document(network, doc)
        logger.info(
            "[%s] loaded cache: %d node events, %d delegator events, through block %d",
            network, len(cache.node_events), len(cache.delegator_events), cache.last_processed_block,
        )
        return cache

    def save(self, cache: EventCache) -> Path:
        path = write_json_atomic(self.path_for(cache.network), to_document(cache))
        logger.info("[%s] saved cache through block %d to %s", cache.network, cache.last_processed_block, path)
        return path


async def refresh(
    store: CacheStore,
    source: ChainSource,
    oldest_ledger_block: Callable[[], Awaitable[Optional[int]]],
    scan_buffer_blocks: int = 1000,
    cancel: Optional[asyncio.Event] = None,
    incremental_save: bool = True,
    checkpoint_interval: float = 60.0,
    clock: Callable[[], float] = time.monotonic,
) -> Tuple[EventCache, Optional[ChainBatch]]:
    """Load the network's cache, fetch blocks past its mark and persist the merge.

    With ``incremental_save`` the contiguous part of the fetch is merged and
    saved at most once per ``checkpoint_interval`` seconds. Saves run on a
    worker thread.
    """
    network = source.name
    cache = await asyncio.to_thread(store.load, network)
    to_block = await source.safe_head()
    if cache is None or cache.last_processed_block < 0:
        oldest = await oldest_ledger_block()
        start = max(0, (oldest if oldest is not None else to_block) - scan_buffer_blocks)
        logger.info("[%s] no usable cache, cold build from block %d", network, start)
        cache = EventCache.empty(network, start - 1)

    from_block = cache.last_processed_block + 1
    if from_block > to_block:
        logger.info("[%s] cache is current at block %d", network, cache.last_processed_block)
        return cache, None

    logger.info("[%s] fetching blocks %d-%d", network, from_block, to_block)

    last_checkpoint = clock()

    async def checkpoint(partial: ChainBatch) -> None:
        nonlocal cache, last_checkpoint
        if clock() - last_checkpoint < checkpoint_interval:
            return
        last_checkpoint = clock()
        cache = merge(cache, partial)
        await asyncio.to_thread(store.save, cache)

    batch = await source.fetch_events(
        from_block,
        to_block,
        cancel=cancel,
        policy=source.profile.bulk_retry,
        on_progress=checkpoint if incremental_save else None,
    )
    cache = merge(cache, batch)
    await asyncio.to_thread(store.save, cache)
    return cache, batch
