import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from stakerecon.config import NetworkProfile, Settings, load_settings
from stakerecon.engine import ComparisonPolicy, check_aggregate, check_count, check_snapshot, reconcile
from stakerecon.extractors.chain import ChainSource
from stakerecon.extractors.ledger import LedgerSource
from stakerecon.handlers.gaps import GapLog
from stakerecon.handlers.history import ComparisonHistory
from stakerecon.loaders.event_cache import CacheStore, EventCache, refresh
from stakerecon.models import EntityKey, EntityResult, EntityStatus, Observation, latest
from stakerecon.report import exit_status, print_summary, summarize, write_csv
from stakerecon.utils.rpc import AsyncRpc, JsonRpcClient

logger = logging.getLogger(__name__)

CHECKS = ("nodes", "delegators", "delegator-sum", "contract-state", "knowledge-collections")
ENTITY_CHECKS = ("nodes", "delegators", "delegator-sum", "contract-state")


@dataclass(frozen=True)
class RunOptions:
    checks: Tuple[str, ...]
    stake_tolerance: int
    knowledge_collection_tolerance: int
    policy: ComparisonPolicy
    aggregate_children: str = "chain"
    refresh: bool = True
    pin_contract_reads: bool = False


def parse_checks(value: str) -> Tuple[str, ...]:
    checks = tuple(item.strip() for item in value.split(",") if item.strip())
    unknown = [item for item in checks if item not in CHECKS]
    if unknown:
        raise argparse.ArgumentTypeError(f"unknown checks {unknown}; choose from {', '.join(CHECKS)}")
    return checks


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile indexed staking events against the chain")
    parser.add_argument("--network", action="append", default=None, help="Network to check (repeatable; default all)")
    parser.add_argument("--config-dir", default="config")
    parser.add_argument("--checks", type=parse_checks, default=CHECKS, help=f"Comma separated: {','.join(CHECKS)}")
    parser.add_argument("--tolerance", type=int, default=None, help="Stake tolerance in wei")
    parser.add_argument("--mode", choices=["all", "first-match"], default=None)
    parser.add_argument("--max-blocks", type=int, default=None, help="Compare only the N latest common blocks")
    parser.add_argument("--failure-threshold", type=float, default=None, help="Mismatch percentage that fails the run")
    parser.add_argument("--aggregate-children", choices=["chain", "ledger"], default=None)
    parser.add_argument(
        "--pin-contract-reads",
        action="store_true",
        default=None,
        help="Read contract state at the ledger's latest block (needs an archive RPC)",
    )
    parser.add_argument("--no-refresh", action="store_true", help="Use the cache as is, skip chain fetching")
    parser.add_argument("--report-csv", default=None, help="Write per-comparison rows to this CSV")
    parser.add_argument("--use-history", action="store_true", help="Mark comparisons accepted in earlier runs")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def options_from(args: argparse.Namespace, settings: Settings) -> RunOptions:
    checks = settings.checks
    return RunOptions(
        checks=tuple(args.checks),
        stake_tolerance=args.tolerance if args.tolerance is not None else checks.stake_tolerance,
        knowledge_collection_tolerance=checks.knowledge_collection_tolerance,
        policy=ComparisonPolicy.from_config(
            args.mode or checks.mode,
            args.max_blocks if args.max_blocks is not None else checks.max_blocks,
        ),
        aggregate_children=args.aggregate_children or checks.aggregate_children,
        refresh=not args.no_refresh,
        pin_contract_reads=args.pin_contract_reads or checks.pin_contract_reads,
    )


def error_result(check: str, network: str, exc: BaseException, key: Optional[EntityKey] = None) -> EntityResult:
    return EntityResult(
        check=check,
        network=network,
        key=key,
        status=EntityStatus.ERROR,
        detail=f"{type(exc).__name__}: {exc}",
    )


async def gather_bounded(coros: Iterable[Awaitable[EntityResult]], limit: int) -> List[EntityResult]:
    semaphore = asyncio.Semaphore(limit)

    async def run_one(coro: Awaitable[EntityResult]) -> EntityResult:
        async with semaphore:
            return await coro

    return list(await asyncio.gather(*(run_one(c) for c in coros)))


class NetworkRun:
    """All checks for one network, sharing a single cache build."""

    def __init__(
        self,
        profile: NetworkProfile,
        settings: Settings,
        options: RunOptions,
        chain: ChainSource,
        ledger: LedgerSource,
        history: Optional[ComparisonHistory] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> None:
        self.profile = profile
        self.settings = settings
        self.options = options
        self.chain = chain
        self.ledger = ledger
        self.history = history
        self.cancel = cancel
        self.store = CacheStore(settings.checks.cache_dir)
        self.gap_log = GapLog(settings.checks.gap_dir)
        self.partial = False

    @property
    def network(self) -> str:
        return self.profile.name

    async def build_cache(self) -> EventCache:
        if not self.options.refresh:
            cache = await asyncio.to_thread(self.store.load, self.profile.key)
            if cache is None:
                logger.warning("[%s] --no-refresh given but no cache on disk", self.network)
                return EventCache.empty(self.profile.key)
            return cache

        checks = self.settings.checks
        cache, batch = await refresh(
            self.store,
            self.chain,
            self.ledger.oldest_block,
            scan_buffer_blocks=checks.scan_buffer_blocks,
            cancel=self.cancel,
            incremental_save=checks.incremental_save,
            checkpoint_interval=checks.checkpoint_interval,
        )
        if batch is not None:
            self.gap_log.send_all(self.network, batch.gaps, {"chunk_size": self.profile.chunk_size})
            self.partial = not batch.complete
        return cache

    async def reconcile_entity(self, key: EntityKey, cache: EventCache, check: str) -> EntityResult:
        try:
            ledger_series = await self.ledger.series(key)
        except Exception as exc:
            logger.error("[%s] %s: ledger query failed: %s", self.network, key.label(), exc)
            return error_result(check, self.network, exc, key)
        return reconcile(
            key,
            ledger_series,
            cache.series(key),
            self.options.stake_tolerance,
            policy=self.options.policy,
            history=self.history,
            check=check,
            network=self.network,
            partial_coverage=self.partial,
        )

    async def check_entities(self, keys: List[EntityKey], cache: EventCache, check: str) -> List[EntityResult]:
        logger.info("[%s] %s: reconciling %d entities", self.network, check, len(keys))
        return await gather_bounded(
            (self.reconcile_entity(key, cache, check) for key in keys),
            self.settings.checks.entity_concurrency,
        )

    async def delegator_sum(
        self, node: EntityKey, delegators: List[EntityKey], cache: EventCache
    ) -> EntityResult:
        check = "delegator-sum"
        if self.options.aggregate_children == "ledger":
            try:
                children: List[List[Observation]] = [await self.ledger.series(key) for key in delegators]
            except Exception as exc:
                return error_result(check, self.network, exc, node)
        else:
            children = list(cache.delegators_of(node.node_id).values())
        return check_aggregate(
            node,
            children,
            cache.series(node),
            self.options.stake_tolerance,
            check=check,
            network=self.network,
            partial_coverage=self.partial,
        )

    async def contract_state(self, key: EntityKey) -> EntityResult:
        check = "contract-state"
        try:
            ledger_series = await self.ledger.series(key)
            ledger_latest = latest(ledger_series)
            if ledger_latest is None:
                return check_snapshot(key, [], 0, self.options.stake_tolerance, check=check, network=self.network)
            block = ledger_latest.block_number if self.options.pin_contract_reads else None
            if key.delegator_key is None:
                chain_value = await self.chain.node_stake(key.node_id, block)
            else:
                chain_value = await self.chain.delegator_stake_base(key.node_id, key.delegator_key, block)
        except Exception as exc:
            logger.error("[%s] %s: contract state check failed: %s", self.network, key.label(), exc)
            return error_result(check, self.network, exc, key)
        return check_snapshot(
            key,
            ledger_series,
            chain_value,
            self.options.stake_tolerance,
            block_number=block,
            check=check,
            network=self.network,
        )

    async def knowledge_collections(self) -> EntityResult:
        ledger_count, latest_block = await self.ledger.knowledge_collection_count()
        chain_count = await self.chain.latest_knowledge_collection_id()
        logger.info(
            "[%s] knowledge collections: ledger %d chain %d", self.network, ledger_count, chain_count
        )
        return check_count(
            "knowledge-collections",
            ledger_count,
            chain_count,
            self.options.knowledge_collection_tolerance,
            block_number=latest_block or 0,
            network=self.network,
        )

    async def run(self) -> List[EntityResult]:
        checks = self.options.checks
        try:
            cache = await self.build_cache()
        except Exception as exc:
            logger.exception("[%s] cache build failed", self.network)
            return [error_result(check, self.network, exc) for check in checks]
        if self.cancel is not None and self.cancel.is_set():
            logger.warning(
                "[%s] interrupted; cache saved through block %d", self.network, cache.last_processed_block
            )
            return []

        results: List[EntityResult] = []
        needs_entities = any(c in checks for c in ENTITY_CHECKS)
        nodes: List[EntityKey] = []
        delegators: List[EntityKey] = []
        if needs_entities:
            try:
                nodes = await self.ledger.active_nodes(self.profile.active_nodes)
                if any(c in checks for c in ("delegators", "delegator-sum", "contract-state")):
                    delegators = await self.ledger.active_delegators([n.node_id for n in nodes])
            except Exception as exc:
                logger.error("[%s] could not list active entities: %s", self.network, exc)
                results.extend(
                    error_result(c, self.network, exc)
                    for c in checks
                    if c in ENTITY_CHECKS
                )
                needs_entities = False
            else:
                logger.info("[%s] %d active nodes, %d delegators", self.network, len(nodes), len(delegators))

        if needs_entities and "nodes" in checks:
            results.extend(await self.check_entities(nodes, cache, "nodes"))
        if needs_entities and "delegators" in checks:
            results.extend(await self.check_entities(delegators, cache, "delegators"))
        if needs_entities and "delegator-sum" in checks:
            by_node: Dict[int, List[EntityKey]] = {}
            for key in delegators:
                by_node.setdefault(key.node_id, []).append(key)
            results.extend(
                await gather_bounded(
                    (self.delegator_sum(node, by_node.get(node.node_id, []), cache) for node in nodes),
                    self.settings.checks.entity_concurrency,
                )
            )
        if needs_entities and "contract-state" in checks:
            logger.info("[%s] contract-state: reading %d entities", self.network, len(nodes) + len(delegators))
            results.extend(
                await gather_bounded(
                    (self.contract_state(key) for key in nodes + delegators),
                    self.settings.checks.entity_concurrency,
                )
            )
        if "knowledge-collections" in checks:
            try:
                results.append(await self.knowledge_collections())
            except Exception as exc:
                logger.error("[%s] knowledge collection check failed: %s", self.network, exc)
                results.append(error_result("knowledge-collections", self.network, exc))
        return results


def build_network_run(
    profile: NetworkProfile,
    settings: Settings,
    options: RunOptions,
    history: Optional[ComparisonHistory],
    cancel: asyncio.Event,
) -> NetworkRun:
    rpc = AsyncRpc(JsonRpcClient(profile.rpc_url, rate_limit_per_second=profile.rate_limit_per_second))
    chain = ChainSource(profile, rpc)
    ledger = LedgerSource(settings.ledger, profile.database)
    return NetworkRun(profile, settings, options, chain, ledger, history=history, cancel=cancel)


async def run(
    settings: Settings,
    options: RunOptions,
    networks: List[NetworkProfile],
    history: Optional[ComparisonHistory] = None,
    cancel: Optional[asyncio.Event] = None,
) -> List[EntityResult]:
    cancel = cancel or asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        runs = [build_network_run(profile, settings, options, history, cancel) for profile in networks]
        per_network = await asyncio.gather(*(r.run() for r in runs))
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return [result for results in per_network for result in results]


def main(argv: Optional[Sequence[str]] = None) -> None:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(args.config_dir)
    options = options_from(args, settings)
    threshold = args.failure_threshold if args.failure_threshold is not None else settings.checks.failure_threshold
    networks = settings.select(args.network)

    history = ComparisonHistory(settings.checks.history_path).load() if args.use_history else None
    cancel = asyncio.Event()
    results = asyncio.run(run(settings, options, networks, history=history, cancel=cancel))
    if cancel.is_set():
        print("Interrupted; caches hold everything fetched contiguously so far.")
        sys.exit(130)

    if history is not None:
        history.record(results)
        history.save()

    summary = summarize(results)
    print_summary(summary, threshold)
    if args.report_csv:
        path = write_csv(results, args.report_csv)
        print(f"Wrote {len(results)} results to {path}")
    sys.exit(exit_status(summary.values(), threshold))


if __name__ == "__main__":
    main()
