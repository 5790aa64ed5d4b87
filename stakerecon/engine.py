"""
Ledger vs chain reconciliation.

Every function here is pure: series in, classified ``EntityResult`` out.
Fetching and caching live in the extractors and loaders.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from stakerecon.models import (
    Classification,
    ComparisonResult,
    EntityKey,
    EntityResult,
    EntityStatus,
    Observation,
    dedupe_highest,
    latest,
    worst,
)

logger = logging.getLogger(__name__)


class CompareMode(str, Enum):
    ALL = "all"
    FIRST_MATCH = "first-match"


@dataclass(frozen=True)
class ComparisonPolicy:
    """Which common blocks get compared.

    ``max_blocks=1`` compares only the latest common block, ``2`` adds the
    previous one, ``None`` takes them all. ``FIRST_MATCH`` stops at the first
    acceptable block, newest first.
    """

    mode: CompareMode = CompareMode.ALL
    max_blocks: Optional[int] = None

    @classmethod
    def from_config(cls, mode: str, max_blocks: Optional[int] = None) -> "ComparisonPolicy":
        if max_blocks is not None and max_blocks < 1:
            raise ValueError(f"max_blocks must be at least 1, got {max_blocks}")
        return cls(mode=CompareMode(mode), max_blocks=max_blocks)


class AcceptedHistory(Protocol):
    def contains(self, network: str, key: EntityKey, comparison: ComparisonResult) -> bool:
        ...


def classify(difference: int, tolerance: int) -> Classification:
    if difference == 0:
        return Classification.MATCH
    if abs(difference) <= tolerance:
        return Classification.WITHIN_TOLERANCE
    return Classification.MISMATCH


def common_blocks(ledger: List[Observation], chain: List[Observation]) -> List[int]:
    chain_blocks = {obs.block_number for obs in chain}
    return sorted({obs.block_number for obs in ledger} & chain_blocks, reverse=True)


def _status(comparisons: List[ComparisonResult]) -> EntityStatus:
    found = worst(c.classification for c in comparisons)
    if found is None:
        return EntityStatus.SKIPPED
    return EntityStatus(found.value)


def reconcile(
    key: EntityKey,
    ledger: List[Observation],
    chain: List[Observation],
    tolerance: int,
    policy: ComparisonPolicy = ComparisonPolicy(),
    history: Optional[AcceptedHistory] = None,
    check: str = "stake",
    network: str = "",
    partial_coverage: bool = False,
) -> EntityResult:
    ledger = dedupe_highest(ledger)
    chain = dedupe_highest(chain)
    blocks = common_blocks(ledger, chain)
    if not blocks:
        return EntityResult(
            check=check,
            network=network,
            key=key,
            status=EntityStatus.SKIPPED,
            partial_coverage=partial_coverage,
            detail=f"no common blocks ({len(ledger)} ledger, {len(chain)} chain observations)",
        )
    if policy.max_blocks is not None:
        blocks = blocks[: policy.max_blocks]

    ledger_at = dict(ledger)
    chain_at = dict(chain)
    comparisons: List[ComparisonResult] = []
    for block_number in blocks:
        ledger_value = ledger_at[block_number]
        chain_value = chain_at[block_number]
        comparison = ComparisonResult(
            block_number=block_number,
            ledger_value=ledger_value,
            chain_value=chain_value,
            classification=classify(ledger_value - chain_value, tolerance),
        )
        if history is not None and history.contains(network, key, comparison):
            comparison = replace(comparison, reused=True)
        logger.debug(
            "[%s] %s block %d: ledger %d chain %d -> %s",
            network, key.label(), block_number, ledger_value, chain_value, comparison.classification.value,
        )
        comparisons.append(comparison)
        if policy.mode is CompareMode.FIRST_MATCH and comparison.classification.acceptable:
            break

    if policy.mode is CompareMode.FIRST_MATCH and any(c.classification.acceptable for c in comparisons):
        status = EntityStatus(comparisons[-1].classification.value)
    else:
        status = _status(comparisons)
    return EntityResult(
        check=check,
        network=network,
        key=key,
        status=status,
        comparisons=comparisons,
        partial_coverage=partial_coverage,
    )


def check_aggregate(
    parent_key: EntityKey,
    children: Iterable[List[Observation]],
    parent: List[Observation],
    tolerance: int,
    check: str = "delegator-sum",
    network: str = "",
    partial_coverage: bool = False,
) -> EntityResult:
    """Compare the sum of each child's latest value with the parent's latest value."""
    parent_latest = latest(parent)
    if parent_latest is None:
        return EntityResult(
            check=check,
            network=network,
            key=parent_key,
            status=EntityStatus.SKIPPED,
            partial_coverage=partial_coverage,
            detail="parent has no observations",
        )
    child_count = 0
    total = 0
    for series in children:
        child_latest = latest(series)
        if child_latest is not None:
            total += child_latest.value
            child_count += 1
    comparison = ComparisonResult(
        block_number=parent_latest.block_number,
        ledger_value=total,
        chain_value=parent_latest.value,
        classification=classify(total - parent_latest.value, tolerance),
    )
    return EntityResult(
        check=check,
        network=network,
        key=parent_key,
        status=EntityStatus(comparison.classification.value),
        comparisons=[comparison],
        partial_coverage=partial_coverage,
        detail=f"{child_count} children",
    )


def check_count(
    label: str,
    ledger_count: int,
    chain_count: int,
    tolerance: int,
    block_number: int = 0,
    network: str = "",
) -> EntityResult:
    comparison = ComparisonResult(
        block_number=block_number,
        ledger_value=ledger_count,
        chain_value=chain_count,
        classification=classify(ledger_count - chain_count, tolerance),
    )
    return EntityResult(
        check=label,
        network=network,
        key=None,
        status=EntityStatus(comparison.classification.value),
        comparisons=[comparison],
    )


def check_snapshot(
    key: EntityKey,
    ledger: List[Observation],
    chain_value: int,
    tolerance: int,
    block_number: Optional[int] = None,
    check: str = "contract-state",
    network: str = "",
) -> EntityResult:
    """Compare the ledger's latest value with a single contract read.

    ``block_number`` is the block the contract was read at; ``None`` means the
    read was taken at the chain head and the ledger's latest block is reported.
    """
    ledger_latest = latest(ledger)
    if ledger_latest is None:
        return EntityResult(
            check=check,
            network=network,
            key=key,
            status=EntityStatus.SKIPPED,
            detail="ledger has no observations",
        )
    comparison = ComparisonResult(
        block_number=ledger_latest.block_number if block_number is None else block_number,
        ledger_value=ledger_latest.value,
        chain_value=chain_value,
        classification=classify(ledger_latest.value - chain_value, tolerance),
    )
    return EntityResult(
        check=check,
        network=network,
        key=key,
        status=EntityStatus(comparison.classification.value),
        comparisons=[comparison],
        detail="contract read at head" if block_number is None else "",
    )
