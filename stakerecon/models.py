from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional


class Observation(NamedTuple):
    block_number: int
    value: int


@dataclass(frozen=True)
class EntityKey:
    node_id: int
    delegator_key: Optional[str] = None

    @property
    def is_delegator(self) -> bool:
        return self.delegator_key is not None

    def label(self) -> str:
        if self.delegator_key is None:
            return f"node {self.node_id}"
        return f"node {self.node_id} / delegator {self.delegator_key[:10]}..."


def normalize_delegator_key(key: str) -> str:
    key = key.lower()
    if not key.startswith("0x"):
        key = "0x" + key
    return "0x" + key[2:].rjust(64, "0")


@dataclass(frozen=True)
class ChainEvent:
    key: EntityKey
    block_number: int
    value: int


class Classification(str, Enum):
    MATCH = "match"
    WITHIN_TOLERANCE = "within_tolerance"
    MISMATCH = "mismatch"

    @property
    def acceptable(self) -> bool:
        return self is not Classification.MISMATCH


class EntityStatus(str, Enum):
    MATCH = "match"
    WITHIN_TOLERANCE = "within_tolerance"
    MISMATCH = "mismatch"
    SKIPPED = "skipped"
    ERROR = "error"


# Severity rank, higher is worse.
_SEVERITY = {
    Classification.MATCH: 0,
    Classification.WITHIN_TOLERANCE: 1,
    Classification.MISMATCH: 2,
}


def worst(classifications: Iterable[Classification]) -> Optional[Classification]:
    found = list(classifications)
    if not found:
        return None
    return max(found, key=_SEVERITY.__getitem__)


@dataclass(frozen=True)
class ComparisonResult:
    block_number: int
    ledger_value: int
    chain_value: int
    classification: Classification
    reused: bool = False

    @property
    def difference(self) -> int:
        return self.ledger_value - self.chain_value


@dataclass
class EntityResult:
    check: str
    network: str
    key: Optional[EntityKey]
    status: EntityStatus
    comparisons: List[ComparisonResult] = field(default_factory=list)
    partial_coverage: bool = False
    detail: str = ""


@dataclass(frozen=True)
class ChunkGap:
    from_block: int
    to_block: int
    attempts: int
    error: str
    error_type: str = ""


@dataclass
class ChainBatch:
    from_block: int
    to_block: int
    events: List[ChainEvent] = field(default_factory=list)
    gaps: List[ChunkGap] = field(default_factory=list)
    completed_through: int = 0
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.gaps and not self.cancelled and self.completed_through >= self.to_block


def dedupe_highest(observations: Iterable[Observation]) -> List[Observation]:
    """Reduce to one observation per block (highest value wins), newest block first."""
    best: Dict[int, int] = {}
    for block_number, value in observations:
        block_number = int(block_number)
        value = int(value)
        if block_number not in best or value > best[block_number]:
            best[block_number] = value
    return [Observation(b, best[b]) for b in sorted(best, reverse=True)]


def latest(series: List[Observation]) -> Optional[Observation]:
    reduced = dedupe_highest(series)
    return reduced[0] if reduced else None
