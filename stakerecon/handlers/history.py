"""Digests of comparisons that were already found acceptable."""

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable, Set

from stakerecon.models import ComparisonResult, EntityKey, EntityResult
from stakerecon.utils.files import write_json_atomic

logger = logging.getLogger(__name__)


def comparison_digest(network: str, key: EntityKey, comparison: ComparisonResult) -> str:
    parts = [
        network.lower(),
        str(key.node_id),
        key.delegator_key or "",
        str(comparison.block_number),
        str(comparison.ledger_value),
        str(comparison.chain_value),
    ]
    return hashlib.sha256("|".join(parts).encode()).hexdigest()


class ComparisonHistory:
    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._digests: Set[str] = set()
        self._dirty = False

    def __len__(self) -> int:
        return len(self._digests)

    def load(self) -> "ComparisonHistory":
        if self.path.exists():
            try:
                doc = json.loads(self.path.read_text())
            except ValueError as exc:
                raise ValueError(f"{self.path}: not valid JSON: {exc}") from exc
            self._digests = set(doc.get("digests", []))
            logger.info("Loaded %d accepted comparisons from %s", len(self._digests), self.path)
        return self

    def contains(self, network: str, key: EntityKey, comparison: ComparisonResult) -> bool:
        return comparison_digest(network, key, comparison) in self._digests

    def record(self, results: Iterable[EntityResult]) -> int:
        """Remember every acceptable comparison. Mismatches are never stored."""
        added = 0
        for result in results:
            if result.key is None:
                continue
            for comparison in result.comparisons:
                if not comparison.classification.acceptable:
                    continue
                digest = comparison_digest(result.network, result.key, comparison)
                if digest not in self._digests:
                    self._digests.add(digest)
                    added += 1
        self._dirty = self._dirty or added > 0
        return added

    def save(self) -> None:
        if not self._dirty:
            return
        write_json_atomic(self.path, {"digests": sorted(self._digests)})
        self._dirty = False
        logger.info("Saved %d accepted comparisons to %s", len(self._digests), self.path)
