"""Summary, failure rate and CSV export for a reconciliation run."""

import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO, Tuple

import pandas as pd

from stakerecon.models import EntityResult, EntityStatus

CSV_COLUMNS = [
    "network",
    "check",
    "node_id",
    "delegator_key",
    "status",
    "block_number",
    "ledger_value",
    "chain_value",
    "difference",
    "classification",
    "reused",
    "partial_coverage",
    "detail",
]


@dataclass
class CheckSummary:
    network: str
    check: str
    counts: Dict[EntityStatus, int] = field(default_factory=lambda: {status: 0 for status in EntityStatus})
    partial_coverage: int = 0
    reused: int = 0
    mismatches: List[EntityResult] = field(default_factory=list)
    errors: List[EntityResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def add(self, result: EntityResult) -> None:
        self.counts[result.status] += 1
        if result.partial_coverage:
            self.partial_coverage += 1
        self.reused += sum(1 for c in result.comparisons if c.reused)
        if result.status is EntityStatus.MISMATCH:
            self.mismatches.append(result)
        elif result.status is EntityStatus.ERROR:
            self.errors.append(result)


def summarize(results: Iterable[EntityResult]) -> "OrderedDict[Tuple[str, str], CheckSummary]":
    summary: "OrderedDict[Tuple[str, str], CheckSummary]" = OrderedDict()
    for result in results:
        key = (result.network, result.check)
        if key not in summary:
            summary[key] = CheckSummary(network=result.network, check=result.check)
        summary[key].add(result)
    return summary


def error_count(summaries: Iterable[CheckSummary]) -> int:
    return sum(item.counts[EntityStatus.ERROR] for item in summaries)


def failure_rate(summaries: Iterable[CheckSummary]) -> float:
    """Percentage of validated entities that mismatched.

    Skipped and errored entities were never compared, so neither counts as
    validated.
    """
    total = skipped = errors = mismatched = 0
    for item in summaries:
        total += item.total
        skipped += item.counts[EntityStatus.SKIPPED]
        errors += item.counts[EntityStatus.ERROR]
        mismatched += item.counts[EntityStatus.MISMATCH]
    validated = total - skipped - errors
    if validated <= 0:
        return 0.0
    return mismatched / validated * 100


def exit_status(summaries: Iterable[CheckSummary], threshold: float) -> int:
    """1 when any check errored or the mismatch rate exceeds ``threshold``."""
    summaries = list(summaries)
    if error_count(summaries):
        return 1
    return 1 if failure_rate(summaries) > threshold else 0


def _entity_label(result: EntityResult) -> str:
    return result.key.label() if result.key is not None else result.check


def print_summary(
    summary: "OrderedDict[Tuple[str, str], CheckSummary]",
    threshold: float,
    out: Optional[TextIO] = None,
) -> None:
    out = out or sys.stdout
    rate = failure_rate(summary.values())
    print("\n" + "=" * 72, file=out)
    print("RECONCILIATION SUMMARY", file=out)
    print("=" * 72, file=out)
    for (network, check), item in summary.items():
        counts = item.counts
        print(
            f"[{network}] {check}: {item.total} checked | "
            f"match {counts[EntityStatus.MATCH]} | "
            f"within tolerance {counts[EntityStatus.WITHIN_TOLERANCE]} | "
            f"mismatch {counts[EntityStatus.MISMATCH]} | "
            f"skipped {counts[EntityStatus.SKIPPED]} | "
            f"error {counts[EntityStatus.ERROR]}",
            file=out,
        )
        if item.partial_coverage:
            print(f"    {item.partial_coverage} results computed on partial chain coverage", file=out)
        if item.reused:
            print(f"    {item.reused} comparisons already accepted in a previous run", file=out)
        for result in item.mismatches:
            for comparison in result.comparisons:
                if comparison.classification.acceptable:
                    continue
                print(
                    f"    MISMATCH {_entity_label(result)} @ {comparison.block_number}: "
                    f"ledger {comparison.ledger_value} chain {comparison.chain_value} "
                    f"diff {comparison.difference}",
                    file=out,
                )
        for result in item.errors:
            print(f"    ERROR {_entity_label(result)}: {result.detail}", file=out)
    print("-" * 72, file=out)
    errors = error_count(summary.values())
    verdict = "FAIL" if exit_status(summary.values(), threshold) else "PASS"
    print(f"Failure rate {rate:.2f}% (threshold {threshold:.2f}%), {errors} errors: {verdict}", file=out)


def to_frame(results: Iterable[EntityResult]) -> pd.DataFrame:
    rows = []
    for result in results:
        base = {
            "network": result.network,
            "check": result.check,
            "node_id": result.key.node_id if result.key is not None else None,
            "delegator_key": result.key.delegator_key if result.key is not None else None,
            "status": result.status.value,
            "partial_coverage": result.partial_coverage,
            "detail": result.detail,
        }
        if not result.comparisons:
            rows.append(dict(base))
            continue
        for comparison in result.comparisons:
            row = dict(base)
            row.update(
                {
                    "block_number": comparison.block_number,
                    # uint96 values overflow int64
                    "ledger_value": str(comparison.ledger_value),
                    "chain_value": str(comparison.chain_value),
                    "difference": str(comparison.difference),
                    "classification": comparison.classification.value,
                    "reused": comparison.reused,
                }
            )
            rows.append(row)
    return pd.DataFrame(rows, columns=CSV_COLUMNS)


def write_csv(results: Iterable[EntityResult], path: str) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    to_frame(results).to_csv(out, index=False)
    return out
