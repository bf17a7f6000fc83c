"""Aggregation strategies: pure functions from a verdict set to a decision.

Nothing here depends on arrival order; the engine feeds whatever it has
accumulated and the outcome only depends on the set of records.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol

from ..types import Decision, DecisionReason, RebuilderConfig, Verdict, VerdictRecord

DEFAULT_STRATEGY = "any-mismatch-denies"


@dataclass(frozen=True)
class Tally:
    confirming_groups: frozenset[str] = frozenset()
    mismatching_groups: frozenset[str] = frozenset()
    confirming_rebuilders: tuple[str, ...] = ()
    mismatching_rebuilders: tuple[str, ...] = ()


def tally(records: Iterable[VerdictRecord], rebuilders: Mapping[str, RebuilderConfig]) -> Tally:
    confirming: set[str] = set()
    mismatching: set[str] = set()
    confirm_ids: set[str] = set()
    mismatch_ids: set[str] = set()
    for record in records:
        rebuilder = rebuilders.get(record.rebuilder_id)
        if rebuilder is None:
            continue
        if record.verdict is Verdict.REPRODUCED:
            confirming.update(rebuilder.groups)
            confirm_ids.add(record.rebuilder_id)
        elif record.verdict is Verdict.UNREPRODUCED:
            mismatching.update(rebuilder.groups)
            mismatch_ids.add(record.rebuilder_id)
    return Tally(
        confirming_groups=frozenset(confirming),
        mismatching_groups=frozenset(mismatching),
        confirming_rebuilders=tuple(sorted(confirm_ids)),
        mismatching_rebuilders=tuple(sorted(mismatch_ids)),
    )


Outcome = tuple[Decision, DecisionReason]


class AggregationStrategy(Protocol):
    name: str

    def final(self, counts: Tally, threshold: int) -> Outcome: ...

    def early(self, counts: Tally, threshold: int, pending_groups: frozenset[str]) -> Outcome | None: ...


class AnyMismatchDenies:
    """A single credible Unreproduced verdict outweighs any number of confirmations."""

    name = "any-mismatch-denies"

    def final(self, counts: Tally, threshold: int) -> Outcome:
        if counts.mismatching_rebuilders:
            return Decision.DENY, DecisionReason.EXPLICIT_MISMATCH
        if len(counts.confirming_groups) >= threshold:
            return Decision.ALLOW, DecisionReason.THRESHOLD_MET
        return Decision.DENY, DecisionReason.INSUFFICIENT_EVIDENCE

    def early(self, counts: Tally, threshold: int, pending_groups: frozenset[str]) -> Outcome | None:
        if counts.mismatching_rebuilders:
            return Decision.DENY, DecisionReason.EXPLICIT_MISMATCH
        if len(counts.confirming_groups) >= threshold:
            return Decision.ALLOW, DecisionReason.THRESHOLD_MET
        return None


class MajorityWins:
    """Allow when enough groups confirm and confirming groups outnumber mismatching ones."""

    name = "majority-wins"

    def final(self, counts: Tally, threshold: int) -> Outcome:
        confirmed = len(counts.confirming_groups)
        if confirmed >= threshold and confirmed > len(counts.mismatching_groups):
            return Decision.ALLOW, DecisionReason.THRESHOLD_MET
        if counts.mismatching_groups:
            return Decision.DENY, DecisionReason.EXPLICIT_MISMATCH
        return Decision.DENY, DecisionReason.INSUFFICIENT_EVIDENCE

    def early(self, counts: Tally, threshold: int, pending_groups: frozenset[str]) -> Outcome | None:
        best_confirm = len(counts.confirming_groups | pending_groups)
        worst_mismatch = len(counts.mismatching_groups | pending_groups)
        confirmed = len(counts.confirming_groups)
        if confirmed >= threshold and confirmed > worst_mismatch:
            return Decision.ALLOW, DecisionReason.THRESHOLD_MET
        if best_confirm < threshold or best_confirm <= len(counts.mismatching_groups):
            return self.final(counts, threshold)
        return None


STRATEGIES: dict[str, AggregationStrategy] = {
    AnyMismatchDenies.name: AnyMismatchDenies(),
    MajorityWins.name: MajorityWins(),
}


def get_strategy(name: str) -> AggregationStrategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(f"unknown aggregation strategy: {name!r}") from None
