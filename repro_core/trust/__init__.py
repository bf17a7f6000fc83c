"""Trust & threshold decision engine."""

from .policy import (
    DEFAULT_STRATEGY,
    STRATEGIES,
    AggregationStrategy,
    AnyMismatchDenies,
    MajorityWins,
    Tally,
    get_strategy,
    tally,
)

__all__ = [
    "DEFAULT_STRATEGY",
    "STRATEGIES",
    "AggregationStrategy",
    "AnyMismatchDenies",
    "MajorityWins",
    "Tally",
    "get_strategy",
    "tally",
]
