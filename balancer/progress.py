"""Messages streamed by background analysis and rebalance workers.

Each operation has a single producer, so messages of one operation arrive in
emission order. Exactly one terminal message ends every stream.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Union

from balancer.balance_types import BalanceStats, IntegrityStats
from balancer.rebalance_types import MoveResult


@dataclass(frozen=True)
class AnalysisProgress:
    current: int
    total: int
    stats: BalanceStats


@dataclass(frozen=True)
class AnalysisComplete:
    stats: BalanceStats


@dataclass(frozen=True)
class AnalysisCancelled:
    stats: BalanceStats


@dataclass(frozen=True)
class RebalanceProgress:
    current: int
    total: int
    last_moved: str


@dataclass(frozen=True)
class RebalanceComplete:
    success_count: int
    failed_count: int
    results: List[MoveResult] = field(default_factory=list)


@dataclass(frozen=True)
class RebalanceCancelled:
    completed_count: int
    results: List[MoveResult] = field(default_factory=list)


@dataclass(frozen=True)
class RebalanceError:
    message: str


@dataclass(frozen=True)
class IntegrityProgress:
    current: int
    total: int
    stats: IntegrityStats


@dataclass(frozen=True)
class IntegrityComplete:
    stats: IntegrityStats


@dataclass(frozen=True)
class IntegrityCancelled:
    stats: IntegrityStats


BalanceProgressMessage = Union[AnalysisProgress, AnalysisComplete, AnalysisCancelled]
RebalanceProgressMessage = Union[RebalanceProgress, RebalanceComplete, RebalanceCancelled, RebalanceError]
IntegrityProgressMessage = Union[IntegrityProgress, IntegrityComplete, IntegrityCancelled]

TERMINAL_MESSAGES = (
    AnalysisComplete,
    AnalysisCancelled,
    RebalanceComplete,
    RebalanceCancelled,
    RebalanceError,
    IntegrityComplete,
    IntegrityCancelled,
)


def is_terminal(message: object) -> bool:
    return isinstance(message, TERMINAL_MESSAGES)


__all__ = [
    "AnalysisCancelled",
    "AnalysisComplete",
    "AnalysisProgress",
    "BalanceProgressMessage",
    "IntegrityCancelled",
    "IntegrityComplete",
    "IntegrityProgress",
    "IntegrityProgressMessage",
    "RebalanceCancelled",
    "RebalanceComplete",
    "RebalanceError",
    "RebalanceProgress",
    "RebalanceProgressMessage",
    "TERMINAL_MESSAGES",
    "is_terminal",
]
