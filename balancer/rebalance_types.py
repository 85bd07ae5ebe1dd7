from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

from balancer.balance_types import (
    BalanceStats,
    DatasetSplit,
    GlobalBalanceStats,
    ImageCategory,
    SplitRatios,
    TargetRatios,
)


class SelectionStrategy(str, Enum):
    RANDOM = "random"
    FEWEST_DETECTIONS = "fewest_detections"
    OLDEST_FIRST = "oldest_first"
    NEWEST_FIRST = "newest_first"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value: "str | SelectionStrategy | None", fallback: "SelectionStrategy") -> "SelectionStrategy":
        if isinstance(value, SelectionStrategy):
            return value
        if not value:
            return fallback
        normalized = str(value).strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return fallback


@dataclass(frozen=True)
class MoveAction:
    image_path: Path
    label_path: Optional[Path]
    category: ImageCategory
    from_split: DatasetSplit
    to_split: DatasetSplit


@dataclass(frozen=True)
class MoveResult:
    """Outcome of one executed (or undone) :class:`MoveAction`.

    ``success`` refers to the image file. A label that could not follow its
    image leaves ``success`` true and records ``label_error``; in that case the
    image and its label live in different splits until fixed by hand.
    """

    action: MoveAction
    success: bool
    error: Optional[str] = None
    new_image_path: Optional[Path] = None
    new_label_path: Optional[Path] = None
    label_error: Optional[str] = None

    @property
    def label_mismatch(self) -> bool:
        return self.success and self.label_error is not None


@dataclass
class RebalancePlan:
    actions: List[MoveAction] = field(default_factory=list)
    category: Optional[ImageCategory] = None
    from_split: Optional[DatasetSplit] = None
    to_split: Optional[DatasetSplit] = None
    count_to_move: int = 0
    current_stats: Optional[BalanceStats] = None
    projected_stats: Optional[BalanceStats] = None
    destination_stats: Optional[BalanceStats] = None
    destination_projected_stats: Optional[BalanceStats] = None

    def is_empty(self) -> bool:
        return not self.actions

    def __len__(self) -> int:
        return len(self.actions)


@dataclass(frozen=True)
class GlobalMoveGroup:
    """``count`` images of ``category`` move from one split to another.

    Individual files are chosen by the selector when the group is executed.
    """

    from_split: DatasetSplit
    to_split: DatasetSplit
    category: ImageCategory
    count: int


@dataclass
class GlobalRebalancePlan:
    moves: List[GlobalMoveGroup] = field(default_factory=list)
    current_stats: Optional[GlobalBalanceStats] = None
    projected_stats: Optional[GlobalBalanceStats] = None
    iterations_used: int = 0

    @property
    def total_moves(self) -> int:
        return sum(group.count for group in self.moves)

    def is_empty(self) -> bool:
        return self.total_moves == 0

    def add(self, from_split: DatasetSplit, to_split: DatasetSplit, category: ImageCategory, count: int) -> None:
        """Aggregate ``count`` into the (from, to, category) group."""
        if count <= 0:
            return
        for idx, group in enumerate(self.moves):
            if (group.from_split, group.to_split, group.category) == (from_split, to_split, category):
                self.moves[idx] = GlobalMoveGroup(from_split, to_split, category, group.count + count)
                return
        self.moves.append(GlobalMoveGroup(from_split, to_split, category, count))


@dataclass(frozen=True)
class RebalanceConfig:
    target_ratios: TargetRatios = field(default_factory=TargetRatios)
    selection_strategy: SelectionStrategy = SelectionStrategy.RANDOM
    preserve_ct_t_balance: bool = True
    source_split: DatasetSplit = DatasetSplit.TRAIN
    destination_split: DatasetSplit = DatasetSplit.VAL
    category: ImageCategory = ImageCategory.BACKGROUND
    random_seed: Optional[int] = None


@dataclass(frozen=True)
class GlobalRebalanceConfig:
    target_ratios: TargetRatios = field(default_factory=TargetRatios)
    selection_strategy: SelectionStrategy = SelectionStrategy.RANDOM
    preserve_ct_t_balance: bool = True
    splits: Tuple[DatasetSplit, ...] = DatasetSplit.ordered()
    tolerance: float = 0.02
    max_iterations: int = 50
    split_ratios: SplitRatios = field(default_factory=SplitRatios)
    # wanted CT share of CT-only + T-only images, used by split-size balancing
    ct_t_ratio: float = 0.5
    random_seed: Optional[int] = None

    @property
    def split_set(self) -> FrozenSet[DatasetSplit]:
        return frozenset(self.splits)


__all__ = [
    "GlobalMoveGroup",
    "GlobalRebalanceConfig",
    "GlobalRebalancePlan",
    "MoveAction",
    "MoveResult",
    "RebalanceConfig",
    "RebalancePlan",
    "SelectionStrategy",
]
