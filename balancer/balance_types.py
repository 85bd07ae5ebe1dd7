"""Category, split, statistics and ratio types for balance analysis.

Every type here is an immutable value: statistics snapshots are replaced, never
mutated, so planners can reason about hypothetical moves without touching the
filesystem.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

RATIO_SUM_TOLERANCE = 0.01


class InvalidRatiosError(ValueError):
    pass


class DatasetSplit(str, Enum):
    TRAIN = "train"
    VAL = "val"
    TEST = "test"

    @classmethod
    def ordered(cls) -> Tuple["DatasetSplit", ...]:
        return (cls.TRAIN, cls.VAL, cls.TEST)

    @property
    def order(self) -> int:
        return DatasetSplit.ordered().index(self)


class CategoryGroup(str, Enum):
    PLAYER = "player"
    BACKGROUND = "background"
    HARD_CASE = "hard_case"

    @classmethod
    def ordered(cls) -> Tuple["CategoryGroup", ...]:
        return (cls.PLAYER, cls.BACKGROUND, cls.HARD_CASE)


class ImageCategory(str, Enum):
    CT_ONLY = "ct_only"
    T_ONLY = "t_only"
    MULTIPLE_PLAYER = "multiple_player"
    BACKGROUND = "background"
    HARD_CASE = "hard_case"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]

    @property
    def group(self) -> CategoryGroup:
        if self in PLAYER_CATEGORIES:
            return CategoryGroup.PLAYER
        if self is ImageCategory.BACKGROUND:
            return CategoryGroup.BACKGROUND
        return CategoryGroup.HARD_CASE

    @property
    def is_player(self) -> bool:
        return self in PLAYER_CATEGORIES

    @classmethod
    def ordered(cls) -> Tuple["ImageCategory", ...]:
        return (cls.CT_ONLY, cls.T_ONLY, cls.MULTIPLE_PLAYER, cls.BACKGROUND, cls.HARD_CASE)


_CATEGORY_LABELS = {
    ImageCategory.CT_ONLY: "CT Only",
    ImageCategory.T_ONLY: "T Only",
    ImageCategory.MULTIPLE_PLAYER: "Multiple Players",
    ImageCategory.BACKGROUND: "Background",
    ImageCategory.HARD_CASE: "Hard Case",
}

PLAYER_CATEGORIES: Tuple[ImageCategory, ...] = (
    ImageCategory.CT_ONLY,
    ImageCategory.T_ONLY,
    ImageCategory.MULTIPLE_PLAYER,
)


def categories_in_group(group: CategoryGroup) -> Tuple[ImageCategory, ...]:
    if group is CategoryGroup.PLAYER:
        return PLAYER_CATEGORIES
    if group is CategoryGroup.BACKGROUND:
        return (ImageCategory.BACKGROUND,)
    return (ImageCategory.HARD_CASE,)


@dataclass(frozen=True)
class ClassMap:
    """Canonical class-id assignment: which YOLO class id is which team."""

    t: int = 0
    ct: int = 1

    def __post_init__(self) -> None:
        if self.t == self.ct:
            raise ValueError(f"T and CT must use different class ids (both are {self.t})")


@dataclass(frozen=True)
class HardCaseRule:
    """Named thresholds that promote an annotated image to the hard-case bucket.

    ``min_overlapping_pairs`` counts box pairs with IoU >= ``overlap_iou``;
    ``min_box_area`` flags any box whose normalized area is smaller. A zero
    value disables the respective check.
    """

    min_overlapping_pairs: int = 0
    overlap_iou: float = 0.5
    min_box_area: float = 0.0

    @property
    def enabled(self) -> bool:
        return self.min_overlapping_pairs > 0 or self.min_box_area > 0


@dataclass(frozen=True)
class BalanceStats:
    ct_only: int = 0
    t_only: int = 0
    multiple_player: int = 0
    background: int = 0
    hard_case: int = 0

    @property
    def total_images(self) -> int:
        return self.ct_only + self.t_only + self.multiple_player + self.background + self.hard_case

    @property
    def total_player_images(self) -> int:
        return self.ct_only + self.t_only + self.multiple_player

    def get_count(self, category: ImageCategory) -> int:
        return getattr(self, category.value)

    def group_count(self, group: CategoryGroup) -> int:
        return sum(self.get_count(category) for category in categories_in_group(group))

    def get_percentage(self, category: ImageCategory) -> float:
        total = self.total_images
        if total == 0:
            return 0.0
        return self.get_count(category) / total * 100.0

    def group_fraction(self, group: CategoryGroup) -> float:
        total = self.total_images
        if total == 0:
            return 0.0
        return self.group_count(group) / total

    def player_percentage(self) -> float:
        return self.group_fraction(CategoryGroup.PLAYER) * 100.0

    def percentages(self) -> Dict[ImageCategory, float]:
        return {category: self.get_percentage(category) for category in ImageCategory.ordered()}

    def with_delta(self, category: ImageCategory, delta: int) -> "BalanceStats":
        """Return a copy with ``delta`` added to one category, clamped at zero."""
        current = self.get_count(category)
        return replace(self, **{category.value: max(0, current + delta)})

    def merged(self, other: "BalanceStats") -> "BalanceStats":
        return BalanceStats(
            ct_only=self.ct_only + other.ct_only,
            t_only=self.t_only + other.t_only,
            multiple_player=self.multiple_player + other.multiple_player,
            background=self.background + other.background,
            hard_case=self.hard_case + other.hard_case,
        )

    @classmethod
    def from_counts(cls, counts: Dict[ImageCategory, int]) -> "BalanceStats":
        return cls(**{category.value: int(counts.get(category, 0)) for category in ImageCategory.ordered()})

    @classmethod
    def from_categories(cls, categories: Iterable[ImageCategory]) -> "BalanceStats":
        counts: Dict[ImageCategory, int] = {}
        for category in categories:
            counts[category] = counts.get(category, 0) + 1
        return cls.from_counts(counts)


@dataclass(frozen=True)
class TargetRatios:
    """Desired fraction of a split's images per category group.

    Not validated at construction; consumers call :meth:`validate`.
    """

    player_ratio: float = 0.85
    background_ratio: float = 0.10
    hardcase_ratio: float = 0.05

    def ratio_for_group(self, group: CategoryGroup) -> float:
        if group is CategoryGroup.PLAYER:
            return self.player_ratio
        if group is CategoryGroup.BACKGROUND:
            return self.background_ratio
        return self.hardcase_ratio

    def ratio_for(self, category: ImageCategory) -> float:
        return self.ratio_for_group(category.group)

    def without_hard_case(self) -> "TargetRatios":
        """Fold the hard-case share into players.

        Hard cases are annotated images singled out by a rule; with no rule
        active they stay in the player group, so its target absorbs theirs.
        """
        return TargetRatios(
            player_ratio=round(self.player_ratio + self.hardcase_ratio, 6),
            background_ratio=self.background_ratio,
            hardcase_ratio=0.0,
        )

    def validate(self) -> "TargetRatios":
        values = (self.player_ratio, self.background_ratio, self.hardcase_ratio)
        for value in values:
            if not 0.0 <= value <= 1.0:
                raise InvalidRatiosError(f"Target ratio {value} is outside [0, 1]")
        total = sum(values)
        if abs(total - 1.0) > RATIO_SUM_TOLERANCE:
            raise InvalidRatiosError(f"Target ratios sum to {total:.3f}, expected 1.0")
        return self


@dataclass(frozen=True)
class SplitRatios:
    train: float = 0.70
    val: float = 0.20
    test: float = 0.10

    def get(self, split: DatasetSplit) -> float:
        return getattr(self, split.value)

    def validate(self) -> "SplitRatios":
        values = (self.train, self.val, self.test)
        for value in values:
            if not 0.0 <= value <= 1.0:
                raise InvalidRatiosError(f"Split ratio {value} is outside [0, 1]")
        total = sum(values)
        if abs(total - 1.0) > RATIO_SUM_TOLERANCE:
            raise InvalidRatiosError(f"Split ratios sum to {total:.3f}, expected 1.0")
        return self


@dataclass(frozen=True)
class GlobalBalanceStats:
    train: BalanceStats = field(default_factory=BalanceStats)
    val: BalanceStats = field(default_factory=BalanceStats)
    test: BalanceStats = field(default_factory=BalanceStats)

    def get(self, split: DatasetSplit) -> BalanceStats:
        return getattr(self, split.value)

    def with_split(self, split: DatasetSplit, stats: BalanceStats) -> "GlobalBalanceStats":
        return replace(self, **{split.value: stats})

    def with_move(
        self,
        from_split: DatasetSplit,
        to_split: DatasetSplit,
        category: ImageCategory,
        count: int,
    ) -> "GlobalBalanceStats":
        """Hypothetically move ``count`` images of ``category`` between splits."""
        moved = min(count, self.get(from_split).get_count(category))
        return (
            self.with_split(from_split, self.get(from_split).with_delta(category, -moved))
            .with_split(to_split, self.get(to_split).with_delta(category, moved))
        )

    @property
    def total_images(self) -> int:
        return sum(self.get(split).total_images for split in DatasetSplit.ordered())

    def combined(self) -> BalanceStats:
        result = BalanceStats()
        for split in DatasetSplit.ordered():
            result = result.merged(self.get(split))
        return result

    def items(self) -> Iterator[Tuple[DatasetSplit, BalanceStats]]:
        for split in DatasetSplit.ordered():
            yield split, self.get(split)

    def is_balanced(
        self,
        target: TargetRatios,
        tolerance: float,
        splits: Optional[Iterable[DatasetSplit]] = None,
    ) -> bool:
        for split in splits or DatasetSplit.ordered():
            stats = self.get(split)
            if stats.total_images == 0:
                continue
            for group in CategoryGroup.ordered():
                if abs(stats.group_fraction(group) - target.ratio_for_group(group)) > tolerance:
                    return False
        return True


@dataclass(frozen=True)
class ImageMetadata:
    """Planning snapshot of one image. Stale as soon as the filesystem changes."""

    path: Path
    category: ImageCategory
    split: DatasetSplit
    label_path: Optional[Path] = None
    detection_count: Optional[int] = None
    timestamp: Optional[float] = None

    @property
    def filename(self) -> str:
        return self.path.name


class IntegrityIssueType(str, Enum):
    IMAGE_WITHOUT_LABEL = "image_without_label"
    LABEL_WITHOUT_IMAGE = "label_without_image"
    RESOLUTION_MISMATCH = "resolution_mismatch"


@dataclass(frozen=True)
class IntegrityIssue:
    """One integrity problem. For an orphan label the counterpart is the images
    directory plus the stem, since any configured extension would match."""

    issue_type: IntegrityIssueType
    path: Path
    expected_counterpart: Optional[Path] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class IntegrityStats:
    images_without_labels: Tuple[IntegrityIssue, ...] = ()
    labels_without_images: Tuple[IntegrityIssue, ...] = ()
    resolution_mismatches: Tuple[IntegrityIssue, ...] = ()

    @property
    def total_issues(self) -> int:
        return len(self.images_without_labels) + len(self.labels_without_images) + len(self.resolution_mismatches)

    def has_issues(self) -> bool:
        return self.total_issues > 0

    def all_issues(self) -> List[IntegrityIssue]:
        return [*self.images_without_labels, *self.labels_without_images, *self.resolution_mismatches]


def split_images_dir(dataset_root: Path, split: DatasetSplit) -> Path:
    return Path(dataset_root) / split.value / "images"


def split_labels_dir(dataset_root: Path, split: DatasetSplit) -> Path:
    return Path(dataset_root) / split.value / "labels"


__all__ = [
    "BalanceStats",
    "CategoryGroup",
    "ClassMap",
    "DatasetSplit",
    "GlobalBalanceStats",
    "HardCaseRule",
    "ImageCategory",
    "ImageMetadata",
    "IntegrityIssue",
    "IntegrityIssueType",
    "IntegrityStats",
    "InvalidRatiosError",
    "PLAYER_CATEGORIES",
    "RATIO_SUM_TOLERANCE",
    "SplitRatios",
    "TargetRatios",
    "categories_in_group",
    "split_images_dir",
    "split_labels_dir",
]
