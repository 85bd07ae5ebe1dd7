from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from balancer.balance_types import (
    BalanceStats,
    DatasetSplit,
    GlobalBalanceStats,
    ImageCategory,
    IntegrityIssue,
    IntegrityStats,
    SplitRatios,
    TargetRatios,
)
from balancer.rebalance_types import (
    GlobalRebalancePlan,
    MoveAction,
    MoveResult,
    RebalancePlan,
    SelectionStrategy,
)

class TargetRatiosModel(BaseModel):
    player: float = Field(default=0.85, ge=0.0, le=1.0)
    background: float = Field(default=0.10, ge=0.0, le=1.0)
    hard_case: float = Field(default=0.05, ge=0.0, le=1.0)

    def to_domain(self) -> TargetRatios:
        return TargetRatios(player_ratio=self.player, background_ratio=self.background, hardcase_ratio=self.hard_case)

class SplitRatiosModel(BaseModel):
    train: float = Field(default=0.70, ge=0.0, le=1.0)
    val: float = Field(default=0.20, ge=0.0, le=1.0)
    test: float = Field(default=0.10, ge=0.0, le=1.0)

    def to_domain(self) -> SplitRatios:
        return SplitRatios(train=self.train, val=self.val, test=self.test)

class BalanceStatsModel(BaseModel):
    ct_only: int
    t_only: int
    multiple_player: int
    background: int
    hard_case: int
    total_images: int
    total_player_images: int
    percentages: Dict[str, float]

class SplitStatsModel(BaseModel):
    split: DatasetSplit
    stats: BalanceStatsModel
    balance_score: float
    balance_status: str
    recommendations: List[str]

class DatasetStatsResponse(BaseModel):
    dataset_root: str
    splits: List[SplitStatsModel]
    combined: BalanceStatsModel
    is_balanced: bool

class AnalyzeRequest(BaseModel):
    dataset_root: str
    split: DatasetSplit = DatasetSplit.TRAIN

class PlanRequest(BaseModel):
    dataset_root: str
    source_split: DatasetSplit = DatasetSplit.TRAIN
    destination_split: DatasetSplit = DatasetSplit.VAL
    category: ImageCategory = ImageCategory.BACKGROUND
    target_ratios: Optional[TargetRatiosModel] = None
    selection_strategy: Optional[SelectionStrategy] = None
    preserve_ct_t_balance: Optional[bool] = None
    random_seed: Optional[int] = None

class GlobalPlanRequest(BaseModel):
    dataset_root: str
    mode: Literal["category", "split_size"] = "category"
    target_ratios: Optional[TargetRatiosModel] = None
    split_ratios: Optional[SplitRatiosModel] = None
    splits: Optional[List[DatasetSplit]] = None
    ct_t_ratio: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    tolerance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_iterations: Optional[int] = Field(default=None, ge=1)
    selection_strategy: Optional[SelectionStrategy] = None
    preserve_ct_t_balance: Optional[bool] = None
    random_seed: Optional[int] = None

class UndoRequest(BaseModel):
    dataset_root: str

class MoveActionModel(BaseModel):
    image_path: str
    label_path: Optional[str]
    category: ImageCategory
    from_split: DatasetSplit
    to_split: DatasetSplit

class MoveResultModel(BaseModel):
    action: MoveActionModel
    success: bool
    error: Optional[str] = None
    new_image_path: Optional[str] = None
    new_label_path: Optional[str] = None
    label_error: Optional[str] = None

class RebalancePlanModel(BaseModel):
    category: Optional[ImageCategory]
    from_split: Optional[DatasetSplit]
    to_split: Optional[DatasetSplit]
    count_to_move: int
    actions: List[MoveActionModel]
    current_stats: Optional[BalanceStatsModel] = None
    projected_stats: Optional[BalanceStatsModel] = None
    destination_stats: Optional[BalanceStatsModel] = None
    destination_projected_stats: Optional[BalanceStatsModel] = None

class GlobalMoveGroupModel(BaseModel):
    from_split: DatasetSplit
    to_split: DatasetSplit
    category: ImageCategory
    count: int

class GlobalPlanModel(BaseModel):
    moves: List[GlobalMoveGroupModel]
    total_moves: int
    iterations_used: int
    current_stats: Dict[str, BalanceStatsModel] = Field(default_factory=dict)
    projected_stats: Dict[str, BalanceStatsModel] = Field(default_factory=dict)

class IntegrityIssueModel(BaseModel):
    issue_type: str
    path: str
    expected_counterpart: Optional[str] = None
    detail: Optional[str] = None

class IntegrityReport(BaseModel):
    dataset_root: str
    split: DatasetSplit
    total_issues: int
    images_without_labels: List[IntegrityIssueModel]
    labels_without_images: List[IntegrityIssueModel]
    resolution_mismatches: List[IntegrityIssueModel]

class TaskMessageModel(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)

class TaskStatus(BaseModel):
    task_id: str
    kind: str
    dataset_root: str
    status: Literal["pending", "running", "success", "cancelled", "error"]
    current: int = 0
    total: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    messages: List[TaskMessageModel] = Field(default_factory=list)
    result: Optional[Any] = None


def _path(value: Optional[Path]) -> Optional[str]:
    return str(value) if value is not None else None


def stats_to_model(stats: BalanceStats) -> BalanceStatsModel:
    return BalanceStatsModel(
        ct_only=stats.ct_only,
        t_only=stats.t_only,
        multiple_player=stats.multiple_player,
        background=stats.background,
        hard_case=stats.hard_case,
        total_images=stats.total_images,
        total_player_images=stats.total_player_images,
        percentages={category.value: round(value, 2) for category, value in stats.percentages().items()},
    )


def global_stats_to_model(stats: Optional[GlobalBalanceStats]) -> Dict[str, BalanceStatsModel]:
    if stats is None:
        return {}
    return {split.value: stats_to_model(split_stats) for split, split_stats in stats.items()}


def action_to_model(action: MoveAction) -> MoveActionModel:
    return MoveActionModel(
        image_path=str(action.image_path),
        label_path=_path(action.label_path),
        category=action.category,
        from_split=action.from_split,
        to_split=action.to_split,
    )


def result_to_model(result: MoveResult) -> MoveResultModel:
    return MoveResultModel(
        action=action_to_model(result.action),
        success=result.success,
        error=result.error,
        new_image_path=_path(result.new_image_path),
        new_label_path=_path(result.new_label_path),
        label_error=result.label_error,
    )


def plan_to_model(plan: RebalancePlan) -> RebalancePlanModel:
    return RebalancePlanModel(
        category=plan.category,
        from_split=plan.from_split,
        to_split=plan.to_split,
        count_to_move=plan.count_to_move,
        actions=[action_to_model(action) for action in plan.actions],
        current_stats=stats_to_model(plan.current_stats) if plan.current_stats else None,
        projected_stats=stats_to_model(plan.projected_stats) if plan.projected_stats else None,
        destination_stats=stats_to_model(plan.destination_stats) if plan.destination_stats else None,
        destination_projected_stats=(
            stats_to_model(plan.destination_projected_stats) if plan.destination_projected_stats else None
        ),
    )


def global_plan_to_model(plan: GlobalRebalancePlan) -> GlobalPlanModel:
    return GlobalPlanModel(
        moves=[
            GlobalMoveGroupModel(
                from_split=group.from_split,
                to_split=group.to_split,
                category=group.category,
                count=group.count,
            )
            for group in plan.moves
        ],
        total_moves=plan.total_moves,
        iterations_used=plan.iterations_used,
        current_stats=global_stats_to_model(plan.current_stats),
        projected_stats=global_stats_to_model(plan.projected_stats),
    )


def issue_to_model(issue: IntegrityIssue) -> IntegrityIssueModel:
    return IntegrityIssueModel(
        issue_type=issue.issue_type.value,
        path=str(issue.path),
        expected_counterpart=_path(issue.expected_counterpart),
        detail=issue.detail,
    )


def integrity_to_model(dataset_root: Path, split: DatasetSplit, stats: IntegrityStats) -> IntegrityReport:
    return IntegrityReport(
        dataset_root=str(dataset_root),
        split=split,
        total_issues=stats.total_issues,
        images_without_labels=[issue_to_model(issue) for issue in stats.images_without_labels],
        labels_without_images=[issue_to_model(issue) for issue in stats.labels_without_images],
        resolution_mismatches=[issue_to_model(issue) for issue in stats.resolution_mismatches],
    )


def result_to_payload(value: Any) -> Any:
    """JSON-friendly rendering of a task result or message field."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, BalanceStats):
        return stats_to_model(value).model_dump(mode="json")
    if isinstance(value, MoveResult):
        return result_to_model(value).model_dump(mode="json")
    if isinstance(value, IntegrityIssue):
        return issue_to_model(value).model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [result_to_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): result_to_payload(item) for key, item in value.items()}
    if is_dataclass(value):
        return {item.name: result_to_payload(getattr(value, item.name)) for item in fields(value)}
    return str(value)


def message_to_model(message: Any) -> TaskMessageModel:
    payload = result_to_payload(message)
    return TaskMessageModel(type=type(message).__name__, payload=payload if isinstance(payload, dict) else {})


__all__ = [
    "AnalyzeRequest",
    "BalanceStatsModel",
    "DatasetStatsResponse",
    "GlobalPlanModel",
    "GlobalPlanRequest",
    "IntegrityReport",
    "MoveResultModel",
    "PlanRequest",
    "RebalancePlanModel",
    "SplitStatsModel",
    "TargetRatiosModel",
    "TaskMessageModel",
    "TaskStatus",
    "UndoRequest",
    "global_plan_to_model",
    "integrity_to_model",
    "message_to_model",
    "plan_to_model",
    "result_to_model",
    "result_to_payload",
    "stats_to_model",
]
