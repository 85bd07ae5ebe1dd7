from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

from fastapi import FastAPI, HTTPException, Query

from balancer.balance_analyzer import (
    analyze_all_splits,
    analyze_integrity,
    calculate_balance_score,
    classify_balance_status,
    get_recommendations,
)
from balancer.balance_models import (
    AnalyzeRequest,
    DatasetStatsResponse,
    GlobalPlanModel,
    GlobalPlanRequest,
    IntegrityReport,
    PlanRequest,
    RebalancePlanModel,
    SplitStatsModel,
    TaskStatus,
    UndoRequest,
    global_plan_to_model,
    integrity_to_model,
    plan_to_model,
    stats_to_model,
)
from balancer.balance_settings import (
    default_global_config,
    default_rebalance_config,
    effective_target_ratios,
    get_balance_settings,
)
from balancer.balance_types import DatasetSplit
from balancer.log import info, warning
from balancer.rebalance_planner import plan_global_rebalance, plan_split_rebalance, plan_split_sizes
from balancer.rebalance_types import GlobalRebalanceConfig, GlobalRebalancePlan, RebalanceConfig, RebalancePlan
from balancer.tasks import TaskConflictError, TaskManager, TaskNotFoundError, task_manager


def _dataset_root(value: str) -> Path:
    root = Path(value).expanduser()
    if not root.is_dir():
        raise HTTPException(status_code=400, detail={"message": f"Dataset root not found: {value}"})
    return root.resolve()


def _raise_bad_request(exc: ValueError) -> NoReturn:
    warning(f"Rejected request: {exc}")
    raise HTTPException(status_code=400, detail={"message": str(exc)}) from exc


def _raise_conflict(exc: TaskConflictError) -> NoReturn:
    raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc


def _rebalance_config(request: PlanRequest) -> RebalanceConfig:
    return default_rebalance_config(
        target_ratios=request.target_ratios.to_domain() if request.target_ratios else None,
        selection_strategy=request.selection_strategy,
        preserve_ct_t_balance=request.preserve_ct_t_balance,
        source_split=request.source_split,
        destination_split=request.destination_split,
        category=request.category,
        random_seed=request.random_seed,
    )


def _global_config(request: GlobalPlanRequest) -> GlobalRebalanceConfig:
    return default_global_config(
        target_ratios=request.target_ratios.to_domain() if request.target_ratios else None,
        split_ratios=request.split_ratios.to_domain() if request.split_ratios else None,
        ct_t_ratio=request.ct_t_ratio,
        splits=tuple(request.splits) if request.splits else None,
        tolerance=request.tolerance,
        max_iterations=request.max_iterations,
        selection_strategy=request.selection_strategy,
        preserve_ct_t_balance=request.preserve_ct_t_balance,
        random_seed=request.random_seed,
    )


def _build_plan(root: Path, request: PlanRequest) -> RebalancePlan:
    try:
        return plan_split_rebalance(root, _rebalance_config(request))
    except ValueError as exc:
        _raise_bad_request(exc)


def _build_global_plan(root: Path, request: GlobalPlanRequest) -> GlobalRebalancePlan:
    try:
        config = _global_config(request)
        if request.mode == "split_size":
            return plan_split_sizes(root, config)
        return plan_global_rebalance(root, config)
    except ValueError as exc:
        _raise_bad_request(exc)


def create_app(manager: Optional[TaskManager] = None) -> FastAPI:
    tasks = manager or task_manager
    app = FastAPI(
        title="Split Balancer API",
        version="1.0.0",
        description="Balance analysis and split rebalancing for YOLO datasets",
    )

    @app.get("/health")
    def health_check() -> Dict[str, Any]:
        return {"status": "healthy"}

    @app.post("/datasets/analyze", response_model=TaskStatus)
    def start_analysis(request: AnalyzeRequest) -> TaskStatus:
        root = _dataset_root(request.dataset_root)
        try:
            task = tasks.start_analysis(root, request.split)
        except TaskConflictError as exc:
            _raise_conflict(exc)
        return task.to_model(messages=[])

    @app.get("/tasks/{task_id}", response_model=TaskStatus)
    def get_task(task_id: str) -> TaskStatus:
        try:
            return tasks.get(task_id).to_model()
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail={"message": f"Task not found: {task_id}"}) from exc

    @app.post("/tasks/{task_id}/cancel", response_model=TaskStatus)
    def cancel_task(task_id: str) -> TaskStatus:
        try:
            task = tasks.cancel(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail={"message": f"Task not found: {task_id}"}) from exc
        info(f"Cancellation requested for task {task_id}")
        return task.to_model(messages=[])

    @app.get("/datasets/stats", response_model=DatasetStatsResponse)
    def dataset_stats(dataset_root: str = Query(...)) -> DatasetStatsResponse:
        root = _dataset_root(dataset_root)
        settings = get_balance_settings()
        target = effective_target_ratios()
        all_stats = analyze_all_splits(root)
        splits = []
        for split, stats in all_stats.items():
            score = calculate_balance_score(stats, target)
            splits.append(SplitStatsModel(
                split=split,
                stats=stats_to_model(stats),
                balance_score=round(score, 4),
                balance_status=classify_balance_status(score, settings.balance_score_thresholds),
                recommendations=get_recommendations(stats, target),
            ))
        return DatasetStatsResponse(
            dataset_root=str(root),
            splits=splits,
            combined=stats_to_model(all_stats.combined()),
            is_balanced=all_stats.is_balanced(target, settings.tolerance),
        )

    @app.post("/datasets/plan", response_model=RebalancePlanModel)
    def preview_plan(request: PlanRequest) -> RebalancePlanModel:
        root = _dataset_root(request.dataset_root)
        return plan_to_model(_build_plan(root, request))

    @app.post("/datasets/plan/global", response_model=GlobalPlanModel)
    def preview_global_plan(request: GlobalPlanRequest) -> GlobalPlanModel:
        root = _dataset_root(request.dataset_root)
        return global_plan_to_model(_build_global_plan(root, request))

    @app.post("/datasets/rebalance", response_model=TaskStatus)
    def start_rebalance(request: PlanRequest) -> TaskStatus:
        root = _dataset_root(request.dataset_root)
        plan = _build_plan(root, request)
        try:
            task = tasks.start_rebalance(root, plan)
        except TaskConflictError as exc:
            _raise_conflict(exc)
        return task.to_model(messages=[])

    @app.post("/datasets/rebalance/global", response_model=TaskStatus)
    def start_global_rebalance(request: GlobalPlanRequest) -> TaskStatus:
        root = _dataset_root(request.dataset_root)
        plan = _build_global_plan(root, request)
        try:
            task = tasks.start_global_rebalance(
                root,
                plan,
                selection_strategy=request.selection_strategy,
                preserve_ct_t_balance=request.preserve_ct_t_balance,
                random_seed=request.random_seed,
            )
        except TaskConflictError as exc:
            _raise_conflict(exc)
        return task.to_model(messages=[])

    @app.post("/datasets/undo", response_model=TaskStatus)
    def start_undo(request: UndoRequest) -> TaskStatus:
        root = _dataset_root(request.dataset_root)
        try:
            task = tasks.start_undo(root)
        except TaskConflictError as exc:
            _raise_conflict(exc)
        except ValueError as exc:
            _raise_bad_request(exc)
        return task.to_model(messages=[])

    @app.get("/datasets/integrity", response_model=IntegrityReport)
    def integrity_report(
        dataset_root: str = Query(...),
        split: DatasetSplit = Query(DatasetSplit.TRAIN),
        check_resolution: Optional[bool] = Query(None),
    ) -> IntegrityReport:
        root = _dataset_root(dataset_root)
        stats = analyze_integrity(root, split, check_resolution=check_resolution)
        return integrity_to_model(root, split, stats)

    return app


__all__ = ["create_app"]
