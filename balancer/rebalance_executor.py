from __future__ import annotations

import queue
import random
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from balancer.balance_analyzer import collect_image_metadata
from balancer.balance_settings import get_balance_settings
from balancer.balance_types import (
    PLAYER_CATEGORIES,
    DatasetSplit,
    ImageMetadata,
    split_images_dir,
    split_labels_dir,
)
from balancer.common import ensure_directory
from balancer.file_ops import FileOpError, move_file
from balancer.log import info, success, warning
from balancer.progress import RebalanceCancelled, RebalanceComplete, RebalanceError, RebalanceProgress
from balancer.rebalance_types import (
    GlobalRebalancePlan,
    MoveAction,
    MoveResult,
    RebalancePlan,
    SelectionStrategy,
)
from balancer.selection import order_pool, select_images


def _emit(progress: Optional[queue.Queue], message: object) -> None:
    if progress is not None:
        progress.put(message)


def _move_one(action: MoveAction, images_dir: Path, labels_dir: Path) -> MoveResult:
    new_image_path = images_dir / action.image_path.name
    try:
        move_file(action.image_path, new_image_path)
    except FileOpError as exc:
        return MoveResult(action=action, success=False, error=str(exc))

    if action.label_path is None or not action.label_path.exists():
        return MoveResult(action=action, success=True, new_image_path=new_image_path)

    new_label_path = labels_dir / action.label_path.name
    try:
        move_file(action.label_path, new_label_path)
    except FileOpError as exc:
        warning(
            f"{action.image_path.name} moved to {action.to_split.value} but its label stayed in "
            f"{action.from_split.value}: {exc}"
        )
        return MoveResult(
            action=action,
            success=True,
            error=f"Label not moved: {exc}",
            new_image_path=new_image_path,
            label_error=str(exc),
        )
    return MoveResult(action=action, success=True, new_image_path=new_image_path, new_label_path=new_label_path)


def _execute_actions(
    dataset_root: Path,
    actions: Sequence[MoveAction],
    progress: Optional[queue.Queue],
    cancel: Optional[threading.Event],
    progress_interval: Optional[int],
) -> List[MoveResult]:
    interval = progress_interval or get_balance_settings().progress_interval
    root = Path(dataset_root)

    destinations: Dict[DatasetSplit, tuple] = {}
    for split in {action.to_split for action in actions}:
        try:
            destinations[split] = (
                ensure_directory(split_images_dir(root, split)),
                ensure_directory(split_labels_dir(root, split)),
            )
        except OSError as exc:
            message = f"Failed to create destination directories for {split.value}: {exc}"
            warning(message)
            _emit(progress, RebalanceError(message))
            return []

    results: List[MoveResult] = []
    total = len(actions)
    info(f"Executing {total} moves")

    for idx, action in enumerate(actions):
        if cancel is not None and cancel.is_set():
            warning(f"Rebalance cancelled after {len(results)}/{total} moves")
            _emit(progress, RebalanceCancelled(completed_count=len(results), results=list(results)))
            return results

        images_dir, labels_dir = destinations[action.to_split]
        result = _move_one(action, images_dir, labels_dir)
        if not result.success:
            warning(f"Failed to move {action.image_path.name}: {result.error}")
        results.append(result)

        if (idx + 1) % interval == 0 or idx == total - 1:
            _emit(progress, RebalanceProgress(current=idx + 1, total=total, last_moved=action.image_path.name))

    success_count = sum(1 for result in results if result.success)
    failed_count = len(results) - success_count
    success(f"Rebalance finished: {success_count} moved, {failed_count} failed")
    _emit(progress, RebalanceComplete(success_count=success_count, failed_count=failed_count, results=list(results)))
    return results


def execute_rebalance_plan(
    dataset_root: Path,
    plan: RebalancePlan,
    *,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    progress_interval: Optional[int] = None,
) -> List[MoveResult]:
    """Move every planned image (and its label) to the destination split.

    Failures are recorded per action and never stop the run. Cancellation is
    only observed between actions, so no file is ever left half moved by it.
    """
    return _execute_actions(dataset_root, plan.actions, progress, cancel, progress_interval)


def resolve_global_plan(
    dataset_root: Path,
    plan: GlobalRebalancePlan,
    *,
    selection_strategy: Optional[SelectionStrategy] = None,
    preserve_ct_t_balance: Optional[bool] = None,
    rng: Optional[random.Random] = None,
) -> List[MoveAction]:
    """Turn move groups into concrete actions using the current filesystem.

    A group whose category ran short (the dataset changed since planning) is
    topped up from the other player categories unless CT/T balance is
    preserved.
    """
    settings = get_balance_settings()
    strategy = selection_strategy or settings.selection_strategy
    preserve = settings.preserve_ct_t_balance if preserve_ct_t_balance is None else preserve_ct_t_balance
    rng = rng or random.Random(settings.random_seed)

    pools: Dict[DatasetSplit, List[ImageMetadata]] = {}
    taken: Set[Path] = set()
    actions: List[MoveAction] = []

    for group in plan.moves:
        if group.from_split not in pools:
            pools[group.from_split] = collect_image_metadata(Path(dataset_root), group.from_split)
        pool = [item for item in pools[group.from_split] if item.path not in taken]

        chosen = select_images(strategy, group.category, group.from_split, group.count, pool, rng=rng)
        shortfall = group.count - len(chosen)
        if shortfall > 0 and group.category.is_player and not preserve:
            substitutes = [
                item for item in pool
                if item.category in PLAYER_CATEGORIES and item.category is not group.category
            ]
            chosen.extend(order_pool(strategy, substitutes, rng)[:shortfall])
            shortfall = group.count - len(chosen)
        if shortfall > 0:
            warning(
                f"Only {len(chosen)} of {group.count} {group.category.label} images available in "
                f"{group.from_split.value}"
            )

        for item in chosen:
            taken.add(item.path)
            actions.append(MoveAction(
                image_path=item.path,
                label_path=item.label_path,
                category=item.category,
                from_split=group.from_split,
                to_split=group.to_split,
            ))
    return actions


def execute_global_rebalance_plan(
    dataset_root: Path,
    plan: GlobalRebalancePlan,
    *,
    selection_strategy: Optional[SelectionStrategy] = None,
    preserve_ct_t_balance: Optional[bool] = None,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    rng: Optional[random.Random] = None,
    progress_interval: Optional[int] = None,
) -> List[MoveResult]:
    actions = resolve_global_plan(
        dataset_root,
        plan,
        selection_strategy=selection_strategy,
        preserve_ct_t_balance=preserve_ct_t_balance,
        rng=rng,
    )
    return _execute_actions(dataset_root, actions, progress, cancel, progress_interval)


def _undo_one(result: MoveResult) -> MoveResult:
    action = result.action
    reverse = MoveAction(
        image_path=result.new_image_path or action.image_path,
        label_path=result.new_label_path,
        category=action.category,
        from_split=action.to_split,
        to_split=action.from_split,
    )
    try:
        ensure_directory(action.image_path.parent)
        move_file(reverse.image_path, action.image_path)
    except OSError as exc:
        return MoveResult(action=reverse, success=False, error=str(exc))

    if result.new_label_path is None or action.label_path is None:
        return MoveResult(action=reverse, success=True, new_image_path=action.image_path)

    try:
        ensure_directory(action.label_path.parent)
        move_file(result.new_label_path, action.label_path)
    except OSError as exc:
        warning(f"Restored {action.image_path.name} but not its label: {exc}")
        return MoveResult(
            action=reverse,
            success=True,
            error=f"Label not restored: {exc}",
            new_image_path=action.image_path,
            label_error=str(exc),
        )
    return MoveResult(
        action=reverse,
        success=True,
        new_image_path=action.image_path,
        new_label_path=action.label_path,
    )


def undo_rebalance(
    results: Sequence[MoveResult],
    *,
    progress: Optional[queue.Queue] = None,
    cancel: Optional[threading.Event] = None,
    progress_interval: Optional[int] = None,
) -> List[MoveResult]:
    """Move successfully moved files back where they came from.

    Entries that failed originally are skipped. Errors are recorded and the
    undo continues with the next entry.
    """
    interval = progress_interval or get_balance_settings().progress_interval
    to_undo = [result for result in results if result.success]
    total = len(to_undo)
    undone: List[MoveResult] = []
    info(f"Undoing {total} moves")

    for idx, result in enumerate(to_undo):
        if cancel is not None and cancel.is_set():
            warning(f"Undo cancelled after {len(undone)}/{total} entries")
            _emit(progress, RebalanceCancelled(completed_count=len(undone), results=list(undone)))
            return undone

        outcome = _undo_one(result)
        if not outcome.success:
            warning(f"Failed to restore {result.action.image_path.name}: {outcome.error}")
        undone.append(outcome)

        if (idx + 1) % interval == 0 or idx == total - 1:
            _emit(progress, RebalanceProgress(current=idx + 1, total=total, last_moved=result.action.image_path.name))

    restored = sum(1 for outcome in undone if outcome.success)
    failed = len(undone) - restored
    success(f"Undo finished: {restored} restored, {failed} failed")
    _emit(progress, RebalanceComplete(success_count=restored, failed_count=failed, results=list(undone)))
    return undone


class UndoStore:
    """Holds the results of the last execution until they are undone once."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._results: List[MoveResult] = []

    def record(self, results: Sequence[MoveResult]) -> None:
        with self._lock:
            self._results = list(results)

    @property
    def can_undo(self) -> bool:
        with self._lock:
            return any(result.success for result in self._results)

    @property
    def results(self) -> List[MoveResult]:
        with self._lock:
            return list(self._results)

    def undo(
        self,
        *,
        progress: Optional[queue.Queue] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[MoveResult]:
        with self._lock:
            pending = self._results
            self._results = []
        return undo_rebalance(pending, progress=progress, cancel=cancel)

    def clear(self) -> None:
        with self._lock:
            self._results = []


__all__ = [
    "UndoStore",
    "execute_global_rebalance_plan",
    "execute_rebalance_plan",
    "resolve_global_plan",
    "undo_rebalance",
]
