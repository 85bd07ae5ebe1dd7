import threading

import pytest

from balancer.balance_types import BalanceStats, DatasetSplit, ImageCategory
from balancer.progress import AnalysisCancelled, AnalysisComplete, AnalysisProgress
from balancer.rebalance_planner import plan_split_rebalance
from balancer.rebalance_types import RebalanceConfig
from balancer.tasks import TaskConflictError, TaskManager, TaskNotFoundError

TIMEOUT = 10


@pytest.fixture
def manager():
    return TaskManager()


def _blocking_target(release: threading.Event):
    def target(messages, cancel):
        while not release.is_set() and not cancel.is_set():
            release.wait(0.01)
        if cancel.is_set():
            messages.put(AnalysisCancelled(BalanceStats()))
        else:
            messages.put(AnalysisComplete(BalanceStats()))
        return BalanceStats()
    return target


def test_analysis_task_reports_stats(manager, dataset):
    dataset.populate({DatasetSplit.TRAIN: {ImageCategory.CT_ONLY: 12, ImageCategory.BACKGROUND: 3}})

    task = manager.start_analysis(dataset.root, DatasetSplit.TRAIN)

    assert task.join(TIMEOUT)
    assert task.status == "success"
    assert task.result == BalanceStats(ct_only=12, background=3)
    messages = task.drain()
    assert any(isinstance(message, AnalysisProgress) for message in messages)
    assert isinstance(messages[-1], AnalysisComplete)
    assert (task.current, task.total) == (15, 15)


def test_status_model_carries_result(manager, dataset):
    dataset.add(DatasetSplit.TRAIN, ImageCategory.T_ONLY, 2)
    task = manager.start_analysis(dataset.root, DatasetSplit.TRAIN)
    task.join(TIMEOUT)

    model = task.to_model()

    assert model.status == "success"
    assert model.kind == "analysis"
    assert model.result["t_only"] == 2
    assert model.messages[-1].type == "AnalysisComplete"
    assert model.finished_at is not None


def test_second_task_on_same_root_conflicts(manager, dataset):
    release = threading.Event()
    first = manager._start("sample", dataset.root, _blocking_target(release))
    try:
        with pytest.raises(TaskConflictError):
            manager.start_analysis(dataset.root, DatasetSplit.TRAIN)
    finally:
        release.set()
        first.join(TIMEOUT)

    follow_up = manager.start_analysis(dataset.root, DatasetSplit.TRAIN)
    assert follow_up.join(TIMEOUT)


def test_poll_never_blocks(manager, dataset):
    release = threading.Event()
    task = manager._start("sample", dataset.root, _blocking_target(release))
    try:
        assert task.poll() is None
        assert task.is_running()
    finally:
        release.set()
        task.join(TIMEOUT)


def test_cancel_marks_task_cancelled(manager, dataset):
    release = threading.Event()
    task = manager._start("sample", dataset.root, _blocking_target(release))

    manager.cancel(task.task_id)

    assert task.join(TIMEOUT)
    assert task.cancel_requested
    assert task.status == "cancelled"


def test_failing_target_is_an_error(manager, dataset):
    def target(messages, cancel):
        raise RuntimeError("disk unplugged")

    task = manager._start("sample", dataset.root, target)

    assert task.join(TIMEOUT)
    assert task.status == "error"
    assert task.last_error == "disk unplugged"


def test_unknown_task(manager):
    with pytest.raises(TaskNotFoundError):
        manager.get("missing")
    with pytest.raises(KeyError):
        manager.cancel("missing")


def test_rebalance_then_undo(manager, dataset):
    dataset.populate({DatasetSplit.TRAIN: {ImageCategory.CT_ONLY: 6, ImageCategory.BACKGROUND: 4}})
    before = dataset.snapshot()
    plan = plan_split_rebalance(dataset.root, RebalanceConfig(random_seed=4))

    task = manager.start_rebalance(dataset.root, plan)
    assert task.join(TIMEOUT)
    assert task.status == "success"
    assert manager.undo_store(dataset.root).can_undo
    assert dataset.snapshot() != before

    undo = manager.start_undo(dataset.root)
    assert undo.join(TIMEOUT)
    assert undo.status == "success"
    assert dataset.snapshot() == before

    with pytest.raises(ValueError):
        manager.start_undo(dataset.root)


def test_undo_without_history(manager, dataset):
    with pytest.raises(ValueError):
        manager.start_undo(dataset.root)
