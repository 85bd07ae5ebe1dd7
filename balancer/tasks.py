"""Background task handles for analysis, integrity, execution and undo.

A task owns one daemon thread, one message queue and one cancel event. The
caller polls the handle for messages and may request cancellation; the engine
never keeps progress or cancellation state anywhere else.
"""
from __future__ import annotations

import queue
import random
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from balancer.balance_analyzer import analyze_integrity, analyze_split
from balancer.balance_models import TaskStatus, message_to_model, result_to_payload
from balancer.balance_types import DatasetSplit
from balancer.log import error, info
from balancer.progress import (
    AnalysisCancelled,
    AnalysisProgress,
    IntegrityCancelled,
    IntegrityProgress,
    RebalanceCancelled,
    RebalanceError,
    RebalanceProgress,
    is_terminal,
)
from balancer.rebalance_executor import UndoStore, execute_global_rebalance_plan, execute_rebalance_plan
from balancer.rebalance_types import GlobalRebalancePlan, RebalancePlan, SelectionStrategy

TaskTarget = Callable[[queue.Queue, threading.Event], Any]

_PROGRESS_TYPES = (AnalysisProgress, IntegrityProgress, RebalanceProgress)
_CANCELLED_TYPES = (AnalysisCancelled, IntegrityCancelled, RebalanceCancelled)


class TaskConflictError(RuntimeError):
    pass


class TaskNotFoundError(KeyError):
    pass


class _MessageQueue(queue.Queue):
    """Queue that remembers the terminal message its producer sent."""

    def __init__(self):
        super().__init__()
        self.terminal: Any = None

    def put(self, item, block=True, timeout=None):
        if is_terminal(item):
            self.terminal = item
        super().put(item, block, timeout)


class BackgroundTask:
    def __init__(self, kind: str, dataset_root: Path):
        self.task_id = uuid.uuid4().hex
        self.kind = kind
        self.dataset_root = Path(dataset_root)
        self.status = "pending"
        self.current = 0
        self.total = 0
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.last_error: str | None = None
        self.result: Any = None
        self._messages = _MessageQueue()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.RLock()

    def start(self, target: TaskTarget, on_success: Optional[Callable[[Any], None]] = None) -> "BackgroundTask":
        self._thread = threading.Thread(target=self._run, args=(target, on_success), daemon=True)
        self._thread.start()
        return self

    def _run(self, target: TaskTarget, on_success: Optional[Callable[[Any], None]]) -> None:
        with self._lock:
            self.status = "running"
            self.started_at = datetime.now(timezone.utc)
        try:
            result = target(self._messages, self._cancel)
        except Exception as exc:
            error(f"{self.kind} task for {self.dataset_root} failed: {exc}")
            with self._lock:
                self.status = "error"
                self.last_error = str(exc)
                self.finished_at = datetime.now(timezone.utc)
            return

        if on_success is not None:
            on_success(result)
        terminal = self._messages.terminal
        with self._lock:
            self.result = result
            if isinstance(terminal, RebalanceError):
                self.status = "error"
                self.last_error = terminal.message
            elif isinstance(terminal, _CANCELLED_TYPES):
                self.status = "cancelled"
            else:
                self.status = "success"
            self.finished_at = datetime.now(timezone.utc)

    def is_running(self) -> bool:
        with self._lock:
            return self.status in {"pending", "running"}

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def poll(self) -> Any:
        """Next message, or ``None`` when nothing is waiting. Never blocks."""
        try:
            message = self._messages.get_nowait()
        except queue.Empty:
            return None
        with self._lock:
            if isinstance(message, _PROGRESS_TYPES):
                self.current = message.current
                self.total = message.total
            elif isinstance(message, RebalanceError):
                self.last_error = message.message
        return message

    def drain(self) -> List[Any]:
        messages = []
        while True:
            message = self.poll()
            if message is None:
                return messages
            messages.append(message)

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_running()

    def to_model(self, messages: Optional[List[Any]] = None) -> TaskStatus:
        drained = self.drain() if messages is None else messages
        with self._lock:
            return TaskStatus(
                task_id=self.task_id,
                kind=self.kind,
                dataset_root=str(self.dataset_root),
                status=self.status,
                current=self.current,
                total=self.total,
                started_at=self.started_at,
                finished_at=self.finished_at,
                last_error=self.last_error,
                messages=[message_to_model(message) for message in drained],
                result=result_to_payload(self.result) if not self.is_running() else None,
            )


class TaskManager:
    """Starts background tasks, at most one running task per dataset root."""

    def __init__(self):
        self._tasks: Dict[str, BackgroundTask] = {}
        self._active: Dict[Path, BackgroundTask] = {}
        self._undo: Dict[Path, UndoStore] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(dataset_root: Path) -> Path:
        return Path(dataset_root).expanduser().resolve()

    def _start(
        self,
        kind: str,
        dataset_root: Path,
        target: TaskTarget,
        on_success: Optional[Callable[[Any], None]] = None,
    ) -> BackgroundTask:
        key = self._key(dataset_root)
        with self._lock:
            existing = self._active.get(key)
            if existing is not None and existing.is_running():
                raise TaskConflictError(
                    f"A {existing.kind} task ({existing.task_id}) is already running for {key}"
                )
            task = BackgroundTask(kind, key)
            self._tasks[task.task_id] = task
            self._active[key] = task
        info(f"Starting {kind} task {task.task_id} for {key}")
        return task.start(target, on_success)

    def get(self, task_id: str) -> BackgroundTask:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def cancel(self, task_id: str) -> BackgroundTask:
        task = self.get(task_id)
        task.cancel()
        return task

    def undo_store(self, dataset_root: Path) -> UndoStore:
        key = self._key(dataset_root)
        with self._lock:
            store = self._undo.get(key)
            if store is None:
                store = UndoStore()
                self._undo[key] = store
            return store

    def start_analysis(self, dataset_root: Path, split: DatasetSplit) -> BackgroundTask:
        root = self._key(dataset_root)
        return self._start(
            "analysis",
            root,
            lambda messages, cancel: analyze_split(root, split, progress=messages, cancel=cancel),
        )

    def start_integrity(self, dataset_root: Path, split: DatasetSplit) -> BackgroundTask:
        root = self._key(dataset_root)
        return self._start(
            "integrity",
            root,
            lambda messages, cancel: analyze_integrity(root, split, progress=messages, cancel=cancel),
        )

    def start_rebalance(self, dataset_root: Path, plan: RebalancePlan) -> BackgroundTask:
        root = self._key(dataset_root)
        store = self.undo_store(root)
        return self._start(
            "rebalance",
            root,
            lambda messages, cancel: execute_rebalance_plan(root, plan, progress=messages, cancel=cancel),
            on_success=store.record,
        )

    def start_global_rebalance(
        self,
        dataset_root: Path,
        plan: GlobalRebalancePlan,
        *,
        selection_strategy: Optional[SelectionStrategy] = None,
        preserve_ct_t_balance: Optional[bool] = None,
        random_seed: Optional[int] = None,
    ) -> BackgroundTask:
        root = self._key(dataset_root)
        store = self.undo_store(root)

        def target(messages: queue.Queue, cancel: threading.Event):
            return execute_global_rebalance_plan(
                root,
                plan,
                selection_strategy=selection_strategy,
                preserve_ct_t_balance=preserve_ct_t_balance,
                progress=messages,
                cancel=cancel,
                rng=random.Random(random_seed) if random_seed is not None else None,
            )

        return self._start("global_rebalance", root, target, on_success=store.record)

    def start_undo(self, dataset_root: Path) -> BackgroundTask:
        root = self._key(dataset_root)
        store = self.undo_store(root)
        if not store.can_undo:
            raise ValueError(f"Nothing to undo for {root}")
        return self._start(
            "undo",
            root,
            lambda messages, cancel: store.undo(progress=messages, cancel=cancel),
        )


task_manager = TaskManager()


__all__ = [
    "BackgroundTask",
    "TaskConflictError",
    "TaskManager",
    "TaskNotFoundError",
    "task_manager",
]
