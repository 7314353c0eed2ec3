"""Couples backend task steps to panel lifetimes.

The task engine (or :class:`TaskWatcher`, which polls it) calls the two
hooks below; the bridge turns them into ``inject`` / ``uninject`` calls.
It adds no queueing of its own: panels change in the order the hooks are
invoked.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from lib.meridian.backend import Backend
from lib.meridian.config import TASKS_PANEL_ID, is_core_pipeline, panel_id_for
from lib.meridian.panels import InjectOptions, PanelDescriptor, PanelInjector
from lib.meridian.pollers import PeriodicPoller

logger = logging.getLogger("meridian.tasks")


class TaskStatus(enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    #: Anything the engine reports that this core does not recognise; never pending.
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> TaskStatus:
        """Case- and separator-insensitive: ``AwaitingClarification`` and
        ``awaiting_clarification`` are the same status."""
        key = _status_key(str(raw))
        for status in cls:
            if _status_key(status.value) == key:
                return status
        logger.debug("Unrecognised task status %r", raw)
        return cls.UNKNOWN


def _status_key(text: str) -> str:
    return "".join(ch for ch in text.lower() if ch.isalnum())


PENDING_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.QUEUED})


@dataclass(frozen=True)
class TaskInfo:
    id: int
    pipeline_id: int
    status: TaskStatus
    progress: float = 0.0

    @property
    def pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TaskInfo:
        progress = float(payload.get("progress") or 0.0)
        return cls(
            id=int(payload["id"]),
            pipeline_id=int(payload.get("pipeline_id") or 0),
            status=TaskStatus.parse(payload.get("status")),
            progress=max(0.0, min(1.0, progress)),
        )


def pending_count(tasks: Iterable[TaskInfo]) -> int:
    return sum(1 for t in tasks if t.pending)


class TaskLifecycleBridge:
    """Hook surface the task engine drives."""

    def __init__(self, injector: PanelInjector) -> None:
        self._injector = injector
        self._tasks: List[TaskInfo] = []

    @property
    def tasks(self) -> List[TaskInfo]:
        return list(self._tasks)

    def on_step_active(self, pipeline_id: int, step_data: Any = None) -> Optional[PanelDescriptor]:
        """Mount and select the step's panel when its pipeline has a UI module."""
        if not self._injector.registry.has_pipeline_ui(pipeline_id):
            logger.debug("Step for pipeline %d has no UI module", pipeline_id)
            return None
        return self._injector.inject(
            pipeline_id, InjectOptions(make_active=True, initial_data=step_data)
        )

    def on_step_complete(self, pipeline_id: int) -> bool:
        """Unmount the step's panel.  Core pipelines are never targeted."""
        if is_core_pipeline(pipeline_id):
            return False
        return self._injector.uninject(panel_id_for(pipeline_id))

    def update_tasks(self, tasks: Iterable[TaskInfo]) -> Optional[int]:
        """Replace the task list and re-derive the tasks panel badge.

        Returns the badge that was written (``None`` when nothing is pending).
        """
        self._tasks = list(tasks)
        count = pending_count(self._tasks)
        badge = count or None
        self._injector.set_badge(TASKS_PANEL_ID, badge)
        self._injector.set_shared_state(
            {"tasks": [_task_dict(t) for t in self._tasks]}
        )
        return badge


def _task_dict(task: TaskInfo) -> Dict[str, Any]:
    return {
        "id": task.id,
        "pipeline_id": task.pipeline_id,
        "status": task.status.value,
        "progress": task.progress,
    }


class TaskWatcher:
    """Polls ``task_list()`` and drives a :class:`TaskLifecycleBridge`.

    Tasks that move into ``running`` fire ``on_step_active``.  When the last
    running task of a pipeline stops running (or vanishes from the list),
    ``on_step_complete`` fires for that pipeline.
    """

    def __init__(
        self,
        backend: Backend,
        bridge: TaskLifecycleBridge,
        *,
        interval_s: float = 2.0,
    ) -> None:
        self._backend = backend
        self._bridge = bridge
        self._running: Dict[int, TaskInfo] = {}
        self._poller = PeriodicPoller("tasks", interval_s, self.refresh)

    @property
    def running(self) -> bool:
        return self._poller.running

    def start(self) -> None:
        self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()

    async def refresh(self) -> List[TaskInfo]:
        rows = await self._backend.task_list()
        tasks: List[TaskInfo] = []
        for row in rows:
            try:
                tasks.append(TaskInfo.from_payload(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Skipping malformed task row %r: %s", row, exc)

        current = {t.id: t for t in tasks if t.status is TaskStatus.RUNNING}
        # one panel per pipeline: it goes only when no task on that pipeline still runs
        still_running = {t.pipeline_id for t in current.values()}
        finished = {
            task.pipeline_id
            for task_id, task in self._running.items()
            if task_id not in current and task.pipeline_id not in still_running
        }
        for pipeline_id in sorted(finished):
            self._bridge.on_step_complete(pipeline_id)
        for task_id, task in current.items():
            if task_id not in self._running:
                self._bridge.on_step_active(task.pipeline_id, _task_dict(task))
        self._running = current

        self._bridge.update_tasks(tasks)
        return tasks
