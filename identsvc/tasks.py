"""Registry of named tasks that scheduled jobs can invoke."""

from __future__ import annotations

import threading
from typing import Optional

from identsvc.models import TimeTask


class TaskRegistry:
    """Keeps tasks in registration order, looked up by function name."""

    def __init__(self) -> None:
        self._tasks: list[TimeTask] = []
        self._lock = threading.RLock()

    def add_task(self, task: TimeTask) -> None:
        """Register a task; tasks without a name or callable are ignored."""
        if not task.func_name or task.run is None:
            return
        with self._lock:
            self._tasks.append(task)

    def get_by_name(self, func_name: str) -> Optional[TimeTask]:
        with self._lock:
            return next((t for t in self._tasks if t.func_name == func_name), None)

    def edit_params(self, func_name: str, params: list[str]) -> None:
        """Replace the parameters of the first task with this name."""
        with self._lock:
            task = self.get_by_name(func_name)
            if task is not None:
                task.param = list(params)