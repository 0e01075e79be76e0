"""Queued side-effect tasks (notifications, cleanup) run with retries.

Tasks are collected while a job runs and drained afterwards. A task that
keeps failing ends up in dead_letters; it never changes a job's outcome.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from utils import retry_call

logger = logging.getLogger(__name__)


@dataclass
class Task:
    name: str
    fn: Callable
    args: tuple = ()
    attempts: int = 0
    error: str | None = None


@dataclass
class TaskQueue:
    max_attempts: int = 3
    delay: float = 1.0
    sleep: Callable[[float], None] = time.sleep
    pending: list[Task] = field(default_factory=list)
    dead_letters: list[Task] = field(default_factory=list)

    def enqueue(self, name: str, fn: Callable, *args) -> Task:
        task = Task(name, fn, args)
        self.pending.append(task)
        return task

    def drain(self) -> int:
        """Run all pending tasks. Returns how many succeeded."""
        succeeded = 0
        while self.pending:
            task = self.pending.pop(0)

            def run(task=task):
                task.attempts += 1
                return task.fn(*task.args)

            try:
                retry_call(
                    run,
                    max_attempts=self.max_attempts,
                    delay=self.delay,
                    on_retry=lambda n, e, task=task: logger.info(
                        "Retrying task", extra={"task": task.name, "attempt": n, "error": str(e)}
                    ),
                    sleep=self.sleep,
                )
            except Exception as e:
                task.error = str(e)
                self.dead_letters.append(task)
                logger.error(
                    "Task failed after retries",
                    extra={"task": task.name, "attempts": task.attempts, "error": task.error},
                )
                continue
            succeeded += 1
        return succeeded
