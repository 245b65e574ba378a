"""
WorkflowEngine: the scheduling seam the jobs are wired through.

A scheduled job tick is a durable workflow keyed by its nominal time, so
a tick executes at most once even when several processes share the
engine's database. DBOS is the only backend (workflow.dbos_engine); tests
substitute an inline engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable


class WorkflowEngine(ABC):
    """Durable execution plus cron scheduling.

    Every cron entry must be registered with :meth:`schedule` before
    :meth:`launch`; the engine is usable as a context manager.
    """

    @abstractmethod
    def launch(self) -> "WorkflowEngine":
        """Start executing, including the cron scheduler."""

    @abstractmethod
    def destroy(self) -> None:
        ...

    def __enter__(self):
        return self.launch()

    def __exit__(self, *args):
        self.destroy()

    @abstractmethod
    def schedule(self, name: str, cron: str, fn: Callable[[int], Any]) -> None:
        """Call ``fn(scheduled_ms)`` as a workflow on every *cron* tick.

        *name* is unique per engine and stable across restarts;
        *scheduled_ms* is the tick's nominal time in epoch milliseconds.
        """

    @abstractmethod
    def step(self, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        """Call *fn* as a checkpointed step of the current workflow; a
        recovered workflow replays the recorded output."""
