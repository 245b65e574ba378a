"""
DBOS Transact backend for WorkflowEngine.

Only app.py (and tests) construct this class; jobs see the ABC. Cron
ticks are registered with ``DBOS.scheduled`` before launch, and DBOS
derives each tick's workflow id from the function name plus the
scheduled time, so a tick runs once even when several ledger processes
share the system database.
"""

import functools
import logging
from datetime import datetime
from typing import Any, Callable

from dbos import DBOS

from workflow.engine import WorkflowEngine


logger = logging.getLogger(__name__)

# fn -> DBOS step wrapper. DBOS keys its registry by qualified name,
# so each callable is wrapped once per process.
_steps: dict[Callable, Callable] = {}


def _epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def _step_once(fn: Callable) -> Callable:
    if fn not in _steps:

        @functools.wraps(fn)
        def call(*a, **kw):
            return fn(*a, **kw)

        _steps[fn] = DBOS.step()(call)
    return _steps[fn]


class DBOSEngine(WorkflowEngine):
    """WorkflowEngine on DBOS, with its system tables in the ledger database.

    ``pg_url`` is a SQLAlchemy URL (see ``LedgerServer.dbos_url``);
    ``name`` is the DBOS application name.
    """

    def __init__(self, pg_url: str, *, name: str = "ledger-jobs"):
        self.name = name
        self._dbos = DBOS(config={"name": name, "system_database_url": pg_url})
        self._scheduled: dict[str, str] = {}
        self._launched = False

    @property
    def scheduled(self) -> dict:
        """Registered cron entries, name -> expression."""
        return dict(self._scheduled)

    def launch(self) -> "DBOSEngine":
        if self._launched:
            return self
        DBOS.launch()
        self._launched = True
        logger.info("DBOS app %s launched; cron: %s", self.name,
                    ", ".join(f"{k}={v}" for k, v in self._scheduled.items()) or "none")
        return self

    def destroy(self) -> None:
        if self._launched:
            DBOS.destroy()
            self._launched = False
            logger.info("DBOS app %s stopped", self.name)

    def schedule(self, name: str, cron: str, fn: Callable[[int], Any]) -> None:
        if self._launched:
            raise RuntimeError(f"Cannot schedule {name!r}: engine already launched")
        if name in self._scheduled:
            raise ValueError(f"Scheduled workflow {name!r} already registered")

        def tick(scheduled_time: datetime, actual_time: datetime):
            lag = (actual_time - scheduled_time).total_seconds()
            if lag > 60:
                logger.warning("%s tick for %s started %.0fs late",
                               name, scheduled_time.isoformat(), lag)
            return fn(_epoch_ms(scheduled_time))

        tick.__name__ = tick.__qualname__ = f"scheduled_{name}"
        DBOS.scheduled(cron)(DBOS.workflow()(tick))
        self._scheduled[name] = cron

    def step(self, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        return _step_once(fn)(*args, **kwargs)

