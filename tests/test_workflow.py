"""
Tests for the workflow orchestration layer.

Covers:
- WorkflowEngine ABC contract
- Job wiring: build_jobs from settings, register_jobs cron mapping,
  ticks run as steps with the scheduled time
- DBOSEngine: lifecycle, scheduled registration, a job tick run as a
  DBOS step
"""

import pytest

from jobs.metrics_rollup import MetricsRollupJob
from workflow.engine import WorkflowEngine
from workflow.dbos_engine import DBOSEngine
from workflow.scheduler import build_jobs, job_tick, register_jobs

from conftest import FakePriceSource


NOW = 19_700 * 86_400_000 + 600_000


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingEngine(WorkflowEngine):
    """Runs everything inline and records schedules and steps."""

    def __init__(self):
        self.schedules = {}
        self.steps = []
        self.launched = False

    def launch(self):
        self.launched = True
        return self

    def destroy(self):
        self.launched = False

    def schedule(self, name, cron, fn):
        self.schedules[name] = (cron, fn)

    def step(self, fn, *args, **kwargs):
        self.steps.append(fn.__name__)
        return fn(*args, **kwargs)


class StubJob:
    name = "stub"

    def __init__(self):
        self.calls = []

    def run(self, now_ms=None):
        self.calls.append(now_ms)
        return self

    def to_dict(self):
        return {"job": self.name, "runs": len(self.calls)}


SETTINGS = {
    "chain": {"quote_asset": "USDC"},
    "funding": {"max_hourly_rate": "0.0005", "apply_payments": False},
    "oracle": {"assets": ["BTC"], "stablecoins": ["USDC"]},
    "jobs": {"max_workers": 2,
             "cron": {"funding": "* * * * *", "expiry": "* * * * *",
                      "daily_settle": "0 0 * * *", "oracle": ""}},
    "archive": {"prefix": "rollups"},
}


# ---------------------------------------------------------------------------
# WorkflowEngine ABC
# ---------------------------------------------------------------------------

class TestWorkflowEngineABC:

    def test_abc_not_instantiable(self):
        with pytest.raises(TypeError):
            WorkflowEngine()

    def test_abstract_surface(self):
        assert WorkflowEngine.__abstractmethods__ == {"launch", "destroy", "schedule", "step"}

    def test_context_manager(self):
        with RecordingEngine() as eng:
            assert eng.launched
        assert not eng.launched


# ---------------------------------------------------------------------------
# Job wiring
# ---------------------------------------------------------------------------

class TestScheduler:

    def test_build_jobs_from_settings(self):
        jobs = build_jobs(object(), SETTINGS)
        assert sorted(jobs) == ["daily_settle", "expiry", "funding", "metrics_rollup"]
        assert str(jobs["funding"].max_hourly_rate) == "0.0005"
        assert jobs["funding"].apply_payments is False
        assert jobs["metrics_rollup"].archive_key("2024-01-01") == \
            "rollups/2024-01-01/aggregated.json"

        with_oracle = build_jobs(object(), SETTINGS, price_source=FakePriceSource())
        assert with_oracle["oracle"].assets == ["BTC"]

    def test_register_only_scheduled_jobs(self):
        eng = RecordingEngine()
        jobs = build_jobs(object(), SETTINGS, price_source=FakePriceSource())
        registered = register_jobs(eng, jobs, SETTINGS["jobs"])
        assert sorted(registered) == ["daily_settle", "expiry", "funding"]
        assert eng.schedules["daily_settle"][0] == "0 0 * * *"

    def test_tick_runs_job_as_step_with_scheduled_time(self):
        eng = RecordingEngine()
        job = StubJob()
        tick = job_tick(eng, job)
        assert tick(NOW) == {"job": "stub", "runs": 1}
        assert job.calls == [NOW]
        assert eng.steps == ["run_stub"]


# ---------------------------------------------------------------------------
# DBOSEngine
# ---------------------------------------------------------------------------

def _noop(scheduled_ms):
    return scheduled_ms


@pytest.fixture(scope="module")
def engine(server):
    eng = DBOSEngine(server.dbos_url(), name="test-ledger-jobs")
    eng.schedule("yearly_noop", "0 0 1 1 *", _noop)
    eng.launch()
    yield eng
    eng.destroy()


class TestDBOSEngine:

    def test_schedule_after_launch_rejected(self, engine):
        with pytest.raises(RuntimeError):
            engine.schedule("late", "* * * * *", _noop)

    def test_scheduled_names(self, engine):
        assert engine.scheduled == {"yearly_noop": "0 0 1 1 *"}

    def test_job_tick_as_step(self, engine, client):
        tick = job_tick(engine, MetricsRollupJob(client))
        report = tick(NOW)
        assert report["job"] == "metrics_rollup"
        assert report["startedAt"] == NOW
        assert report["failed"] == 0
