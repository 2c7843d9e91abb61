from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import pytest
import yaml
from temporalio.client import ScheduleActionStartWorkflow, ScheduleOverlapPolicy
from temporalio.service import RPCError, RPCStatusCode

from listing_ingest_application.config import paths
from listing_ingest_application.workflows import create_schedule as cs


def test_load_schedule_configs_reads_yaml(tmp_path: Path):
    data = {
        "schedules": [
            {
                "id": "alpha",
                "workflow": "DailyMonitoring",
                "cron": "30 6 * * *",
                "task_queue": "q1",
                "catchup_window_hours": 1,
                "overlap": "BUFFER_ONE",
                "input": {"locations": ["81410"], "triggered_by": "schedule"},
            },
            {"id": "beta", "workflow": "DiscoveryCollection", "interval_seconds": "900"},
            {"workflow": "NoId"},
        ]
    }
    path = tmp_path / "schedules.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")

    alpha, beta = cs.load_schedule_configs(path)

    assert alpha.id == "alpha"
    assert alpha.cron == "30 6 * * *"
    assert alpha.interval_seconds is None
    assert alpha.task_queue == "q1"
    assert alpha.catchup_window_hours == 1
    assert alpha.overlap == "buffer_one"
    assert alpha.input == {"locations": ["81410"], "triggered_by": "schedule"}
    assert beta.interval_seconds == 900
    assert beta.cron is None
    assert beta.overlap == "skip"
    assert beta.input == {}


def test_entry_without_cadence_runs_daily(tmp_path: Path):
    path = tmp_path / "schedules.yaml"
    path.write_text(yaml.safe_dump({"schedules": [{"id": "x", "workflow": "DailyMonitoring"}]}), encoding="utf-8")

    (cfg,) = cs.load_schedule_configs(path)

    assert cfg.interval_seconds == 24 * 60 * 60


def test_missing_file_means_no_schedules(tmp_path: Path):
    assert cs.load_schedule_configs(tmp_path / "absent.yaml") == []


def test_build_schedule_uses_cron_and_passes_input():
    cfg = cs.ScheduleConfig(
        id="daily-monitoring",
        workflow="DailyMonitoring",
        cron="0 8 * * *",
        task_queue="q-tasks",
        catchup_window_hours=6,
        input={"triggered_by": "schedule"},
    )

    schedule = cs.build_schedule(cfg)

    assert isinstance(schedule.action, ScheduleActionStartWorkflow)
    assert schedule.action.workflow == "DailyMonitoring"
    assert schedule.action.id == "wf-daily-monitoring"
    assert schedule.action.task_queue == "q-tasks"
    assert list(schedule.action.args) == [{"triggered_by": "schedule"}]
    assert list(schedule.spec.cron_expressions) == ["0 8 * * *"]
    assert not schedule.spec.intervals
    assert schedule.policy.catchup_window.total_seconds() == 6 * 3600
    assert schedule.policy.overlap == ScheduleOverlapPolicy.SKIP


def test_build_schedule_interval_and_default_queue(monkeypatch):
    monkeypatch.setattr(cs.settings, "task_queue", "listing-ingest")
    cfg = cs.ScheduleConfig(id="often", workflow="DiscoveryCollection", interval_seconds=7200, overlap="cancel_other")

    schedule = cs.build_schedule(cfg)

    assert schedule.spec.intervals[0].every.total_seconds() == 7200
    assert schedule.action.task_queue == "listing-ingest"
    assert schedule.policy.overlap == ScheduleOverlapPolicy.CANCEL_OTHER


def test_unknown_overlap_falls_back_to_skip():
    assert cs._overlap_policy("whenever") == ScheduleOverlapPolicy.SKIP


def test_shipped_schedules_include_daily_monitoring():
    for env in ("dev", "prod"):
        cfgs = cs.load_schedule_configs(paths.resolve_config_path("schedules.yaml", env))
        match = next((cfg for cfg in cfgs if cfg.id == "daily-monitoring"), None)
        assert match is not None
        assert match.workflow == "DailyMonitoring"
        assert match.cron
        assert match.overlap == "skip"


@dataclass
class FakeScheduleEntry:
    id: str


class FakeHandle:
    def __init__(self, client: "FakeClient", schedule_id: str):
        self.client = client
        self.schedule_id = schedule_id

    async def describe(self):
        if self.schedule_id not in self.client.schedules:
            raise RPCError("not found", RPCStatusCode.NOT_FOUND, b"")
        return self.client.schedules[self.schedule_id]

    async def update(self, updater):
        self.client.updated.append(self.schedule_id)
        self.client.schedules[self.schedule_id] = updater(None).schedule

    async def delete(self):
        if self.schedule_id not in self.client.schedules:
            raise RPCError("not found", RPCStatusCode.NOT_FOUND, b"")
        self.client.deleted.append(self.schedule_id)
        del self.client.schedules[self.schedule_id]


class FakeClient:
    def __init__(self, existing: List[str] | None = None):
        self.schedules: Dict[str, Any] = {sid: {} for sid in (existing or [])}
        self.updated: List[str] = []
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.triggered: List[str] = []

    def get_schedule_handle(self, schedule_id: str) -> FakeHandle:
        return FakeHandle(self, schedule_id)

    async def create_schedule(self, id: str, schedule: Any, trigger_immediately: bool = False):  # noqa: A002
        self.created.append(id)
        if trigger_immediately:
            self.triggered.append(id)
        self.schedules[id] = schedule

    async def list_schedules(self, *_, **__):
        async def _gen():
            for sid in list(self.schedules.keys()):
                yield FakeScheduleEntry(id=sid)

        return _gen()


@pytest.mark.asyncio
async def test_sync_deletes_unknown_and_upserts():
    cfgs = [
        cs.ScheduleConfig(id="keep-one", workflow="DailyMonitoring", cron="0 8 * * *"),
        cs.ScheduleConfig(id="new-one", workflow="DiscoveryCollection", interval_seconds=60),
    ]
    fake_client = FakeClient(existing=["keep-one", "remove-me"])

    await cs.sync_schedules(fake_client, cfgs)

    assert fake_client.deleted == ["remove-me"]
    assert fake_client.updated == ["keep-one"]
    assert fake_client.created == ["new-one"]
    assert fake_client.triggered == ["new-one"]
    assert list(fake_client.schedules["keep-one"].spec.cron_expressions) == ["0 8 * * *"]


@pytest.mark.asyncio
async def test_main_connects_and_skips_trigger(monkeypatch):
    cfgs = [cs.ScheduleConfig(id="fresh", workflow="DailyMonitoring", cron="0 8 * * *")]
    fake_client = FakeClient(existing=["stale"])

    monkeypatch.setattr(cs, "load_schedule_configs", lambda: cfgs)

    async def fake_connect(*args, **kwargs):
        return fake_client

    monkeypatch.setattr(cs.Client, "connect", staticmethod(fake_connect))

    await cs.main(skip_trigger=True)

    assert fake_client.deleted == ["stale"]
    assert fake_client.created == ["fresh"]
    assert fake_client.triggered == []
