"""Sync Temporal schedules with schedules.yaml.

Schedules missing from the file are deleted, the rest are created or updated.
Each entry runs on ``cron`` when given, otherwise every ``interval_seconds``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleIntervalSpec,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
    ScheduleUpdate,
)
from temporalio.service import RPCError, RPCStatusCode

from ..config import settings
from ..config.paths import resolve_config_path

logger = logging.getLogger("temporal.worker.schedules")

SCHEDULES_YAML = resolve_config_path("schedules.yaml")
DEFAULT_INTERVAL_SECONDS = 24 * 60 * 60

_OVERLAP_POLICIES = {
    "skip": ScheduleOverlapPolicy.SKIP,
    "buffer_one": ScheduleOverlapPolicy.BUFFER_ONE,
    "buffer_all": ScheduleOverlapPolicy.BUFFER_ALL,
    "cancel_other": ScheduleOverlapPolicy.CANCEL_OTHER,
}


@dataclass
class ScheduleConfig:
    id: str
    workflow: str
    interval_seconds: Optional[int] = None
    cron: Optional[str] = None
    task_queue: Optional[str] = None
    catchup_window_hours: int = 12
    overlap: str = "skip"
    # Passed to the workflow as its single argument.
    input: Dict[str, Any] = field(default_factory=dict)


def _coerce_int(value: object, default: Optional[int]) -> Optional[int]:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def load_schedule_configs(path: Path = SCHEDULES_YAML) -> List[ScheduleConfig]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) if path.exists() else {}
    items = data.get("schedules", []) if isinstance(data, dict) else []
    configs: List[ScheduleConfig] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id") or not item.get("workflow"):
            logger.warning("Skipping schedule entry without id and workflow: %r", item)
            continue
        cron = item.get("cron")
        interval = _coerce_int(item.get("interval_seconds"), None)
        if not cron and not interval:
            interval = DEFAULT_INTERVAL_SECONDS
        raw_input = item.get("input")
        configs.append(
            ScheduleConfig(
                id=str(item["id"]),
                workflow=str(item["workflow"]),
                interval_seconds=interval,
                cron=str(cron) if cron else None,
                task_queue=item.get("task_queue"),
                catchup_window_hours=_coerce_int(item.get("catchup_window_hours"), 12) or 12,
                overlap=str(item.get("overlap", "skip")).lower(),
                input=dict(raw_input) if isinstance(raw_input, dict) else {},
            )
        )
    return configs


def _overlap_policy(name: str) -> ScheduleOverlapPolicy:
    return _OVERLAP_POLICIES.get(name.lower(), ScheduleOverlapPolicy.SKIP)


def build_schedule(cfg: ScheduleConfig) -> Schedule:
    if cfg.cron:
        spec = ScheduleSpec(cron_expressions=[cfg.cron])
    else:
        spec = ScheduleSpec(
            intervals=[
                ScheduleIntervalSpec(every=timedelta(seconds=cfg.interval_seconds or DEFAULT_INTERVAL_SECONDS))
            ]
        )

    action = ScheduleActionStartWorkflow(
        cfg.workflow,
        args=[dict(cfg.input)],
        id=f"wf-{cfg.id}",
        task_queue=cfg.task_queue or settings.task_queue,
    )

    policy = SchedulePolicy(
        catchup_window=timedelta(hours=cfg.catchup_window_hours),
        overlap=_overlap_policy(cfg.overlap),
    )

    return Schedule(action=action, spec=spec, policy=policy)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or update Temporal schedules from schedules.yaml")
    parser.add_argument(
        "--skip-trigger",
        action="store_true",
        help="Do not trigger schedules immediately when they are first created.",
    )
    return parser.parse_args()


async def sync_schedules(client: Client, configs: List[ScheduleConfig], *, skip_trigger: bool = False) -> None:
    desired_ids = {cfg.id for cfg in configs}

    async for entry in await client.list_schedules():
        if entry.id in desired_ids:
            continue
        try:
            await client.get_schedule_handle(entry.id).delete()
            logger.info("Deleted schedule not in config: %s", entry.id)
        except RPCError as exc:
            if exc.status != RPCStatusCode.NOT_FOUND:
                raise

    for cfg in configs:
        schedule = build_schedule(cfg)
        handle = client.get_schedule_handle(cfg.id)
        try:
            await handle.describe()
            await handle.update(lambda _: ScheduleUpdate(schedule=schedule))
            logger.info("Updated schedule: %s", cfg.id)
        except ScheduleAlreadyRunningError:
            logger.info("Schedule already running: %s", cfg.id)
        except RPCError as exc:
            if exc.status != RPCStatusCode.NOT_FOUND:
                raise
            await client.create_schedule(cfg.id, schedule, trigger_immediately=not skip_trigger)
            logger.info("Created schedule: %s (triggered now: %s)", cfg.id, not skip_trigger)


async def main(*, skip_trigger: bool = False) -> None:
    client = await Client.connect(settings.temporal_address, namespace=settings.temporal_namespace)
    await sync_schedules(client, load_schedule_configs(), skip_trigger=skip_trigger)


def cli() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    args = _parse_args()
    asyncio.run(main(skip_trigger=bool(args.skip_trigger)))


if __name__ == "__main__":
    cli()
