"""Command line entrypoint for starting runs and inspecting run history.

    python -m listing_ingest_application.workflows.trigger discover --location "Austin, TX"
    python -m listing_ingest_application.workflows.trigger details --ids 123 456
    python -m listing_ingest_application.workflows.trigger details --auto --limit 20
    python -m listing_ingest_application.workflows.trigger runs --kind property_details
    python -m listing_ingest_application.workflows.trigger changes --type price_change
    python -m listing_ingest_application.workflows.trigger cancel details-1700000000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from dataclasses import asdict
from typing import Any, Optional, Sequence

from temporalio.client import Client

from ..config import runtime_config, settings
from ..services.change_tracking import ChangeType, MonitoringStore
from ..services.database import get_database
from ..services.run_tracker import RUN_KINDS, RunTracker
from ..services.webhook_registry import WebhookRegistry
from .activities.constants import DEFAULT_LISTING_CATEGORY
from .collection_workflow import DiscoveryCollectionWorkflow, DiscoveryRequest
from .details_workflow import DetailEnrichmentRequest, DetailEnrichmentWorkflow
from .helpers.completion import CompletionMode
from .monitoring_workflow import DailyMonitoringWorkflow, MonitoringRequest


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


async def _connect() -> Client:
    return await Client.connect(settings.temporal_address, namespace=settings.temporal_namespace)


async def start_discovery(args: argparse.Namespace) -> None:
    request = DiscoveryRequest(
        locations=list(args.location),
        listing_category=args.category,
        home_type=args.home_type,
        days_on_market=args.days_on_market,
        exact_address=args.exact_address,
        completion_mode=args.mode or settings.default_completion_mode,
        triggered_by=args.triggered_by,
    )
    client = await _connect()
    workflow_id = args.workflow_id or f"discovery-{int(time.time())}"
    handle = await client.start_workflow(
        DiscoveryCollectionWorkflow.run,
        request,
        id=workflow_id,
        task_queue=settings.task_queue,
    )
    print(f"Started DiscoveryCollection id={handle.id} run={handle.result_run_id}")
    if args.wait:
        _print_json(asdict(await handle.result()))


async def start_details(args: argparse.Namespace) -> None:
    if not args.auto and not args.ids:
        raise SystemExit("details requires --ids or --auto")
    request = DetailEnrichmentRequest(
        identifiers=list(args.ids or []),
        auto=args.auto,
        limit=args.limit,
        collection_id=args.collection_id,
        batch_size=args.batch_size,
        completion_mode=args.mode or settings.default_completion_mode,
        triggered_by=args.triggered_by,
    )
    client = await _connect()
    workflow_id = args.workflow_id or f"details-{int(time.time())}"
    handle = await client.start_workflow(
        DetailEnrichmentWorkflow.run,
        request,
        id=workflow_id,
        task_queue=settings.task_queue,
    )
    print(f"Started DetailEnrichment id={handle.id} run={handle.result_run_id}")
    if args.wait:
        _print_json(asdict(await handle.result()))


async def start_monitoring(args: argparse.Namespace) -> None:
    request = MonitoringRequest(
        locations=list(args.location or []),
        completion_mode=args.mode or settings.default_completion_mode,
        triggered_by=args.triggered_by,
    )
    client = await _connect()
    workflow_id = args.workflow_id or f"monitoring-{int(time.time())}"
    handle = await client.start_workflow(
        DailyMonitoringWorkflow.run,
        request,
        id=workflow_id,
        task_queue=settings.task_queue,
    )
    print(f"Started DailyMonitoring id={handle.id} run={handle.result_run_id}")
    if args.wait:
        _print_json(asdict(await handle.result()))


def list_changes(args: argparse.Namespace) -> None:
    _print_json(
        MonitoringStore(get_database()).list_changes(
            identifier=args.identifier, collection_id=args.collection_id, change_type=args.type
        )
    )


def list_monitoring_runs(args: argparse.Namespace) -> None:
    _print_json(MonitoringStore(get_database()).list_runs(limit=args.limit))


def show_run(args: argparse.Namespace) -> None:
    run = RunTracker(get_database()).get_run(args.run_id)
    if run is None:
        raise SystemExit(f"Run {args.run_id} not found")
    _print_json(run)


def list_runs(args: argparse.Namespace) -> None:
    _print_json(
        RunTracker(get_database()).recent_runs(kind=args.kind, status=args.status, limit=args.limit)
    )


def list_active(args: argparse.Namespace) -> None:  # noqa: ARG001
    _print_json(RunTracker(get_database()).active_runs())


def show_stats(args: argparse.Namespace) -> None:
    _print_json(RunTracker(get_database()).stats(days=args.days))


async def cancel_run(args: argparse.Namespace) -> None:
    """Mark a run cancelled, then ask Temporal to cancel its workflow.

    The tracker row goes first so the workflow's own failure handling cannot
    overwrite the cancellation.
    """

    tracker = RunTracker(get_database())
    if not tracker.update_status(args.run_id, "cancelled", error_message=args.reason):
        raise SystemExit(f"Run {args.run_id} is not queued or running")
    if not args.record_only:
        client = await _connect()
        await client.get_workflow_handle(args.run_id).cancel()
    print(f"Cancelled run {args.run_id}")


def purge_registrations(args: argparse.Namespace) -> None:  # noqa: ARG001
    removed = WebhookRegistry(get_database()).purge_expired()
    print(f"Removed {removed} expired webhook registrations")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="listing-ingest", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)
    modes = [mode.value for mode in CompletionMode]

    discover = sub.add_parser("discover", help="Start a discovery collection run")
    discover.add_argument("--location", action="append", required=True, help="Repeat for several locations")
    discover.add_argument("--category", default=DEFAULT_LISTING_CATEGORY)
    discover.add_argument("--home-type", dest="home_type")
    discover.add_argument("--days-on-market", dest="days_on_market", type=int)
    discover.add_argument("--exact-address", dest="exact_address", action="store_true")
    discover.add_argument("--mode", choices=modes)
    discover.add_argument("--workflow-id", dest="workflow_id")
    discover.add_argument("--triggered-by", dest="triggered_by", default="cli")
    discover.add_argument("--wait", action="store_true", help="Block until the run finishes")
    discover.set_defaults(handler=start_discovery)

    details = sub.add_parser("details", help="Start a detail enrichment run")
    details.add_argument("--ids", nargs="+")
    details.add_argument("--auto", action="store_true", help="Pick records that still lack details")
    details.add_argument("--limit", type=int, default=runtime_config.auto_enrich_limit)
    details.add_argument("--collection-id", dest="collection_id")
    details.add_argument("--batch-size", dest="batch_size", type=int)
    details.add_argument("--mode", choices=modes)
    details.add_argument("--workflow-id", dest="workflow_id")
    details.add_argument("--triggered-by", dest="triggered_by", default="cli")
    details.add_argument("--wait", action="store_true")
    details.set_defaults(handler=start_details)

    monitor = sub.add_parser("monitor", help="Start a daily monitoring run now")
    monitor.add_argument("--location", action="append", help="Defaults to monitored_locations in runtime.yaml")
    monitor.add_argument("--mode", choices=modes)
    monitor.add_argument("--triggered-by", dest="triggered_by", default="cli")
    monitor.add_argument("--workflow-id", dest="workflow_id")
    monitor.add_argument("--wait", action="store_true")
    monitor.set_defaults(handler=start_monitoring)

    changes = sub.add_parser("changes", help="List recorded listing changes")
    changes.add_argument("--identifier")
    changes.add_argument("--collection-id")
    changes.add_argument("--type", choices=[change_type.value for change_type in ChangeType])
    changes.set_defaults(handler=list_changes)

    monitoring_runs = sub.add_parser("monitoring-runs", help="List recent daily monitoring runs")
    monitoring_runs.add_argument("--limit", type=int, default=runtime_config.recent_runs_limit)
    monitoring_runs.set_defaults(handler=list_monitoring_runs)

    run = sub.add_parser("run", help="Show one run")
    run.add_argument("run_id")
    run.set_defaults(handler=show_run)

    runs = sub.add_parser("runs", help="List recent runs")
    runs.add_argument("--kind", choices=RUN_KINDS)
    runs.add_argument("--status")
    runs.add_argument("--limit", type=int, default=runtime_config.recent_runs_limit)
    runs.set_defaults(handler=list_runs)

    active = sub.add_parser("active", help="List queued and running runs")
    active.set_defaults(handler=list_active)

    stats = sub.add_parser("stats", help="Run counts and totals by type and status")
    stats.add_argument("--days", type=int, default=7)
    stats.set_defaults(handler=show_stats)

    cancel = sub.add_parser("cancel", help="Cancel a queued or running run")
    cancel.add_argument("run_id")
    cancel.add_argument("--reason", default="Cancelled from the command line")
    cancel.add_argument(
        "--record-only",
        dest="record_only",
        action="store_true",
        help="Only mark the run row; the workflow is already gone",
    )
    cancel.set_defaults(handler=cancel_run)

    purge = sub.add_parser("purge-registrations", help="Delete expired webhook registrations")
    purge.set_defaults(handler=purge_registrations)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    result = args.handler(args)
    if asyncio.iscoroutine(result):
        asyncio.run(result)


if __name__ == "__main__":
    main()
