"""Daily monitoring: one discovery pass over the watched locations, then a diff.

Price, status and new-listing changes are written while the discovery child
stores its records. This workflow adds the ``removed`` pass against the last
completed monitoring run over the same locations and keeps the daily totals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from temporalio import workflow
from temporalio.exceptions import ActivityError, ApplicationError, ChildWorkflowError

with workflow.unsafe.imports_passed_through():
    from ..config import runtime_config
    from .activities import complete_monitoring_run, fail_monitoring_run, start_monitoring_run
    from .activities.constants import DEFAULT_LISTING_CATEGORY
    from .collection_workflow import DiscoveryCollectionWorkflow, DiscoveryRequest
    from .helpers.failures import failure_message
    from .snapshot_steps import STEP_TIMEOUT, STORE_RETRY, CompletionTiming, WorkflowEvents

WORKFLOW_NAME = "DailyMonitoring"


@dataclass
class MonitoringRequest:
    # Empty means the monitored_locations list from runtime.yaml.
    locations: List[str] = field(default_factory=list)
    listing_category: str = DEFAULT_LISTING_CATEGORY
    completion_mode: Optional[str] = None
    triggered_by: str = "schedule"
    timing: Optional[CompletionTiming] = None


@dataclass
class MonitoringResult:
    run_id: str
    run_date: str
    status: str
    collection_id: Optional[str] = None
    previous_collection_id: Optional[str] = None
    total_records: int = 0
    new_listings: int = 0
    price_changes: int = 0
    status_changes: int = 0
    removed_listings: int = 0


def monitored_locations(request: MonitoringRequest) -> List[str]:
    locations = request.locations or runtime_config.monitored_locations
    return [str(loc).strip() for loc in locations if str(loc).strip()]


@workflow.defn(name=WORKFLOW_NAME)
class DailyMonitoringWorkflow:
    @workflow.run
    async def run(self, request: MonitoringRequest) -> MonitoringResult:  # type: ignore[override]
        run_id = workflow.info().workflow_id
        run_date = workflow.now().date().isoformat()
        events = WorkflowEvents(WORKFLOW_NAME, run_id)

        locations = monitored_locations(request)
        if not locations:
            raise ApplicationError(
                "No locations to monitor; pass locations or set monitored_locations in runtime.yaml",
                type="InvalidRequest",
                non_retryable=True,
            )

        started = await workflow.execute_activity(
            start_monitoring_run,
            args=[{"run_id": run_id, "run_date": run_date, "locations": locations}],
            start_to_close_timeout=STEP_TIMEOUT,
            retry_policy=STORE_RETRY,
        )
        previous = started.get("previous_collection_id")
        await events.log(
            "monitoring.start",
            data={"locations": len(locations), "previousCollectionId": previous},
        )

        try:
            discovery = await workflow.execute_child_workflow(
                DiscoveryCollectionWorkflow.run,
                DiscoveryRequest(
                    locations=locations,
                    listing_category=request.listing_category,
                    completion_mode=request.completion_mode,
                    triggered_by=request.triggered_by,
                    timing=request.timing,
                ),
                id=f"{run_id}-discovery",
            )
            counts = await workflow.execute_activity(
                complete_monitoring_run,
                args=[
                    {
                        "run_id": run_id,
                        "collection_id": discovery.collection_id,
                        "previous_collection_id": previous,
                        "total_records": discovery.processed,
                    }
                ],
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=STORE_RETRY,
            )
        except (ActivityError, ApplicationError, ChildWorkflowError) as exc:
            message = failure_message(exc)
            await events.log("monitoring.failed", message=message, level="error")
            try:
                await workflow.execute_activity(
                    fail_monitoring_run,
                    args=[{"run_id": run_id, "error_message": message}],
                    start_to_close_timeout=STEP_TIMEOUT,
                    retry_policy=STORE_RETRY,
                )
            except ActivityError as fail_exc:
                workflow.logger.error(
                    "Could not mark monitoring run %s failed: %s", run_id, failure_message(fail_exc)
                )
            raise

        result = MonitoringResult(
            run_id=run_id,
            run_date=run_date,
            status="completed",
            collection_id=discovery.collection_id,
            previous_collection_id=previous,
            total_records=discovery.processed,
            new_listings=counts.get("new_listing", 0),
            price_changes=counts.get("price_change", 0),
            status_changes=counts.get("status_change", 0),
            removed_listings=counts.get("removed", 0),
        )
        await events.log(
            "monitoring.complete",
            data={
                "collectionId": result.collection_id,
                "records": result.total_records,
                "new": result.new_listings,
                "price": result.price_changes,
                "status": result.status_changes,
                "removed": result.removed_listings,
            },
        )
        return result
