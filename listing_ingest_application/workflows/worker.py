import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from temporalio import workflow
from temporalio.client import Client
from temporalio.worker import Interceptor, Worker, WorkflowInboundInterceptor, WorkflowInterceptorClassInput

from ..config import runtime_config, settings
from ..services import telemetry
from ..services.database import get_database
from ..services.webhook_registry import WebhookRegistry
from . import activities
from .activities.constants import RunKind
from .collection_workflow import WORKFLOW_NAME as DISCOVERY_WORKFLOW_NAME
from .collection_workflow import DiscoveryCollectionWorkflow
from .details_workflow import WORKFLOW_NAME as DETAILS_WORKFLOW_NAME
from .details_workflow import DetailEnrichmentWorkflow
from .monitoring_workflow import WORKFLOW_NAME as MONITORING_WORKFLOW_NAME
from .monitoring_workflow import DailyMonitoringWorkflow

WORKFLOW_CLASSES = [
    DiscoveryCollectionWorkflow,
    DetailEnrichmentWorkflow,
    DailyMonitoringWorkflow,
]

ACTIVITY_FUNCTIONS = [
    activities.start_run,
    activities.update_run_metrics,
    activities.record_run_output,
    activities.finish_run,
    activities.open_collection,
    activities.close_collection,
    activities.select_enrichment_candidates,
    activities.select_auto_enrichment_identifiers,
    activities.submit_snapshot,
    activities.check_snapshot_completion,
    activities.release_webhook_registration,
    activities.ingest_snapshot,
    activities.start_monitoring_run,
    activities.complete_monitoring_run,
    activities.fail_monitoring_run,
    activities.record_workflow_event,
]

RUN_KIND_BY_WORKFLOW = {
    DISCOVERY_WORKFLOW_NAME: RunKind.DISCOVERY,
    DETAILS_WORKFLOW_NAME: RunKind.DETAILS,
    MONITORING_WORKFLOW_NAME: RunKind.MONITORING,
}

REGISTRATION_PURGE_INTERVAL_SECONDS = 15 * 60
CONNECT_TIMEOUT_SECONDS = 10.0


class RunStartLoggingInterceptor(WorkflowInboundInterceptor):
    """One console line per run start, tagged with the run kind stored in workflow_runs."""

    def __init__(self, next: WorkflowInboundInterceptor) -> None:
        super().__init__(next)
        self._logger = logging.getLogger("temporal.worker.workflow")

    async def execute_workflow(self, input: object) -> object:  # noqa: A002
        info = workflow.info()
        if not workflow.unsafe.is_replaying():
            self._logger.info(
                "Run %s started: kind=%s workflow=%s attempt=%s queue=%s",
                info.workflow_id,
                RUN_KIND_BY_WORKFLOW.get(info.workflow_type, "unknown"),
                info.workflow_type,
                info.attempt,
                info.task_queue,
            )
        return await super().execute_workflow(input)


class RunLoggingInterceptor(Interceptor):
    def workflow_interceptor_class(
        self, input: WorkflowInterceptorClassInput  # noqa: ARG002
    ) -> Optional[type[WorkflowInboundInterceptor]]:
        return RunStartLoggingInterceptor


def _setup_logging() -> logging.Logger:
    """Send worker logs to stdout and to logs/listing_ingest_worker.log."""

    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    fmt = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    logging.basicConfig(
        level=logging.INFO,
        format=fmt,
        handlers=[
            RotatingFileHandler(log_dir / "listing_ingest_worker.log", maxBytes=5_000_000, backupCount=3),
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )
    # httpx logs every provider poll at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("temporal.worker")


async def registration_purge_loop(interval_seconds: int = REGISTRATION_PURGE_INTERVAL_SECONDS) -> None:
    """Delete webhook registrations whose TTL has passed."""

    logger = logging.getLogger("temporal.worker.webhooks")
    registry = WebhookRegistry(get_database())
    try:
        while True:
            try:
                removed = await asyncio.to_thread(registry.purge_expired)
                if removed:
                    logger.info("Registration purge removed %s expired entries", removed)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Registration purge failed: %s", exc)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Registration purge loop stopped.")


async def connect_temporal(logger: logging.Logger) -> Optional[Client]:
    logger.info("Connecting to Temporal at %s (namespace %s)", settings.temporal_address, settings.temporal_namespace)
    try:
        return await asyncio.wait_for(
            Client.connect(settings.temporal_address, namespace=settings.temporal_namespace),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error(
            "No answer from Temporal at %s within %ss; is the server up?",
            settings.temporal_address,
            CONNECT_TIMEOUT_SECONDS,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Could not connect to Temporal: %s", exc)
    return None


async def main() -> None:
    logger = _setup_logging()
    logger.info(
        "Listing ingest worker: database=%s blobs=%s completion=%s batch_size=%s concurrency=%s",
        settings.database_path,
        settings.blob_backend,
        settings.default_completion_mode,
        runtime_config.batch_size,
        runtime_config.batch_concurrency,
    )
    if telemetry.is_configured():
        logger.info("Exporting workflow events to %s", settings.otlp_logs_endpoint)

    await asyncio.to_thread(get_database().initialize)

    client = await connect_temporal(logger)
    if client is None:
        return

    worker = Worker(
        client,
        task_queue=settings.task_queue,
        workflows=WORKFLOW_CLASSES,
        activities=ACTIVITY_FUNCTIONS,
        interceptors=[RunLoggingInterceptor()],
    )
    purge_task = asyncio.create_task(registration_purge_loop())
    logger.info("Polling task queue %s (pid %s)", settings.task_queue, os.getpid())
    try:
        await worker.run()
    except asyncio.CancelledError:
        logger.info("Worker cancelled; shutting down")
    finally:
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
        telemetry.force_flush_event_logs()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger("temporal.worker").info("Stopped with CTRL+C")
