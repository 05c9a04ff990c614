"""Scheduler process entry point for the pipeline orchestration engine.

The HTTP API already lets a client drive a job by polling. This process is the
unattended alternative: it repeatedly lists active jobs and calls step() on
each, so jobs make progress without anyone polling.

Architecture Pattern:
    - Separate Process: Runs independently of the web service
    - Stateless: Every cycle re-reads active jobs from the database
    - Safe Concurrency: step() holds the job lease, so a scheduler and a
      polling client (or two schedulers) never run the same job twice
    - Graceful Shutdown: Listens for SIGTERM, finishes the current cycle, exits cleanly

Usage:
    python -m app.worker
"""

import asyncio
import signal
import sys
import uuid
from collections.abc import Iterable

from app import database
from app.capabilities import build_registry
from app.clients.capability import CapabilityClient
from app.config import (
    get_database_url,
    get_manual_capabilities,
    get_max_concurrent_jobs,
    get_scheduler_interval_seconds,
)
from app.exceptions import PersistenceError
from app.orchestrator.controller import ResumableStepController, StepResult
from app.services.job_lease import JobLeaseManager
from app.services.persistence import SqlPersistenceGateway
from app.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT for graceful shutdown.

    Args:
        signum: Signal number (typically SIGTERM = 15)
        frame: Current stack frame (unused)

    Side Effects:
        Sets global shutdown_requested flag to True
    """
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def _step_one(
    controller: ResumableStepController, job_id: uuid.UUID, semaphore: asyncio.Semaphore
) -> StepResult | None:
    async with semaphore:
        try:
            return await controller.step(job_id)
        except Exception as e:
            # A job deleted between listing and stepping is not an error for the loop
            log.warning(
                "scheduler_step_failed",
                job_id=str(job_id),
                error_type=type(e).__name__,
                error_message=str(e)[:200],
            )
            return None


async def run_scheduler_cycle(
    controller: ResumableStepController,
    job_ids: Iterable[uuid.UUID],
    max_concurrent_jobs: int,
) -> list[StepResult]:
    """Step each job once, at most max_concurrent_jobs at a time.

    Returns:
        The results of the steps that returned.
    """
    semaphore = asyncio.Semaphore(max_concurrent_jobs)
    results = await asyncio.gather(
        *(_step_one(controller, job_id, semaphore) for job_id in job_ids)
    )
    return [r for r in results if r is not None]


async def scheduler_main_loop(
    controller: ResumableStepController,
    persistence: SqlPersistenceGateway,
    interval_seconds: int | None = None,
    max_concurrent_jobs: int | None = None,
    max_cycles: int | None = None,
) -> None:
    """Run scheduler cycles until shutdown is requested.

    Sleeps interval_seconds whenever a cycle made no progress (no active jobs,
    or every step was busy, retryable, idle or failed), so a queue with work
    drains at full speed and a blocked one is polled at the configured cadence.
    """
    interval = interval_seconds or get_scheduler_interval_seconds()
    concurrency = max_concurrent_jobs or get_max_concurrent_jobs()
    log.info("scheduler_started", interval_seconds=interval, max_concurrent_jobs=concurrency)

    cycles = 0
    while not shutdown_requested and (max_cycles is None or cycles < max_cycles):
        cycles += 1
        try:
            job_ids = await persistence.list_active_job_ids()
        except PersistenceError as e:
            log.error("scheduler_cycle_failed", error_message=str(e)[:200])
            await asyncio.sleep(interval)
            continue
        results = await run_scheduler_cycle(controller, job_ids, concurrency)
        progressed = [r for r in results if r.made_progress]
        if job_ids:
            log.info(
                "scheduler_cycle_completed",
                stepped=len(results),
                progressed=len(progressed),
                finished=len([r for r in results if r.done]),
                active=len(job_ids),
            )
        if not progressed:
            await asyncio.sleep(interval)

    log.info("scheduler_stopped", cycles=cycles)


async def _run() -> None:
    persistence = SqlPersistenceGateway()
    leases = JobLeaseManager()
    client = CapabilityClient()
    try:
        leases.require_ttl_above(client.worst_case_call_seconds, "the worst-case capability call")
        registry = build_registry(client, manual=get_manual_capabilities())
        controller = ResumableStepController(persistence, leases, registry)
        await scheduler_main_loop(controller, persistence)
    finally:
        await client.close()
        if database.engine:
            await database.engine.dispose()
            log.info("sqlalchemy_engine_closed")


def main() -> None:
    """Scheduler process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    configure_logging()
    try:
        database_url = get_database_url()
        # Redact credentials when logging
        database_host = (
            database_url.split("@")[-1].split("/")[0] if "@" in database_url else "local"
        )
        log.info("scheduler_configuration_loaded", database_url_host=database_host)
    except Exception as e:
        log.error("configuration_load_failed", error=str(e), exc_info=True)
        sys.exit(1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)  # Also handle Ctrl+C for local dev

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        log.info("scheduler_interrupted_by_user")
    except Exception as e:
        log.error("scheduler_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)
    log.info("scheduler_exited_successfully")


if __name__ == "__main__":
    main()
