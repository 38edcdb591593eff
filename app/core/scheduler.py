"""
APScheduler integration for FastAPI.

Runs housekeeping jobs in-process with in-memory schedule storage.

Jobs:
- Task sweep: evicts expired generation tasks from the registry (every minute)
"""

from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.interval import IntervalTrigger

from app.config import get_config, get_settings
from app.core.logging import get_logger
from app.generation.registry import TaskRegistry

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncScheduler | None = None

# Registry swept by the scheduled job; set in start_scheduler
_registry: TaskRegistry | None = None


async def sweep_tasks_job() -> None:
    """Task sweep job - drops tasks past their age limit or retention window."""
    if _registry is None:
        logger.debug("sweep_tasks_no_registry")
        return
    removed = _registry.sweep()
    if removed:
        logger.bind(removed=removed, remaining=len(_registry)).info("scheduled_sweep_completed")


async def start_scheduler(registry: TaskRegistry) -> AsyncScheduler | None:
    """Initialize and start the scheduler."""
    global scheduler, _registry

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    _registry = registry
    interval = get_config().tasks.sweep_interval_seconds

    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()

    scheduler.subscribe(_on_job_completed)

    await scheduler.add_schedule(
        sweep_tasks_job,
        IntervalTrigger(seconds=interval),
        id="sweep_tasks",
        conflict_policy=ConflictPolicy.replace,
    )

    # Start the scheduler's background worker to actually process jobs
    await scheduler.start_in_background()

    logger.info("scheduler_started", jobs=["sweep_tasks"], interval_seconds=interval)
    return scheduler


async def _on_job_completed(event: Any) -> None:
    """Log failed job runs."""
    if isinstance(event, JobReleased) and event.outcome == JobOutcome.error:
        exception = getattr(event, "exception", None)
        logger.bind(
            schedule_id=event.schedule_id or "unknown",
            error=str(exception) if exception else None,
        ).error("scheduled_job_failed")


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler, _registry
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        logger.info("scheduler_stopped")
        scheduler = None
    _registry = None
