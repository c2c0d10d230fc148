"""
Scheduled jobs

Daily accrual and task generation, run with the schedule library at local
times in the jurisdiction timezone.
"""

from typing import Optional
import logging
import time

import schedule

from .config import CollectionConfig
from .system import CollectionSystem
from .errors import ConflictError


logger = logging.getLogger(__name__)


def run_accrual_job(system: CollectionSystem) -> None:
    """Nightly penalty and interest accrual"""
    try:
        report = system.accrual_scheduler.run()
        logger.info(
            "Scheduled accrual finished: %d updated, %d skipped, %d errors",
            report.demands_updated, len(report.skipped), len(report.errors)
        )
    except ConflictError as e:
        logger.warning("Scheduled accrual not started: %s", e)
    except Exception as e:
        logger.exception("Scheduled accrual failed: %s", e)


def run_task_generation_job(system: CollectionSystem) -> None:
    """Morning task generation for every active collector"""
    try:
        summary = system.task_synthesizer.generate_for_all()
        logger.info(
            "Scheduled task generation finished: %d tasks for %d collectors",
            summary['tasks_generated'], summary['collectors']
        )
    except Exception as e:
        logger.exception("Scheduled task generation failed: %s", e)


def register_daily_jobs(
    scheduler: schedule.Scheduler,
    system: CollectionSystem,
    config: CollectionConfig
) -> None:
    """Register accrual and task generation at their configured local times"""
    tz_name = config.timezone
    scheduler.every().day.at(config.accrual_run_time, tz_name).do(run_accrual_job, system)
    scheduler.every().day.at(config.task_generation_time, tz_name).do(run_task_generation_job, system)
    logger.info(
        "Registered accrual at %s and task generation at %s (%s)",
        config.accrual_run_time, config.task_generation_time, tz_name
    )


def run_scheduler_loop(
    system: CollectionSystem,
    config: CollectionConfig,
    scheduler: Optional[schedule.Scheduler] = None
) -> None:
    """Run pending jobs until interrupted"""
    scheduler = scheduler or schedule.Scheduler()
    register_daily_jobs(scheduler, system, config)
    system.announce_start("scheduler")

    while True:
        scheduler.run_pending()
        time.sleep(config.scheduler_poll_seconds)
