import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from etlcontrol.errors import EtlControlError
from etlcontrol.report import RUN_SUCCESS
from etlcontrol.runner import OrchestrationRunner


logger = logging.getLogger(__name__)


def _run_daily_orchestration(runner: OrchestrationRunner) -> None:
    try:
        report = runner.run()
    except EtlControlError:
        # Bad metadata stops this run only; the next trigger reads a fresh snapshot.
        logger.exception("scheduled orchestration rejected configuration")
        return

    if report.status != RUN_SUCCESS:
        logger.error(
            "scheduled orchestration run did not succeed",
            extra={
                "batch_id": report.batch_id,
                "status": report.status,
                "failed": ",".join(outcome.pipeline_name for outcome in report.failed),
            },
        )
        return
    logger.info(
        "scheduled orchestration run completed",
        extra={"batch_id": report.batch_id, "status": report.status},
    )


def start_scheduler(runner: OrchestrationRunner, *, run_now: bool = False) -> None:
    settings = runner.settings
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_orchestration,
        "cron",
        args=[runner],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_orchestration",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_daily_orchestration(runner)

    scheduler.start()
