from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from etlcontrol.db_models import EtlExecutionLog, PipelineConfig, utc_now
from etlcontrol.schemas import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    TERMINAL_STATUSES,
)


class RecordFinalizedError(RuntimeError):
    pass


def _ensure_open(record: EtlExecutionLog) -> None:
    if record.status in TERMINAL_STATUSES:
        raise RecordFinalizedError(
            f"execution record {record.execution_id} for '{record.pipeline_name}' is already {record.status}"
        )


def _apply_counts(record: EtlExecutionLog, counts: dict[str, int] | None) -> None:
    for column in ("rows_read", "rows_transformed", "rows_loaded", "rows_rejected"):
        if counts and column in counts:
            setattr(record, column, counts[column])


def _close(record: EtlExecutionLog, status: str) -> None:
    finished_at = utc_now()
    # Clock steps backwards are clamped so end never precedes start.
    record.execution_end_timestamp = max(finished_at, record.execution_start_timestamp)
    record.duration_seconds = (record.execution_end_timestamp - record.execution_start_timestamp).total_seconds()
    record.status = status


def start_attempt(
    db: Session,
    *,
    pipeline_name: str,
    batch_id: str,
    retry_attempt: int,
    executed_by: str | None = None,
    execution_host: str | None = None,
) -> EtlExecutionLog:
    record = EtlExecutionLog(
        pipeline_name=pipeline_name,
        batch_id=batch_id,
        retry_attempt=retry_attempt,
        status=STATUS_RUNNING,
        execution_start_timestamp=utc_now(),
        executed_by=executed_by,
        execution_host=execution_host,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def finish_attempt_success(
    db: Session,
    record: EtlExecutionLog,
    *,
    counts: dict[str, int],
    transform_seconds: float | None = None,
    load_seconds: float | None = None,
) -> None:
    _ensure_open(record)
    _apply_counts(record, counts)
    record.transform_duration_seconds = transform_seconds
    record.load_duration_seconds = load_seconds
    record.error_message = None
    record.error_code = None
    _close(record, STATUS_SUCCESS)
    db.commit()


def finish_attempt_failure(
    db: Session,
    record: EtlExecutionLog,
    *,
    error: str,
    error_code: str,
    counts: dict[str, int] | None = None,
) -> None:
    _ensure_open(record)
    _apply_counts(record, counts)
    record.error_message = error
    record.error_code = error_code
    _close(record, STATUS_FAILED)
    db.commit()


def record_skipped(
    db: Session,
    *,
    pipeline_name: str,
    batch_id: str,
    reason: str,
    executed_by: str | None = None,
) -> EtlExecutionLog:
    now = utc_now()
    record = EtlExecutionLog(
        pipeline_name=pipeline_name,
        batch_id=batch_id,
        retry_attempt=0,
        status=STATUS_SKIPPED,
        execution_start_timestamp=now,
        execution_end_timestamp=now,
        duration_seconds=0.0,
        error_message=reason,
        error_code="SKIPPED",
        executed_by=executed_by,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_executions(
    db: Session,
    *,
    pipeline_name: str | None = None,
    batch_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> list[EtlExecutionLog]:
    stmt = select(EtlExecutionLog)
    if pipeline_name is not None:
        stmt = stmt.where(EtlExecutionLog.pipeline_name == pipeline_name)
    if batch_id is not None:
        stmt = stmt.where(EtlExecutionLog.batch_id == batch_id)
    if since is not None:
        stmt = stmt.where(EtlExecutionLog.execution_start_timestamp >= since)
    if until is not None:
        stmt = stmt.where(EtlExecutionLog.execution_start_timestamp < until)
    stmt = stmt.order_by(EtlExecutionLog.execution_start_timestamp, EtlExecutionLog.execution_id)
    return list(db.execute(stmt).scalars().all())


def pipeline_summary(db: Session, *, since: datetime) -> list[dict[str, object]]:
    """Success/failure counts and average duration per configured pipeline since ``since``."""
    log = EtlExecutionLog
    stmt = (
        select(
            PipelineConfig.pipeline_name,
            PipelineConfig.entity_type,
            PipelineConfig.enabled,
            func.count(log.execution_id),
            func.sum(case((log.status == STATUS_SUCCESS, 1), else_=0)),
            func.sum(case((log.status == STATUS_FAILED, 1), else_=0)),
            func.avg(log.duration_seconds),
            func.max(case((log.status == STATUS_SUCCESS, log.execution_end_timestamp), else_=None)),
        )
        .outerjoin(
            log,
            (log.pipeline_name == PipelineConfig.pipeline_name) & (log.execution_start_timestamp >= since),
        )
        .group_by(PipelineConfig.pipeline_name, PipelineConfig.entity_type, PipelineConfig.enabled)
        .order_by(PipelineConfig.pipeline_name)
    )

    summary = []
    for name, entity_type, enabled, total, succeeded, failed, avg_duration, last_success in db.execute(stmt):
        summary.append(
            {
                "pipeline_name": name,
                "entity_type": entity_type,
                "enabled": enabled,
                "total_executions": total,
                "successful_executions": succeeded or 0,
                "failed_executions": failed or 0,
                "avg_duration_seconds": round(avg_duration, 2) if avg_duration is not None else None,
                "last_successful_execution": last_success,
            }
        )
    return summary
