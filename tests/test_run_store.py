from datetime import timedelta

import pytest
from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.db_models import utc_now
from etlcontrol.run_store import (
    RecordFinalizedError,
    finish_attempt_failure,
    finish_attempt_success,
    list_executions,
    pipeline_summary,
    record_skipped,
    start_attempt,
)
from etlcontrol.seed import seed_defaults


def test_terminal_record_cannot_be_modified(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as db:
        record = start_attempt(db, pipeline_name="veterans_pipeline", batch_id="B1", retry_attempt=0)
        finish_attempt_success(db, record, counts={"rows_read": 4, "rows_loaded": 4})

        with pytest.raises(RecordFinalizedError):
            finish_attempt_failure(db, record, error="late failure", error_code="UNIT_FAILED")

    with session_factory() as db:
        stored = list_executions(db, batch_id="B1")[0]
    assert stored.status == "SUCCESS"
    assert (stored.rows_read, stored.rows_loaded) == (4, 4)
    assert stored.duration_seconds >= 0


def test_list_executions_filters_by_window(session_factory: sessionmaker[Session]) -> None:
    with session_factory() as db:
        record_skipped(db, pipeline_name="qa_events_pipeline", batch_id="B1", reason="upstream failed")
        now = utc_now()

        assert len(list_executions(db, since=now - timedelta(minutes=1))) == 1
        assert list_executions(db, until=now - timedelta(minutes=1)) == []
        assert list_executions(db, pipeline_name="other") == []


def test_pipeline_summary_counts_per_configured_pipeline(session_factory: sessionmaker[Session]) -> None:
    seed_defaults(session_factory)
    with session_factory() as db:
        ok = start_attempt(db, pipeline_name="veterans_pipeline", batch_id="B1", retry_attempt=0)
        finish_attempt_success(db, ok, counts={"rows_loaded": 10})
        failed = start_attempt(db, pipeline_name="veterans_pipeline", batch_id="B2", retry_attempt=0)
        finish_attempt_failure(db, failed, error="boom", error_code="UNIT_FAILED")

        summary = {row["pipeline_name"]: row for row in pipeline_summary(db, since=utc_now() - timedelta(days=1))}

    assert len(summary) == 7
    veterans = summary["veterans_pipeline"]
    assert (veterans["total_executions"], veterans["successful_executions"], veterans["failed_executions"]) == (2, 1, 1)
    assert veterans["last_successful_execution"] is not None
    idle = summary["qa_events_pipeline"]
    assert (idle["total_executions"], idle["avg_duration_seconds"]) == (0, None)
