from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import socket
import threading
import time
import uuid

from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.config_store import ConfigSnapshot
from etlcontrol.db_models import utc_now
from etlcontrol.errors import (
    ConfigurationError,
    DataQualityError,
    EtlControlError,
    MergeConflictError,
    UnitInvocationError,
)
from etlcontrol.notify import LoggingNotifier, Notifier, alert_recipients
from etlcontrol.registry import Unit, UnitRegistry
from etlcontrol.report import RUN_CANCELLED, RUN_FAILED, RUN_SUCCESS, PipelineOutcome, RunReport
from etlcontrol.retry import RetryExhaustedError, run_with_retries
from etlcontrol.run_store import finish_attempt_failure, finish_attempt_success, record_skipped, start_attempt
from etlcontrol.schemas import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    AlertEvent,
    BatchScore,
    ExecutionPlan,
    PipelineDefinition,
    UnitInput,
    UnitResult,
)
from etlcontrol.scoring import DqScorer


logger = logging.getLogger(__name__)

# quality setting, rule importances it covers, action when a batch scores below it
QUALITY_TIERS = (
    ("min_dq_score_critical", ("CRITICAL",), "block"),
    ("min_dq_score_important", ("HIGH",), "warn"),
    ("min_dq_score_advisory", ("MEDIUM", "LOW"), "log"),
)


def new_batch_id(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    # Runs started within the same second still get distinct ids.
    return f"BATCH_{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:6]}"


@dataclass(frozen=True)
class RunContext:
    batch_id: str
    actor: str = "etlcontrol"
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, UnitInvocationError):
        return exc.error_code
    if isinstance(exc, (MergeConflictError, DataQualityError)):
        return exc.error_code
    if isinstance(exc, ConfigurationError):
        return "CONFIGURATION"
    return type(exc).__name__.upper()


def _is_retryable(exc: Exception) -> bool:
    # Repeating a conflicting merge, a bad config or a low-quality batch would fail the same way.
    return not isinstance(exc, (MergeConflictError, ConfigurationError, DataQualityError))


class ExecutionCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: UnitRegistry,
        snapshot: ConfigSnapshot,
        *,
        scorer: DqScorer | None = None,
        notifier: Notifier | None = None,
        max_workers: int = 4,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.snapshot = snapshot
        self.scorer = scorer
        self.notifier = notifier or LoggingNotifier()
        self.max_workers = max(1, max_workers)
        self.execution_host = socket.gethostname()

    def validate(self, plan: ExecutionPlan) -> None:
        problems: list[str] = []
        for batch in plan.batches:
            targets = Counter(plan.pipelines[name].target_table for name in batch)
            for target, count in sorted(targets.items()):
                if count > 1:
                    sharing = sorted(name for name in batch if plan.pipelines[name].target_table == target)
                    problems.append(f"pipelines {', '.join(sharing)} would write '{target}' concurrently")
            for name in batch:
                pipeline = plan.pipelines[name]
                for unit_name in (pipeline.transform_unit, pipeline.load_unit):
                    if unit_name not in self.registry:
                        problems.append(f"pipeline '{name}' references unregistered unit '{unit_name}'")
        if problems:
            raise ConfigurationError("; ".join(problems))

    def run(self, plan: ExecutionPlan, context: RunContext) -> RunReport:
        self.validate(plan)
        started_at = utc_now()
        outcomes: dict[str, PipelineOutcome] = {}
        halted_by: str | None = None

        logger.info("orchestration run started", extra={"batch_id": context.batch_id, "batches": len(plan.batches)})

        for name, ancestor in sorted(plan.blocked.items()):
            outcomes[name] = self._skip(context, name, f"dependency '{ancestor}' is disabled", (ancestor, name))

        for index, batch in enumerate(plan.batches):
            to_run: list[PipelineDefinition] = []
            for name in batch:
                pipeline = plan.pipelines[name]
                if context.cancelled:
                    outcomes[name] = self._skip(context, name, "run cancelled", (name,))
                    continue
                if halted_by is not None:
                    outcomes[name] = self._skip(
                        context, name, f"run halted after '{halted_by}' failed", (halted_by, name)
                    )
                    continue
                upstream = self._failed_upstream(pipeline, outcomes)
                if upstream is not None:
                    chain = outcomes[upstream].failure_chain or (upstream,)
                    outcomes[name] = self._skip(
                        context, name, f"upstream pipeline '{chain[0]}' did not succeed", chain + (name,)
                    )
                    continue
                to_run.append(pipeline)

            if to_run:
                logger.info(
                    "dispatching batch",
                    extra={"batch_id": context.batch_id, "batch_index": index, "pipelines": ",".join(p.name for p in to_run)},
                )
                outcomes.update(self._run_batch(to_run, context))

            for name in batch:
                outcome = outcomes[name]
                if outcome.status == STATUS_FAILED and not plan.pipelines[name].skip_on_error and halted_by is None:
                    halted_by = name
                    logger.error("fatal pipeline failure, halting run", extra={"batch_id": context.batch_id, "pipeline": name})

        if context.cancelled:
            status = RUN_CANCELLED
        elif any(outcome.status == STATUS_FAILED for outcome in outcomes.values()):
            status = RUN_FAILED
        else:
            status = RUN_SUCCESS

        ordered = [name for batch in plan.batches for name in batch] + sorted(plan.blocked)
        report = RunReport(
            batch_id=context.batch_id,
            status=status,
            started_at=started_at,
            finished_at=utc_now(),
            batches=plan.batches,
            outcomes={name: outcomes[name] for name in ordered},
            warnings=plan.warnings,
        )
        logger.info("orchestration run finished", extra={"batch_id": context.batch_id, "status": status})
        return report

    def _failed_upstream(self, pipeline: PipelineDefinition, outcomes: dict[str, PipelineOutcome]) -> str | None:
        for dependency in sorted(pipeline.depends_on):
            outcome = outcomes.get(dependency)
            # Dependencies without an outcome were disabled and count as satisfied.
            if outcome is not None and outcome.status != STATUS_SUCCESS:
                return dependency
        return None

    def _run_batch(self, pipelines: list[PipelineDefinition], context: RunContext) -> dict[str, PipelineOutcome]:
        results: dict[str, PipelineOutcome] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pipelines))) as pool:
            futures = {pool.submit(self._run_pipeline, pipeline, context): pipeline.name for pipeline in pipelines}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return results

    def _run_pipeline(self, pipeline: PipelineDefinition, context: RunContext) -> PipelineOutcome:
        if context.cancelled:
            return self._skip(context, pipeline.name, "run cancelled", (pipeline.name,))

        attempts = 0
        last_counts: dict[str, int] = {}

        def attempt(retry_attempt: int) -> dict[str, int]:
            nonlocal attempts
            attempts += 1
            return self._attempt(pipeline, context, retry_attempt, last_counts)

        def on_failure(retry_attempt: int, exc: Exception) -> None:
            logger.warning(
                "pipeline attempt failed",
                extra={
                    "batch_id": context.batch_id,
                    "pipeline": pipeline.name,
                    "retry_attempt": retry_attempt,
                    "error": str(exc),
                },
            )

        try:
            counts = run_with_retries(
                attempt,
                max_retries=pipeline.retry_count,
                delay_seconds=pipeline.retry_delay_seconds,
                cancel_event=context.cancel_event,
                on_attempt_failure=on_failure,
                should_retry=_is_retryable,
            )
        except RetryExhaustedError as exc:
            cause = exc.__cause__ or exc
            error = str(cause)
            if exc.cancelled:
                error = f"{error} (retries suppressed by cancellation)"
            outcome = PipelineOutcome(
                pipeline_name=pipeline.name,
                status=STATUS_FAILED,
                attempts=attempts,
                error=error,
                error_code=_error_code(cause),
                failure_chain=(pipeline.name,),
                **last_counts,
            )
            logger.error(
                "pipeline failed",
                extra={"batch_id": context.batch_id, "pipeline": pipeline.name, "attempts": attempts},
            )
            if pipeline.alert_on_failure:
                self._alert(pipeline, context, error)
            return outcome

        logger.info(
            "pipeline succeeded",
            extra={"batch_id": context.batch_id, "pipeline": pipeline.name, "attempts": attempts, **counts},
        )
        return PipelineOutcome(pipeline_name=pipeline.name, status=STATUS_SUCCESS, attempts=attempts, **counts)

    def _attempt(
        self,
        pipeline: PipelineDefinition,
        context: RunContext,
        retry_attempt: int,
        last_counts: dict[str, int],
    ) -> dict[str, int]:
        counts = {"rows_read": 0, "rows_transformed": 0, "rows_loaded": 0, "rows_rejected": 0}
        last_counts.clear()
        last_counts.update(counts)

        with self.session_factory() as db:
            # One execution record per attempt so retries stay auditable.
            record = start_attempt(
                db,
                pipeline_name=pipeline.name,
                batch_id=context.batch_id,
                retry_attempt=retry_attempt,
                executed_by=context.actor,
                execution_host=self.execution_host,
            )
            try:
                started = time.monotonic()
                transformed = self._invoke(
                    pipeline.transform_unit,
                    UnitInput(pipeline=pipeline, batch_id=context.batch_id, attempt=retry_attempt),
                )
                transform_seconds = time.monotonic() - started

                records = transformed.records
                counts["rows_read"] = transformed.rows_read
                counts["rows_transformed"] = transformed.rows_transformed or (len(records) if records else 0)
                counts["rows_rejected"] = transformed.rows_rejected
                if records is not None and self.scorer is not None and self.scorer.has_rules(pipeline.entity_type):
                    screened = self.scorer.score_batch(pipeline.entity_type, records)
                    counts["rows_rejected"] += len(screened.rejected)
                    records = screened.accepted
                    logger.info(
                        "dq screening finished",
                        extra={
                            "pipeline": pipeline.name,
                            "accepted": len(screened.accepted),
                            "rejected": len(screened.rejected),
                            "average_score_pct": screened.average_percentage,
                        },
                    )
                    self._enforce_quality(pipeline, context, screened)
                last_counts.update(counts)

                started = time.monotonic()
                loaded = self._invoke(
                    pipeline.load_unit,
                    UnitInput(pipeline=pipeline, batch_id=context.batch_id, attempt=retry_attempt, records=records),
                )
                load_seconds = time.monotonic() - started

                counts["rows_loaded"] = loaded.rows_loaded
                counts["rows_rejected"] += loaded.rows_rejected
                if not counts["rows_read"]:
                    counts["rows_read"] = loaded.rows_read
                last_counts.update(counts)

                finish_attempt_success(
                    db,
                    record,
                    counts=counts,
                    transform_seconds=transform_seconds,
                    load_seconds=load_seconds,
                )
                return counts
            except Exception as exc:
                finish_attempt_failure(db, record, error=str(exc), error_code=_error_code(exc), counts=counts)
                raise

    def _enforce_quality(self, pipeline: PipelineDefinition, context: RunContext, screened: BatchScore) -> None:
        for setting, importance_levels, action in QUALITY_TIERS:
            threshold = self.snapshot.get_number("quality", setting)
            score = screened.tier_percentage(importance_levels)
            if threshold is None or score is None or score >= threshold:
                continue
            extra = {
                "batch_id": context.batch_id,
                "pipeline": pipeline.name,
                "setting": setting,
                "score_pct": score,
                "threshold": threshold,
            }
            if action == "block":
                logger.error("critical data quality below threshold", extra=extra)
                raise DataQualityError(pipeline.entity_type, setting, score, threshold)
            if action == "warn":
                logger.warning("important data quality below threshold", extra=extra)
            else:
                logger.info("advisory data quality below threshold", extra=extra)

    def _invoke(self, unit_name: str, unit_input: UnitInput) -> UnitResult:
        unit: Unit = self.registry.resolve(unit_name)
        try:
            result = unit.execute(unit_input)
        except EtlControlError:
            raise
        except Exception as exc:
            raise UnitInvocationError(unit_name, str(exc)) from exc
        if not isinstance(result, UnitResult):
            raise UnitInvocationError(unit_name, f"returned {type(result).__name__}, expected UnitResult")
        return result

    def _skip(self, context: RunContext, name: str, reason: str, chain: tuple[str, ...]) -> PipelineOutcome:
        with self.session_factory() as db:
            record_skipped(db, pipeline_name=name, batch_id=context.batch_id, reason=reason, executed_by=context.actor)
        logger.info("pipeline skipped", extra={"batch_id": context.batch_id, "pipeline": name, "reason": reason})
        return PipelineOutcome(
            pipeline_name=name,
            status=STATUS_SKIPPED,
            error=reason,
            error_code="SKIPPED",
            failure_chain=chain,
        )

    def _alert(self, pipeline: PipelineDefinition, context: RunContext, reason: str) -> None:
        if not self.snapshot.get_boolean("alerting", "enable_email_alerts", True):
            logger.info(
                "alerts disabled, not notifying", extra={"pipeline": pipeline.name, "batch_id": context.batch_id}
            )
            return
        event = AlertEvent(
            pipeline_name=pipeline.name,
            batch_id=context.batch_id,
            reason=reason,
            recipients=alert_recipients(pipeline, self.snapshot),
            raised_at=utc_now(),
        )
        try:
            self.notifier.notify(event)
        except Exception:
            # Delivery is fire-and-forget; a broken sink must not change the pipeline outcome.
            logger.exception("alert delivery failed", extra={"pipeline": pipeline.name})
