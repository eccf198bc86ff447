from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime


SOURCE_TYPES = frozenset({"SINGLE_SOURCE", "MULTI_SOURCE", "EXTERNAL"})
LOAD_TYPES = frozenset({"FULL", "INCREMENTAL", "DELTA"})
RULE_TYPES = frozenset({"NOT_NULL", "RANGE", "REGEX", "CUSTOM_FUNCTION", "REFERENCE_CHECK"})
IMPORTANCE_LEVELS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")

STATUS_RUNNING = "RUNNING"
STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_SKIPPED = "SKIPPED"
TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_FAILED, STATUS_SKIPPED})


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    entity_type: str
    execution_order: int
    transform_unit: str
    load_unit: str
    target_table: str
    parallel_group: int | None = None
    depends_on: frozenset[str] = frozenset()
    source_type: str = "SINGLE_SOURCE"
    load_type: str = "FULL"
    staging_table: str | None = None
    enabled: bool = True
    skip_on_error: bool = False
    retry_count: int = 0
    retry_delay_seconds: int = 60
    alert_on_failure: bool = True
    alert_email_list: tuple[str, ...] = ()
    description: str | None = None


@dataclass(frozen=True)
class Scd2Definition:
    table_name: str
    staging_table: str
    business_key_columns: tuple[str, ...]
    surrogate_key_column: str | None = None
    hash_column: str = "source_record_hash"
    exclude_from_insert: frozenset[str] = frozenset()
    schema_name: str | None = None
    staging_schema: str | None = None
    active: bool = True
    enabled: bool = True


@dataclass(frozen=True)
class DqRule:
    entity_type: str
    field_name: str
    rule_type: str
    condition: str | None
    points_if_met: int
    points_if_not_met: int = 0
    importance: str = "MEDIUM"
    enforce_in_etl: bool = False
    active: bool = True
    custom_function: str | None = None
    field_category: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class PhaseOverrideWarning:
    name: str
    declared: int
    computed: int


@dataclass(frozen=True)
class ExecutionPlan:
    batches: tuple[tuple[str, ...], ...]
    pipelines: dict[str, PipelineDefinition]
    warnings: tuple[PhaseOverrideWarning, ...] = ()
    # blocked pipeline name -> disabled ancestor that blocks it
    blocked: dict[str, str] = field(default_factory=dict)
    disabled: tuple[str, ...] = ()


@dataclass(frozen=True)
class MergeResult:
    inserted: int
    updated: int
    unchanged: int

    @property
    def rows_loaded(self) -> int:
        return self.inserted + self.updated


@dataclass(frozen=True)
class RuleOutcome:
    field_name: str
    rule_type: str
    met: bool
    points_awarded: int
    points_possible: int = 0
    importance: str = "MEDIUM"


@dataclass(frozen=True)
class ScoreResult:
    earned: int
    max: int
    breakdown: tuple[RuleOutcome, ...]
    rejected: bool = False

    @property
    def percentage(self) -> float:
        if self.max == 0:
            return 100.0
        return round(self.earned * 100.0 / self.max, 2)


@dataclass(frozen=True)
class BatchScore:
    accepted: list[dict[str, object]]
    rejected: list[dict[str, object]]
    results: list[ScoreResult]

    @property
    def average_percentage(self) -> float:
        if not self.results:
            return 0.0
        return round(sum(result.percentage for result in self.results) / len(self.results), 2)

    def tier_percentage(self, importance_levels: Iterable[str]) -> float | None:
        """Batch-wide score over the rules of the given importance levels; None when there are none."""
        levels = set(importance_levels)
        earned = possible = 0
        for result in self.results:
            for outcome in result.breakdown:
                if outcome.importance in levels:
                    earned += outcome.points_awarded
                    possible += outcome.points_possible
        if possible == 0:
            return None
        return round(earned * 100.0 / possible, 2)


@dataclass(frozen=True)
class UnitInput:
    pipeline: PipelineDefinition
    batch_id: str
    attempt: int
    records: list[dict[str, object]] | None = None


@dataclass(frozen=True)
class UnitResult:
    rows_read: int = 0
    rows_transformed: int = 0
    rows_loaded: int = 0
    rows_rejected: int = 0
    # Records handed from a transform unit to the load unit, if any.
    records: list[dict[str, object]] | None = None


@dataclass(frozen=True)
class AlertEvent:
    pipeline_name: str
    batch_id: str
    reason: str
    recipients: tuple[str, ...]
    raised_at: datetime
