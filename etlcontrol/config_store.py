from dataclasses import dataclass, field
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.db_models import (
    DqScoringRule,
    PipelineConfig,
    ScdType2Config,
    SystemConfiguration,
    SystemConfigurationAudit,
    utc_now,
)
from etlcontrol.errors import ConfigurationError
from etlcontrol.schemas import (
    IMPORTANCE_LEVELS,
    LOAD_TYPES,
    RULE_TYPES,
    SOURCE_TYPES,
    DqRule,
    PipelineDefinition,
    Scd2Definition,
)


logger = logging.getLogger(__name__)

_TRUE_VALUES = {"true", "t", "yes", "y", "on", "1"}
_FALSE_VALUES = {"false", "f", "no", "n", "off", "0"}


def parse_number(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_boolean(raw: str | None) -> bool | None:
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


@dataclass(frozen=True)
class ConfigSnapshot:
    pipelines: tuple[PipelineDefinition, ...]
    scd2_definitions: dict[str, Scd2Definition]
    dq_rules: tuple[DqRule, ...]
    values: dict[tuple[str, str], str | None] = field(default_factory=dict)

    def get_value(self, category: str, key: str, default: str | None = None) -> str | None:
        value = self.values.get((category, key))
        return default if value is None else value

    def get_number(self, category: str, key: str, default: float | None = None) -> float | None:
        value = parse_number(self.values.get((category, key)))
        return default if value is None else value

    def get_boolean(self, category: str, key: str, default: bool | None = None) -> bool | None:
        value = parse_boolean(self.values.get((category, key)))
        return default if value is None else value

    def rules_for(self, entity_type: str) -> tuple[DqRule, ...]:
        return tuple(rule for rule in self.dq_rules if rule.entity_type == entity_type)


def pipeline_from_row(row: PipelineConfig) -> PipelineDefinition:
    if row.source_type not in SOURCE_TYPES:
        raise ConfigurationError(f"pipeline '{row.pipeline_name}' has unknown source_type {row.source_type!r}")
    if row.load_type not in LOAD_TYPES:
        raise ConfigurationError(f"pipeline '{row.pipeline_name}' has unknown load_type {row.load_type!r}")
    if row.retry_count < 0 or row.retry_delay_seconds < 0:
        raise ConfigurationError(f"pipeline '{row.pipeline_name}' has negative retry settings")
    if not row.transform_procedure or not row.load_procedure:
        raise ConfigurationError(f"pipeline '{row.pipeline_name}' must name a transform and a load unit")

    return PipelineDefinition(
        name=row.pipeline_name,
        entity_type=row.entity_type,
        execution_order=row.execution_order,
        parallel_group=row.parallel_execution_group,
        depends_on=frozenset(row.depends_on_pipelines or ()),
        source_type=row.source_type,
        transform_unit=row.transform_procedure,
        load_unit=row.load_procedure,
        staging_table=row.staging_table,
        target_table=row.target_table,
        load_type=row.load_type,
        enabled=row.enabled,
        skip_on_error=row.skip_on_error,
        retry_count=row.retry_count,
        retry_delay_seconds=row.retry_delay_seconds,
        alert_on_failure=row.alert_on_failure,
        alert_email_list=tuple(row.alert_email_list or ()),
        description=row.description,
    )


def scd2_definition_from_row(row: ScdType2Config) -> Scd2Definition:
    if not row.business_key_columns:
        raise ConfigurationError(f"scd2 config for '{row.table_name}' has no business key columns")

    return Scd2Definition(
        table_name=row.table_name,
        staging_table=row.staging_table,
        business_key_columns=tuple(row.business_key_columns),
        surrogate_key_column=row.surrogate_key_column,
        hash_column=row.hash_column or "source_record_hash",
        exclude_from_insert=frozenset(row.exclude_from_insert or ()),
        schema_name=row.schema_name,
        staging_schema=row.staging_schema,
        active=row.active_flag,
        enabled=row.enabled,
    )


def dq_rule_from_row(row: DqScoringRule) -> DqRule:
    label = f"{row.entity_type}.{row.field_name}"
    if row.rule_type not in RULE_TYPES:
        raise ConfigurationError(f"dq rule {label} has unknown rule_type {row.rule_type!r}")
    if row.field_importance not in IMPORTANCE_LEVELS:
        raise ConfigurationError(f"dq rule {label} has unknown importance {row.field_importance!r}")

    return DqRule(
        entity_type=row.entity_type,
        field_name=row.field_name,
        rule_type=row.rule_type,
        condition=row.rule_condition,
        points_if_met=row.points_if_met,
        points_if_not_met=row.points_if_not_met or 0,
        importance=row.field_importance,
        enforce_in_etl=row.enforce_in_etl,
        active=row.active_flag,
        custom_function=row.custom_function,
        field_category=row.field_category,
        description=row.rule_description,
    )


class ConfigurationStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def load_snapshot(self) -> ConfigSnapshot:
        with self.session_factory() as db:
            pipeline_rows = db.execute(select(PipelineConfig).order_by(PipelineConfig.pipeline_name)).scalars().all()
            scd_rows = db.execute(select(ScdType2Config).where(ScdType2Config.active_flag.is_(True))).scalars().all()
            rule_rows = db.execute(
                select(DqScoringRule)
                .where(DqScoringRule.active_flag.is_(True))
                .order_by(DqScoringRule.entity_type, DqScoringRule.rule_id)
            ).scalars().all()
            value_rows = db.execute(
                select(SystemConfiguration).where(SystemConfiguration.is_active.is_(True))
            ).scalars().all()

            snapshot = ConfigSnapshot(
                pipelines=tuple(pipeline_from_row(row) for row in pipeline_rows),
                scd2_definitions={row.table_name: scd2_definition_from_row(row) for row in scd_rows},
                dq_rules=tuple(dq_rule_from_row(row) for row in rule_rows),
                values={(row.config_category, row.config_key): row.config_value for row in value_rows},
            )

        logger.info(
            "configuration snapshot loaded",
            extra={
                "pipelines": len(snapshot.pipelines),
                "scd2_definitions": len(snapshot.scd2_definitions),
                "dq_rules": len(snapshot.dq_rules),
            },
        )
        return snapshot

    def get_value(self, category: str, key: str) -> str | None:
        with self.session_factory() as db:
            row = self._active_row(db, category, key)
            return row.config_value if row is not None else None

    def get_number(self, category: str, key: str) -> float | None:
        return parse_number(self.get_value(category, key))

    def get_boolean(self, category: str, key: str) -> bool | None:
        return parse_boolean(self.get_value(category, key))

    def update_value(self, category: str, key: str, new_value: str, *, actor: str, reason: str) -> str | None:
        """Update one value and write its audit row in the same transaction. Returns the old value."""
        if not reason or not reason.strip():
            raise ConfigurationError("a reason is required for configuration changes")

        with self.session_factory() as db:
            row = db.get(SystemConfiguration, (category, key))
            if row is None:
                raise ConfigurationError(f"unknown configuration key {category}.{key}")

            old_value = row.config_value
            row.config_value = new_value
            row.updated_timestamp = utc_now()
            row.updated_by = actor
            db.add(
                SystemConfigurationAudit(
                    config_category=category,
                    config_key=key,
                    old_value=old_value,
                    new_value=new_value,
                    changed_by=actor,
                    change_reason=reason,
                )
            )
            db.commit()

        logger.info(
            "configuration updated",
            extra={"category": category, "key": key, "actor": actor, "sensitive": row.is_sensitive},
        )
        return old_value

    def change_history(self, limit: int = 100) -> list[SystemConfigurationAudit]:
        with self.session_factory() as db:
            stmt = (
                select(SystemConfigurationAudit)
                .order_by(SystemConfigurationAudit.changed_timestamp.desc(), SystemConfigurationAudit.audit_id.desc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())

    def _active_row(self, db: Session, category: str, key: str) -> SystemConfiguration | None:
        stmt = select(SystemConfiguration).where(
            SystemConfiguration.config_category == category,
            SystemConfiguration.config_key == key,
            SystemConfiguration.is_active.is_(True),
        )
        return db.execute(stmt).scalar_one_or_none()
