from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class PipelineConfig(Base):
    __tablename__ = "etl_pipeline_config"

    pipeline_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pipeline_name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(50))
    execution_order: Mapped[int] = mapped_column(Integer)
    parallel_execution_group: Mapped[int | None] = mapped_column(Integer, nullable=True)
    depends_on_pipelines: Mapped[list[str]] = mapped_column(JSON, default=list)
    source_type: Mapped[str] = mapped_column(String(20), default="SINGLE_SOURCE")
    transform_procedure: Mapped[str] = mapped_column(String(200))
    load_procedure: Mapped[str] = mapped_column(String(200))
    staging_table: Mapped[str | None] = mapped_column(String(200), nullable=True)
    target_table: Mapped[str] = mapped_column(String(200))
    load_type: Mapped[str] = mapped_column(String(20), default="FULL")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    skip_on_error: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, default=60)
    alert_on_failure: Mapped[bool] = mapped_column(Boolean, default=True)
    alert_email_list: Mapped[list[str]] = mapped_column(JSON, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class ScdType2Config(Base):
    __tablename__ = "scd_type2_config"

    config_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    schema_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    staging_schema: Mapped[str | None] = mapped_column(String(50), nullable=True)
    staging_table: Mapped[str] = mapped_column(String(100))
    business_key_columns: Mapped[list[str]] = mapped_column(JSON)
    hash_column: Mapped[str] = mapped_column(String(100), default="source_record_hash")
    surrogate_key_column: Mapped[str | None] = mapped_column(String(100), nullable=True)
    exclude_from_insert: Mapped[list[str]] = mapped_column(JSON, default=list)
    active_flag: Mapped[bool] = mapped_column(Boolean, default=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class DqScoringRule(Base):
    __tablename__ = "dq_scoring_rules"
    __table_args__ = (UniqueConstraint("entity_type", "field_name", "rule_type", name="uq_entity_field_rule"),)

    rule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), index=True)
    field_name: Mapped[str] = mapped_column(String(100))
    rule_type: Mapped[str] = mapped_column(String(20))
    rule_condition: Mapped[str | None] = mapped_column(String(500), nullable=True)
    custom_function: Mapped[str | None] = mapped_column(String(200), nullable=True)
    points_if_met: Mapped[int] = mapped_column(Integer)
    points_if_not_met: Mapped[int] = mapped_column(Integer, default=0)
    field_importance: Mapped[str] = mapped_column(String(20), default="MEDIUM")
    field_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rule_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active_flag: Mapped[bool] = mapped_column(Boolean, default=True)
    enforce_in_etl: Mapped[bool] = mapped_column(Boolean, default=False)
    created_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class SystemConfiguration(Base):
    __tablename__ = "system_configuration"

    config_category: Mapped[str] = mapped_column(String(50), primary_key=True)
    config_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    config_value: Mapped[str | None] = mapped_column(String(500), nullable=True)
    config_value_type: Mapped[str] = mapped_column(String(20), default="STRING")
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)


class SystemConfigurationAudit(Base):
    __tablename__ = "system_configuration_audit"

    audit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_category: Mapped[str] = mapped_column(String(50), index=True)
    config_key: Mapped[str] = mapped_column(String(100))
    old_value: Mapped[str | None] = mapped_column(String(500), nullable=True)
    new_value: Mapped[str | None] = mapped_column(String(500), nullable=True)
    changed_by: Mapped[str] = mapped_column(String(100))
    changed_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    change_reason: Mapped[str] = mapped_column(String(1000))


class EtlExecutionLog(Base):
    __tablename__ = "etl_execution_log"

    execution_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pipeline_name: Mapped[str] = mapped_column(String(100), index=True)
    batch_id: Mapped[str] = mapped_column(String(100), index=True)
    execution_start_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    execution_end_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    transform_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    load_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="RUNNING")
    rows_read: Mapped[int] = mapped_column(Integer, default=0)
    rows_transformed: Mapped[int] = mapped_column(Integer, default=0)
    rows_loaded: Mapped[int] = mapped_column(Integer, default=0)
    rows_rejected: Mapped[int] = mapped_column(Integer, default=0)
    retry_attempt: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    executed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    execution_host: Mapped[str | None] = mapped_column(String(200), nullable=True)
