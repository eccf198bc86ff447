from sqlalchemy import Boolean, Column, DateTime, Engine, Integer, MetaData, String, Table

from etlcontrol.config_store import ConfigSnapshot
from etlcontrol.schemas import PipelineDefinition


def make_pipeline(name: str, **overrides) -> PipelineDefinition:
    values = {
        "entity_type": "GENERIC",
        "execution_order": 1,
        "transform_unit": f"transform_{name}",
        "load_unit": f"load_{name}",
        "target_table": f"target_{name}",
    }
    values.update(overrides)
    if "depends_on" in values:
        values["depends_on"] = frozenset(values["depends_on"])
    return PipelineDefinition(name=name, **values)


def make_snapshot(pipelines=(), dq_rules=(), values=None) -> ConfigSnapshot:
    return ConfigSnapshot(
        pipelines=tuple(pipelines),
        scd2_definitions={},
        dq_rules=tuple(dq_rules),
        values=values if values is not None else {("alerting", "critical_alert_recipients"): "data-team@company.com"},
    )


def create_dimension_tables(engine: Engine) -> tuple[Table, Table]:
    metadata = MetaData()
    target = Table(
        "dim_veterans",
        metadata,
        Column("veteran_key", Integer, primary_key=True, autoincrement=True),
        Column("veteran_id", Integer, nullable=False),
        Column("first_name", String(50)),
        Column("last_name", String(50)),
        Column("state", String(2)),
        Column("source_record_hash", String(32)),
        Column("is_current", Boolean, nullable=False),
        Column("effective_start_date", DateTime, nullable=False),
        Column("effective_end_date", DateTime, nullable=True),
        Column("created_timestamp", DateTime),
        Column("updated_timestamp", DateTime),
    )
    staging = Table(
        "stg_veterans",
        metadata,
        Column("veteran_id", Integer),
        Column("first_name", String(50)),
        Column("last_name", String(50)),
        Column("state", String(2)),
        Column("batch_id", String(50)),
        Column("extraction_timestamp", DateTime),
    )
    metadata.create_all(engine)
    return target, staging
