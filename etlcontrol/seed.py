import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.db_models import DqScoringRule, PipelineConfig, ScdType2Config, SystemConfiguration


logger = logging.getLogger(__name__)

DIMENSION_PIPELINES = [
    ("veterans_pipeline", "VETERAN", "MULTI_SOURCE", "sp_transform_multisource_ods_to_staging_veterans", "sp_load_dim_veterans", "dim_veterans", "stg_veterans"),
    ("evaluators_pipeline", "EVALUATOR", "MULTI_SOURCE", "sp_transform_multisource_ods_to_staging_evaluators", "sp_load_dim_evaluators", "dim_evaluators", "stg_evaluators"),
    ("facilities_pipeline", "FACILITY", "MULTI_SOURCE", "sp_transform_multisource_ods_to_staging_facilities", "sp_load_dim_facilities", "dim_facilities", "stg_facilities"),
    ("clinical_conditions_pipeline", "CLINICAL_CONDITION", "SINGLE_SOURCE", "sp_transform_ods_to_staging_clinical_conditions", "sp_load_dim_clinical_conditions", "dim_clinical_conditions", "stg_clinical_conditions"),
]

FACT_PIPELINES = [
    ("exam_requests_pipeline", "EXAM_REQUEST", 200, 2, "MULTI_SOURCE", "sp_transform_multisource_ods_to_staging_exam_requests", "sp_load_fact_exam_requests", "fact_exam_requests", ["veterans_pipeline", "evaluators_pipeline", "facilities_pipeline"]),
    ("evaluations_pipeline", "EVALUATION", 200, 2, "MULTI_SOURCE", "sp_transform_multisource_ods_to_staging_evaluations", "sp_load_fact_evaluations", "fact_evaluations", ["veterans_pipeline", "evaluators_pipeline", "exam_requests_pipeline"]),
    ("qa_events_pipeline", "QA_EVENT", 300, 3, "SINGLE_SOURCE", "sp_transform_ods_to_staging_qa_events", "sp_load_fact_qa_events", "fact_qa_events", ["evaluations_pipeline"]),
]

SCD2_TABLES = [
    ("dim_veterans", "stg_veterans", ["veteran_id"], "veteran_key"),
    ("dim_evaluators", "stg_evaluators", ["evaluator_npi"], "evaluator_key"),
    ("dim_facilities", "stg_facilities", ["facility_id"], "facility_key"),
    ("dim_clinical_conditions", "stg_clinical_conditions", ["condition_code"], "condition_key"),
    ("dim_request_types", "stg_request_types", ["request_type_code"], "request_type_key"),
    ("dim_exam_locations", "stg_exam_locations", ["location_id"], "location_key"),
]

# (entity, field, rule type, condition, points, importance, category)
DQ_RULES = [
    ("VETERAN", "veteran_va_id", "NOT_NULL", "veteran_va_id IS NOT NULL OR veteran_ssn IS NOT NULL", 20, "CRITICAL", "IDENTITY"),
    ("VETERAN", "first_name", "NOT_NULL", "first_name IS NOT NULL", 15, "CRITICAL", "DEMOGRAPHIC"),
    ("VETERAN", "last_name", "NOT_NULL", "last_name IS NOT NULL", 15, "CRITICAL", "DEMOGRAPHIC"),
    ("VETERAN", "date_of_birth", "NOT_NULL", "date_of_birth IS NOT NULL", 15, "CRITICAL", "DEMOGRAPHIC"),
    ("VETERAN", "email", "NOT_NULL", "email IS NOT NULL", 10, "HIGH", "CONTACT"),
    ("VETERAN", "phone_primary", "NOT_NULL", "phone_primary IS NOT NULL", 10, "HIGH", "CONTACT"),
    ("VETERAN", "state", "NOT_NULL", "state IS NOT NULL", 5, "MEDIUM", "CONTACT"),
    ("VETERAN", "zip_code", "NOT_NULL", "zip_code IS NOT NULL", 5, "MEDIUM", "CONTACT"),
    ("VETERAN", "disability_rating", "RANGE", "disability_rating BETWEEN 0 AND 100", 10, "HIGH", "CLINICAL"),
    ("EVALUATOR", "evaluator_npi", "NOT_NULL", "evaluator_npi IS NOT NULL", 25, "CRITICAL", "IDENTITY"),
    ("EVALUATOR", "first_name", "NOT_NULL", "first_name IS NOT NULL", 15, "CRITICAL", "DEMOGRAPHIC"),
    ("EVALUATOR", "last_name", "NOT_NULL", "last_name IS NOT NULL", 15, "CRITICAL", "DEMOGRAPHIC"),
    ("EVALUATOR", "specialty", "NOT_NULL", "specialty IS NOT NULL", 20, "CRITICAL", "CLINICAL"),
    ("EVALUATOR", "license_number", "NOT_NULL", "license_number IS NOT NULL", 15, "HIGH", "ADMINISTRATIVE"),
    ("EVALUATOR", "license_state", "NOT_NULL", "license_state IS NOT NULL", 10, "MEDIUM", "ADMINISTRATIVE"),
]

SYSTEM_VALUES = [
    ("pipeline", "default_batch_size", "10000", "NUMBER", "Default batch size for processing"),
    ("pipeline", "max_retry_attempts", "3", "NUMBER", "Maximum retry attempts for failed tasks"),
    ("pipeline", "retry_delay_seconds", "300", "NUMBER", "Delay between retry attempts"),
    ("pipeline", "enable_parallel_processing", "TRUE", "BOOLEAN", "Enable parallel dimension/fact loading"),
    ("pipeline", "pipeline_timeout_hours", "4", "NUMBER", "Maximum pipeline execution time before timeout"),
    ("quality", "min_dq_score_critical", "95", "NUMBER", "Minimum DQ score for critical data"),
    ("quality", "min_dq_score_important", "80", "NUMBER", "Minimum DQ score for important data"),
    ("quality", "min_dq_score_advisory", "70", "NUMBER", "Minimum DQ score for advisory data"),
    ("sla", "pipeline_max_duration_hours", "2", "NUMBER", "Maximum acceptable pipeline duration"),
    ("sla", "min_success_rate_percentage", "95", "NUMBER", "Minimum pipeline success rate"),
    ("alerting", "enable_email_alerts", "TRUE", "BOOLEAN", "Enable email notifications"),
    ("alerting", "critical_alert_recipients", "data-team@company.com", "STRING", "Recipients for critical alerts"),
    ("alerting", "warning_alert_recipients", "data-team@company.com", "STRING", "Recipients for warnings"),
    ("alerting", "alert_cooldown_minutes", "30", "NUMBER", "Minimum time between duplicate alerts"),
]


def _seed_pipelines(db: Session) -> int:
    existing = set(db.execute(select(PipelineConfig.pipeline_name)).scalars().all())
    added = 0
    for name, entity, source_type, transform, load, target, staging in DIMENSION_PIPELINES:
        if name in existing:
            continue
        db.add(
            PipelineConfig(
                pipeline_name=name,
                entity_type=entity,
                execution_order=100,
                parallel_execution_group=1,
                depends_on_pipelines=[],
                source_type=source_type,
                transform_procedure=transform,
                load_procedure=load,
                staging_table=staging,
                target_table=target,
                description=f"Load {target} from staging",
            )
        )
        added += 1
    for name, entity, order, group, source_type, transform, load, target, depends_on in FACT_PIPELINES:
        if name in existing:
            continue
        db.add(
            PipelineConfig(
                pipeline_name=name,
                entity_type=entity,
                execution_order=order,
                parallel_execution_group=group,
                depends_on_pipelines=depends_on,
                source_type=source_type,
                transform_procedure=transform,
                load_procedure=load,
                target_table=target,
                description=f"Load {target}",
            )
        )
        added += 1
    return added


def _seed_scd2(db: Session) -> int:
    existing = set(db.execute(select(ScdType2Config.table_name)).scalars().all())
    added = 0
    for table_name, staging_table, keys, surrogate in SCD2_TABLES:
        if table_name in existing:
            continue
        db.add(
            ScdType2Config(
                table_name=table_name,
                staging_table=staging_table,
                business_key_columns=keys,
                surrogate_key_column=surrogate,
                exclude_from_insert=["batch_id", "extraction_timestamp"],
            )
        )
        added += 1
    return added


def _seed_rules(db: Session) -> int:
    stmt = select(DqScoringRule.entity_type, DqScoringRule.field_name, DqScoringRule.rule_type)
    existing = {tuple(row) for row in db.execute(stmt)}
    added = 0
    for entity, field_name, rule_type, condition, points, importance, category in DQ_RULES:
        if (entity, field_name, rule_type) in existing:
            continue
        db.add(
            DqScoringRule(
                entity_type=entity,
                field_name=field_name,
                rule_type=rule_type,
                rule_condition=condition,
                points_if_met=points,
                field_importance=importance,
                field_category=category,
            )
        )
        added += 1
    return added


def _seed_values(db: Session) -> int:
    stmt = select(SystemConfiguration.config_category, SystemConfiguration.config_key)
    existing = {tuple(row) for row in db.execute(stmt)}
    added = 0
    for category, key, value, value_type, description in SYSTEM_VALUES:
        if (category, key) in existing:
            continue
        db.add(
            SystemConfiguration(
                config_category=category,
                config_key=key,
                config_value=value,
                config_value_type=value_type,
                description=description,
                updated_by="seed",
            )
        )
        added += 1
    return added


def seed_defaults(session_factory: sessionmaker[Session]) -> dict[str, int]:
    with session_factory() as db:
        added = {
            "pipelines": _seed_pipelines(db),
            "scd2_definitions": _seed_scd2(db),
            "dq_rules": _seed_rules(db),
            "system_values": _seed_values(db),
        }
        db.commit()
    logger.info("seeded default metadata", extra=added)
    return added
