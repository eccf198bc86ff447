from dataclasses import dataclass
import os

from dotenv import load_dotenv

from etlcontrol.errors import ConfigurationError


load_dotenv()

DISABLED_DEPENDENCY_POLICIES = ("satisfied", "gap")


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    max_workers: int
    strict_parallel_groups: bool
    disabled_dependency_policy: str
    unit_registry: str | None
    run_actor: str
    schedule_hour_utc: int
    schedule_minute_utc: int


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def get_settings() -> Settings:
    policy = os.getenv("DISABLED_DEPENDENCY_POLICY", "satisfied").strip().lower()
    if policy not in DISABLED_DEPENDENCY_POLICIES:
        raise ConfigurationError(
            f"DISABLED_DEPENDENCY_POLICY must be one of {DISABLED_DEPENDENCY_POLICIES}, got {policy!r}"
        )

    return Settings(
        app_name=os.getenv("APP_NAME", "etlcontrol"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./etlcontrol.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        max_workers=_env_int("MAX_WORKERS", "4"),
        strict_parallel_groups=_env_flag("STRICT_PARALLEL_GROUPS", "false"),
        disabled_dependency_policy=policy,
        unit_registry=os.getenv("UNIT_REGISTRY") or None,
        run_actor=os.getenv("RUN_ACTOR", "etlcontrol"),
        schedule_hour_utc=_env_int("SCHEDULE_HOUR_UTC", "2"),
        schedule_minute_utc=_env_int("SCHEDULE_MINUTE_UTC", "0"),
    )
