from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.config import Settings
from etlcontrol.config_store import ConfigurationStore
from etlcontrol.database import build_engine, build_session_factory


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="etlcontrol",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        max_workers=4,
        strict_parallel_groups=False,
        disabled_dependency_policy="satisfied",
        unit_registry=None,
        run_actor="pytest",
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def engine(test_settings: Settings) -> Generator[Engine, None, None]:
    engine = build_engine(test_settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> ConfigurationStore:
    return ConfigurationStore(session_factory)

