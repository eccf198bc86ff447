import os
from pathlib import Path
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["OUTPUT_DIR"] = str(tmp_path / "outputs")
    env["MAX_WORKERS"] = "2"
    env.pop("UNIT_REGISTRY", None)
    return env


def _cli(tmp_path: Path, *args: str, env_overrides: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    env = _base_env(tmp_path)
    env.update(env_overrides or {})
    return subprocess.run(
        [sys.executable, "-m", "etlcontrol.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_seed_then_plan_prints_batches(tmp_path: Path) -> None:
    seeded = _cli(tmp_path, "seed")
    planned = _cli(tmp_path, "plan")

    assert seeded.returncode == 0
    assert "pipelines=7" in seeded.stdout
    assert planned.returncode == 0
    lines = planned.stdout.splitlines()
    assert lines[0] == (
        "batch 1: clinical_conditions_pipeline, evaluators_pipeline, facilities_pipeline, veterans_pipeline"
    )
    assert lines[1] == "batch 2: exam_requests_pipeline"
    assert lines[2] == "batch 3: evaluations_pipeline"
    assert lines[3] == "batch 4: qa_events_pipeline"
    assert "warning: evaluations_pipeline declared=200 computed=201" in planned.stdout


def test_cli_run_without_registered_units_exits_with_configuration_error(tmp_path: Path) -> None:
    _cli(tmp_path, "seed")

    proc = _cli(tmp_path, "run", "--batch-id", "BATCH_CLI")

    assert proc.returncode == 2
    assert "unregistered unit" in proc.stdout


def test_cli_config_set_is_visible_to_config_get(tmp_path: Path) -> None:
    _cli(tmp_path, "seed")

    updated = _cli(tmp_path, "config-set", "pipeline", "max_retry_attempts", "5", "--reason", "noisy source")
    fetched = _cli(tmp_path, "config-get", "pipeline", "max_retry_attempts", "--type", "number")
    unknown = _cli(tmp_path, "config-set", "pipeline", "nope", "1", "--reason", "typo")

    assert updated.returncode == 0
    assert "pipeline.max_retry_attempts: 3 -> 5" in updated.stdout
    assert fetched.stdout.strip() == "5.0"
    assert unknown.returncode == 2


def test_cli_dq_summary_lists_seeded_entities(tmp_path: Path) -> None:
    _cli(tmp_path, "seed")

    proc = _cli(tmp_path, "dq-summary")

    assert proc.returncode == 0
    assert "EVALUATOR rules=6 max=100" in proc.stdout
    assert "VETERAN rules=9 max=105" in proc.stdout


def test_cli_rejects_unknown_disabled_dependency_policy(tmp_path: Path) -> None:
    proc = _cli(tmp_path, "plan", env_overrides={"DISABLED_DEPENDENCY_POLICY": "bogus"})

    assert proc.returncode == 2
    assert "error: DISABLED_DEPENDENCY_POLICY must be one of" in proc.stdout
    assert "Traceback" not in proc.stderr
