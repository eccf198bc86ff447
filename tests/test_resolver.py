import random

import pytest

from etlcontrol.errors import ConfigurationError, CycleDetectedError
from etlcontrol.resolver import POLICY_GAP, find_cycle, resolve

from helpers import make_pipeline


def test_independent_pipelines_share_a_batch_and_dependent_runs_after() -> None:
    pipelines = [
        make_pipeline("A"),
        make_pipeline("B"),
        make_pipeline("C", depends_on={"A", "B"}),
    ]

    plan = resolve(pipelines)

    assert plan.batches == (("A", "B"), ("C",))


def test_every_dependency_runs_in_an_earlier_batch() -> None:
    pipelines = [
        make_pipeline("dim_a", execution_order=100),
        make_pipeline("dim_b", execution_order=100),
        make_pipeline("fact_a", execution_order=200, depends_on={"dim_a", "dim_b"}),
        make_pipeline("fact_b", execution_order=200, depends_on={"fact_a", "dim_a"}),
        make_pipeline("fact_c", execution_order=300, depends_on={"fact_b"}),
        make_pipeline("loose", execution_order=5),
    ]

    plan = resolve(pipelines)

    position = {name: index for index, batch in enumerate(plan.batches) for name in batch}
    for pipeline in pipelines:
        for dependency in pipeline.depends_on:
            assert position[dependency] < position[pipeline.name]
    assert sorted(position) == sorted(p.name for p in pipelines)


def test_understated_execution_order_is_corrected_with_warning() -> None:
    pipelines = [
        make_pipeline("exam_requests", execution_order=200),
        make_pipeline("evaluations", execution_order=200, depends_on={"exam_requests"}),
    ]

    plan = resolve(pipelines)

    assert plan.batches == (("exam_requests",), ("evaluations",))
    assert len(plan.warnings) == 1
    warning = plan.warnings[0]
    assert (warning.name, warning.declared, warning.computed) == ("evaluations", 200, 201)


def test_cycle_is_reported_with_involved_pipelines() -> None:
    pipelines = [
        make_pipeline("A", depends_on={"C"}),
        make_pipeline("B", depends_on={"A"}),
        make_pipeline("C", depends_on={"B"}),
        make_pipeline("D"),
    ]

    with pytest.raises(CycleDetectedError) as excinfo:
        resolve(pipelines)

    involved = excinfo.value.involved_names
    assert set(involved) == {"A", "B", "C"}
    assert involved[0] == involved[-1]


def test_self_dependency_is_a_cycle() -> None:
    by_name = {"A": make_pipeline("A", depends_on={"A"})}

    assert find_cycle(by_name) == ["A", "A"]


def test_unknown_dependency_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="unknown pipeline 'missing'"):
        resolve([make_pipeline("A", depends_on={"missing"})])


def test_duplicate_pipeline_names_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="duplicate"):
        resolve([make_pipeline("A"), make_pipeline("A")])


def test_strict_groups_split_a_phase_by_parallel_group() -> None:
    pipelines = [
        make_pipeline("a", parallel_group=2),
        make_pipeline("b", parallel_group=1),
        make_pipeline("c", parallel_group=1),
        make_pipeline("d"),
    ]

    relaxed = resolve(pipelines)
    strict = resolve(pipelines, strict_groups=True)

    assert relaxed.batches == (("a", "b", "c", "d"),)
    assert strict.batches == (("b", "c"), ("a",), ("d",))


def test_disabled_dependency_counts_as_satisfied_by_default() -> None:
    pipelines = [
        make_pipeline("A", enabled=False),
        make_pipeline("B", depends_on={"A"}),
    ]

    plan = resolve(pipelines)

    assert plan.batches == (("B",),)
    assert plan.disabled == ("A",)
    assert plan.blocked == {}


def test_gap_policy_blocks_transitive_dependents_of_disabled_pipeline() -> None:
    pipelines = [
        make_pipeline("A", enabled=False),
        make_pipeline("B", depends_on={"A"}),
        make_pipeline("C", depends_on={"B"}),
        make_pipeline("D"),
    ]

    plan = resolve(pipelines, disabled_policy=POLICY_GAP)

    assert plan.batches == (("D",),)
    assert plan.blocked == {"B": "A", "C": "A"}


def test_gap_policy_handles_deep_diamond_chains() -> None:
    depth = 40
    pipelines = [make_pipeline("layer00_a"), make_pipeline("layer00_b")]
    for layer in range(1, depth):
        previous = {f"layer{layer - 1:02d}_a", f"layer{layer - 1:02d}_b"}
        pipelines.append(make_pipeline(f"layer{layer:02d}_a", depends_on=previous))
        pipelines.append(make_pipeline(f"layer{layer:02d}_b", depends_on=previous))
    pipelines.append(make_pipeline("retired", enabled=False))
    pipelines.append(make_pipeline("legacy_report", depends_on={"retired", f"layer{depth - 1:02d}_a"}))

    plan = resolve(pipelines, disabled_policy=POLICY_GAP)

    assert plan.blocked == {"legacy_report": "retired"}
    assert len(plan.batches) == depth
    assert plan.batches[-1] == (f"layer{depth - 1:02d}_a", f"layer{depth - 1:02d}_b")


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        resolve([make_pipeline("A")], disabled_policy="ignore")


def test_plan_is_identical_for_any_input_order() -> None:
    pipelines = [
        make_pipeline("veterans", execution_order=100, parallel_group=1),
        make_pipeline("evaluators", execution_order=100, parallel_group=1),
        make_pipeline("facilities", execution_order=100, parallel_group=1),
        make_pipeline("requests", execution_order=200, depends_on={"veterans", "facilities"}),
        make_pipeline("evaluations", execution_order=200, depends_on={"requests", "evaluators"}),
    ]
    expected = resolve(pipelines)

    shuffled = list(pipelines)
    for seed in range(5):
        random.Random(seed).shuffle(shuffled)
        plan = resolve(shuffled)
        assert plan.batches == expected.batches
        assert plan.warnings == expected.warnings
