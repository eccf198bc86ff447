from collections import defaultdict
from collections.abc import Iterable
import logging

from etlcontrol.errors import ConfigurationError, CycleDetectedError
from etlcontrol.schemas import ExecutionPlan, PhaseOverrideWarning, PipelineDefinition


logger = logging.getLogger(__name__)

POLICY_SATISFIED = "satisfied"
POLICY_GAP = "gap"


def _index(pipelines: Iterable[PipelineDefinition]) -> dict[str, PipelineDefinition]:
    by_name: dict[str, PipelineDefinition] = {}
    for pipeline in pipelines:
        if not pipeline.name or not pipeline.name.strip():
            raise ConfigurationError("pipeline name must be a non-empty string")
        if pipeline.name in by_name:
            raise ConfigurationError(f"duplicate pipeline name: {pipeline.name}")
        by_name[pipeline.name] = pipeline

    for name, pipeline in by_name.items():
        for dependency in sorted(pipeline.depends_on):
            if dependency not in by_name:
                raise ConfigurationError(f"pipeline '{name}' depends on unknown pipeline '{dependency}'")
    return by_name


def find_cycle(by_name: dict[str, PipelineDefinition]) -> list[str] | None:
    """Depth-first search with a recursion stack. Returns the pipelines on the first cycle found."""
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(name: str) -> list[str] | None:
        visited.add(name)
        stack.append(name)
        on_stack.add(name)
        for dependency in sorted(by_name[name].depends_on):
            if dependency in on_stack:
                return stack[stack.index(dependency):] + [dependency]
            if dependency not in visited:
                cycle = visit(dependency)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(name)
        return None

    for name in sorted(by_name):
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def _blocked_by_disabled(by_name: dict[str, PipelineDefinition]) -> dict[str, str]:
    # name -> first disabled ancestor, or None once the name is known to be clear
    ancestors: dict[str, str | None] = {}

    def disabled_ancestor(name: str) -> str | None:
        if name in ancestors:
            return ancestors[name]
        found = None
        for dependency in sorted(by_name[name].depends_on):
            found = dependency if not by_name[dependency].enabled else disabled_ancestor(dependency)
            if found is not None:
                break
        ancestors[name] = found
        return found

    blocked: dict[str, str] = {}
    for name in sorted(by_name):
        if not by_name[name].enabled:
            continue
        ancestor = disabled_ancestor(name)
        if ancestor is not None:
            blocked[name] = ancestor
    return blocked


def resolve(
    pipelines: Iterable[PipelineDefinition],
    *,
    strict_groups: bool = False,
    disabled_policy: str = POLICY_SATISFIED,
) -> ExecutionPlan:
    if disabled_policy not in (POLICY_SATISFIED, POLICY_GAP):
        raise ConfigurationError(f"unknown disabled dependency policy {disabled_policy!r}")

    by_name = _index(pipelines)

    cycle = find_cycle(by_name)
    if cycle:
        raise CycleDetectedError(cycle)

    disabled = tuple(sorted(name for name, pipeline in by_name.items() if not pipeline.enabled))
    blocked = _blocked_by_disabled(by_name) if disabled_policy == POLICY_GAP else {}
    runnable = {name for name, pipeline in by_name.items() if pipeline.enabled and name not in blocked}

    phases: dict[str, int] = {}
    warnings: list[PhaseOverrideWarning] = []

    def phase_of(name: str) -> int:
        if name in phases:
            return phases[name]
        pipeline = by_name[name]
        # Disabled dependencies are either satisfied or have blocked this pipeline already.
        dependency_phases = [phase_of(dep) for dep in pipeline.depends_on if dep in runnable]
        computed = max([pipeline.execution_order] + [phase + 1 for phase in dependency_phases])
        if computed > pipeline.execution_order:
            warnings.append(PhaseOverrideWarning(name=name, declared=pipeline.execution_order, computed=computed))
        phases[name] = computed
        return computed

    by_phase: dict[int, list[str]] = defaultdict(list)
    for name in sorted(runnable):
        by_phase[phase_of(name)].append(name)

    batches: list[tuple[str, ...]] = []
    for phase in sorted(by_phase):
        members = sorted(by_phase[phase])
        if not strict_groups:
            batches.append(tuple(members))
            continue

        grouped: dict[int, list[str]] = defaultdict(list)
        ungrouped: list[str] = []
        for name in members:
            group = by_name[name].parallel_group
            if group is None:
                ungrouped.append(name)
            else:
                grouped[group].append(name)
        batches.extend(tuple(grouped[group]) for group in sorted(grouped))
        batches.extend((name,) for name in ungrouped)

    warnings.sort(key=lambda warning: warning.name)
    for warning in warnings:
        logger.warning(
            "execution order understates dependency depth",
            extra={"pipeline": warning.name, "declared": warning.declared, "computed": warning.computed},
        )
    for name, ancestor in sorted(blocked.items()):
        logger.warning("pipeline blocked by disabled dependency", extra={"pipeline": name, "disabled": ancestor})

    return ExecutionPlan(
        batches=tuple(batches),
        pipelines=dict(by_name),
        warnings=tuple(warnings),
        blocked=blocked,
        disabled=disabled,
    )
