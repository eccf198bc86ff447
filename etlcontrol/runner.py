import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from etlcontrol.config import Settings
from etlcontrol.config_store import ConfigSnapshot, ConfigurationStore
from etlcontrol.coordinator import ExecutionCoordinator, RunContext, new_batch_id
from etlcontrol.notify import Notifier
from etlcontrol.registry import UnitRegistry, load_registry_factory
from etlcontrol.report import RunReport, write_report
from etlcontrol.resolver import resolve
from etlcontrol.scd2 import Scd2MergeEngine, TableLocks, register_scd2_loaders
from etlcontrol.schemas import ExecutionPlan
from etlcontrol.scoring import DqScorer


logger = logging.getLogger(__name__)


class OrchestrationRunner:
    """Wires snapshot, resolver, registry and coordinator together for one run at a time."""

    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        session_factory: sessionmaker[Session],
        *,
        notifier: Notifier | None = None,
        locks: TableLocks | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.store = ConfigurationStore(session_factory)
        self.notifier = notifier
        self.merge_engine = Scd2MergeEngine(engine, locks=locks)

    def plan(self, snapshot: ConfigSnapshot | None = None) -> ExecutionPlan:
        snapshot = snapshot or self.store.load_snapshot()
        return resolve(
            snapshot.pipelines,
            strict_groups=self.settings.strict_parallel_groups,
            disabled_policy=self.settings.disabled_dependency_policy,
        )

    def build_registry(self, snapshot: ConfigSnapshot, registry: UnitRegistry | None = None) -> UnitRegistry:
        if registry is None:
            if self.settings.unit_registry:
                registry = load_registry_factory(self.settings.unit_registry)()
            else:
                registry = UnitRegistry()
        register_scd2_loaders(registry, self.merge_engine, snapshot)
        return registry

    def run(
        self,
        *,
        batch_id: str | None = None,
        registry: UnitRegistry | None = None,
        context: RunContext | None = None,
    ) -> RunReport:
        # Everything below works off this snapshot; later edits apply to the next run.
        snapshot = self.store.load_snapshot()
        plan = self.plan(snapshot)
        registry = self.build_registry(snapshot, registry)
        scorer = DqScorer(snapshot.dq_rules, registry.predicates)

        context = context or RunContext(batch_id=batch_id or new_batch_id(), actor=self.settings.run_actor)
        coordinator = ExecutionCoordinator(
            self.session_factory,
            registry,
            snapshot,
            scorer=scorer,
            notifier=self.notifier,
            max_workers=self.settings.max_workers,
        )
        report = coordinator.run(plan, context)
        report_path = write_report(report, self.settings.output_dir)
        logger.info("run report written", extra={"batch_id": report.batch_id, "report": str(report_path)})
        return report
