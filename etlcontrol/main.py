import argparse
from datetime import timedelta
import logging

from etlcontrol.config import get_settings
from etlcontrol.config_store import ConfigurationStore
from etlcontrol.database import build_engine, build_session_factory
from etlcontrol.db_models import utc_now
from etlcontrol.errors import EtlControlError
from etlcontrol.report import RUN_SUCCESS
from etlcontrol.run_store import pipeline_summary
from etlcontrol.runner import OrchestrationRunner
from etlcontrol.scheduler import start_scheduler
from etlcontrol.scoring import DqScorer
from etlcontrol.seed import seed_defaults


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Metadata-driven ETL orchestration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("seed", help="insert default metadata rows that are missing")
    subparsers.add_parser("plan", help="print the resolved execution batches")

    run_parser = subparsers.add_parser("run", help="run one orchestration pass")
    run_parser.add_argument("--batch-id", required=False, help="batch id; defaults to BATCH_<timestamp>")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    get_parser = subparsers.add_parser("config-get", help="read one configuration value")
    get_parser.add_argument("category")
    get_parser.add_argument("key")
    get_parser.add_argument("--type", choices=["string", "number", "boolean"], default="string")

    set_parser = subparsers.add_parser("config-set", help="update one configuration value with an audit row")
    set_parser.add_argument("category")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    set_parser.add_argument("--reason", required=True)
    set_parser.add_argument("--actor", required=False)

    summary_parser = subparsers.add_parser("summary", help="execution counts per pipeline")
    summary_parser.add_argument("--days", type=int, default=30)

    subparsers.add_parser("dq-summary", help="active DQ rules and maximum score per entity type")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    try:
        settings = get_settings()
    except EtlControlError as exc:
        print(f"error: {exc}")
        raise SystemExit(2) from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    store = ConfigurationStore(session_factory)
    runner = OrchestrationRunner(settings, engine, session_factory)

    try:
        if args.command == "seed":
            added = seed_defaults(session_factory)
            print(" ".join(f"{name}={count}" for name, count in added.items()))
            return

        if args.command == "plan":
            plan = runner.plan()
            for index, batch in enumerate(plan.batches, start=1):
                print(f"batch {index}: {', '.join(batch)}")
            for warning in plan.warnings:
                print(f"warning: {warning.name} declared={warning.declared} computed={warning.computed}")
            for name, ancestor in sorted(plan.blocked.items()):
                print(f"blocked: {name} (disabled dependency {ancestor})")
            return

        if args.command == "schedule":
            start_scheduler(runner, run_now=args.run_now)
            return

        if args.command == "config-get":
            getter = {"string": store.get_value, "number": store.get_number, "boolean": store.get_boolean}[args.type]
            print(getter(args.category, args.key))
            return

        if args.command == "config-set":
            actor = args.actor or settings.run_actor
            old_value = store.update_value(args.category, args.key, args.value, actor=actor, reason=args.reason)
            print(f"{args.category}.{args.key}: {old_value} -> {args.value}")
            return

        if args.command == "summary":
            with session_factory() as db:
                rows = pipeline_summary(db, since=utc_now() - timedelta(days=args.days))
            for row in rows:
                print(
                    "{pipeline_name} total={total_executions} succeeded={successful_executions} "
                    "failed={failed_executions} avg_seconds={avg_duration_seconds}".format(**row)
                )
            return

        if args.command == "dq-summary":
            snapshot = store.load_snapshot()
            registry = runner.build_registry(snapshot)
            for row in DqScorer(snapshot.dq_rules, registry.predicates).rule_summary():
                print(
                    "{entity_type} rules={total_rules} max={max_possible_score} "
                    "critical_rules={critical_rules} critical_points={critical_points}".format(**row)
                )
            return

        report = runner.run(batch_id=args.batch_id)
    except EtlControlError as exc:
        logging.getLogger(__name__).error("orchestration aborted: %s", exc)
        print(f"error: {exc}")
        raise SystemExit(2) from exc

    print(report.render())
    if report.status != RUN_SUCCESS:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
