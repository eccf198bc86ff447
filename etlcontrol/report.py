from dataclasses import asdict, dataclass, field
from datetime import datetime
import json
from pathlib import Path

from etlcontrol.schemas import STATUS_FAILED, PhaseOverrideWarning


RUN_SUCCESS = "SUCCESS"
RUN_FAILED = "FAILED"
RUN_CANCELLED = "CANCELLED"


@dataclass
class PipelineOutcome:
    pipeline_name: str
    status: str
    attempts: int = 0
    rows_read: int = 0
    rows_transformed: int = 0
    rows_loaded: int = 0
    rows_rejected: int = 0
    error: str | None = None
    error_code: str | None = None
    # Root cause first, this pipeline last.
    failure_chain: tuple[str, ...] = ()


@dataclass(frozen=True)
class RunReport:
    batch_id: str
    status: str
    started_at: datetime
    finished_at: datetime
    batches: tuple[tuple[str, ...], ...]
    outcomes: dict[str, PipelineOutcome]
    warnings: tuple[PhaseOverrideWarning, ...] = field(default_factory=tuple)

    def with_status(self, status: str) -> list[PipelineOutcome]:
        return [outcome for outcome in self.outcomes.values() if outcome.status == status]

    @property
    def failed(self) -> list[PipelineOutcome]:
        return self.with_status(STATUS_FAILED)

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "batches": [list(batch) for batch in self.batches],
            "warnings": [asdict(warning) for warning in self.warnings],
            "pipelines": [
                {**asdict(outcome), "failure_chain": list(outcome.failure_chain)}
                for outcome in self.outcomes.values()
            ],
        }

    def render(self) -> str:
        lines = [f"batch={self.batch_id} status={self.status} pipelines={len(self.outcomes)}"]
        for warning in self.warnings:
            lines.append(f"  warning: {warning.name} declared phase {warning.declared}, runs in {warning.computed}")
        for outcome in self.outcomes.values():
            lines.append(
                f"  {outcome.pipeline_name}: {outcome.status} attempts={outcome.attempts} "
                f"read={outcome.rows_read} transformed={outcome.rows_transformed} "
                f"loaded={outcome.rows_loaded} rejected={outcome.rows_rejected}"
            )
            if outcome.error:
                lines.append(f"    error: {outcome.error}")
            if len(outcome.failure_chain) > 1:
                lines.append(f"    chain: {' -> '.join(outcome.failure_chain)}")
        return "\n".join(lines)


def write_report(report: RunReport, output_dir: str) -> Path:
    path = Path(output_dir) / "reports" / f"{report.batch_id}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(report.to_dict(), outfile, indent=2, sort_keys=True)
        outfile.write("\n")
    return path
