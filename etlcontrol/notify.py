import logging
from typing import Protocol

from etlcontrol.config_store import ConfigSnapshot
from etlcontrol.schemas import AlertEvent, PipelineDefinition


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, event: AlertEvent) -> None: ...


class LoggingNotifier:
    def notify(self, event: AlertEvent) -> None:
        logger.error(
            "pipeline failure alert",
            extra={
                "pipeline": event.pipeline_name,
                "batch_id": event.batch_id,
                "reason": event.reason,
                "recipients": ",".join(event.recipients),
            },
        )


class CollectingNotifier:
    """Keeps events in memory; used by tests and dry runs."""

    def __init__(self) -> None:
        self.events: list[AlertEvent] = []

    def notify(self, event: AlertEvent) -> None:
        self.events.append(event)


def alert_recipients(pipeline: PipelineDefinition, snapshot: ConfigSnapshot) -> tuple[str, ...]:
    if pipeline.alert_email_list:
        return pipeline.alert_email_list
    raw = snapshot.get_value("alerting", "critical_alert_recipients", "") or ""
    return tuple(address.strip() for address in raw.split(",") if address.strip())
