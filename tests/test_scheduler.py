import logging

import pytest

from etlcontrol.errors import CycleDetectedError
from etlcontrol.scheduler import _run_daily_orchestration


class CyclicRunner:
    def run(self):
        raise CycleDetectedError(["a", "b", "a"])


def test_scheduled_run_logs_configuration_errors(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="etlcontrol.scheduler"):
        _run_daily_orchestration(CyclicRunner())

    assert "scheduled orchestration rejected configuration" in caplog.text
    assert "a -> b -> a" in caplog.text
