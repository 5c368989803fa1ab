from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from deskhost.core.progress import ProgressReport, ProgressStream


def test_report_clamps_percent_and_records_latest():
    stream = ProgressStream()
    report = stream.report("validating", 150, "checking")
    assert report.percent == 100
    assert stream.snapshot()["stage"] == "validating"
    assert isinstance(stream.snapshot()["timestamp"], int)


def test_model_rejects_out_of_range_percent():
    with pytest.raises(ValidationError):
        ProgressReport(stage="x", percent=101, message="")


def test_listener_failure_is_isolated():
    stream = ProgressStream()
    seen = []

    def broken(report):
        raise RuntimeError("listener")

    stream.add_listener(broken)
    remove = stream.add_listener(seen.append)
    stream.report("a", 1)
    remove()
    stream.report("a", 2)
    assert [item.percent for item in seen] == [1]


def test_subscription_drops_oldest_when_full():
    async def _run():
        stream = ProgressStream()
        sub = stream.subscribe(maxsize=2)
        for percent in (10, 20, 30):
            stream.report("installing:layout", percent)
        stream.close()
        received = [report.percent async for report in sub]
        return received, sub.dropped

    received, dropped = asyncio.run(_run())
    assert received == [20, 30]
    assert dropped == 1
