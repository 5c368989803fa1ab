from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from deskhost.config.settings import ShellConfig  # noqa: E402
from deskhost.core.events import EventBus, LifecycleEvent  # noqa: E402


@pytest.fixture
def shell_config(tmp_path: Path) -> ShellConfig:
    """Fast-moving config rooted in a temporary directory."""
    return ShellConfig(
        base_path=tmp_path / "backend",
        log_dir=tmp_path / "logs",
        min_free_bytes=0,
        readiness_timeout=5.0,
        probe_initial_interval=0.01,
        probe_backoff=2.0,
        probe_max_interval=0.05,
        probe_request_timeout=0.5,
        restart_backoff_initial=0.01,
        restart_backoff_max=0.05,
        grace_period=2.0,
        startup_timeout=20.0,
    )


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[LifecycleEvent] = []
        bus.subscribe_all(self.events.append)

    def names(self) -> list[str]:
        return [event.name.value for event in self.events]

    def of(self, name: str) -> list[LifecycleEvent]:
        return [event for event in self.events if event.name.value == name]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)
