from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from control_plane.agents.health import AgentHealth
from control_plane.agents.notification_service import NotificationDispatcher
from control_plane.agents.sweeper_service import SweeperAgent
from control_plane.core.config import Settings
from control_plane.services.expiration_sweeper import ExpirationSweeper, SweepReport


def test_agent_health_lifecycle_payload() -> None:
    health = AgentHealth(name="agent-x")
    health.mark_run()
    health.mark_success()
    health.mark_error(ValueError("boom"))

    payload = health.payload()
    assert payload["name"] == "agent-x"
    assert payload["healthy"] is False
    assert payload["ready"] is True
    assert payload["last_error"] == "boom"
    assert payload["consecutive_failures"] == 1
    assert payload["metrics"] == {"runs": 1, "failures": 1}
    assert payload["last_run_at"] is not None
    assert payload["last_success_at"] is not None


def test_agent_health_error_without_message_uses_type_name() -> None:
    health = AgentHealth(name="agent-y")
    health.mark_error(TimeoutError())
    health.mark_error(TimeoutError())

    assert health.last_error == "TimeoutError"
    assert health.consecutive_failures == 2


@pytest.mark.asyncio
async def test_notification_dispatcher_posts_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    from control_plane.agents import notification_service

    called: dict[str, object] = {}

    class _Resp:
        def raise_for_status(self) -> None:
            return None

    def _post(url: str, json: dict, timeout: float):  # noqa: A002
        called["url"] = url
        called["json"] = json
        called["timeout"] = timeout
        return _Resp()

    monkeypatch.setattr(notification_service.requests, "post", _post)
    await NotificationDispatcher("https://hooks.example.test", timeout=3).dispatch({"event_type": "ok"})

    assert called == {"url": "https://hooks.example.test", "json": {"event_type": "ok"}, "timeout": 3}


class _FakeSweeper:
    def __init__(self, *reports: SweepReport | Exception) -> None:
        self._reports = list(reports)
        self.calls = 0

    async def sweep(self) -> SweepReport:
        self.calls += 1
        report = self._reports.pop(0)
        if isinstance(report, Exception):
            raise report
        return report


@pytest.mark.asyncio
async def test_sweeper_agent_run_once_records_metrics() -> None:
    swept_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    sweeper = _FakeSweeper(
        SweepReport(swept_at=swept_at, group_grants_removed=2, direct_grants_removed=1, invalidated=4),
        SweepReport(swept_at=swept_at, direct_grants_removed=1, invalidated=1),
    )
    agent = SweeperAgent(sweeper, interval_seconds=60)  # type: ignore[arg-type]

    first = await agent.run_once()
    await agent.run_once()

    assert first.removed == 3
    assert agent.last_report is not None and agent.last_report.removed == 1
    assert agent.health.healthy is True
    assert agent.health.metrics == {"runs": 2, "grants_removed": 4, "cache_entries_invalidated": 5}


@pytest.mark.asyncio
async def test_sweeper_agent_run_stops_after_stop_event() -> None:
    swept_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    sweeper = _FakeSweeper(SweepReport(swept_at=swept_at))
    agent = SweeperAgent(sweeper, interval_seconds=3600)  # type: ignore[arg-type]

    class _StoppingSweeper:
        async def sweep(self) -> SweepReport:
            report = await sweeper.sweep()
            await agent.stop()
            return report

    agent._sweeper = _StoppingSweeper()  # type: ignore[assignment]
    await agent.run()

    assert sweeper.calls == 1
    assert agent.health.metrics["runs"] == 1


def test_sweeper_agent_from_settings() -> None:
    config = Settings(
        sweep_interval_seconds=42,
        sweep_max_retry_delay_seconds=7,
        sweep_batch_size=25,
        migration_batch_size=10,
    )
    agent = SweeperAgent.from_settings(MagicMock(), config)

    assert isinstance(agent._sweeper, ExpirationSweeper)
    assert agent._interval == 42
    assert agent._max_retry_delay == 7
    assert agent._sweeper._batch_size == 25
