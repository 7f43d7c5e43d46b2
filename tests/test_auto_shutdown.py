"""Auto-shutdown scheduling, driven through the runner with a fake clock."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from helpers import T0, make_runner, region, sample_at
from powerguard.domain.errors import ConfigurationError
from powerguard.domain.models import CommandAck, NotificationCategory, TickStatus, TimerSource, ZoneMembership
from powerguard.drivers.location_reported import ReportedLocationProvider
from powerguard.storage.state import KEY_GRACE_PERIOD, KEY_LAST_TIMER


async def leave_zone(runner, clock, start=0):
    for offset, distance in ((0, 150), (30, 140), (60, 160)):
        clock.at(start + offset)
        await runner.evaluate(sample_at(distance, clock.now))


def categories(notifier):
    return [e.category for _, e in notifier.recent]


class TestGeofenceShutdown:
    async def test_shutdown_issued_after_grace_period(self, store, clock, transport, notifier):
        runner = await make_runner(store, clock, transport, notifier=notifier)
        await runner.set_region(region(100))

        await leave_zone(runner, clock)

        assert runner.geofence.membership is ZoneMembership.OUTSIDE
        timer = runner.scheduler.timer_for("2")
        assert timer.deadline == T0 + timedelta(seconds=960)
        assert runner.scheduler.timer_for("1") is None

        clock.at(959)
        await runner.evaluate()
        assert transport.calls == []

        clock.at(960)
        result = await runner.evaluate()

        assert transport.calls == [("2", False)]
        assert result.commands_issued == 1
        assert runner.outlets.canonical("2") is False
        assert runner.scheduler.armed() == []
        assert categories(notifier) == [
            NotificationCategory.LEFT_ZONE_WITH_OUTLETS_ON,
            NotificationCategory.GEOFENCE_TIMER_COMPLETED,
        ]

    async def test_enter_before_deadline_issues_nothing(self, store, clock, transport):
        runner = await make_runner(store, clock, transport)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        clock.at(500)
        await runner.evaluate(sample_at(40, clock.now))
        assert runner.scheduler.armed() == []

        clock.at(2000)
        await runner.evaluate()
        assert transport.calls == []
        assert runner.outlets.canonical("2") is True

    async def test_late_tick_resolves_overdue_timer(self, store, clock, transport):
        runner = await make_runner(store, clock, transport)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        clock.at(7200)
        result = await runner.evaluate()

        assert result.commands_issued == 1
        assert transport.calls == [("2", False)]

    async def test_manual_off_cancels_only_that_timer(self, store, clock, transport):
        runner = await make_runner(store, clock, transport, outlets_on=("1", "2"))
        await runner.set_region(region(100))
        await leave_zone(runner, clock)
        assert {t.outlet_id for t in runner.scheduler.armed()} == {"1", "2"}

        await runner.toggle("1", False)

        assert [t.outlet_id for t in runner.scheduler.armed()] == ["2"]
        clock.at(960)
        await runner.evaluate()
        assert transport.calls == [("1", False), ("2", False)]

    async def test_parked_outside_shuts_down_without_new_fixes(self, store, clock, transport):
        location = ReportedLocationProvider()
        runner = await make_runner(store, clock, transport, location=location)
        await runner.set_region(region(100))
        for offset, distance in ((0, 150), (30, 140), (60, 160)):
            clock.at(offset)
            location.report(sample_at(distance, clock.now))
            await runner.run_tick()
        assert runner.geofence.membership is ZoneMembership.OUTSIDE

        clock.at(960)
        result = await runner.run_tick()

        assert transport.calls == [("2", False)]
        assert result.membership is ZoneMembership.OUTSIDE
        assert result.status is TickStatus.PARTIAL
        assert "location: stale" in result.errors

    async def test_unknown_at_deadline_holds_timer(self, store, clock, transport, notifier):
        runner = await make_runner(store, clock, transport, notifier=notifier)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        # Redefining the zone drops the confirmed membership
        await runner.set_region(region(100))
        clock.at(960)
        await runner.evaluate()

        assert runner.geofence.membership is ZoneMembership.UNKNOWN
        assert transport.calls == []
        assert runner.scheduler.timer_for("2") is not None

        # Same exit cycle confirmed again: shutdown, but no second alert
        await leave_zone(runner, clock, start=1000)
        assert transport.calls == [("2", False)]
        assert categories(notifier).count(NotificationCategory.LEFT_ZONE_WITH_OUTLETS_ON) == 1

    async def test_disable_cancels_without_commands(self, store, clock, transport):
        runner = await make_runner(store, clock, transport)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        await runner.set_enabled(False)

        assert runner.geofence.membership is ZoneMembership.UNKNOWN
        assert runner.scheduler.armed() == []
        clock.at(2000)
        await runner.evaluate(sample_at(500, clock.now))
        assert transport.calls == []

    async def test_no_outlets_on_arms_nothing(self, store, clock, transport, notifier):
        runner = await make_runner(store, clock, transport, notifier=notifier, outlets_on=())
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        assert runner.geofence.membership is ZoneMembership.OUTSIDE
        assert runner.scheduler.armed() == []
        assert list(notifier.recent) == []

    async def test_turning_on_outside_arms_timer(self, store, clock, transport, notifier):
        runner = await make_runner(store, clock, transport, notifier=notifier, outlets_on=())
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        clock.at(100)
        await runner.toggle("3", True)

        timer = runner.scheduler.timer_for("3")
        assert timer.source is TimerSource.GEOFENCE
        assert timer.deadline == clock.now + timedelta(seconds=900)
        assert categories(notifier) == [NotificationCategory.TURNED_ON_OUTLET_OUTSIDE_ZONE]

    async def test_failed_shutdown_surfaces_error(self, store, clock, transport):
        runner = await make_runner(store, clock, transport)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)

        transport.fail_next(3)
        clock.at(960)
        result = await runner.evaluate()

        assert result.status is TickStatus.PARTIAL
        assert result.errors
        assert runner.outlets.canonical("2") is True
        assert runner.outlets.displayed("2") is True
        assert runner.outlets.get("2").error
        assert runner.scheduler.armed() == []


class TestGracePeriod:
    async def test_floor_enforced(self, store, clock):
        runner = await make_runner(store, clock)
        with pytest.raises(ConfigurationError):
            await runner.set_grace_period(5)

    async def test_custom_grace_period_is_persisted_and_used(self, store, clock):
        runner = await make_runner(store, clock)
        await runner.set_grace_period(60)
        assert store.data[KEY_GRACE_PERIOD] == 60

        await runner.set_region(region(100))
        await leave_zone(runner, clock)
        assert runner.scheduler.timer_for("2").deadline == T0 + timedelta(seconds=120)


class TestManualTimer:
    async def test_manual_timer_ignores_zone(self, store, clock, transport, notifier):
        runner = await make_runner(store, clock, transport, notifier=notifier)

        await runner.start_manual_timer("2", 60)
        assert runner.last_timer_s == 60
        assert store.data[KEY_LAST_TIMER] == 60

        clock.at(60)
        await runner.evaluate()

        assert transport.calls == [("2", False)]
        assert categories(notifier) == [NotificationCategory.MANUAL_TIMER_COMPLETED]

    async def test_manual_timer_defaults_to_last_used(self, store, clock):
        runner = await make_runner(store, clock, outlets_on=("1", "2"))
        await runner.start_manual_timer("1", 45)
        timer = await runner.start_manual_timer("2")
        assert timer.duration_s == 45

    async def test_manual_timer_needs_outlet_on(self, store, clock):
        runner = await make_runner(store, clock)
        with pytest.raises(ConfigurationError):
            await runner.start_manual_timer("1", 60)

    async def test_manual_timer_floor(self, store, clock):
        runner = await make_runner(store, clock)
        with pytest.raises(ConfigurationError):
            await runner.start_manual_timer("2", 3)

    async def test_enter_keeps_manual_timer(self, store, clock):
        runner = await make_runner(store, clock)
        await runner.set_region(region(100))
        await leave_zone(runner, clock)
        await runner.start_manual_timer("2", 600)

        clock.at(100)
        await runner.evaluate(sample_at(10, clock.now))

        timer = runner.scheduler.timer_for("2")
        assert timer is not None and timer.source is TimerSource.MANUAL


class RendezvousTransport:
    """Outlet 1 only acks once a command for outlet 2 has arrived."""

    def __init__(self) -> None:
        self.other_arrived = asyncio.Event()
        self.calls: list[tuple[str, bool]] = []

    async def submit(self, outlet_id, desired_state):
        self.calls.append((outlet_id, desired_state))
        if outlet_id == "1":
            await self.other_arrived.wait()
        else:
            self.other_arrived.set()
        return CommandAck(command_id=f"ack-{outlet_id}", outlet_id=outlet_id, achieved_state=desired_state, ts_utc=T0)


class TestConcurrentShutdowns:
    async def test_due_outlets_are_switched_together(self, store, clock):
        transport = RendezvousTransport()
        runner = await make_runner(store, clock, transport, outlets_on=("1", "2"), max_retries=0)
        await runner.start_manual_timer("1", 60)
        await runner.start_manual_timer("2", 60)

        clock.at(60)
        result = await runner.evaluate()

        assert result.status is TickStatus.SUCCESS
        assert result.commands_issued == 2
        assert sorted(transport.calls) == [("1", False), ("2", False)]
        assert runner.outlets.canonical("1") is False
        assert runner.outlets.canonical("2") is False
