"""Tests for core/poller.py -- cycles, scheduling and cancellation.

Real DeviceStore/TicketStore (in-memory SQLite) and NotificationHub; only the
SNMP side is faked (FakeSessionPool from conftest).

Covers:
- critical / warning / offline outcomes and their tickets and events
- one unreachable device does not affect a healthy one in the same cycle
- last_seen advances on success and is kept on failure
- one ticket per critical poll (no de-duplication by default)
- concurrency is bounded by max_concurrency
- skip-if-running for both manual cycles and scheduled ticks
- stop() prevents writes from queries that resolve afterwards
- a failing registry read aborts the cycle but not the schedule
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeSessionPool, build_poller, make_device
from sqlalchemy.exc import OperationalError

from core.errors import DeviceUnreachable, SchedulerFatal
from core.models import MetricSnapshot, ThresholdPair, Thresholds
from core.poller import Poller
from realtime.hub import NotificationHub

EARLIER = "2000-01-01T00:00:00+00:00"


def healthy(cpu=10, memory=20):
    return [360000, cpu, memory, 1000, 2000]


@pytest.fixture
def hub():
    return NotificationHub(queue_size=100)


@pytest.fixture
def listener(hub):
    """A staff connection that sees device updates, alerts and ticket notifications."""
    return hub.connect(user_id=1, role="admin")


def drain(conn) -> list[dict]:
    messages = []
    while not conn.queue.empty():
        messages.append(conn.queue.get_nowait())
    return messages


def _seed_online(device_store, device_id):
    device_store.update_status(device_id, "online", EARLIER, MetricSnapshot(collected_at=EARLIER, cpu_usage=5))


class TestScenarios:
    def test_cpu_critical_opens_ticket(self, device_store, ticket_store, hub, listener):
        device_id = device_store.create_device(
            make_device(thresholds=Thresholds(cpu=ThresholdPair(warning=70, critical=90)))
        )
        pool = FakeSessionPool({device_id: healthy(cpu=95, memory=50)})
        poller = build_poller(device_store, ticket_store, hub, pool)

        report = asyncio.run(poller.run_cycle())

        assert report.counts["critical"] == 1
        assert device_store.get(device_id).status == "critical"
        tickets = ticket_store.list_tickets()
        assert len(tickets) == 1
        assert tickets[0].priority == "critical"
        assert tickets[0].type == "incident"
        events = [m["event"] for m in drain(listener)]
        assert events == ["device_updated", "system_alert", "ticket_notification"]

    def test_cpu_warning_no_ticket(self, device_store, ticket_store, hub, listener):
        device_id = device_store.create_device(make_device())
        pool = FakeSessionPool({device_id: healthy(cpu=75, memory=50)})
        poller = build_poller(device_store, ticket_store, hub, pool)

        asyncio.run(poller.run_cycle())

        assert device_store.get(device_id).status == "warning"
        assert ticket_store.list_tickets() == []
        events = [m["event"] for m in drain(listener)]
        assert events == ["device_updated", "system_alert"]

    def test_timeout_goes_offline_and_keeps_last_seen(self, device_store, ticket_store, hub, listener):
        device_id = device_store.create_device(make_device())
        _seed_online(device_store, device_id)
        pool = FakeSessionPool({device_id: DeviceUnreachable(device_id, "timeout")})
        poller = build_poller(device_store, ticket_store, hub, pool)

        report = asyncio.run(poller.run_cycle())

        device = device_store.get(device_id)
        assert report.counts["offline"] == 1
        assert device.status == "offline"
        assert device.last_seen == EARLIER
        [message] = drain(listener)
        assert message["event"] == "device_updated"
        assert message["data"]["status"] == "offline"
        assert message["data"]["deviceId"] == device_id
        assert message["data"]["lastSeen"] == EARLIER

    def test_failure_isolated_from_healthy_device(self, device_store, ticket_store, hub):
        down = device_store.create_device(make_device("down", "10.0.0.1"))
        up = device_store.create_device(make_device("up", "10.0.0.2"))
        pool = FakeSessionPool({down: DeviceUnreachable(down, "timeout"), up: healthy()})
        poller = build_poller(device_store, ticket_store, hub, pool)

        report = asyncio.run(poller.run_cycle())

        assert report.polled == 2
        assert report.counts["online"] == 1
        assert report.counts["offline"] == 1
        assert device_store.get(up).status == "online"
        assert device_store.get(up).metrics.cpu_usage == 10
        assert device_store.get(down).status == "offline"

    def test_unexpected_error_is_isolated(self, device_store, ticket_store, hub):
        bad = device_store.create_device(make_device("bad", "10.0.0.1"))
        good = device_store.create_device(make_device("good", "10.0.0.2"))
        pool = FakeSessionPool({bad: RuntimeError("boom"), good: healthy()})
        poller = build_poller(device_store, ticket_store, hub, pool)

        report = asyncio.run(poller.run_cycle())

        assert report.failed == 1
        assert device_store.get(good).status == "online"


class TestInvariants:
    def test_success_advances_last_seen(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        _seed_online(device_store, device_id)
        pool = FakeSessionPool({device_id: healthy(cpu=99)})
        poller = build_poller(device_store, ticket_store, hub, pool)

        asyncio.run(poller.run_cycle())

        device = device_store.get(device_id)
        assert device.last_seen > EARLIER
        assert device.last_seen == device.metrics.collected_at

    def test_one_ticket_per_critical_poll(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        pool = FakeSessionPool({device_id: healthy(cpu=99)})
        poller = build_poller(device_store, ticket_store, hub, pool)

        async def run():
            await poller.run_cycle()
            await poller.run_cycle()
            await poller.run_cycle()

        asyncio.run(run())
        assert len(ticket_store.list_tickets()) == 3

    def test_dedup_window_opens_one_ticket(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        pool = FakeSessionPool({device_id: healthy(cpu=99)})
        poller = build_poller(device_store, ticket_store, hub, pool, dedup_seconds=600)

        async def run():
            await poller.run_cycle()
            await poller.run_cycle()

        asyncio.run(run())
        assert len(ticket_store.list_tickets()) == 1

    def test_unmonitored_devices_are_skipped(self, device_store, ticket_store, hub):
        device_store.create_device(make_device(is_monitored=False))
        pool = FakeSessionPool()
        report = asyncio.run(build_poller(device_store, ticket_store, hub, pool).run_cycle())
        assert report.polled == 0
        assert pool.queried == []

    def test_concurrency_is_bounded(self, device_store, ticket_store, hub):
        ids = [device_store.create_device(make_device(f"d{i}", f"10.0.1.{i}")) for i in range(6)]
        pool = FakeSessionPool({i: healthy() for i in ids})
        poller = build_poller(device_store, ticket_store, hub, pool, max_concurrency=2)

        report = asyncio.run(poller.run_cycle())

        assert report.counts["online"] == 6
        assert pool.max_in_flight == 2

    def test_disk_reading_classified_when_enabled(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(
            make_device(thresholds=Thresholds(disk=ThresholdPair(warning=1, critical=2)))
        )
        pool = FakeSessionPool({device_id: healthy() + [50]})
        poller = build_poller(device_store, ticket_store, hub, pool, include_disk=True)

        report = asyncio.run(poller.run_cycle())

        device = device_store.get(device_id)
        assert report.counts["critical"] == 1
        assert device.status == "critical"
        assert device.metrics.disk_usage == 50

    def test_disk_reading_ignored_by_default(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(
            make_device(thresholds=Thresholds(disk=ThresholdPair(warning=1, critical=2)))
        )
        pool = FakeSessionPool({device_id: healthy() + [50]})

        asyncio.run(build_poller(device_store, ticket_store, hub, pool).run_cycle())

        device = device_store.get(device_id)
        assert device.status == "online"
        assert device.metrics.disk_usage == 50

    def test_forget_device_drops_lock_and_session(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        pool = FakeSessionPool({device_id: healthy()})
        poller = build_poller(device_store, ticket_store, hub, pool)

        async def run():
            await poller.run_cycle()
            held = device_id in poller._device_locks
            await poller.forget_device(device_id)
            return held

        assert asyncio.run(run()) is True
        assert device_id not in poller._device_locks
        assert pool.discarded == [device_id]

    def test_cycle_prunes_locks_of_removed_devices(self, device_store, ticket_store, hub):
        kept = device_store.create_device(make_device("kept", "10.0.0.1"))
        removed = device_store.create_device(make_device("removed", "10.0.0.2"))
        pool = FakeSessionPool({kept: healthy(), removed: healthy()})
        poller = build_poller(device_store, ticket_store, hub, pool)

        async def run():
            await poller.run_cycle()
            device_store.delete_device(removed)
            await poller.run_cycle()

        asyncio.run(run())
        assert set(poller._device_locks) == {kept}


class TestScheduling:
    def test_manual_cycle_refused_while_running(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: healthy()}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool)
            first = asyncio.create_task(poller.run_cycle())
            while pool.in_flight == 0:
                await asyncio.sleep(0)
            assert poller.cycle_in_progress is True
            second = await poller.run_cycle()
            gate.set()
            return await first, second

        first, second = asyncio.run(run())
        assert second is None
        assert first.counts["online"] == 1

    def test_schedule_runs_repeatedly_until_stopped(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        pool = FakeSessionPool({device_id: healthy()})
        poller = build_poller(device_store, ticket_store, hub, pool, interval=0.02)

        async def run():
            assert poller.start() is True
            assert poller.start() is False
            await asyncio.sleep(0.15)
            await poller.stop()
            return len(pool.queried)

        polls = asyncio.run(run())
        assert polls >= 2
        assert poller.running is False
        assert pool.closed == 1

    def test_tick_claims_cycle_before_it_runs(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: healthy()}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool, interval=3600)
            poller.start()
            # Let the tick loop schedule its cycle, but not run it yet.
            while poller._cycle_task is None:
                await asyncio.sleep(0)
            claimed = poller.cycle_in_progress
            manual = await poller.run_cycle()
            gate.set()
            await poller._cycle_task
            await poller.stop()
            return claimed, manual, pool.queried

        claimed, manual, queried = asyncio.run(run())
        assert claimed is True
        assert manual is None
        assert queried == [device_id]

    def test_stop_before_scheduled_cycle_starts_releases_claim(self, device_store, ticket_store, hub):
        async def run():
            poller = build_poller(device_store, ticket_store, hub, FakeSessionPool(), interval=3600)
            poller.start()
            while poller._cycle_task is None:
                await asyncio.sleep(0)
            await poller.stop()
            return poller

        poller = asyncio.run(run())
        assert poller.cycle_in_progress is False

    def test_overlapping_ticks_are_skipped(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: healthy()}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool, interval=0.01)
            poller.start()
            await asyncio.sleep(0.1)
            skipped = poller.cycles_skipped
            queried = len(pool.queried)
            await poller.stop()
            return skipped, queried

        skipped, queried = asyncio.run(run())
        assert skipped >= 1
        assert queried == 1

    def test_stop_discards_in_flight_result(self, device_store, ticket_store, hub, listener):
        device_id = device_store.create_device(make_device())
        _seed_online(device_store, device_id)

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: healthy(cpu=99)}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool)
            device = device_store.get(device_id)
            in_flight = asyncio.create_task(poller.poll_device(device))
            while pool.in_flight == 0:
                await asyncio.sleep(0)
            await poller.stop()
            gate.set()
            return await in_flight

        assert asyncio.run(run()) is None
        device = device_store.get(device_id)
        assert device.status == "online"
        assert device.last_seen == EARLIER
        assert ticket_store.list_tickets() == []
        assert drain(listener) == []

    def test_stop_discards_in_flight_failure(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        _seed_online(device_store, device_id)

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: DeviceUnreachable(device_id, "timeout")}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool)
            in_flight = asyncio.create_task(poller.poll_device(device_store.get(device_id)))
            while pool.in_flight == 0:
                await asyncio.sleep(0)
            await poller.stop()
            gate.set()
            return await in_flight

        assert asyncio.run(run()) is None
        assert device_store.get(device_id).status == "online"

    def test_stop_cancels_running_cycle(self, device_store, ticket_store, hub):
        device_id = device_store.create_device(make_device())
        _seed_online(device_store, device_id)

        async def run():
            gate = asyncio.Event()
            pool = FakeSessionPool({device_id: healthy(cpu=99)}, gate=gate)
            poller = build_poller(device_store, ticket_store, hub, pool, interval=3600)
            poller.start()
            while pool.in_flight == 0:
                await asyncio.sleep(0)
            await poller.stop()
            gate.set()
            await asyncio.sleep(0.01)
            return poller

        poller = asyncio.run(run())
        assert poller.cycle_in_progress is False
        assert device_store.get(device_id).status == "online"

    def test_registry_read_failure_is_scheduler_fatal(self, hub):
        registry = MagicMock()
        registry.list_monitored.side_effect = OperationalError("SELECT", {}, Exception("no such table"))
        poller = Poller(registry, FakeSessionPool(), MagicMock())
        with pytest.raises(SchedulerFatal):
            asyncio.run(poller.run_cycle())
        assert poller.cycle_in_progress is False

    def test_schedule_survives_failed_cycle(self):
        registry = MagicMock()
        registry.list_monitored.side_effect = [OperationalError("SELECT", {}, Exception("locked"))] + [[]] * 100
        poller = Poller(registry, FakeSessionPool(), MagicMock(), interval=0.02)

        async def run():
            poller.start()
            await asyncio.sleep(0.15)
            running = poller.running
            await poller.stop()
            return running

        assert asyncio.run(run()) is True
        assert registry.list_monitored.call_count >= 2
        assert poller.last_report is not None

    def test_status(self, device_store, ticket_store, hub):
        poller = build_poller(device_store, ticket_store, hub, FakeSessionPool(), interval=15, max_concurrency=3)
        status = poller.status()
        assert status["running"] is False
        assert status["interval_seconds"] == 15
        assert status["max_concurrency"] == 3
        assert status["last_cycle"] is None
