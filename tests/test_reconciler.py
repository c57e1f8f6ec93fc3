"""Unit tests for core/reconciler.py.

Covers:
- the registry write happens before the device_updated event
- warning/critical outcomes are handed to the incident ticketer
- a failed or no-op write suppresses the event and the alert
- unreachable devices go offline without advancing last_seen
"""

from unittest.mock import MagicMock

from conftest import make_device

from core.errors import RegistryWriteFailure
from core.models import MetricSnapshot
from core.reconciler import StateReconciler

NOW = "2026-01-01T00:00:00+00:00"
EARLIER = "2025-12-31T23:59:30+00:00"


def _setup():
    manager = MagicMock()
    registry, hub, incidents = manager.registry, manager.hub, manager.incidents
    registry.update_status.return_value = True
    registry.mark_offline.return_value = True
    return manager, StateReconciler(registry, hub, incidents)


def test_online_persists_then_emits():
    manager, reconciler = _setup()
    device = make_device(id=3)
    snapshot = MetricSnapshot(collected_at=NOW, cpu_usage=10, memory_usage=20)
    assert reconciler.reconcile(device, "online", snapshot) is True

    names = [c[0] for c in manager.mock_calls]
    assert names == ["registry.update_status", "hub.emit_device_update"]
    manager.registry.update_status.assert_called_once_with(3, "online", NOW, snapshot)
    device_id, update = manager.hub.emit_device_update.call_args.args
    assert device_id == 3
    assert update["status"] == "online"
    assert update["lastSeen"] == NOW
    assert update["metrics"]["cpu_usage"] == 10


def test_critical_raises_alert_after_event():
    manager, reconciler = _setup()
    device = make_device(id=3)
    snapshot = MetricSnapshot(collected_at=NOW, cpu_usage=99)
    reconciler.reconcile(device, "critical", snapshot)
    names = [c[0] for c in manager.mock_calls]
    assert names == ["registry.update_status", "hub.emit_device_update", "incidents.raise_alert"]
    manager.incidents.raise_alert.assert_called_once_with(device, snapshot, "critical")


def test_write_failure_suppresses_event_and_alert():
    manager, reconciler = _setup()
    manager.registry.update_status.side_effect = RegistryWriteFailure("locked")
    snapshot = MetricSnapshot(collected_at=NOW, cpu_usage=99)
    assert reconciler.reconcile(make_device(id=3), "critical", snapshot) is False
    manager.hub.emit_device_update.assert_not_called()
    manager.incidents.raise_alert.assert_not_called()


def test_removed_device_suppresses_event():
    manager, reconciler = _setup()
    manager.registry.update_status.return_value = False
    assert reconciler.reconcile(make_device(id=3), "warning", MetricSnapshot(collected_at=NOW)) is False
    manager.hub.emit_device_update.assert_not_called()
    manager.incidents.raise_alert.assert_not_called()


def test_unreachable_keeps_last_seen():
    manager, reconciler = _setup()
    device = make_device(id=3, status="online", last_seen=EARLIER)
    assert reconciler.reconcile_unreachable(device, "timeout") is True
    manager.registry.mark_offline.assert_called_once_with(3)
    manager.registry.update_status.assert_not_called()
    _device_id, update = manager.hub.emit_device_update.call_args.args
    assert update["status"] == "offline"
    assert update["lastSeen"] == EARLIER
    assert "metrics" not in update
    manager.incidents.raise_alert.assert_not_called()


def test_unreachable_write_failure_suppresses_event():
    manager, reconciler = _setup()
    manager.registry.mark_offline.side_effect = RegistryWriteFailure("locked")
    assert reconciler.reconcile_unreachable(make_device(id=3), "timeout") is False
    manager.hub.emit_device_update.assert_not_called()
