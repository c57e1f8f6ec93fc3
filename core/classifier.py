"""
core/classifier.py -- Pure mapping from raw SNMP values to a health status.

No I/O, no state. The same snapshot classified against the same thresholds
always yields the same status.

Precedence: critical > warning > online. A reading counts as a breach when it
is at or above the threshold. Missing readings count as 0.
"""

import logging
from collections.abc import Sequence
from typing import Any, Optional

from core.errors import ClassificationInputMissing
from core.models import CRITICAL, OFFLINE, ONLINE, WARNING, MetricSnapshot, Thresholds

logger = logging.getLogger("netpulse.classifier")

# Field order matches core.snmp.METRIC_OIDS.
_SNAPSHOT_FIELDS = ("uptime", "cpu_usage", "memory_usage", "network_in", "network_out", "disk_usage")


def _coerce(name: str, raw: Any) -> int:
    if raw is None:
        raise ClassificationInputMissing(name)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ClassificationInputMissing(name) from exc


def snapshot_from_values(values: Sequence[Any], collected_at: str) -> MetricSnapshot:
    """Build a MetricSnapshot from the ordered value list a session returns.

    A short list or an unusable value leaves that metric as None rather than
    failing the poll.
    """
    fields: dict[str, Optional[int]] = {}
    for index, name in enumerate(_SNAPSHOT_FIELDS):
        raw = values[index] if index < len(values) else None
        try:
            fields[name] = _coerce(name, raw)
        except ClassificationInputMissing as exc:
            logger.debug("%s", exc)
            fields[name] = None
    return MetricSnapshot(collected_at=collected_at, **fields)


def _level(value: Optional[int], warning: float, critical: float) -> int:
    reading = value or 0
    if reading >= critical:
        return 2
    if reading >= warning:
        return 1
    return 0


def classify(snapshot: MetricSnapshot, thresholds: Thresholds, include_disk: bool = False) -> str:
    """Return "critical", "warning" or "online" for a successful poll."""
    levels = [
        _level(snapshot.cpu_usage, thresholds.cpu.warning, thresholds.cpu.critical),
        _level(snapshot.memory_usage, thresholds.memory.warning, thresholds.memory.critical),
    ]
    if include_disk:
        levels.append(_level(snapshot.disk_usage, thresholds.disk.warning, thresholds.disk.critical))
    worst = max(levels)
    if worst == 2:
        return CRITICAL
    if worst == 1:
        return WARNING
    return ONLINE


def classify_unreachable() -> str:
    """An unreachable device is offline regardless of its last known metrics."""
    return OFFLINE
