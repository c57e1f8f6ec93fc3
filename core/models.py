"""
core/models.py -- Value types shared by the polling engine.

Pure data containers. Classification lives in core/classifier.py and
persistence in inventory/store.py; these types only describe the shape of a
poll result and of the per-device thresholds it is judged against.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional

# Health states a device can be in. Order matters only for display.
ONLINE = "online"
OFFLINE = "offline"
WARNING = "warning"
CRITICAL = "critical"

STATUSES = (ONLINE, OFFLINE, WARNING, CRITICAL)


@dataclass(frozen=True)
class ThresholdPair:
    warning: float
    critical: float


def _cpu_default() -> ThresholdPair:
    return ThresholdPair(warning=70, critical=90)


def _memory_default() -> ThresholdPair:
    return ThresholdPair(warning=80, critical=95)


def _disk_default() -> ThresholdPair:
    return ThresholdPair(warning=85, critical=95)


@dataclass(frozen=True)
class Thresholds:
    """Per-device warning/critical limits, in percent."""

    cpu: ThresholdPair = field(default_factory=_cpu_default)
    memory: ThresholdPair = field(default_factory=_memory_default)
    disk: ThresholdPair = field(default_factory=_disk_default)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Thresholds":
        """Build Thresholds from a nested dict, filling gaps with defaults."""
        data = data or {}
        defaults = cls()

        def _pair(name: str, fallback: ThresholdPair) -> ThresholdPair:
            raw = data.get(name) or {}
            return ThresholdPair(
                warning=raw.get("warning", fallback.warning),
                critical=raw.get("critical", fallback.critical),
            )

        return cls(
            cpu=_pair("cpu", defaults.cpu),
            memory=_pair("memory", defaults.memory),
            disk=_pair("disk", defaults.disk),
        )


@dataclass(frozen=True)
class MetricSnapshot:
    """Raw counters from one successful poll.

    Any field may be None when the device did not return a usable value for
    it. collected_at is ISO 8601 (UTC).
    """

    collected_at: str
    uptime: Optional[int] = None
    cpu_usage: Optional[int] = None
    memory_usage: Optional[int] = None
    disk_usage: Optional[int] = None
    network_in: Optional[int] = None
    network_out: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MetricSnapshot":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})
