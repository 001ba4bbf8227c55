"""
Sync client counters and gauges with Prometheus text exposition.

Series may carry labels, e.g. ``events_routed_total{table="stories"}``.
``get()`` with no labels sums every series of that name.
"""

from __future__ import annotations

import time
from typing import Any

METRIC_PREFIX = "newstack_"

DESCRIPTIONS = {
    "events_routed_total": "Change events dispatched to handlers",
    "events_malformed_total": "Change payloads dropped during narrowing",
    "notifications_surfaced_total": "Breaking items shown to the reader",
    "notifications_suppressed_total": "Redelivered duplicates that were not shown",
    "reconnects_scheduled_total": "Backoff retries scheduled after a transport failure",
    "subscriptions_connected": "Topics currently connected",
    "cached_items": "Stories held in the offline cache",
}

_Labels = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, Any]) -> _Labels:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _render(name: str, labels: _Labels, value: float) -> str:
    if not labels:
        return f"{name} {value}"
    rendered = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{name}{{{rendered}}} {value}"


class MetricsCollector:
    """In-process metrics registry for one sync client."""

    def __init__(self, prefix: str = METRIC_PREFIX) -> None:
        self._prefix = prefix
        self._counters: dict[str, dict[_Labels, int]] = {}
        self._gauges: dict[str, dict[_Labels, float]] = {}
        self._started_at = time.monotonic()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        series = self._counters.setdefault(name, {})
        key = _label_key(labels)
        series[key] = series.get(key, 0) + value

    def set_gauge(self, name: str, value: float, **labels: Any) -> None:
        self._gauges.setdefault(name, {})[_label_key(labels)] = value

    def get(self, name: str, **labels: Any) -> int | float:
        series = self._gauges.get(name) or self._counters.get(name) or {}
        if labels:
            return series.get(_label_key(labels), 0)
        return sum(series.values())

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at

    def to_prometheus(self) -> str:
        lines = []
        for kind, registry in (("counter", self._counters), ("gauge", self._gauges)):
            for name in sorted(registry):
                full = self._prefix + name
                if name in DESCRIPTIONS:
                    lines.append(f"# HELP {full} {DESCRIPTIONS[name]}")
                lines.append(f"# TYPE {full} {kind}")
                for labels, value in sorted(registry[name].items()):
                    lines.append(_render(full, labels, value))
        uptime_name = f"{self._prefix}uptime_seconds"
        lines.append(f"# TYPE {uptime_name} gauge")
        lines.append(f"{uptime_name} {self.uptime_seconds:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        def flatten(registry):
            return {
                _render(self._prefix + name, labels, value).rsplit(" ", 1)[0]: value
                for name, series in registry.items()
                for labels, value in series.items()
            }

        return {
            "counters": flatten(self._counters),
            "gauges": flatten(self._gauges),
            "uptime_seconds": self.uptime_seconds,
        }
