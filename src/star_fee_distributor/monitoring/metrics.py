"""Thread-safe metrics registry with histogram support.

Series may carry labels such as the vault they describe. A labelled series is
stored under ``name{key="value",...}`` and exported to Prometheus with the
same label set.
"""

from __future__ import annotations

import math
import re
import threading
from collections import defaultdict, deque
from statistics import mean
from typing import Deque, Dict, Iterable, Mapping, MutableMapping, Optional, Tuple

_METRIC_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_:]")

Labels = Optional[Mapping[str, str]]


def _sanitize_metric_name(name: str) -> str:
    """Return a Prometheus-safe metric name."""

    sanitized = _METRIC_SANITIZE_RE.sub("_", name)
    if not sanitized:
        return "_"
    if sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


def series_key(name: str, labels: Labels = None) -> str:
    """Key a series by name and sorted labels, e.g. ``crank_pages_committed{vault="..."}``."""

    if not labels:
        return name
    rendered = ",".join(f'{key}="{labels[key]}"' for key in sorted(labels))
    return f"{name}{{{rendered}}}"


def _split_key(key: str) -> Tuple[str, str]:
    name, brace, rest = key.partition("{")
    return name, f"{brace}{rest}" if brace else ""


class MetricsRegistry:
    """In-memory metrics store backing status reports and the Prometheus text export."""

    def __init__(self, *, max_hist_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: MutableMapping[str, float] = {}
        self._histograms: MutableMapping[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_hist_samples)
        )

    def increment(self, name: str, amount: float = 1.0, *, labels: Labels = None) -> None:
        with self._lock:
            self._counters[series_key(name, labels)] += amount

    def get(self, name: str, *, labels: Labels = None) -> float:
        with self._lock:
            return self._counters.get(series_key(name, labels), 0.0)

    def gauge(self, name: str, value: float, *, labels: Labels = None) -> None:
        with self._lock:
            self._gauges[series_key(name, labels)] = float(value)

    def observe(self, name: str, value: float, *, labels: Labels = None) -> None:
        with self._lock:
            self._histograms[series_key(name, labels)].append(float(value))

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histograms = {key: self._histogram_stats(values) for key, values in self._histograms.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines = []
        typed = set()

        def declare(base: str, kind: str) -> None:
            if base not in typed:
                typed.add(base)
                lines.append(f"# TYPE {base} {kind}")

        for kind, series in (("counter", snap["counters"]), ("gauge", snap["gauges"])):
            for key, value in sorted(series.items(), key=lambda item: _split_key(item[0])):
                name, label_part = _split_key(key)
                base = _sanitize_metric_name(name)
                declare(base, kind)
                lines.append(f"{base}{label_part} {value}")
        for key, stats in sorted(snap["histograms"].items(), key=lambda item: _split_key(item[0])):
            if not stats:
                continue
            name, label_part = _split_key(key)
            base = _sanitize_metric_name(name)
            declare(base, "summary")
            inner = label_part[1:-1]
            for quantile in ("p50", "p90", "p99"):
                if quantile in stats:
                    quantile_labels = f'{inner},quantile="{quantile}"' if inner else f'quantile="{quantile}"'
                    lines.append(f"{base}{{{quantile_labels}}} {stats[quantile]}")
            lines.append(f"{base}_count{label_part} {stats.get('count', 0)}")
            if "avg" in stats:
                lines.append(f"{base}_avg{label_part} {stats['avg']}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def _histogram_stats(self, values: Iterable[float]) -> Dict[str, float]:
        data = sorted(values)
        if not data:
            return {}
        return {
            "count": float(len(data)),
            "avg": mean(data),
            "p50": self._percentile(data, 0.5),
            "p90": self._percentile(data, 0.9),
            "p99": self._percentile(data, 0.99),
        }

    @staticmethod
    def _percentile(data: Iterable[float], percentile: float) -> float:
        items = list(data)
        if not items:
            return 0.0
        index = max(int(math.ceil(percentile * len(items))) - 1, 0)
        return float(items[min(index, len(items) - 1)])


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry", "series_key"]
