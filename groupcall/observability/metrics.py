"""
Metrics: In-Process Counters and Histograms with Prometheus Export

The coordinator records:
- lifecycle operations by name and outcome
- operation latency
- conditional-write conflicts and exhausted retry budgets
- fan-out publishes by event and result
- sessions reclaimed by the reaper
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence


@dataclass(frozen=True)
class MetricLabels:
    """Immutable, order-independent label set."""
    labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str]) -> MetricLabels:
        return cls(labels=tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.labels)


class _Metric:
    __slots__ = ("_name", "_help", "_label_names", "_lock")

    def __init__(self, name: str, label_names: Sequence[str], help_text: str) -> None:
        self._name = name
        self._help = help_text
        self._label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _make_key(self, labels: dict[str, str]) -> MetricLabels:
        filtered = {k: str(labels.get(k, "")) for k in self._label_names}
        return MetricLabels.from_dict(filtered)

    @property
    def name(self) -> str:
        return self._name

    @property
    def help_text(self) -> str:
        return self._help


class Counter(_Metric):
    """
    Monotonically increasing counter.

    Usage:
        ops = Counter("groupcall_operations_total", ["operation", "outcome"])
        ops.inc(operation="join", outcome="joined")
    """

    __slots__ = ("_values",)

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[MetricLabels, float] = defaultdict(float)

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("counters can only increase")
        key = self._make_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, **labels: str) -> float:
        key = self._make_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def total(self) -> float:
        """Sum across every label combination."""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> Iterator[tuple[dict[str, str], float]]:
        with self._lock:
            items = list(self._values.items())
        for key, value in items:
            yield (key.to_dict(), value)


class Histogram(_Metric):
    """
    Cumulative-bucket histogram.

    Usage:
        latency = Histogram("groupcall_operation_seconds", ["operation"])
        with latency.time(operation="initiate"):
            ...
    """

    __slots__ = ("_buckets", "_bucket_counts", "_sums", "_counts")

    DEFAULT_BUCKETS = (
        0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float("inf"),
    )

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        bounds = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        if bounds[-1] != float("inf"):
            bounds = bounds + (float("inf"),)
        self._buckets = bounds
        self._bucket_counts: dict[MetricLabels, list[int]] = {}
        self._sums: dict[MetricLabels, float] = defaultdict(float)
        self._counts: dict[MetricLabels, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._make_key(labels)
        with self._lock:
            counts = self._bucket_counts.setdefault(key, [0] * len(self._buckets))
            for i, bound in enumerate(self._buckets):
                if value <= bound:
                    counts[i] += 1
            self._sums[key] += value
            self._counts[key] += 1

    def time(self, **labels: str) -> HistogramTimer:
        return HistogramTimer(self, labels)

    def count(self, **labels: str) -> int:
        key = self._make_key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def collect(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            snapshot = [
                (key, list(counts), self._sums[key], self._counts[key])
                for key, counts in self._bucket_counts.items()
            ]
        for key, counts, total, count in snapshot:
            yield {
                "labels": key.to_dict(),
                "buckets": list(zip(self._buckets, counts)),
                "sum": total,
                "count": count,
            }


class HistogramTimer:
    """Context manager observing elapsed wall time in seconds."""

    __slots__ = ("_histogram", "_labels", "_start")

    def __init__(self, histogram: Histogram, labels: dict[str, str]) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> HistogramTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self._histogram.observe(time.perf_counter() - self._start, **self._labels)


class MetricsCollector:
    """
    Registry for every metric the service exposes.

    Usage:
        collector = MetricsCollector()
        collector.operations.inc(operation="leave", outcome="ended")
        text = collector.export_prometheus()
    """

    __slots__ = (
        "_counters", "_histograms", "_lock",
        "operations", "latency", "conflicts", "contention",
        "fanout", "reaped",
    )

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

        self.operations = self.counter(
            "groupcall_operations_total", ["operation", "outcome"],
            "Lifecycle operations by result",
        )
        self.latency = self.histogram(
            "groupcall_operation_seconds", ["operation"],
            "Lifecycle operation latency",
        )
        self.conflicts = self.counter(
            "groupcall_write_conflicts_total", ["operation"],
            "Conditional writes rejected by the store",
        )
        self.contention = self.counter(
            "groupcall_contention_total", ["operation"],
            "Operations that exhausted their retry budget",
        )
        self.fanout = self.counter(
            "groupcall_fanout_publish_total", ["event", "result"],
            "Fan-out publishes by event and result",
        )
        self.reaped = self.counter(
            "groupcall_reaped_sessions_total", ["reason"],
            "Sessions reclaimed as abandoned",
        )

    def counter(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Counter:
        """Get or create counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, label_names, help_text)
            return self._counters[name]

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        """Get or create histogram."""
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, label_names, help_text, buckets)
            return self._histograms[name]

    def export_prometheus(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        lines: list[str] = []

        for name, counter in self._counters.items():
            if counter.help_text:
                lines.append(f"# HELP {name} {counter.help_text}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in counter.collect():
                lines.append(f"{name}{_format_labels(labels)} {value}")

        for name, histogram in self._histograms.items():
            if histogram.help_text:
                lines.append(f"# HELP {name} {histogram.help_text}")
            lines.append(f"# TYPE {name} histogram")
            for data in histogram.collect():
                labels = data["labels"]
                for bound, count in data["buckets"]:
                    le = "+Inf" if bound == float("inf") else str(bound)
                    lines.append(f"{name}_bucket{_format_labels({**labels, 'le': le})} {count}")
                lines.append(f"{name}_sum{_format_labels(labels)} {data['sum']}")
                lines.append(f"{name}_count{_format_labels(labels)} {data['count']}")

        return "\n".join(lines) + "\n"


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
    return "{" + ",".join(pairs) + "}"
