"""The Prometheus recorder, its metric handles, and the handle that renders scrape output."""

from __future__ import annotations

import copy
import threading
from datetime import timedelta
from typing import Mapping, Optional, Union

from promexport.common import BuildError, Key, Snapshot
from promexport.distribution import (
    DistributionBuilder,
    HistogramDistribution,
    SummaryDistribution,
    parse_quantiles,
)
from promexport.formatting import (
    key_to_parts,
    sanitize_metric_name,
    write_help_line,
    write_metric_line,
    write_type_line,
)
from promexport.registry import Clock, Generational, MetricKind, Recency, Registry

_DEFAULT_QUANTILES = (0.0, 0.5, 0.9, 0.95, 0.99, 0.999, 1.0)

KeyLike = Union[Key, str]


def _as_key(key: KeyLike) -> Key:
    return key if isinstance(key, Key) else Key.from_name(key)


class Counter:
    """Handle for updating a registered counter."""

    def __init__(self, cell: Generational) -> None:
        self._cell = cell

    def increment(self, value: int = 1) -> None:
        """Add ``value`` to the counter."""
        self._cell.increment(value)

    def absolute(self, value: int) -> None:
        """Raise the counter to ``value`` if it is currently lower."""
        self._cell.absolute(value)


class Gauge:
    """Handle for updating a registered gauge."""

    def __init__(self, cell: Generational) -> None:
        self._cell = cell

    def set(self, value: float) -> None:
        """Set the gauge to ``value``."""
        self._cell.set(value)

    def increment(self, value: float = 1.0) -> None:
        """Add ``value`` to the gauge."""
        self._cell.increment(value)

    def decrement(self, value: float = 1.0) -> None:
        """Subtract ``value`` from the gauge."""
        self._cell.decrement(value)


class Histogram:
    """Handle for recording samples into a registered histogram."""

    def __init__(self, cell: Generational) -> None:
        self._cell = cell

    def record(self, value: Union[float, timedelta]) -> None:
        """Record a sample; durations are recorded in seconds."""
        if isinstance(value, timedelta):
            value = value.total_seconds()
        self._cell.record(float(value))


class _Inner:
    """State shared between a recorder and its handles."""

    def __init__(
        self,
        clock: Clock,
        distribution_builder: DistributionBuilder,
        recency_mask: MetricKind,
        idle_timeout: Optional[float],
        global_labels: Mapping[str, str],
    ) -> None:
        self.clock = clock
        self.registry = Registry(clock)
        self.recency = Recency(clock, recency_mask, idle_timeout)
        self.distribution_builder = distribution_builder
        self.global_labels = dict(global_labels)
        self.distributions: dict[str, dict[tuple[str, ...], object]] = {}
        self.distributions_lock = threading.Lock()
        self.descriptions: dict[str, str] = {}
        self.descriptions_lock = threading.Lock()

    def _collect_scalars(self, kind: MetricKind) -> dict:
        collected: dict[str, dict[tuple[str, ...], object]] = {}
        for key, cell in self.registry.handles(kind):
            generation = cell.generation()
            if not self.recency.should_store(kind, key, generation, self.registry):
                continue
            name, labels = key_to_parts(key, self.global_labels)
            collected.setdefault(name, {})[labels] = cell.inner.get()
        return collected

    def _forget_distribution(self, name: str, labels: tuple[str, ...]) -> None:
        with self.distributions_lock:
            by_labels = self.distributions.get(name)
            if by_labels is None:
                return
            by_labels.pop(labels, None)
            if not by_labels:
                del self.distributions[name]

    def get_recent_metrics(self) -> Snapshot:
        counters = self._collect_scalars(MetricKind.COUNTER)
        gauges = self._collect_scalars(MetricKind.GAUGE)

        for key, cell in self.registry.handles(MetricKind.HISTOGRAM):
            generation = cell.generation()
            name, labels = key_to_parts(key, self.global_labels)
            if not self.recency.should_store(
                MetricKind.HISTOGRAM, key, generation, self.registry
            ):
                # Aggregated distributions live here, so drop them along with the metric.
                self._forget_distribution(name, labels)
                continue

            with self.distributions_lock:
                by_labels = self.distributions.setdefault(name, {})
                entry = by_labels.get(labels)
                if entry is None:
                    entry = self.distribution_builder.get_distribution(name)
                    by_labels[labels] = entry
                cell.inner.clear_with(entry.record_samples)

        with self.distributions_lock:
            distributions = copy.deepcopy(self.distributions)

        return Snapshot(counters=counters, gauges=gauges, distributions=distributions)

    def render(self) -> str:
        snapshot = self.get_recent_metrics()
        with self.descriptions_lock:
            descriptions = dict(self.descriptions)

        out: list[str] = []

        for metric_type, groups in (("counter", snapshot.counters), ("gauge", snapshot.gauges)):
            for name, by_labels in groups.items():
                if name in descriptions:
                    out.append(write_help_line(name, descriptions[name]))
                out.append(write_type_line(name, metric_type))
                for labels, value in by_labels.items():
                    out.append(write_metric_line(name, None, labels, None, value))
                out.append("\n")

        now = self.clock.now()
        for name, by_labels in snapshot.distributions.items():
            if name in descriptions:
                out.append(write_help_line(name, descriptions[name]))
            out.append(
                write_type_line(name, self.distribution_builder.get_distribution_type(name))
            )
            for labels, distribution in by_labels.items():
                if isinstance(distribution, SummaryDistribution):
                    merged = distribution.summary.snapshot(now)
                    for quantile in distribution.quantiles:
                        value = merged.quantile(quantile.value)
                        out.append(
                            write_metric_line(
                                name,
                                None,
                                labels,
                                ("quantile", quantile.value),
                                0.0 if value is None else value,
                            )
                        )
                    total, count = distribution.sum, distribution.summary.count()
                elif isinstance(distribution, HistogramDistribution):
                    histogram = distribution.histogram
                    for le, bucket_count in histogram.buckets():
                        out.append(
                            write_metric_line(name, "bucket", labels, ("le", le), bucket_count)
                        )
                    out.append(
                        write_metric_line(
                            name, "bucket", labels, ("le", "+Inf"), histogram.count()
                        )
                    )
                    total, count = histogram.sum(), histogram.count()
                else:
                    raise TypeError(f"unknown distribution: {distribution!r}")

                out.append(write_metric_line(name, "sum", labels, None, float(total)))
                out.append(write_metric_line(name, "count", labels, None, int(count)))
            out.append("\n")

        return "".join(out)


class PrometheusHandle:
    """Renders the metrics held by a recorder in the Prometheus exposition format."""

    def __init__(self, inner: _Inner) -> None:
        self._inner = inner

    def render(self) -> str:
        """Take a snapshot of the stored metrics and return the scrape payload."""
        return self._inner.render()


class PrometheusRecorder:
    """Stores metrics and renders them for Prometheus."""

    def __init__(
        self,
        distribution_builder: Optional[DistributionBuilder] = None,
        *,
        clock: Optional[Clock] = None,
        recency_mask: MetricKind = MetricKind.NONE,
        idle_timeout: Optional[float] = None,
        global_labels: Optional[Mapping[str, str]] = None,
    ) -> None:
        if distribution_builder is None:
            distribution_builder = DistributionBuilder(parse_quantiles(_DEFAULT_QUANTILES))
        if idle_timeout is None:
            recency_mask = MetricKind.NONE
        self._inner = _Inner(
            clock if clock is not None else Clock(),
            distribution_builder,
            recency_mask,
            idle_timeout,
            global_labels or {},
        )

    def handle(self) -> PrometheusHandle:
        """Return a handle that renders this recorder's metrics."""
        return PrometheusHandle(self._inner)

    def _add_description_if_missing(self, key_name: str, description: str) -> None:
        sanitized = sanitize_metric_name(str(key_name))
        with self._inner.descriptions_lock:
            self._inner.descriptions.setdefault(sanitized, str(description))

    def describe_counter(self, key_name: str, unit, description: str) -> None:
        """Attach a description to a counter; the first description wins."""
        self._add_description_if_missing(key_name, description)

    def describe_gauge(self, key_name: str, unit, description: str) -> None:
        """Attach a description to a gauge; the first description wins."""
        self._add_description_if_missing(key_name, description)

    def describe_histogram(self, key_name: str, unit, description: str) -> None:
        """Attach a description to a histogram; the first description wins."""
        self._add_description_if_missing(key_name, description)

    def register_counter(self, key: KeyLike) -> Counter:
        """Return a counter handle for ``key``, creating it if needed."""
        return Counter(self._inner.registry.get_or_create(MetricKind.COUNTER, _as_key(key)))

    def register_gauge(self, key: KeyLike) -> Gauge:
        """Return a gauge handle for ``key``, creating it if needed."""
        return Gauge(self._inner.registry.get_or_create(MetricKind.GAUGE, _as_key(key)))

    def register_histogram(self, key: KeyLike) -> Histogram:
        """Return a histogram handle for ``key``, creating it if needed."""
        return Histogram(
            self._inner.registry.get_or_create(MetricKind.HISTOGRAM, _as_key(key))
        )


_global_lock = threading.Lock()
_global_recorder: Optional[PrometheusRecorder] = None


def set_global_recorder(recorder: PrometheusRecorder) -> None:
    """Install ``recorder`` process-wide; raises ``BuildError`` if one is already installed."""
    global _global_recorder
    with _global_lock:
        if _global_recorder is not None:
            raise BuildError(
                "failed to install exporter as global recorder: "
                "a global recorder is already installed"
            )
        _global_recorder = recorder


def global_recorder() -> Optional[PrometheusRecorder]:
    """Return the installed global recorder, or ``None``."""
    with _global_lock:
        return _global_recorder


def _clear_global_recorder() -> None:
    global _global_recorder
    with _global_lock:
        _global_recorder = None