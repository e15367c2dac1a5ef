"""Histogram and summary distributions, and the rolling summary used for quantiles."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence, Union

from promexport.common import Matcher
from promexport.formatting import format_value

_DEFAULT_ALPHA = 0.0001
_DEFAULT_MAX_BUCKETS = 32768
_DEFAULT_MIN_VALUE = 1.0e-9


@dataclass(frozen=True)
class Quantile:
    """A quantile in the range 0..1, clamped on creation, with a short label."""

    value: float
    label: str = field(init=False)

    def __post_init__(self) -> None:
        clamped = min(max(float(self.value), 0.0), 1.0)
        object.__setattr__(self, "value", clamped)
        if clamped == 0.0:
            label = "min"
        elif clamped == 1.0:
            label = "max"
        else:
            label = "p" + format_value(clamped * 100.0).replace(".", "")
        object.__setattr__(self, "label", label)


def parse_quantiles(values: Iterable[float]) -> list[Quantile]:
    """Turn raw quantile values into ``Quantile`` objects."""
    return [Quantile(value) for value in values]


class Summary:
    """A relative-error quantile sketch with exact min, max and count."""

    def __init__(
        self,
        alpha: float = _DEFAULT_ALPHA,
        max_buckets: int = _DEFAULT_MAX_BUCKETS,
        min_value: float = _DEFAULT_MIN_VALUE,
    ) -> None:
        self._alpha = alpha
        self._gamma = (1.0 + alpha) / (1.0 - alpha)
        self._log_gamma = math.log(self._gamma)
        self._max_buckets = max_buckets
        self._min_value = min_value
        self._positive: dict[int, int] = {}
        self._negative: dict[int, int] = {}
        self._zeroes = 0
        self._count = 0
        self._min = math.inf
        self._max = -math.inf

    def _key(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self._log_gamma)

    def _estimate(self, key: int) -> float:
        return 2.0 * self._gamma**key / (self._gamma + 1.0)

    def _collapse(self, store: dict[int, int]) -> None:
        excess = len(store) - self._max_buckets
        if excess <= 0:
            return
        keys = sorted(store)
        target = keys[excess]
        store[target] += sum(store.pop(k) for k in keys[:excess])

    def add(self, value: float) -> None:
        """Add a sample."""
        value = float(value)
        if math.isnan(value):
            return
        self._count += 1
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        magnitude = abs(value)
        if magnitude < self._min_value:
            self._zeroes += 1
            return
        store = self._positive if value > 0 else self._negative
        key = self._key(magnitude)
        store[key] = store.get(key, 0) + 1
        self._collapse(store)

    def merge(self, other: "Summary") -> None:
        """Fold ``other`` into this summary; both must share a configuration."""
        if (self._alpha, self._min_value) != (other._alpha, other._min_value):
            raise ValueError("cannot merge summaries with different configurations")
        for mine, theirs in ((self._positive, other._positive), (self._negative, other._negative)):
            for key, n in theirs.items():
                mine[key] = mine.get(key, 0) + n
            self._collapse(mine)
        self._zeroes += other._zeroes
        self._count += other._count
        self._min = min(self._min, other._min)
        self._max = max(self._max, other._max)

    def _ordered(self):
        for key in sorted(self._negative, reverse=True):
            yield -self._estimate(key), self._negative[key]
        if self._zeroes:
            yield 0.0, self._zeroes
        for key in sorted(self._positive):
            yield self._estimate(key), self._positive[key]

    def quantile(self, q: float) -> Optional[float]:
        """Estimate the ``q`` quantile, or ``None`` if empty or ``q`` is outside 0..1."""
        if not 0.0 <= q <= 1.0 or self._count == 0:
            return None
        rank = q * (self._count - 1)
        value = self._max
        seen = 0
        for estimate, n in self._ordered():
            seen += n
            if seen > rank:
                value = estimate
                break
        return min(max(value, self._min), self._max)

    def count(self) -> int:
        """Return the number of samples."""
        return self._count

    def min(self) -> float:
        """Return the smallest sample, or positive infinity if empty."""
        return self._min

    def max(self) -> float:
        """Return the largest sample, or negative infinity if empty."""
        return self._max


class BucketHistogram:
    """A cumulative bucketed histogram with fixed upper bounds."""

    def __init__(self, bounds: Sequence[float]) -> None:
        if not bounds:
            raise ValueError("histogram bounds cannot be empty")
        self._bounds = [float(b) for b in bounds]
        self._counts = [0] * len(self._bounds)
        self._count = 0
        self._sum = 0.0

    def record_many(self, values: Iterable[float]) -> None:
        """Record each of ``values``."""
        for value in values:
            self._sum += value
            self._count += 1
            for idx, bound in enumerate(self._bounds):
                if value <= bound:
                    self._counts[idx] += 1

    def buckets(self) -> list[tuple[float, int]]:
        """Return ``(upper_bound, cumulative_count)`` pairs."""
        return list(zip(self._bounds, self._counts))

    def count(self) -> int:
        """Return the number of samples."""
        return self._count

    def sum(self) -> float:
        """Return the sum of all samples."""
        return self._sum


@dataclass
class _Bucket:
    begin: float
    summary: Summary


class RollingSummary:
    """A set of time-aligned summaries so that old samples expire.

    Quantiles cover ``buckets * bucket_duration`` seconds; the total count
    never expires.
    """

    def __init__(self, buckets: int = 3, bucket_duration: float = 20.0) -> None:
        if buckets <= 0:
            raise ValueError("bucket count must be positive")
        if bucket_duration <= 0:
            raise ValueError("bucket duration must be positive")
        self._buckets: list[_Bucket] = []
        self._max_buckets = int(buckets)
        self._bucket_duration = float(bucket_duration)
        self._max_bucket_duration = self._bucket_duration * self._max_buckets
        self._count = 0

    def _cutoff(self, now: float) -> Optional[float]:
        cutoff = now - self._max_bucket_duration
        return cutoff if cutoff >= 0 else None

    def add(self, value: float, now: float) -> None:
        """Add ``value`` observed at time ``now``, expiring old buckets as needed."""
        self._count += 1
        width = self._bucket_duration

        for bucket in self._buckets:
            end = bucket.begin + width
            if now > end:
                break
            if bucket.begin <= now < end:
                bucket.summary.add(value)
                return

        cutoff = self._cutoff(now)
        if cutoff is not None:
            self._buckets = [b for b in self._buckets if b.begin > cutoff]

        summary = Summary()
        summary.add(value)

        if not self._buckets:
            self._buckets.append(_Bucket(now, summary))
            return

        reftime = self._buckets[0].begin
        if now > reftime:
            begin = reftime + width
            while not (begin <= now < begin + width):
                begin += width
            del self._buckets[self._max_buckets - 1:]
            self._buckets.insert(0, _Bucket(begin, summary))
        else:
            begin = reftime - width
            while now < begin:
                begin -= width
            del self._buckets[self._max_buckets - 1:]
            self._buckets.append(_Bucket(begin, summary))
            self._buckets.sort(key=lambda b: b.begin, reverse=True)

    def snapshot(self, now: float) -> Summary:
        """Return a merged summary of the buckets still valid at ``now``.

        Its count covers only those buckets; use ``count()`` for the total.
        """
        cutoff = self._cutoff(now)
        merged = Summary()
        for bucket in self._buckets:
            if cutoff is None or bucket.begin > cutoff:
                merged.merge(bucket.summary)
        return merged

    def is_empty(self) -> bool:
        """Return whether no sample was ever added."""
        return self._count == 0

    def count(self) -> int:
        """Return the total number of samples ever added."""
        return self._count

    def bucket_starts(self) -> list[float]:
        """Return the start times of the current buckets, newest first."""
        return [bucket.begin for bucket in self._buckets]


@dataclass
class HistogramDistribution:
    """A distribution exposed as a Prometheus histogram."""

    histogram: BucketHistogram

    def record_samples(self, samples: Iterable[tuple[float, float]]) -> None:
        """Record ``(value, timestamp)`` samples."""
        self.histogram.record_many(value for value, _ts in samples)


@dataclass
class SummaryDistribution:
    """A distribution exposed as a Prometheus summary."""

    summary: RollingSummary
    quantiles: tuple[Quantile, ...]
    sum: float = 0.0

    def record_samples(self, samples: Iterable[tuple[float, float]]) -> None:
        """Record ``(value, timestamp)`` samples."""
        for value, ts in samples:
            self.summary.add(value, ts)
            self.sum += value


Distribution = Union[HistogramDistribution, SummaryDistribution]


def new_histogram(buckets: Sequence[float]) -> HistogramDistribution:
    """Create a histogram distribution with the given upper bounds."""
    return HistogramDistribution(BucketHistogram(buckets))


def new_summary(quantiles: Iterable[Quantile]) -> SummaryDistribution:
    """Create a summary distribution reporting the given quantiles."""
    return SummaryDistribution(RollingSummary(), tuple(quantiles))


class DistributionBuilder:
    """Chooses the distribution for a metric name from default and per-metric buckets."""

    def __init__(
        self,
        quantiles: Iterable[Quantile],
        buckets: Optional[Sequence[float]] = None,
        bucket_overrides: Optional[
            Union[Mapping[Matcher, Sequence[float]], Iterable[tuple[Matcher, Sequence[float]]]]
        ] = None,
    ) -> None:
        self._quantiles = tuple(quantiles)
        self._buckets = list(buckets) if buckets is not None else None
        if bucket_overrides is None:
            self._overrides = None
        else:
            items = (
                bucket_overrides.items()
                if isinstance(bucket_overrides, Mapping)
                else bucket_overrides
            )
            self._overrides = sorted(
                ((matcher, list(values)) for matcher, values in items),
                key=lambda entry: entry[0],
            )

    def get_distribution(self, name: str) -> Distribution:
        """Return a fresh distribution for metric ``name``."""
        for matcher, values in self._overrides or ():
            if matcher.matches(name):
                return new_histogram(values)
        if self._buckets is not None:
            return new_histogram(self._buckets)
        return new_summary(self._quantiles)

    def get_distribution_type(self, name: str) -> str:
        """Return ``"histogram"`` or ``"summary"`` for metric ``name``."""
        if self._buckets is not None:
            return "histogram"
        if any(matcher.matches(name) for matcher, _ in self._overrides or ()):
            return "histogram"
        return "summary"