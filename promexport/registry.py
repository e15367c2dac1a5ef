"""Metric storage: clocks, value cells, generation tracking, the registry and idle tracking."""

from __future__ import annotations

import enum
import threading
import time
from typing import Callable, Hashable, Optional, Sequence

_U64_MASK = (1 << 64) - 1


class Clock:
    """Monotonic clock reporting seconds as floats."""

    def now(self) -> float:
        """Return the current monotonic time in seconds."""
        return time.monotonic()


class MockClock(Clock):
    """A manually driven clock, starting at zero, for deterministic tests."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        """Return the mocked time in seconds."""
        with self._lock:
            return self._now

    def increment(self, seconds: float) -> None:
        """Move the clock forward by ``seconds``."""
        with self._lock:
            self._now += seconds

    def decrement(self, seconds: float) -> None:
        """Move the clock backward by ``seconds``."""
        with self._lock:
            self._now -= seconds


class MetricKind(enum.IntFlag):
    """Kind of a metric; combinations form masks for idle-timeout handling."""

    NONE = 0
    COUNTER = 1
    GAUGE = 2
    HISTOGRAM = 4
    ALL = 7


class CounterCell:
    """A monotonically increasing unsigned 64-bit counter."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, value: int = 1) -> None:
        """Add ``value`` to the counter, wrapping at 2**64."""
        with self._lock:
            self._value = (self._value + int(value)) & _U64_MASK

    def absolute(self, value: int) -> None:
        """Raise the counter to ``value`` if it is currently lower."""
        with self._lock:
            self._value = max(self._value, int(value) & _U64_MASK)

    def get(self) -> int:
        """Return the current count."""
        with self._lock:
            return self._value


class GaugeCell:
    """A floating-point gauge."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        """Set the gauge to ``value``."""
        with self._lock:
            self._value = float(value)

    def increment(self, value: float = 1.0) -> None:
        """Add ``value`` to the gauge."""
        with self._lock:
            self._value += float(value)

    def decrement(self, value: float = 1.0) -> None:
        """Subtract ``value`` from the gauge."""
        with self._lock:
            self._value -= float(value)

    def get(self) -> float:
        """Return the current gauge value."""
        with self._lock:
            return self._value


class TimestampedBucket:
    """Collects histogram samples together with the time they were recorded."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock if clock is not None else Clock()
        self._samples: list[tuple[float, float]] = []
        self._lock = threading.Lock()

    def record(self, value: float) -> None:
        """Store ``value`` stamped with the clock's current time."""
        stamped = (float(value), self._clock.now())
        with self._lock:
            self._samples.append(stamped)

    def clear_with(self, func: Callable[[Sequence[tuple[float, float]]], object]) -> None:
        """Drain all stored samples, handing them to ``func`` if there were any."""
        with self._lock:
            drained, self._samples = self._samples, []
        if drained:
            func(tuple(drained))


class Generational:
    """Wraps a metric cell and counts every update made through it."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self._generation = 0
        self._lock = threading.Lock()

    def generation(self) -> int:
        """Return how many updates have been made so far."""
        with self._lock:
            return self._generation

    def _bump(self) -> None:
        with self._lock:
            self._generation += 1

    def increment(self, value=1) -> None:
        """Increment the wrapped counter or gauge."""
        self.inner.increment(value)
        self._bump()

    def absolute(self, value) -> None:
        """Set the wrapped counter to an absolute value if higher."""
        self.inner.absolute(value)
        self._bump()

    def set(self, value) -> None:
        """Set the wrapped gauge."""
        self.inner.set(value)
        self._bump()

    def decrement(self, value=1) -> None:
        """Decrement the wrapped gauge."""
        self.inner.decrement(value)
        self._bump()

    def record(self, value) -> None:
        """Record a sample in the wrapped histogram."""
        self.inner.record(value)
        self._bump()


_STORED_KINDS = (MetricKind.COUNTER, MetricKind.GAUGE, MetricKind.HISTOGRAM)


class Registry:
    """Stores generational metric cells per kind, keyed by metric key."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock if clock is not None else Clock()
        self._lock = threading.Lock()
        self._maps: dict[MetricKind, dict[Hashable, Generational]] = {
            kind: {} for kind in _STORED_KINDS
        }

    def _map(self, kind: MetricKind) -> dict:
        try:
            return self._maps[MetricKind(kind)]
        except (KeyError, ValueError):
            raise ValueError(f"not a single metric kind: {kind!r}") from None

    def _new_cell(self, kind: MetricKind):
        if kind is MetricKind.COUNTER:
            return CounterCell()
        if kind is MetricKind.GAUGE:
            return GaugeCell()
        return TimestampedBucket(self._clock)

    def get_or_create(self, kind: MetricKind, key: Hashable) -> Generational:
        """Return the cell for ``key``, creating it on first use."""
        entries = self._map(kind)
        with self._lock:
            handle = entries.get(key)
            if handle is None:
                handle = Generational(self._new_cell(MetricKind(kind)))
                entries[key] = handle
            return handle

    def handles(self, kind: MetricKind) -> list[tuple[Hashable, Generational]]:
        """Return a snapshot list of ``(key, cell)`` pairs for ``kind``."""
        entries = self._map(kind)
        with self._lock:
            return list(entries.items())

    def delete_if_generation(self, kind: MetricKind, key: Hashable, generation: int) -> bool:
        """Remove ``key`` only if its cell is still at ``generation``; return whether it was removed."""
        entries = self._map(kind)
        with self._lock:
            handle = entries.get(key)
            if handle is None or handle.generation() != generation:
                return False
            del entries[key]
            return True


class Recency:
    """Tracks when metrics last changed and expires those idle past a timeout."""

    def __init__(
        self,
        clock: Clock,
        mask: MetricKind = MetricKind.NONE,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self._clock = clock
        self._mask = MetricKind(mask)
        self._idle_timeout = idle_timeout
        self._seen: dict[tuple[MetricKind, Hashable], tuple[int, float]] = {}
        self._lock = threading.Lock()

    def should_store(
        self, kind: MetricKind, key: Hashable, generation: int, registry: Registry
    ) -> bool:
        """Return whether the metric should be kept, deleting it from ``registry`` if idle."""
        if self._idle_timeout is None or not (self._mask & kind):
            return True

        track_key = (MetricKind(kind), key)
        with self._lock:
            now = self._clock.now()
            seen = self._seen.get(track_key)
            if seen is None:
                self._seen[track_key] = (generation, now)
                return True

            last_generation, last_update = seen
            if last_generation != generation:
                self._seen[track_key] = (generation, now)
                return True

            if now - last_update > self._idle_timeout:
                if registry.delete_if_generation(kind, key, generation):
                    del self._seen[track_key]
                    return False
            return True