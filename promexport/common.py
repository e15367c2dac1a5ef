"""Core value types: metric keys, labels, bucket matchers, errors and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Union

from promexport.formatting import sanitize_metric_name


class MatcherKind(IntEnum):
    """How a matcher compares against a metric name.

    The numeric order is the precedence order: full matches win over prefix
    matches, which win over suffix matches.
    """

    FULL = 0
    PREFIX = 1
    SUFFIX = 2


@dataclass(frozen=True, order=True)
class Matcher:
    """Matches a metric name in a specific way.

    Used to override histogram buckets for particular metrics.
    """

    kind: MatcherKind
    pattern: str

    @classmethod
    def full(cls, pattern: str) -> "Matcher":
        """Match the entire metric name."""
        return cls(MatcherKind.FULL, pattern)

    @classmethod
    def prefix(cls, pattern: str) -> "Matcher":
        """Match the beginning of the metric name."""
        return cls(MatcherKind.PREFIX, pattern)

    @classmethod
    def suffix(cls, pattern: str) -> "Matcher":
        """Match the end of the metric name."""
        return cls(MatcherKind.SUFFIX, pattern)

    def matches(self, key: str) -> bool:
        """Return whether ``key`` matches this matcher."""
        if self.kind is MatcherKind.PREFIX:
            return key.startswith(self.pattern)
        if self.kind is MatcherKind.SUFFIX:
            return key.endswith(self.pattern)
        return key == self.pattern

    def sanitized(self) -> "Matcher":
        """Return a copy whose pattern is sanitized like a metric name."""
        return Matcher(self.kind, sanitize_metric_name(self.pattern))


class BuildError(Exception):
    """Raised when building or installing a recorder or exporter fails."""


@dataclass(frozen=True)
class Label:
    """A single key/value label attached to a metric."""

    key: str
    value: str


LabelLike = Union[Label, "tuple[str, str]"]


def _to_label(item: LabelLike) -> Label:
    if isinstance(item, Label):
        return item
    key, value = item
    return Label(str(key), str(value))


@dataclass(frozen=True)
class Key:
    """A metric identity: a name plus an ordered sequence of labels."""

    name: str
    labels: tuple[Label, ...] = ()

    @classmethod
    def from_name(cls, name: str) -> "Key":
        """Create a key with no labels."""
        return cls(str(name))

    @classmethod
    def from_parts(cls, name: str, labels: Iterable[LabelLike]) -> "Key":
        """Create a key from a name and labels (``Label`` objects or pairs)."""
        return cls(str(name), tuple(_to_label(item) for item in labels))

    def with_extra_labels(self, labels: Iterable[LabelLike]) -> "Key":
        """Return a new key with ``labels`` appended to the existing ones."""
        extra = tuple(_to_label(item) for item in labels)
        if not extra:
            return self
        return Key(self.name, self.labels + extra)


@dataclass
class Snapshot:
    """Point-in-time view of stored metrics, grouped by name then by rendered labels."""

    counters: dict = field(default_factory=dict)
    gauges: dict = field(default_factory=dict)
    distributions: dict = field(default_factory=dict)