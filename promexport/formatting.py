"""Helpers for rendering metrics in the Prometheus text exposition format."""

from __future__ import annotations

import math
import string
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

_NAME_START = frozenset(string.ascii_letters + "_:")
_NAME_REST = frozenset(string.ascii_letters + string.digits + "_:")
_LABEL_START = frozenset(string.ascii_letters + "_")
_LABEL_REST = frozenset(string.ascii_letters + string.digits + "_")


def format_value(value: Any) -> str:
    """Render a value the way the exposition output expects.

    Floats never use exponent notation, and whole floats drop their
    fractional part (``12.0`` renders as ``12``).
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        text = format(Decimal(repr(value)), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
    return str(value)


def key_to_parts(key, default_labels: Optional[Mapping[str, str]] = None) -> tuple[str, tuple[str, ...]]:
    """Split a key into its sanitized name and rendered ``k="v"`` label strings.

    Default labels come first; labels on the key override defaults with the
    same key while keeping the default's position.
    """
    name = sanitize_metric_name(key.name)
    values = dict(default_labels or {})
    for label in key.labels:
        values[label.key] = label.value
    labels = tuple(
        f'{sanitize_label_key(k)}="{sanitize_label_value(v)}"' for k, v in values.items()
    )
    return name, labels


def write_help_line(name: str, desc: str) -> str:
    """Return a ``# HELP`` line."""
    return f"# HELP {name} {sanitize_description(desc)}\n"


def write_type_line(name: str, metric_type: str) -> str:
    """Return a ``# TYPE`` line."""
    return f"# TYPE {name} {metric_type}\n"


def write_metric_line(
    name: str,
    suffix: Optional[str],
    labels: Sequence[str],
    additional_label: Optional[tuple[str, Any]],
    value: Any,
) -> str:
    """Return a sample line, optionally suffixed and with an extra label."""
    parts = [name]
    if suffix is not None:
        parts.append(f"_{suffix}")

    rendered = list(labels)
    if additional_label is not None:
        label_name, label_value = additional_label
        rendered.append(f'{label_name}="{format_value(label_value)}"')
    if rendered:
        parts.append("{" + ",".join(rendered) + "}")

    parts.append(f" {format_value(value)}\n")
    return "".join(parts)


def _sanitize_identifier(text: str, valid_start: frozenset, valid_rest: frozenset) -> str:
    if not text:
        return ""
    head = text[0] if text[0] in valid_start else "_"
    rest = "".join(c if c in valid_rest else "_" for c in text[1:])
    return head + rest


def sanitize_metric_name(name: str) -> str:
    """Make a metric name match ``[a-zA-Z_:][a-zA-Z0-9_:]*`` by replacing bad characters."""
    return _sanitize_identifier(name, _NAME_START, _NAME_REST)


def sanitize_label_key(key: str) -> str:
    """Make a label key match ``[a-zA-Z_][a-zA-Z0-9_]*`` by replacing bad characters."""
    return _sanitize_identifier(key, _LABEL_START, _LABEL_REST)


def sanitize_label_value(value: str) -> str:
    """Escape backslashes, double quotes and newlines in a label value."""
    return _escape(value, is_desc=False)


def sanitize_description(value: str) -> str:
    """Escape backslashes and newlines in a metric description."""
    return _escape(value, is_desc=True)


def _escape(value: str, is_desc: bool) -> str:
    out = []
    previous_backslash = False
    for c in value:
        if c == "\n":
            out.append("\\n")
        elif c == '"' and not is_desc:
            previous_backslash = False
            out.append('\\"')
        elif c == "\\":
            # A pair of backslashes is an already-escaped backslash; a lone one
            # is held until we know what follows it.
            if previous_backslash:
                out.append("\\\\")
            previous_backslash = not previous_backslash
        else:
            if previous_backslash:
                previous_backslash = False
                out.append("\\\\")
            out.append(c)
    if previous_backslash:
        out.append("\\\\")
    return "".join(out)