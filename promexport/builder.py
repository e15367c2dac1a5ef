"""Builder for configuring, building and installing a Prometheus recorder and exporter."""

from __future__ import annotations

import ipaddress
import urllib.parse
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence, Union

from promexport.common import BuildError, Matcher
from promexport.distribution import DistributionBuilder, Quantile, parse_quantiles
from promexport.exporter import HttpListenerExporter, PushGatewayExporter
from promexport.recorder import (
    PrometheusHandle,
    PrometheusRecorder,
    set_global_recorder,
)
from promexport.registry import Clock, MetricKind

_DEFAULT_QUANTILES = (0.0, 0.5, 0.9, 0.95, 0.99, 0.999, 1.0)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Exporter = Union[HttpListenerExporter, PushGatewayExporter]


@dataclass(frozen=True)
class _HttpListenerConfig:
    host: str
    port: int


@dataclass(frozen=True)
class _PushGatewayConfig:
    endpoint: str
    interval: float


def _seconds(value: Union[float, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _validate_endpoint(endpoint: str) -> str:
    text = str(endpoint)
    try:
        parts = urllib.parse.urlsplit(text)
    except ValueError as exc:
        raise BuildError(f"push gateway endpoint is not valid: {exc}") from exc
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise BuildError(f"push gateway endpoint is not valid: {text!r}")
    return text


class PrometheusBuilder:
    """Configures and creates a Prometheus recorder and its exporter.

    Configuration methods return the builder so calls can be chained. By
    default the exporter is an HTTP listener on ``0.0.0.0:9000`` and all
    histograms are rendered as summaries over a fixed set of quantiles.
    """

    def __init__(self) -> None:
        self._exporter_config: Union[_HttpListenerConfig, _PushGatewayConfig] = (
            _HttpListenerConfig("0.0.0.0", 9000)
        )
        self._allowed_addresses: Optional[list[Network]] = None
        self._quantiles: list[Quantile] = parse_quantiles(_DEFAULT_QUANTILES)
        self._buckets: Optional[list[float]] = None
        self._bucket_overrides: Optional[dict[Matcher, list[float]]] = None
        self._idle_timeout: Optional[float] = None
        self._recency_mask: MetricKind = MetricKind.NONE
        self._global_labels: Optional[dict[str, str]] = None

    def with_http_listener(self, host: str, port: int = 9000) -> "PrometheusBuilder":
        """Expose a scrape endpoint on ``host:port``; replaces any push gateway setting."""
        self._exporter_config = _HttpListenerConfig(str(host), int(port))
        return self

    def with_push_gateway(
        self, endpoint: str, interval: Union[float, timedelta]
    ) -> "PrometheusBuilder":
        """Push to ``endpoint`` every ``interval``; replaces any HTTP listener setting.

        Raises ``BuildError`` if the endpoint is not a valid HTTP(S) URL.
        """
        seconds = _seconds(interval)
        if seconds < 0:
            raise ValueError("push interval cannot be negative")
        self._exporter_config = _PushGatewayConfig(_validate_endpoint(endpoint), seconds)
        return self

    def add_allowed_address(self, address: str) -> "PrometheusBuilder":
        """Allow scrapes from an IP address or subnet; all clients are allowed if none are added.

        Raises ``BuildError`` if ``address`` is not an IP address or subnet.
        """
        try:
            network = ipaddress.ip_network(str(address).strip(), strict=False)
        except ValueError as exc:
            raise BuildError(
                f"failed to parse address as a valid IP address/subnet: {exc}"
            ) from exc
        if self._allowed_addresses is None:
            self._allowed_addresses = []
        self._allowed_addresses.append(network)
        return self

    def set_quantiles(self, quantiles: Sequence[float]) -> "PrometheusBuilder":
        """Set the quantiles reported for summaries; raises ``BuildError`` if empty."""
        values = list(quantiles)
        if not values:
            raise BuildError("bucket bounds/quantiles cannot be empty")
        self._quantiles = parse_quantiles(values)
        return self

    def set_buckets(self, values: Sequence[float]) -> "PrometheusBuilder":
        """Render every histogram with these bucket upper bounds; raises ``BuildError`` if empty."""
        bounds = [float(v) for v in values]
        if not bounds:
            raise BuildError("bucket bounds/quantiles cannot be empty")
        self._buckets = bounds
        return self

    def set_buckets_for_metric(
        self, matcher: Matcher, values: Sequence[float]
    ) -> "PrometheusBuilder":
        """Use these bucket bounds for metrics matching ``matcher``; raises ``BuildError`` if empty.

        Full matches take precedence over prefix matches, which take
        precedence over suffix matches.
        """
        bounds = [float(v) for v in values]
        if not bounds:
            raise BuildError("bucket bounds/quantiles cannot be empty")
        if self._bucket_overrides is None:
            self._bucket_overrides = {}
        self._bucket_overrides[matcher.sanitized()] = bounds
        return self

    def idle_timeout(
        self, mask: MetricKind, timeout: Optional[Union[float, timedelta]]
    ) -> "PrometheusBuilder":
        """Remove metrics of the kinds in ``mask`` that stay unchanged longer than ``timeout``."""
        self._idle_timeout = None if timeout is None else _seconds(timeout)
        self._recency_mask = MetricKind.NONE if self._idle_timeout is None else MetricKind(mask)
        return self

    def add_global_label(self, key: str, value: str) -> "PrometheusBuilder":
        """Add a label to every metric; the latest value for a key wins, and metric labels override it."""
        if self._global_labels is None:
            self._global_labels = {}
        self._global_labels[str(key)] = str(value)
        return self

    def build_recorder(self) -> PrometheusRecorder:
        """Build a recorder using the system monotonic clock."""
        return self.build_with_clock(Clock())

    def build_with_clock(self, clock: Clock) -> PrometheusRecorder:
        """Build a recorder that reads time from ``clock``."""
        distribution_builder = DistributionBuilder(
            self._quantiles,
            self._buckets,
            None if self._bucket_overrides is None else dict(self._bucket_overrides),
        )
        return PrometheusRecorder(
            distribution_builder,
            clock=clock,
            recency_mask=self._recency_mask,
            idle_timeout=self._idle_timeout,
            global_labels=dict(self._global_labels or {}),
        )

    def build(self) -> tuple[PrometheusRecorder, Exporter]:
        """Build the recorder and a not-yet-started exporter for it."""
        recorder = self.build_recorder()
        handle = recorder.handle()
        config = self._exporter_config
        if isinstance(config, _HttpListenerConfig):
            exporter: Exporter = HttpListenerExporter(
                handle,
                config.host,
                config.port,
                None if self._allowed_addresses is None else list(self._allowed_addresses),
            )
        else:
            exporter = PushGatewayExporter(handle, config.endpoint, config.interval)
        return recorder, exporter

    def install(self) -> Exporter:
        """Build, start the exporter, and install the recorder globally.

        Returns the running exporter. Raises ``BuildError`` if the listener
        cannot be bound or a global recorder is already installed.
        """
        recorder, exporter = self.build()
        exporter.start()
        try:
            set_global_recorder(recorder)
        except BuildError:
            exporter.stop()
            raise
        return exporter

    def install_recorder(self) -> PrometheusHandle:
        """Build the recorder, install it globally, and return a handle for rendering."""
        recorder = self.build_recorder()
        handle = recorder.handle()
        set_global_recorder(recorder)
        return handle