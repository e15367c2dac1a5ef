"""Metrics recorder rendering the Prometheus exposition format, with HTTP and push gateway exporters."""

__version__ = "0.1.0"