# promexport

A metrics recorder that keeps counters, gauges and histograms in memory and
renders them in the Prometheus text exposition format. The output can be
served from an HTTP scrape endpoint, pushed to a Prometheus push gateway on a
fixed interval, or rendered on demand through a handle.

## Installation

```
pip install promexport
```

## Rendering on demand

```python
from promexport.builder import PrometheusBuilder
from promexport.common import Key, Label

recorder = PrometheusBuilder().set_quantiles([0.0, 1.0]).build_recorder()

recorder.register_counter(Key.from_name("requests")).increment(42)
recorder.register_gauge(Key.from_parts("temperature", [Label("room", "lab")])).set(-3.14)
recorder.register_histogram(Key.from_name("latency")).record(12.0)

print(recorder.handle().render())
```

`register_counter`, `register_gauge` and `register_histogram` accept a `Key`
or a plain metric name and return `Counter`, `Gauge` and `Histogram` handles.
`Histogram.record` also accepts a `datetime.timedelta`, recorded in seconds.
`describe_counter`, `describe_gauge` and `describe_histogram` attach a
description that is rendered as a `# HELP` line; the first description given
for a name is kept, and the `unit` argument is accepted but not used.

Histograms are exposed as summaries using the configured quantiles (by default
0, 0.5, 0.9, 0.95, 0.99, 0.999 and 1). Summary quantiles cover a rolling
window of three 20-second buckets, while `_sum` and `_count` cover every
sample. Calling `set_buckets` renders every histogram as a true Prometheus
histogram instead, and `set_buckets_for_metric` with a `Matcher`
(`Matcher.full`, `Matcher.prefix` or `Matcher.suffix`, compared against the
sanitized name) does so for matching metrics only. When several matchers
apply, a full match wins over a prefix match, which wins over a suffix match.

Empty quantile or bucket lists, invalid push gateway endpoints, unparsable
allowlist addresses, a port that cannot be bound, or installing a second
global recorder all raise `promexport.common.BuildError`.

## Running an exporter

```python
from promexport.builder import PrometheusBuilder

# Scrape endpoint on 0.0.0.0:9000 (the default).
exporter = PrometheusBuilder().with_http_listener("0.0.0.0", 9000).install()
```

or, instead:

```python
from promexport.builder import PrometheusBuilder

# Push to a gateway every 10 seconds.
exporter = PrometheusBuilder().with_push_gateway(
    "http://127.0.0.1:9091/metrics/job/example", 10.0
).install()
```

`install` builds the recorder, starts the exporter in a daemon thread,
installs the recorder globally (see `promexport.recorder.global_recorder`)
and returns the running exporter, which can be stopped with `stop()`.
`build` returns the recorder and an exporter that has not been started yet;
`HttpListenerExporter` and `PushGatewayExporter` in `promexport.exporter` can
also be used as context managers.

The HTTP listener answers any request path with the current render.
`add_allowed_address` restricts it to given IP addresses or subnets; other
clients receive 403 Forbidden. The push gateway exporter sends the render with
an HTTP PUT after each interval and logs failures; `push_once` sends a single
push and returns the HTTP status.

`install_recorder` installs only the recorder and returns a
`PrometheusHandle`, for use with a server of your own.

## Other options

- `idle_timeout(mask, timeout)` drops metrics of the kinds in `mask` (a
  `promexport.registry.MetricKind`, e.g. `MetricKind.COUNTER | MetricKind.HISTOGRAM`)
  that have not changed within `timeout` seconds. Expiry happens while
  rendering.
- `add_global_label(key, value)` attaches a label to every metric; labels on
  the metric itself take precedence.
- `build_with_clock(clock)` builds a recorder that reads time from the given
  clock; `promexport.registry.MockClock` can be stepped by hand in tests.

Metric names and label keys containing invalid characters have those
characters replaced with underscores; label values and descriptions are
escaped as the exposition format requires. The helpers in
`promexport.formatting` can be used on their own.

## What it does not do

There is no command-line program and no module-level shortcuts for recording
metrics: values are recorded through the handles a recorder returns. Metric
units are not tracked or rendered.

## Running the tests

```
pip install -e ".[test]"
pytest
```