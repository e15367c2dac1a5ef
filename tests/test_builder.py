import urllib.request
from datetime import timedelta

import pytest

from promexport.builder import PrometheusBuilder
from promexport.common import BuildError, Key, Label, Matcher
from promexport.exporter import HttpListenerExporter, PushGatewayExporter
from promexport.recorder import _clear_global_recorder, global_recorder
from promexport.registry import MetricKind, MockClock


@pytest.fixture(autouse=True)
def _reset_global():
    _clear_global_recorder()
    yield
    _clear_global_recorder()


SUMMARY_EXPECTED = (
    "# TYPE basic_counter counter\n"
    "basic_counter 42\n\n"
    "# TYPE basic_gauge gauge\n"
    "basic_gauge -3.14\n\n"
    "# TYPE basic_histogram summary\n"
    'basic_histogram{quantile="0"} 1\n'
    'basic_histogram{quantile="1"} 1\n'
    "basic_histogram_sum 1\n"
    "basic_histogram_count 1\n\n"
)


def _three_metrics(recorder):
    counter = recorder.register_counter(Key.from_name("basic_counter"))
    counter.increment(42)
    gauge = recorder.register_gauge(Key.from_name("basic_gauge"))
    gauge.set(-3.14)
    histo = recorder.register_histogram(Key.from_name("basic_histogram"))
    histo.record(1.0)
    return counter, gauge, histo


def test_render():
    recorder = PrometheusBuilder().set_quantiles([0.0, 1.0]).build_recorder()

    counter1 = recorder.register_counter(Key.from_name("basic_counter"))
    counter1.increment(42)

    handle = recorder.handle()
    expected_counter = "# TYPE basic_counter counter\nbasic_counter 42\n\n"
    assert handle.render() == expected_counter

    key = Key.from_parts("basic_gauge", [Label("wutang", "forever")])
    gauge1 = recorder.register_gauge(key)
    gauge1.set(-3.14)
    expected_gauge = (
        expected_counter
        + '# TYPE basic_gauge gauge\nbasic_gauge{wutang="forever"} -3.14\n\n'
    )
    assert handle.render() == expected_gauge

    histogram1 = recorder.register_histogram(Key.from_name("basic_histogram"))
    histogram1.record(12.0)
    histogram_data = (
        "# TYPE basic_histogram summary\n"
        'basic_histogram{quantile="0"} 12\n'
        'basic_histogram{quantile="1"} 12\n'
        "basic_histogram_sum 12\n"
        "basic_histogram_count 1\n"
        "\n"
    )
    assert handle.render() == expected_gauge + histogram_data


def test_buckets():
    default_values = [10.0, 100.0, 1000.0]
    prefix_values = [15.0, 105.0, 1005.0]
    suffix_values = [20.0, 110.0, 1010.0]
    full_values = [25.0, 115.0, 1015.0]

    recorder = (
        PrometheusBuilder()
        .set_buckets_for_metric(Matcher.full("metrics.testing foo"), full_values)
        .set_buckets_for_metric(Matcher.prefix("metrics.testing"), prefix_values)
        .set_buckets_for_metric(Matcher.suffix("foo"), suffix_values)
        .set_buckets(default_values)
        .build_recorder()
    )

    recorder.register_histogram(Key.from_name("metrics.testing_foo")).record(full_values[0])
    recorder.register_histogram(Key.from_name("metrics.testing_bar")).record(prefix_values[1])
    recorder.register_histogram(Key.from_name("metrics_testin_foo")).record(suffix_values[2])
    recorder.register_histogram(Key.from_name("metrics.wee")).record(default_values[2] + 1.0)

    full_data = (
        "# TYPE metrics_testing_foo histogram\n"
        'metrics_testing_foo_bucket{le="25"} 1\n'
        'metrics_testing_foo_bucket{le="115"} 1\n'
        'metrics_testing_foo_bucket{le="1015"} 1\n'
        'metrics_testing_foo_bucket{le="+Inf"} 1\n'
        "metrics_testing_foo_sum 25\n"
        "metrics_testing_foo_count 1\n"
    )
    prefix_data = (
        "# TYPE metrics_testing_bar histogram\n"
        'metrics_testing_bar_bucket{le="15"} 0\n'
        'metrics_testing_bar_bucket{le="105"} 1\n'
        'metrics_testing_bar_bucket{le="1005"} 1\n'
        'metrics_testing_bar_bucket{le="+Inf"} 1\n'
        "metrics_testing_bar_sum 105\n"
        "metrics_testing_bar_count 1\n"
    )
    suffix_data = (
        "# TYPE metrics_testin_foo histogram\n"
        'metrics_testin_foo_bucket{le="20"} 0\n'
        'metrics_testin_foo_bucket{le="110"} 0\n'
        'metrics_testin_foo_bucket{le="1010"} 1\n'
        'metrics_testin_foo_bucket{le="+Inf"} 1\n'
        "metrics_testin_foo_sum 1010\n"
        "metrics_testin_foo_count 1\n"
    )
    default_data = (
        "# TYPE metrics_wee histogram\n"
        'metrics_wee_bucket{le="10"} 0\n'
        'metrics_wee_bucket{le="100"} 0\n'
        'metrics_wee_bucket{le="1000"} 0\n'
        'metrics_wee_bucket{le="+Inf"} 1\n'
        "metrics_wee_sum 1001\n"
        "metrics_wee_count 1\n"
    )

    rendered = recorder.handle().render()
    assert full_data in rendered
    assert prefix_data in rendered
    assert suffix_data in rendered
    assert default_data in rendered


def test_idle_timeout_all():
    clock = MockClock()
    recorder = (
        PrometheusBuilder()
        .idle_timeout(MetricKind.ALL, 10.0)
        .set_quantiles([0.0, 1.0])
        .build_with_clock(clock)
    )
    _three_metrics(recorder)
    handle = recorder.handle()

    assert handle.render() == SUMMARY_EXPECTED
    clock.increment(9)
    assert handle.render() == SUMMARY_EXPECTED
    clock.increment(2)
    assert handle.render() == ""


def test_idle_timeout_partial():
    clock = MockClock()
    recorder = (
        PrometheusBuilder()
        .idle_timeout(MetricKind.COUNTER | MetricKind.HISTOGRAM, timedelta(seconds=10))
        .set_quantiles([0.0, 1.0])
        .build_with_clock(clock)
    )
    _three_metrics(recorder)
    handle = recorder.handle()

    assert handle.render() == SUMMARY_EXPECTED
    clock.increment(9)
    assert handle.render() == SUMMARY_EXPECTED
    clock.increment(2)
    assert handle.render() == "# TYPE basic_gauge gauge\nbasic_gauge -3.14\n\n"


def test_idle_timeout_staggered_distributions():
    clock = MockClock()
    recorder = (
        PrometheusBuilder()
        .idle_timeout(MetricKind.ALL, 10.0)
        .set_quantiles([0.0, 1.0])
        .build_with_clock(clock)
    )
    _three_metrics(recorder)
    handle = recorder.handle()

    assert handle.render() == SUMMARY_EXPECTED
    clock.increment(9)
    assert handle.render() == SUMMARY_EXPECTED

    key = Key.from_parts("basic_histogram", [Label("type", "special")])
    recorder.register_histogram(key).record(2.0)

    expected_second = (
        "# TYPE basic_counter counter\n"
        "basic_counter 42\n\n"
        "# TYPE basic_gauge gauge\n"
        "basic_gauge -3.14\n\n"
        "# TYPE basic_histogram summary\n"
        'basic_histogram{quantile="0"} 1\n'
        'basic_histogram{quantile="1"} 1\n'
        "basic_histogram_sum 1\n"
        "basic_histogram_count 1\n"
        'basic_histogram{type="special",quantile="0"} 2\n'
        'basic_histogram{type="special",quantile="1"} 2\n'
        'basic_histogram_sum{type="special"} 2\n'
        'basic_histogram_count{type="special"} 1\n\n'
    )
    assert handle.render() == expected_second

    expected_after = (
        "# TYPE basic_histogram summary\n"
        'basic_histogram{type="special",quantile="0"} 2\n'
        'basic_histogram{type="special",quantile="1"} 2\n'
        'basic_histogram_sum{type="special"} 2\n'
        'basic_histogram_count{type="special"} 1\n\n'
    )
    clock.increment(2)
    assert handle.render() == expected_after


def test_idle_timeout_doesnt_remove_recents():
    clock = MockClock()
    recorder = PrometheusBuilder().idle_timeout(MetricKind.ALL, 10.0).build_with_clock(clock)

    counter1 = recorder.register_counter(Key.from_name("basic_counter"))
    counter1.increment(42)
    recorder.register_gauge(Key.from_name("basic_gauge")).set(-3.14)

    handle = recorder.handle()
    expected = (
        "# TYPE basic_counter counter\n"
        "basic_counter 42\n\n"
        "# TYPE basic_gauge gauge\n"
        "basic_gauge -3.14\n\n"
    )
    assert handle.render() == expected
    clock.increment(9)
    assert handle.render() == expected
    assert handle.render() == expected

    counter1.increment(1)
    clock.increment(2)
    assert handle.render() == "# TYPE basic_counter counter\nbasic_counter 43\n\n"


def test_idle_timeout_catches_delayed_idle():
    clock = MockClock()
    recorder = PrometheusBuilder().idle_timeout(MetricKind.ALL, 10.0).build_with_clock(clock)

    counter1 = recorder.register_counter(Key.from_name("basic_counter"))
    counter1.increment(42)

    handle = recorder.handle()
    expected = "# TYPE basic_counter counter\nbasic_counter 42\n\n"
    assert handle.render() == expected

    clock.increment(9)
    assert handle.render() == expected

    counter1.increment(1)
    clock.increment(2)
    assert handle.render() == "# TYPE basic_counter counter\nbasic_counter 43\n\n"

    clock.increment(11)
    assert handle.render() == ""


def test_idle_timeout_none_keeps_metrics():
    clock = MockClock()
    recorder = PrometheusBuilder().idle_timeout(MetricKind.ALL, None).build_with_clock(clock)
    recorder.register_counter(Key.from_name("basic_counter")).increment(5)
    handle = recorder.handle()
    expected = "# TYPE basic_counter counter\nbasic_counter 5\n\n"
    assert handle.render() == expected
    clock.increment(1000)
    assert handle.render() == expected


def test_global_labels():
    recorder = (
        PrometheusBuilder()
        .add_global_label("foo", "foo")
        .add_global_label("foo", "bar")
        .build_recorder()
    )
    recorder.register_counter(Key.from_name("basic_counter")).increment(42)
    rendered = recorder.handle().render()
    assert rendered == '# TYPE basic_counter counter\nbasic_counter{foo="bar"} 42\n\n'


def test_global_labels_overrides():
    recorder = PrometheusBuilder().add_global_label("foo", "foo").build_recorder()
    key = Key.from_name("overridden").with_extra_labels([Label("foo", "overridden")])
    recorder.register_counter(key).increment(1)
    rendered = recorder.handle().render()
    assert rendered == '# TYPE overridden counter\noverridden{foo="overridden"} 1\n\n'


def test_sanitized_render():
    recorder = PrometheusBuilder().add_global_label("foo:", "foo").build_recorder()
    key_name = "yee_haw:lets go"
    key = Key.from_name(key_name).with_extra_labels([Label("øhno", '"yeet\nies\\"')])
    recorder.describe_counter(key_name, None, '"Simplë stuff.\nRëally."')
    recorder.register_counter(key).increment(1)

    rendered = recorder.handle().render()
    expected = (
        '# HELP yee_haw:lets_go "Simplë stuff.\\nRëally."\n'
        "# TYPE yee_haw:lets_go counter\n"
        'yee_haw:lets_go{foo_="foo",_hno="\\"yeet\\nies\\""} 1\n\n'
    )
    assert rendered == expected


def test_empty_quantiles_rejected():
    with pytest.raises(BuildError):
        PrometheusBuilder().set_quantiles([])


def test_empty_buckets_rejected():
    with pytest.raises(BuildError):
        PrometheusBuilder().set_buckets([])


def test_empty_metric_buckets_rejected():
    with pytest.raises(BuildError):
        PrometheusBuilder().set_buckets_for_metric(Matcher.prefix("foo"), [])


def test_invalid_push_gateway_endpoint():
    with pytest.raises(BuildError):
        PrometheusBuilder().with_push_gateway("not a url", 10.0)


def test_invalid_allowed_address():
    with pytest.raises(BuildError):
        PrometheusBuilder().add_allowed_address("not-an-ip")


def test_build_defaults_to_http_listener():
    recorder, exporter = PrometheusBuilder().build()
    assert isinstance(exporter, HttpListenerExporter)
    assert exporter.server_address == ("0.0.0.0", 9000)
    assert exporter.running is False


def test_build_push_gateway():
    builder = PrometheusBuilder().with_push_gateway(
        "http://127.0.0.1:9091/metrics/job/example", timedelta(seconds=10)
    )
    _recorder, exporter = builder.build()
    assert isinstance(exporter, PushGatewayExporter)
    assert exporter.endpoint == "http://127.0.0.1:9091/metrics/job/example"
    assert exporter.interval == 10.0


def test_build_allowlist():
    _recorder, exporter = (
        PrometheusBuilder().add_allowed_address("10.0.0.0/8").build()
    )
    assert exporter.is_allowed("10.1.2.3") is True
    assert exporter.is_allowed("127.0.0.1") is False


def test_install_recorder_sets_global():
    handle = PrometheusBuilder().install_recorder()
    recorder = global_recorder()
    recorder.register_counter(Key.from_name("installed")).increment(3)
    assert handle.render() == "# TYPE installed counter\ninstalled 3\n\n"


def test_install_recorder_twice_fails():
    PrometheusBuilder().install_recorder()
    with pytest.raises(BuildError):
        PrometheusBuilder().install_recorder()


def test_install_serves_metrics():
    exporter = PrometheusBuilder().with_http_listener("127.0.0.1", 0).install()
    try:
        global_recorder().register_counter(Key.from_name("served")).increment(7)
        host, port = exporter.server_address
        opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        with opener.open(f"http://{host}:{port}/metrics", timeout=10) as response:
            body = response.read().decode("utf-8")
        assert body == "# TYPE served counter\nserved 7\n\n"
    finally:
        exporter.stop()


def test_install_fails_when_global_set():
    PrometheusBuilder().install_recorder()
    with pytest.raises(BuildError):
        PrometheusBuilder().with_http_listener("127.0.0.1", 0).install()