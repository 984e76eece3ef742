import itertools

import pytest

from servicekit.metrics import (
    AlreadyRegisteredError,
    Counter,
    CounterVec,
    Histogram,
    HistogramVec,
    Registry,
    new_metrics,
    register_or_reuse_counter_vec,
    register_or_reuse_histogram_vec,
    render_metrics,
)

_ids = itertools.count()


def _unique(prefix):
    return f"{prefix}_{next(_ids)}"


def test_new_metrics_singleton():
    a = new_metrics()
    b = new_metrics()
    assert a is b
    assert isinstance(a.service_total, CounterVec)
    assert isinstance(a.service_duration, HistogramVec)
    assert isinstance(a.db_total, CounterVec)
    assert isinstance(a.db_duration, HistogramVec)
    assert a.message_publish_total.name == "app_message_publish_total"
    assert a.message_consume_total.label_names == ("service", "topic", "group", "status")
    assert a.message_process_duration.name == "app_message_process_duration_seconds"
    assert a.outbox_batch_total.label_names == ("service", "status")
    assert a.outbox_batch_duration.name == "app_outbox_batch_duration_seconds"
    assert a.outbox_batch_size.buckets == (1, 5, 10, 25, 50, 100, 250, 500)


def test_render_metrics_exposes_core_metrics():
    metrics = new_metrics()
    metrics.request_total.labels("svc-render", "GET", "200").inc()
    text = render_metrics()
    assert "# HELP app_request_total Total number of incoming requests." in text
    assert "# TYPE app_request_total counter" in text
    assert "# TYPE app_request_duration_seconds histogram" in text
    assert 'app_request_total{service="svc-render",method="GET",status="200"} 1' in text


def test_register_or_reuse_counter_vec_same_type_reused():
    registry = Registry()
    name = _unique("test_counter")
    first = register_or_reuse_counter_vec(name, "test", ["label"], registry)
    second = register_or_reuse_counter_vec(name, "test", ["label"], registry)
    assert first is second


def test_register_or_reuse_counter_vec_different_type_raises():
    registry = Registry()
    name = _unique("test_counter_conflict")
    register_or_reuse_histogram_vec(name, "conflict", ["label"], registry=registry)
    with pytest.raises(RuntimeError, match="register counter"):
        register_or_reuse_counter_vec(name, "conflict", ["label"], registry)


def test_register_or_reuse_histogram_vec_different_type_raises():
    registry = Registry()
    name = _unique("test_histogram_conflict")
    register_or_reuse_counter_vec(name, "conflict", ["label"], registry)
    with pytest.raises(RuntimeError, match="register histogram"):
        register_or_reuse_histogram_vec(name, "conflict", ["label"], registry=registry)


def test_register_or_reuse_counter_vec_unique_registers():
    registry = Registry()
    name = _unique("test_counter_unique")
    counter = register_or_reuse_counter_vec(name, "unique", ["label"], registry)
    with pytest.raises(AlreadyRegisteredError) as info:
        registry.register(CounterVec(name, "unique", ["label"]))
    assert info.value.existing_collector is counter


def test_counter_inc_and_negative():
    counter = Counter()
    counter.inc()
    counter.inc(2.5)
    assert counter.value == 3.5
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_labels_count_mismatch_raises():
    vec = CounterVec("mismatch_total", "h", ["a", "b"])
    with pytest.raises(ValueError):
        vec.labels("only-one")


def test_labels_same_values_share_child():
    vec = CounterVec("shared_total", "h", ["a"])
    vec.labels("x").inc()
    vec.labels("x").inc()
    assert vec.labels("x").value == 2


def test_histogram_cumulative_buckets():
    hist = Histogram([1.0, 5.0])
    hist.observe(0.5)
    hist.observe(3)
    hist.observe(100)
    assert hist.count == 3
    assert hist.sum == 103.5
    assert [c for _, c in hist.cumulative_counts] == [1, 2, 3]


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram([5.0, 1.0])


def test_invalid_metric_name_rejected():
    with pytest.raises(ValueError):
        CounterVec("bad name", "h", [])


def test_registry_render_histogram():
    registry = Registry()
    vec = register_or_reuse_histogram_vec("test_hist", "h", ["service"], [1.0, 5.0], registry)
    vec.labels("a").observe(3)
    text = registry.render()
    assert 'test_hist_bucket{service="a",le="1"} 0' in text
    assert 'test_hist_bucket{service="a",le="5"} 1' in text
    assert 'test_hist_bucket{service="a",le="+Inf"} 1' in text
    assert 'test_hist_sum{service="a"} 3' in text
    assert 'test_hist_count{service="a"} 1' in text