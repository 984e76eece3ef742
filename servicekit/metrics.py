"""Process-wide metric collectors with a text exposition of their values."""

from __future__ import annotations

import math
import re
import threading
from bisect import bisect_left
from dataclasses import dataclass
from itertools import accumulate
from typing import Iterable, Sequence

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)
OUTBOX_BATCH_SIZE_BUCKETS: tuple[float, ...] = (1, 5, 10, 25, 50, 100, 250, 500)

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class AlreadyRegisteredError(Exception):
    """Raised when a collector with the same name is already registered."""

    def __init__(self, name: str, existing_collector: object) -> None:
        super().__init__(f"duplicate metrics collector registration attempted: {name!r}")
        self.name = name
        self.existing_collector = existing_collector


class Counter:
    """A monotonically increasing value."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Histogram:
    """Counts observations into cumulative upper-bound buckets."""

    def __init__(self, buckets: Sequence[float] = DEFAULT_BUCKETS) -> None:
        bounds = tuple(float(b) for b in buckets if not math.isinf(b))
        if any(b >= nxt for b, nxt in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        self.buckets = bounds
        self._counts = [0] * len(bounds)
        self._count = 0
        self._sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        index = bisect_left(self.buckets, value)
        with self._lock:
            if index < len(self._counts):
                self._counts[index] += 1
            self._count += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def cumulative_counts(self) -> list[tuple[float, int]]:
        """Bucket bounds with cumulative counts, ending with +Inf."""
        with self._lock:
            counts = list(accumulate(self._counts))
            total = self._count
        return [*zip(self.buckets, counts), (math.inf, total)]


class _Vec:
    kind = ""

    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        if not _METRIC_NAME.match(name):
            raise ValueError(f"invalid metric name {name!r}")
        labels = tuple(label_names)
        for label in labels:
            if not _LABEL_NAME.match(label):
                raise ValueError(f"invalid label name {label!r}")
        if len(set(labels)) != len(labels):
            raise ValueError(f"duplicate label names in {labels!r}")
        self.name = name
        self.help_text = help_text
        self.label_names = labels
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def _new_child(self):
        raise NotImplementedError

    def _child(self, values: tuple):
        if len(values) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(values)}"
            )
        key = tuple(str(v) for v in values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
            return child

    def _snapshot(self) -> list[tuple[tuple[str, ...], object]]:
        with self._lock:
            return sorted(self._children.items())


class CounterVec(_Vec):
    """A family of counters partitioned by label values."""

    kind = "counter"

    def _new_child(self) -> Counter:
        return Counter()

    def labels(self, *args) -> Counter:
        return self._child(args)


class HistogramVec(_Vec):
    """A family of histograms partitioned by label values."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Iterable[str],
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help_text, label_names)
        if "le" in self.label_names:
            raise ValueError("'le' is reserved for histogram buckets")
        self.buckets = Histogram(buckets).buckets

    def _new_child(self) -> Histogram:
        return Histogram(self.buckets)

    def labels(self, *args) -> Histogram:
        return self._child(args)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _label_text(pairs: Iterable[tuple[str, str]]) -> str:
    body = ",".join(f'{k}="{_escape_label(v)}"' for k, v in pairs)
    return f"{{{body}}}" if body else ""


class Registry:
    """Holds collectors by name and renders them in text exposition format."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Vec] = {}
        self._lock = threading.Lock()

    def register(self, collector: _Vec) -> None:
        with self._lock:
            existing = self._collectors.get(collector.name)
            if existing is not None:
                raise AlreadyRegisteredError(collector.name, existing)
            self._collectors[collector.name] = collector

    def render(self) -> str:
        with self._lock:
            collectors = sorted(self._collectors.values(), key=lambda c: c.name)
        lines: list[str] = []
        for collector in collectors:
            lines.append(f"# HELP {collector.name} {_escape_help(collector.help_text)}")
            lines.append(f"# TYPE {collector.name} {collector.kind}")
            for values, child in collector._snapshot():
                pairs = list(zip(collector.label_names, values))
                if isinstance(child, Counter):
                    lines.append(f"{collector.name}{_label_text(pairs)} {_format_value(child.value)}")
                    continue
                for bound, count in child.cumulative_counts:
                    labels = _label_text([*pairs, ("le", _format_value(bound))])
                    lines.append(f"{collector.name}_bucket{labels} {count}")
                lines.append(f"{collector.name}_sum{_label_text(pairs)} {_format_value(child.sum)}")
                lines.append(f"{collector.name}_count{_label_text(pairs)} {child.count}")
        return "\n".join(lines) + "\n" if lines else ""


_DEFAULT_REGISTRY = Registry()


def register_or_reuse_counter_vec(
    name: str,
    help_text: str,
    label_names: Iterable[str],
    registry: Registry | None = None,
) -> CounterVec:
    """Register a counter family, or return the one already registered under the name."""
    registry = registry or _DEFAULT_REGISTRY
    vec = CounterVec(name, help_text, label_names)
    try:
        registry.register(vec)
    except AlreadyRegisteredError as err:
        existing = err.existing_collector
        if isinstance(existing, CounterVec) and existing.label_names == vec.label_names:
            return existing
        raise RuntimeError(f"observability: register counter {name!r} failed: {err}") from err
    return vec


def register_or_reuse_histogram_vec(
    name: str,
    help_text: str,
    label_names: Iterable[str],
    buckets: Sequence[float] = DEFAULT_BUCKETS,
    registry: Registry | None = None,
) -> HistogramVec:
    """Register a histogram family, or return the one already registered under the name."""
    registry = registry or _DEFAULT_REGISTRY
    vec = HistogramVec(name, help_text, label_names, buckets)
    try:
        registry.register(vec)
    except AlreadyRegisteredError as err:
        existing = err.existing_collector
        if isinstance(existing, HistogramVec) and existing.label_names == vec.label_names:
            return existing
        raise RuntimeError(f"observability: register histogram {name!r} failed: {err}") from err
    return vec


@dataclass(frozen=True)
class Metrics:
    """The core metric families shared by the service components."""

    request_total: CounterVec
    request_duration: HistogramVec
    http_request_total: CounterVec
    http_request_duration: HistogramVec
    service_total: CounterVec
    service_duration: HistogramVec
    db_total: CounterVec
    db_duration: HistogramVec
    message_publish_total: CounterVec
    message_consume_total: CounterVec
    message_process_duration: HistogramVec
    outbox_batch_total: CounterVec
    outbox_batch_duration: HistogramVec
    outbox_batch_size: HistogramVec
    transaction_total: CounterVec


_metrics_lock = threading.Lock()
_metrics_instance: Metrics | None = None


def _build_metrics() -> Metrics:
    counter = register_or_reuse_counter_vec
    histogram = register_or_reuse_histogram_vec
    return Metrics(
        request_total=counter(
            "app_request_total",
            "Total number of incoming requests.",
            ["service", "method", "status"],
        ),
        request_duration=histogram(
            "app_request_duration_seconds",
            "Request duration in seconds.",
            ["service", "method"],
        ),
        http_request_total=counter(
            "app_http_request_total",
            "Total number of HTTP requests handled by gateway.",
            ["service", "method", "route", "status"],
        ),
        http_request_duration=histogram(
            "app_http_request_duration_seconds",
            "HTTP request duration in seconds handled by gateway.",
            ["service", "method", "route"],
        ),
        service_total=counter(
            "app_service_operation_total",
            "Total number of structured service operations.",
            ["service", "operation", "status"],
        ),
        service_duration=histogram(
            "app_service_operation_duration_seconds",
            "Structured service operation duration in seconds.",
            ["service", "operation"],
        ),
        db_total=counter(
            "app_db_operation_total",
            "Total number of structured database operations.",
            ["service", "db_name", "operation", "status"],
        ),
        db_duration=histogram(
            "app_db_operation_duration_seconds",
            "Structured database operation duration in seconds.",
            ["service", "db_name", "operation"],
        ),
        message_publish_total=counter(
            "app_message_publish_total",
            "Total number of message publish attempts by final status.",
            ["service", "topic", "status"],
        ),
        message_consume_total=counter(
            "app_message_consume_total",
            "Total number of message consume attempts by final status.",
            ["service", "topic", "group", "status"],
        ),
        message_process_duration=histogram(
            "app_message_process_duration_seconds",
            "Message handler processing duration in seconds.",
            ["service", "topic", "group"],
        ),
        outbox_batch_total=counter(
            "app_outbox_batch_total",
            "Total number of outbox batch executions by status.",
            ["service", "status"],
        ),
        outbox_batch_duration=histogram(
            "app_outbox_batch_duration_seconds",
            "Outbox batch execution duration in seconds.",
            ["service"],
        ),
        outbox_batch_size=histogram(
            "app_outbox_batch_size",
            "Outbox batch size distribution.",
            ["service"],
            OUTBOX_BATCH_SIZE_BUCKETS,
        ),
        transaction_total=counter(
            "app_transaction_total",
            "Total number of business transactions.",
            ["service", "operation", "status"],
        ),
    )


def new_metrics() -> Metrics:
    """Return the process-wide core metrics, creating and registering them once."""
    global _metrics_instance
    with _metrics_lock:
        if _metrics_instance is None:
            _metrics_instance = _build_metrics()
        return _metrics_instance


def render_metrics() -> str:
    """Render every collector in the default registry for scraping."""
    return _DEFAULT_REGISTRY.render()