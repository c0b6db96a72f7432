"""In-process metrics exported in the Prometheus text format.

Counters, gauges and histograms are kept in memory, guarded by a lock each,
and rendered on demand by :func:`generate_metrics_text` for the ``/metrics``
endpoint.  No client library is needed for this little surface.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple

LabelKey = Tuple[str, ...]


class MetricsRegistry:
    """Ordered collection of metrics rendered together."""

    def __init__(self) -> None:
        self._metrics: List["Metric"] = []
        self._lock = Lock()

    def register(self, metric: "Metric") -> None:
        with self._lock:
            self._metrics.append(metric)

    def render(self) -> str:
        with self._lock:
            metrics = list(self._metrics)
        lines: List[str] = []
        for metric in metrics:
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            lines.extend(metric.samples())
        return "\n".join(lines) + "\n"


REGISTRY = MetricsRegistry()


def _label_str(names: Iterable[str], values: Iterable[str], extra: str = "") -> str:
    pairs = [f'{n}="{v}"' for n, v in zip(names, values)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


class Metric:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Iterable[str] = (),
        registry: MetricsRegistry = REGISTRY,
    ) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._lock = Lock()
        registry.register(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(n, "")) for n in self.label_names)

    def samples(self) -> List[str]:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic counter, e.g. ``ORDERS_CREATED_TOTAL.inc(channel="direct")``."""

    kind = "counter"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[self._key(labels)] += amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            items = list(self._values.items())
        return [f"{self.name}{_label_str(self.label_names, k)} {v:g}" for k, v in items]


class Gauge(Metric):
    kind = "gauge"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            items = list(self._values.items())
        return [f"{self.name}{_label_str(self.label_names, k)} {v:g}" for k, v in items]


class Histogram(Metric):
    """Cumulative-bucket histogram; the ``+Inf`` bucket equals the count."""

    kind = "histogram"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = (),
                 buckets: Iterable[float] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
                 registry: MetricsRegistry = REGISTRY) -> None:
        super().__init__(name, description, label_names, registry)
        self.buckets = sorted(float(b) for b in buckets)
        self._counts: Dict[LabelKey, List[int]] = {}
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    counts[idx] += 1
            self._sums[key] += value
            self._totals[key] += 1

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._totals.get(self._key(labels), 0)

    def samples(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            for key, counts in self._counts.items():
                # counts are already cumulative: each observation lands in every bucket >= value
                for upper, n in zip(self.buckets, counts):
                    le = 'le="%g"' % upper
                    lines.append(f"{self.name}_bucket{_label_str(self.label_names, key, le)} {n}")
                total = self._totals[key]
                inf_labels = _label_str(self.label_names, key, 'le="+Inf"')
                base_labels = _label_str(self.label_names, key)
                lines.append(f"{self.name}_bucket{inf_labels} {total}")
                lines.append(f"{self.name}_sum{base_labels} {self._sums[key]:g}")
                lines.append(f"{self.name}_count{base_labels} {total}")
        return lines


def generate_metrics_text() -> bytes:
    """Render every registered metric for a ``/metrics`` scrape."""
    return REGISTRY.render().encode("utf-8")


# ---------------------------------------------------------------------------
# Metrics used by the shop.  Label names must match the call sites.
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total", "Total number of HTTP requests", ["route", "method", "status"]
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "http_request_latency_seconds", "HTTP request latency in seconds", ["route"],
    buckets=[0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
)
ORDERS_CREATED_TOTAL = Counter(
    "orders_created_total", "Orders persisted, by checkout channel", ["channel"]
)
ORDER_CREATE_DURATION_SECONDS = Histogram(
    "order_create_duration_seconds", "Time spent validating and persisting an order", ["channel"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
ORDER_STATUS_TRANSITIONS_TOTAL = Counter(
    "order_status_transitions_total", "Order status changes", ["from_status", "to_status"]
)
PAYMENT_CALLBACKS_TOTAL = Counter(
    "payment_callbacks_total", "Payment gateway callbacks, by outcome", ["outcome"]
)
NOTIFICATIONS_TOTAL = Counter(
    "notifications_total", "Customer notifications attempted", ["channel", "outcome"]
)
PAYMENT_CIRCUIT_OPEN = Gauge(
    "payment_gateway_circuit_open", "Payment gateway circuit breaker state (1=open, 0=closed)"
)
