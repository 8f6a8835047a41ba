"""
In-process billing metrics, exported in Prometheus text format on /metrics.

Values live in this process only; a scraper aggregates across workers.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            samples = sorted(self._values.items())
        for key, value in samples:
            if self.label_names:
                rendered = ",".join(f'{name}="{_escape(v)}"' for name, v in zip(self.label_names, key))
                lines.append(f"{self.name}{{{rendered}}} {value}")
            else:
                lines.append(f"{self.name} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names, help_text: str):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, label_names, help_text)
            elif not isinstance(metric, cls):
                raise ValueError(f"metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, help_text)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in self._metrics.values():
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self._metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status"
)
payment_intents_total = METRICS.counter(
    "payment_intents_total", ["type"], "Payment intents created, by payment type"
)
payment_confirmations_total = METRICS.counter(
    "payment_confirmations_total", ["outcome"], "confirm_payment calls by outcome"
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", ["type", "outcome"], "Processor notifications by event type and outcome"
)
subscription_transitions_total = METRICS.counter(
    "subscription_transitions_total", ["transition"], "Subscription lifecycle transitions"
)

health_status = METRICS.gauge(
    "billing_health_status", ["check"], "1 healthy, 0.5 degraded, 0 unhealthy"
)


# Local uuids and processor object ids (sub_..., pi_..., evt_...)
_ID_SEGMENT = re.compile(r"^(?:[0-9a-fA-F-]{8,}|[a-z]{2,5}_[A-Za-z0-9]{6,}|\d+)$")


def normalize_path(path: str) -> str:
    """Replace id segments with :id to bound label cardinality."""
    segments = [":id" if _ID_SEGMENT.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
