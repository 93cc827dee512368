"""In-process counters for the licensing service, exported in Prometheus text format.

Counters are process-local and reset on restart; the scrape at ``/metrics``
is the only consumer.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]

# Routes served by this app; anything else is reported as "other" so crawlers
# and scanners cannot grow the label set.
KNOWN_PATHS = frozenset({
    "/verify",
    "/validate-gift-code",
    "/billing-webhook",
    "/healthz",
    "/readyz",
    "/metrics",
})


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\"", "\\\"")


class Counter:
    """Monotonic counter keyed by a fixed set of label names."""

    def __init__(self, name: str, help_text: str, label_names: Sequence[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._values: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def samples(self) -> List[Tuple[LabelValues, float]]:
        with self._lock:
            return sorted(self._values.items())

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        for values, total in self.samples():
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, values))
                lines.append(f"{self.name}{{{pairs}}} {total}")
            else:
                lines.append(f"{self.name} {total}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> Counter:
        with self._lock:
            existing = self._counters.get(name)
            if existing is not None:
                if existing.label_names != tuple(label_names):
                    raise ValueError(f"{name} already registered with labels {existing.label_names}")
                return existing
            counter = Counter(name, help_text, label_names)
            self._counters[name] = counter
            return counter

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self._counters.values())
        lines: List[str] = []
        for counter in counters:
            lines.extend(counter.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status.", ("method", "path", "status")
)
verification_total = METRICS.counter(
    "verification_total", "Verification answers by operation and outcome.", ("operation", "outcome")
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", "Billing events processed by type and resulting action.", ("event_type", "action")
)
ratelimit_block_total = METRICS.counter(
    "ratelimit_block_total", "Requests refused by a rate limiter.", ("scope",)
)
cache_write_failures_total = METRICS.counter(
    "cache_write_failures_total", "Entitlement cache writes that failed and were skipped.", ("path",)
)


def normalize_path(path: str) -> str:
    """Route label for a request path: the path itself if served here, else "other"."""
    trimmed = path.rstrip("/") or "/"
    return trimmed if trimmed in KNOWN_PATHS else "other"
