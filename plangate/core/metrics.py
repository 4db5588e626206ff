"""
Process-local counters for webhook and quota activity.

Rendered in the Prometheus text exposition format at /metrics. Values live in
memory only and restart from zero with the process.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


class Counter:
    def __init__(self, name: str, documentation: str, labelnames: Sequence[str] = ()):
        self.name = name
        self.documentation = documentation
        self.labelnames = tuple(labelnames)
        self._samples: Dict[LabelValues, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        unknown = set(labels) - set(self.labelnames)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.labelnames)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._samples.get(key, 0.0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.documentation}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._samples.items())
        for key, value in samples:
            label_text = ",".join(f'{name}="{_escape(v)}"' for name, v in zip(self.labelnames, key))
            suffix = "{" + label_text + "}" if label_text else ""
            lines.append(f"{self.name}{suffix} {float(value)}")
        return lines

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


class Registry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}

    def counter(self, name: str, documentation: str, labelnames: Sequence[str] = ()) -> Counter:
        if name in self._counters:
            raise ValueError(f"metric {name} already registered")
        counter = Counter(name, documentation, labelnames)
        self._counters[name] = counter
        return counter

    def render(self) -> str:
        lines: List[str] = []
        for counter in self._counters.values():
            lines.extend(counter.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for counter in self._counters.values():
            counter.clear()


REGISTRY = Registry()

webhook_events_total = REGISTRY.counter(
    "billing_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome.",
    ["event_type", "outcome"],
)
quota_denials_total = REGISTRY.counter(
    "quota_denials_total",
    "Requests refused by a quota gate.",
    ["limit"],
)
deployments_recorded_total = REGISTRY.counter(
    "deployments_recorded_total",
    "Deployments counted against account quotas.",
)
