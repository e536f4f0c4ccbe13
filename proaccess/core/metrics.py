"""
In-process counters for the entitlement service, exported as Prometheus text.

Only counters are needed here: webhook and verify outcomes, entitlement
transitions and HTTP requests. Labels are fixed per counter at declaration.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, List, Optional, Sequence, Tuple


class Counter:
    def __init__(self, name: str, help_text: str, label_names: Sequence[str] = ()):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._counts: Dict[Tuple[str, ...], int] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: int = 1) -> None:
        key = self._key(labels)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._counts.items())
        for values, count in samples:
            if self.label_names:
                pairs = ",".join(
                    f'{name}="{_escape(value)}"' for name, value in zip(self.label_names, values)
                )
                lines.append(f"{self.name}{{{pairs}}} {count}")
            else:
                lines.append(f"{self.name} {count}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}

    def counter(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> Counter:
        if name in self._counters:
            raise ValueError(f"counter {name} already registered")
        self._counters[name] = Counter(name, help_text, label_names)
        return self._counters[name]

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for name in sorted(self._counters):
            lines.extend(self._counters[name].render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for counter in self._counters.values():
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status.", ["method", "path", "status"]
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", "Webhook deliveries by outcome or error code.", ["outcome"]
)
verify_requests_total = METRICS.counter(
    "verify_requests_total", "Verify calls by outcome or error code.", ["outcome"]
)
entitlement_transitions_total = METRICS.counter(
    "entitlement_transitions_total", "Applied signals by state before and after.", ["from_state", "to_state"]
)


# Stripe object ids and bare numbers collapse to :id to keep path labels bounded
_ID_SEGMENT = re.compile(r"^(?:\d+|(?:cs|evt|cus|pi)_[A-Za-z0-9_]+)$")


def normalize_path(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
