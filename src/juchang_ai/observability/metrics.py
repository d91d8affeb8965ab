"""
Bounded metrics ring buffer.

One buffer is owned by the chat service and passed where needed. Appends
never block request handling: the lock is only held for a deque
append, and the deque evicts the oldest point once full.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class MetricPoint:
    """A single observation."""

    name: str
    value: float
    timestamp: float
    labels: dict[str, str] = field(default_factory=dict)


class MetricsBuffer:
    """Bounded buffer of recent metric points with simple aggregation."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._points: deque[MetricPoint] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def observe(self, name: str, value: float, **labels: str) -> None:
        point = MetricPoint(name=name, value=value, timestamp=time.time(), labels=labels)
        with self._lock:
            self._points.append(point)

    def increment(self, name: str, **labels: str) -> None:
        self.observe(name, 1.0, **labels)

    def snapshot(self, name: Optional[str] = None) -> list[MetricPoint]:
        with self._lock:
            points = list(self._points)
        if name is None:
            return points
        return [p for p in points if p.name == name]

    def summary(self, name: str) -> dict[str, float]:
        """Count, sum, average and p95 of the buffered points for a metric."""
        values = sorted(p.value for p in self.snapshot(name))
        if not values:
            return {"count": 0, "sum": 0.0, "avg": 0.0, "p95": 0.0}
        p95_index = min(len(values) - 1, int(len(values) * 0.95))
        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "avg": total / len(values),
            "p95": values[p95_index],
        }

    def clear(self) -> None:
        with self._lock:
            self._points.clear()

    def __len__(self) -> int:
        return len(self._points)
