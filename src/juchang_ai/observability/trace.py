"""
Request-scoped trace spans.

A ``Trace`` is created per chat request and passed explicitly through the
pipeline. Spans live in a bounded deque; when it is full the oldest span
is evicted.
"""

import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

from juchang_ai.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Span:
    """A timed step of a request."""

    name: str
    started_at: float
    duration_ms: Optional[float] = None
    status: str = "ok"  # ok, error, skipped
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "duration_ms": round(self.duration_ms or 0.0, 2),
            "status": self.status,
            "attributes": self.attributes,
        }


class Trace:
    """Bounded collection of spans for one request."""

    def __init__(self, capacity: Optional[int] = None, trace_id: Optional[str] = None):
        self.trace_id = trace_id or uuid.uuid4().hex
        self.capacity = capacity or settings.trace_buffer_size
        self._spans: deque[Span] = deque(maxlen=self.capacity)
        self.dropped = 0

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Generator[Span, None, None]:
        """
        Time a block of work.

        Exceptions mark the span as ``error`` and propagate.
        """
        span = Span(name=name, started_at=time.perf_counter(), attributes=attributes)
        try:
            yield span
        except Exception as e:
            span.status = "error"
            span.attributes["error"] = str(e)
            raise
        finally:
            span.duration_ms = (time.perf_counter() - span.started_at) * 1000
            self._append(span)

    def record(self, name: str, status: str = "ok", **attributes: Any) -> Span:
        """Record an instantaneous event as a zero-length span."""
        span = Span(
            name=name,
            started_at=time.perf_counter(),
            duration_ms=0.0,
            status=status,
            attributes=attributes,
        )
        self._append(span)
        return span

    def _append(self, span: Span) -> None:
        if len(self._spans) == self.capacity:
            self.dropped += 1
        self._spans.append(span)

    @property
    def spans(self) -> list[Span]:
        return list(self._spans)

    def to_dict(self) -> dict:
        return {
            "trace_id": self.trace_id,
            "spans": [s.to_dict() for s in self._spans],
            "dropped": self.dropped,
        }
