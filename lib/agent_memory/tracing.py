"""Lightweight span tracing around engine operations."""
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional


@dataclass
class Span:
    """A single span in a trace."""
    trace_id: str
    span_id: str
    parent_span_id: Optional[str]
    operation_name: str
    service_name: str
    start_time: float
    end_time: Optional[float] = None
    status: str = 'ok'
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    def set_tag(self, key: str, value: Any):
        self.tags[key] = str(value)

    def finish(self, status: str = 'ok'):
        self.end_time = time.time()
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trace_id': self.trace_id,
            'span_id': self.span_id,
            'parent_span_id': self.parent_span_id,
            'operation_name': self.operation_name,
            'service_name': self.service_name,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'duration_ms': self.duration_ms,
            'status': self.status,
            'tags': self.tags,
        }


class TraceContext(threading.local):
    """Per-thread trace id and span stack."""

    def __init__(self):
        self.trace_id: Optional[str] = None
        self.span_stack: List[Span] = []

    @property
    def current_span(self) -> Optional[Span]:
        return self.span_stack[-1] if self.span_stack else None


class Tracer:
    """Records finished spans in a bounded ring buffer."""

    def __init__(self, service_name: str, max_spans: int = 1000):
        self.service_name = service_name
        self._context = TraceContext()
        self._spans: Deque[Span] = deque(maxlen=max_spans)
        self._lock = threading.Lock()

    def start_span(self, operation_name: str, trace_id: Optional[str] = None) -> Span:
        ctx = self._context
        if trace_id:
            ctx.trace_id = trace_id
            ctx.span_stack = []
        elif not ctx.span_stack:
            ctx.trace_id = str(uuid.uuid4())

        parent = ctx.current_span
        span = Span(
            trace_id=ctx.trace_id,
            span_id=uuid.uuid4().hex[:8],
            parent_span_id=parent.span_id if parent else None,
            operation_name=operation_name,
            service_name=self.service_name,
            start_time=time.time(),
        )
        ctx.span_stack.append(span)
        return span

    def finish_span(self, span: Span, status: str = 'ok'):
        span.finish(status)
        stack = self._context.span_stack
        if stack and stack[-1] is span:
            stack.pop()
        with self._lock:
            self._spans.append(span)

    @contextmanager
    def trace(self, operation_name: str, trace_id: Optional[str] = None, **tags):
        """Context manager for tracing an operation."""
        span = self.start_span(operation_name, trace_id)
        for key, value in tags.items():
            span.set_tag(key, value)
        try:
            yield span
        except Exception as e:
            span.set_tag('error', type(e).__name__)
            self.finish_span(span, 'error')
            raise
        self.finish_span(span, 'ok')

    def get_trace(self, trace_id: str) -> List[Span]:
        with self._lock:
            return [s for s in self._spans if s.trace_id == trace_id]

    def get_recent_spans(self, limit: int = 100) -> List[Span]:
        with self._lock:
            return list(self._spans)[-limit:]


_tracer: Optional[Tracer] = None


def get_tracer() -> Tracer:
    """Get the global tracer instance."""
    global _tracer
    if _tracer is None:
        _tracer = Tracer('agent-memory')
    return _tracer


def init_tracer(service_name: str = 'agent-memory') -> Tracer:
    """Initialize the global tracer."""
    global _tracer
    _tracer = Tracer(service_name)
    return _tracer
