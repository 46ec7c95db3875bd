# tracer.py
# Per-run timeline of timed spans.
#
# Spans nest: a span started while another is open becomes its child. The
# engine opens one root span per run and one child span per step iteration.

import logging
from typing import Any

from plan_engine.models import ExecutionSpan, ExecutionTimeline, SpanStatus, now_ms

logger = logging.getLogger(__name__)


class ExecutionTracer:
    def __init__(self, run_id: str) -> None:
        self._run_id = run_id
        self.reset()

    @property
    def run_id(self) -> str:
        return self._run_id

    def reset(self) -> None:
        """Drop every span and restart the timeline clock."""
        self._timeline = ExecutionTimeline(run_id=self._run_id, start_time=now_ms())
        self._stack: list[ExecutionSpan] = []
        self._spans: dict[str, ExecutionSpan] = {}

    def start_span(self, span_id: str, name: str, metadata: dict[str, Any] | None = None) -> ExecutionSpan:
        parent_id = self._stack[-1].id if self._stack else None
        span = ExecutionSpan(id=span_id, name=name, start_time=now_ms(), parent_id=parent_id, metadata=metadata)
        self._stack.append(span)
        self._spans[span_id] = span
        self._timeline.spans.append(span)
        return span

    def end_span(self, span_id: str, status: SpanStatus = SpanStatus.COMPLETED, error: str | None = None) -> None:
        """Close a span. Unknown ids are ignored."""
        span = self._spans.get(span_id)
        if span is None:
            logger.debug("No open span %s in run %s", span_id, self._run_id)
            return

        span.end_time = max(now_ms(), span.start_time)
        span.duration = span.end_time - span.start_time
        span.status = status
        span.error = error
        if self._stack and self._stack[-1].id == span_id:
            self._stack.pop()

    def finish(self) -> ExecutionTimeline:
        self._timeline.end_time = max(now_ms(), self._timeline.start_time)
        return self.get_timeline()

    def get_timeline(self) -> ExecutionTimeline:
        return self._timeline.model_copy(deep=True)

    def get_total_duration(self) -> int:
        end = self._timeline.end_time if self._timeline.end_time is not None else now_ms()
        return end - self._timeline.start_time

    def get_critical_path(self) -> list[ExecutionSpan]:
        """Longest chain of nested spans, root first."""
        longest: list[ExecutionSpan] = []
        for span in self._timeline.spans:
            if span.parent_id is None:
                path = self._span_path(span)
                if len(path) > len(longest):
                    longest = path
        return [span.model_copy() for span in longest]

    def _span_path(self, span: ExecutionSpan) -> list[ExecutionSpan]:
        longest: list[ExecutionSpan] = []
        for child in self._timeline.spans:
            if child.parent_id == span.id:
                path = self._span_path(child)
                if len(path) > len(longest):
                    longest = path
        return [span] + longest
