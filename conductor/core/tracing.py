"""Per-request execution tracing and graph derivation."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .models import ToolCallRecord, TraceAction, TraceEvent, TraceGraph

logger = logging.getLogger(__name__)

TraceSubscriber = Callable[[TraceEvent], None]

SUMMARY_LIMIT = 200


def summarize(value: Any, limit: int = SUMMARY_LIMIT) -> str:
    text = value if isinstance(value, str) else repr(value)
    text = " ".join(text.split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


class Tracer:
    """Records causally ordered events per trace id and fans them out to subscribers."""

    def __init__(self, max_traces: int = 1000) -> None:
        self._traces: Dict[str, List[TraceEvent]] = {}
        self._subscribers: List[TraceSubscriber] = []
        self._max_traces = max_traces

    def subscribe(self, callback: TraceSubscriber) -> Callable[[], None]:
        """Register an append callback; returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def start(self, trace_id: str, agent_name: str, input: Any) -> TraceEvent:
        return self.record_event(trace_id, agent_name, TraceAction.START, summarize(input))

    def record(self, trace_id: str, event: TraceEvent) -> TraceEvent:
        events = self._traces.get(trace_id)
        if events is None:
            while len(self._traces) >= self._max_traces:
                # oldest trace first
                self._traces.pop(next(iter(self._traces)))
            events = self._traces[trace_id] = []
        event.trace_id = trace_id
        event.sequence = len(events)
        events.append(event)
        logger.debug(
            "[%s] #%d %s %s %s",
            trace_id,
            event.sequence,
            event.agent_name,
            event.action.value,
            event.payload_summary,
        )
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Trace subscriber %r failed", callback)
        return event

    def record_event(
        self,
        trace_id: str,
        agent_name: str,
        action: TraceAction,
        summary: str = "",
        *,
        duration_ms: Optional[float] = None,
        depth: int = 0,
        parent_agent: Optional[str] = None,
        tool_call: Optional[ToolCallRecord] = None,
    ) -> TraceEvent:
        event = TraceEvent(
            trace_id=trace_id,
            agent_name=agent_name,
            action=action,
            payload_summary=summarize(summary),
            duration_ms=duration_ms,
            depth=depth,
            parent_agent=parent_agent,
            tool_call=tool_call,
        )
        return self.record(trace_id, event)

    def complete(self, trace_id: str, agent_name: str, output: Any, duration_ms: float) -> TraceEvent:
        return self.record_event(
            trace_id, agent_name, TraceAction.COMPLETE, summarize(output), duration_ms=duration_ms
        )

    def fail(
        self,
        trace_id: str,
        agent_name: str,
        error: BaseException,
        duration_ms: Optional[float] = None,
        *,
        depth: int = 0,
    ) -> TraceEvent:
        summary = f"{type(error).__name__}: {error}"
        return self.record_event(
            trace_id, agent_name, TraceAction.FAIL, summary, duration_ms=duration_ms, depth=depth
        )

    def get_trace(self, trace_id: str) -> List[TraceEvent]:
        return list(self._traces.get(trace_id, ()))

    def has_trace(self, trace_id: str) -> bool:
        return trace_id in self._traces

    def discard(self, trace_id: str) -> None:
        self._traces.pop(trace_id, None)

    def visualize(self, trace_id: str) -> TraceGraph:
        """Derive a linear-with-branches graph from the event sequence.

        Each agent's events are chained in temporal order. Tool calls fan out
        from the event that preceded them and fan back in at the agent's next
        non-tool event. An agent's first event hangs off the latest event of
        its parent (or, for the root, the previous event in the trace).
        """
        graph = TraceGraph()
        # per agent: last non-tool node id, and tool node ids since then
        anchor: Dict[str, str] = {}
        pending_tools: Dict[str, List[str]] = defaultdict(list)
        latest: Dict[str, str] = {}
        previous: Optional[str] = None

        for event in self.get_trace(trace_id):
            node_id = f"{trace_id}:{event.sequence}"
            graph.nodes.append(
                {
                    "id": node_id,
                    "agent": event.agent_name,
                    "action": event.action.value,
                    "label": event.payload_summary,
                    "depth": event.depth,
                }
            )
            agent = event.agent_name
            if event.action is TraceAction.TOOL_CALL:
                source = anchor.get(agent) or latest.get(event.parent_agent or "") or previous
                if source is not None:
                    graph.edges.append((source, node_id))
                pending_tools[agent].append(node_id)
            else:
                if pending_tools[agent]:
                    sources = pending_tools.pop(agent)
                elif agent in latest:
                    sources = [latest[agent]]
                elif event.parent_agent and event.parent_agent in latest:
                    sources = [latest[event.parent_agent]]
                else:
                    sources = [previous] if previous is not None else []
                graph.edges.extend((source, node_id) for source in sources)
                anchor[agent] = node_id
            latest[agent] = node_id
            previous = node_id
        return graph
