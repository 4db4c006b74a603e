"""
Run events - lifecycle notifications published while a workflow executes.

The scheduler publishes run and node transitions, the debate coordinator
publishes per-round progress. Anything that wants to follow a run
(dashboards, audit writers, tests) subscribes with an event-type set and,
optionally, a run and node filter.

Handlers are awaited before ``publish`` returns, so a slow subscriber slows
the publishing node. A handler that raises is logged and otherwise ignored;
observers can never fail a run.
"""

import asyncio
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"

    NODE_STARTED = "node_started"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_RETRY = "node_retry"

    GATE_BLOCKED = "gate_blocked"

    DEBATE_ROUND_COMPLETED = "debate_round_completed"
    DEBATE_CONVERGED = "debate_converged"


@dataclass
class RunEvent:
    """One published event. ``node_id`` is None for run-level events."""

    type: EventType
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    run_id: str | None = None
    node_id: str | None = None

    def accepts(self, event: RunEvent) -> bool:
        return (
            event.type in self.event_types
            and (self.run_id is None or self.run_id == event.run_id)
            and (self.node_id is None or self.node_id == event.node_id)
        )


class EventBus:
    """
    In-process pub/sub for RunEvents with a bounded history.

    Example:
        bus = EventBus()

        async def on_blocked(event: RunEvent):
            print(f"gate {event.node_id} halted {event.run_id}: {event.data}")

        bus.subscribe([EventType.GATE_BLOCKED], on_blocked)
        engine = WorkflowEngine(event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[RunEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._next_id = 0

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """Register ``handler``; returns the id to pass to ``unsubscribe``."""
        self._next_id += 1
        sub_id = f"sub_{self._next_id}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=frozenset(event_types),
            handler=handler,
            run_id=filter_run,
            node_id=filter_node,
        )
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: RunEvent) -> None:
        self._history.append(event)
        handlers = [s.handler for s in list(self._subscriptions.values()) if s.accepts(event)]
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))

    async def emit(
        self,
        event_type: EventType,
        run_id: str,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(RunEvent(type=event_type, run_id=run_id, node_id=node_id, data=data))

    async def _call(self, handler: EventHandler, event: RunEvent) -> None:
        async with self._handler_slots:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler for {event.type} ({event.run_id}) failed: {e}")

    # === QUERIES ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """Matching events, most recent first."""
        matches = [
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (run_id is None or e.run_id == run_id)
            and (node_id is None or e.node_id == node_id)
        ]
        return matches[:limit]

    def get_stats(self) -> dict:
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(Counter(e.type.value for e in self._history)),
        }

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """The next matching event, or None when ``timeout`` expires first."""
        future: asyncio.Future[RunEvent] = asyncio.get_running_loop().create_future()

        async def resolve(event: RunEvent) -> None:
            if not future.done():
                future.set_result(event)

        sub_id = self.subscribe([event_type], resolve, filter_run=run_id, filter_node=node_id)
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
