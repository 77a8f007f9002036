"""
Generation Event Bus

In-process pub/sub carrying the generation protocol:

    project.generate       ──►  three code-agent/run (one per step type)
    code-agent/run         ──►  code-agent/finished  (RESULT or ERROR)
                                code-agent/failed    (fatal, e.g. no sandbox)
    3 x code-agent/finished ──► sandbox.setup
    sandbox.setup          ──►  sandbox.ready

Waiters are registered with expect() before the events they wait for are
triggered, so a branch that finishes instantly can never be missed.
"""

from typing import Dict, Any, List, Optional, Callable, Union
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import threading
from collections import defaultdict
import json

from appforge.core.logging_config import logger


class EventType(str, Enum):
    """Events of the generation pipeline"""
    PROJECT_GENERATE = "project.generate"
    AGENT_RUN = "code-agent/run"
    AGENT_FINISHED = "code-agent/finished"
    AGENT_FAILED = "code-agent/failed"
    SANDBOX_SETUP = "sandbox.setup"
    SANDBOX_READY = "sandbox.ready"


@dataclass
class GenerationEvent:
    """An event on the generation bus"""
    type: EventType
    project_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = None
    correlation_id: Optional[str] = None  # generation id shared by one fan-out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "correlation_id": self.correlation_id
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


EventHandler = Callable[[GenerationEvent], Any]  # sync or coroutine function
EventPredicate = Callable[[GenerationEvent], bool]


class EventWaiter:
    """
    Future-backed wait for the first event matching a predicate.

    Subscribed on construction; unsubscribes itself once resolved or abandoned.
    """

    def __init__(self, bus: "EventBus", event_type: EventType, predicate: EventPredicate):
        self._bus = bus
        self.event_type = event_type
        self._predicate = predicate
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        bus.subscribe(event_type, self._on_event)

    def _on_event(self, event: GenerationEvent):
        if not self._future.done() and self._predicate(event):
            self._future.set_result(event)
            self.cancel()

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: Optional[float] = None) -> GenerationEvent:
        """Raises asyncio.TimeoutError when nothing matched within timeout"""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)
        finally:
            self.cancel()

    def cancel(self):
        self._bus.unsubscribe(self.event_type, self._on_event)


class EventBus:
    """
    Central event bus for the generation pipeline.

    Features:
    - Pub/sub messaging, async and sync handlers
    - One-shot waiters with timeouts (expect / wait_for)
    - Bounded event history for inspection
    """

    def __init__(self, max_history: int = 1000):
        self._lock = threading.Lock()
        self._handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self._history: List[GenerationEvent] = []
        self._max_history = max_history

    def subscribe(self, event_type: Union[EventType, str], handler: EventHandler):
        with self._lock:
            event_type = EventType(event_type)
            self._handlers[event_type].append(handler)
        logger.debug(f"[EventBus] Registered handler for {event_type.value}")

    def unsubscribe(self, event_type: Union[EventType, str], handler: EventHandler):
        with self._lock:
            handlers = self._handlers[EventType(event_type)]
            if handler in handlers:
                handlers.remove(handler)

    async def publish(self, event: GenerationEvent):
        """
        Deliver an event to every current subscriber, in subscription order.

        A failing handler is logged and does not stop delivery to the others.
        """
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]
            handlers = list(self._handlers[event.type])

        logger.debug(f"[EventBus] Publishing {event.type.value} for {event.project_id}")

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[EventBus] Handler error for {event.type.value}: {e}")

    async def emit(
        self,
        event_type: EventType,
        project_id: str,
        data: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> GenerationEvent:
        event = GenerationEvent(
            type=event_type,
            project_id=project_id,
            data=data or {},
            source=source,
            correlation_id=correlation_id
        )
        await self.publish(event)
        return event

    def expect(self, event_type: EventType, predicate: Optional[EventPredicate] = None) -> EventWaiter:
        """Register a waiter now; await its wait() later"""
        return EventWaiter(self, event_type, predicate or (lambda e: True))

    async def wait_for(
        self,
        event_type: EventType,
        predicate: Optional[EventPredicate] = None,
        timeout: Optional[float] = None
    ) -> GenerationEvent:
        return await self.expect(event_type, predicate).wait(timeout)

    def get_history(
        self,
        project_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100
    ) -> List[GenerationEvent]:
        """Get event history with optional filters"""
        with self._lock:
            events = list(self._history)

        if project_id:
            events = [e for e in events if e.project_id == project_id]
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def clear_history(self):
        with self._lock:
            self._history.clear()
