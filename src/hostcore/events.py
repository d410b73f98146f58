"""
Lifecycle events for deployed applications.

The supervisor and the deploy pipeline record what happened to an
application as immutable events. Subscribers react to them; most
importantly the supervisor subscribes to ``process.exited`` to mark a
crashed application as stopped without any polling.

Usage:
    from hostcore.events import Event, EventType, EventStore

    store = EventStore()
    unsubscribe = store.subscribe(EventType.APP_STARTED, handler)
    await store.append(Event(EventType.APP_STARTED, "my-app", {"pid": 1234}))
"""
from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional
import asyncio
import inspect
import json
import logging
import uuid

logger = logging.getLogger("hostcore.events")


class EventType(str, Enum):
    """Event types for the application lifecycle."""
    APP_DEPLOYED = "app.deployed"
    APP_DEPLOY_FAILED = "app.deploy_failed"
    APP_STARTED = "app.started"
    APP_STOPPED = "app.stopped"
    APP_DELETED = "app.deleted"
    PROCESS_EXITED = "process.exited"
    SHELL_COMMAND_REJECTED = "shell.command_rejected"


@dataclass(frozen=True)
class Event:
    """
    Immutable event record.

    Attributes:
        event_type: The type of event
        aggregate_id: Name of the application the event belongs to
        data: Event payload
        timestamp: When the event occurred (UTC)
        event_id: Unique identifier for this event
        sequence: Position in the event stream (set by EventStore)
    """
    event_type: EventType | str
    aggregate_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value if isinstance(self.event_type, EventType) else self.event_type,
            "aggregate_id": self.aggregate_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


class EventStore:
    """
    Append-only, bounded in-memory event log with subscriptions.

    Events are optionally appended to a JSONL file. Handlers may be plain
    functions or coroutines; a failing handler is logged and does not stop
    delivery to the others.
    """

    def __init__(self, persistence_path: Optional[Path] = None, max_events: int = 1000):
        self._events: Deque[Event] = deque(maxlen=max_events)
        self._subscribers: Dict[EventType | str, List[Callable]] = defaultdict(list)
        self._global_subscribers: List[Callable] = []
        self._lock = asyncio.Lock()
        self._sequence = 0
        self._persistence_path = Path(persistence_path) if persistence_path else None

    def _write(self, event: Event) -> None:
        if not self._persistence_path:
            return
        self._persistence_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._persistence_path, "a") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")

    async def append(self, event: Event) -> Event:
        """
        Append event to store and notify subscribers.

        Args:
            event: Event to append

        Returns:
            Event with sequence number set
        """
        async with self._lock:
            self._sequence += 1
            sequenced = replace(event, sequence=self._sequence)
            self._events.append(sequenced)
            try:
                self._write(sequenced)
            except OSError as e:
                logger.warning(f"Could not persist event {sequenced.event_id}: {e}")

        await self._notify_subscribers(sequenced)
        return sequenced

    async def _notify_subscribers(self, event: Event) -> None:
        handlers = list(self._subscribers.get(event.event_type, [])) + list(self._global_subscribers)

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event handler failed for {event.event_type}")

    def subscribe(self, event_type: EventType | str, handler: Callable) -> Callable[[], None]:
        """
        Subscribe to events of a specific type.

        Returns:
            Unsubscribe function
        """
        self._subscribers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: Callable) -> Callable[[], None]:
        self._global_subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._global_subscribers:
                self._global_subscribers.remove(handler)

        return unsubscribe

    def get_events(
        self,
        event_type: Optional[EventType | str] = None,
        aggregate_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        events = list(self._events)
        if aggregate_id:
            events = [e for e in events if e.aggregate_id == aggregate_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if limit is not None:
            events = events[-limit:]
        return events

    def count(self, event_type: Optional[EventType | str] = None) -> int:
        if event_type:
            return len([e for e in self._events if e.event_type == event_type])
        return len(self._events)

    def clear(self) -> None:
        self._events.clear()
        self._sequence = 0
