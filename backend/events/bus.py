"""Async event bus streaming project events to chat UI subscribers.

The bus is keyed by project: every WebSocket connected to a project gets
its own asyncio.Queue, events published before anyone is listening are
buffered, and a bounded history is kept so reconnecting clients can replay
what they missed.
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, ProjectEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for project events.

    Event Buffering:
        Events published before any subscriber connects are buffered and
        delivered to the first subscriber, so a run that starts before the
        chat UI opens its socket is not lost. Only the newest
        MAX_BUFFER_PER_PROJECT events are kept; older ones remain available
        through the history.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock; queue puts
        always happen on the event loop.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("proj_123")
        >>> await bus.publish(ProjectEvent(
        ...     type=EventType.RUN_STARTED,
        ...     project_id="proj_123",
        ...     run_id="run_abc",
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("proj_123", queue)

    Attributes:
        _subscribers: Dict mapping project_id to list of subscriber queues
        _event_buffer: Dict mapping project_id to list of buffered events
        _event_history: Dict mapping project_id to replayable events
        _lock: Threading lock for the subscriber registry
    """

    MAX_HISTORY_PER_PROJECT = 2000
    MAX_BUFFER_PER_PROJECT = 500

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[ProjectEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[ProjectEvent]] = defaultdict(list)
        self._event_history: dict[str, list[ProjectEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, project_id: str) -> asyncio.Queue[ProjectEvent]:
        """Subscribe to events for a project.

        Buffered events for the project are delivered to the new queue
        immediately.

        Args:
            project_id: The project to subscribe to

        Returns:
            An asyncio.Queue receiving ProjectEvent objects
        """
        queue: asyncio.Queue[ProjectEvent] = asyncio.Queue()
        buffered_events: list[ProjectEvent] = []

        with self._lock:
            self._subscribers[project_id].append(queue)
            subscriber_count = len(self._subscribers[project_id])
            if project_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(project_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            project_id=project_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, project_id: str, queue: asyncio.Queue[ProjectEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored.

        Args:
            project_id: The project to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            queues = self._subscribers.get(project_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", project_id=project_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[project_id]
            logger.info(
                "subscriber_removed",
                project_id=project_id,
                subscriber_count=len(queues),
            )

    async def publish(self, event: ProjectEvent) -> None:
        """Publish an event to all subscribers of its project.

        Without subscribers the event is buffered. Every event except the
        close sentinel is also recorded in the project's history.

        Args:
            event: The ProjectEvent to publish
        """
        with self._lock:
            if event.type != EventType.PROJECT_CLOSED:
                history = self._event_history[event.project_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_PROJECT:
                    del history[: len(history) - self.MAX_HISTORY_PER_PROJECT]

            subscribers = list(self._subscribers.get(event.project_id, []))
            if not subscribers:
                buffer = self._event_buffer[event.project_id]
                buffer.append(event)
                if len(buffer) > self.MAX_BUFFER_PER_PROJECT:
                    del buffer[: len(buffer) - self.MAX_BUFFER_PER_PROJECT]
                logger.debug(
                    "event_buffered",
                    project_id=event.project_id,
                    event_type=event.type.value,
                )
                return

        # A stalled consumer (frozen WebSocket client) must not block the run
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    project_id=event.project_id,
                    event_type=event.type.value,
                )
            except Exception:
                logger.warning(
                    "event_delivery_failed",
                    project_id=event.project_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            project_id=event.project_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, project_id: str) -> list[ProjectEvent]:
        """Return the stored events for a project in chronological order."""
        with self._lock:
            return list(self._event_history.get(project_id, []))

    async def close_project(self, project_id: str) -> None:
        """Signal every subscriber of a project that the stream has ended.

        A PROJECT_CLOSED sentinel is put into each queue so consumers can
        exit their read loops. Subscribers and buffered events are dropped;
        history is kept for reconnects.

        Args:
            project_id: The project whose stream is closing
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(project_id, [])
            buffered = self._event_buffer.pop(project_id, [])

        for queue in queues_to_signal:
            await queue.put(
                ProjectEvent(
                    type=EventType.PROJECT_CLOSED,
                    project_id=project_id,
                    data={"reason": "project_closed"},
                )
            )

        logger.info(
            "project_stream_closed",
            project_id=project_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, project_id: str) -> int:
        """Get the number of subscribers for a project."""
        with self._lock:
            return len(self._subscribers.get(project_id, []))

    def get_active_projects(self) -> list[str]:
        """Get the projects with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
