"""Event system for the app builder backend.

This package provides both the inbound workflow events that drive a
project's agent run and the outbound project events streamed to the chat UI.

Key Components:
    - RunRequestedEvent / UserResponseEvent: Inbound workflow events
    - EventType: Enum of all UI event types
    - ProjectEvent: Pydantic model for events streamed to the UI
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Token and latency metrics for individual LLM calls

Event Flow:
    1. The API dispatches a workflow event to the WorkflowCoordinator
    2. The coordinator and agent network publish ProjectEvents on the EventBus
    3. The WebSocket handler subscribes to the project's events
    4. Events are forwarded to the chat UI
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    RUN_REQUESTED_EVENT,
    USER_RESPONSE_EVENT,
    EventType,
    LLMMetrics,
    ProjectEvent,
    RunRequestedEvent,
    UserResponseEvent,
    WorkflowEvent,
)

__all__ = [
    # Workflow events
    "RUN_REQUESTED_EVENT",
    "USER_RESPONSE_EVENT",
    "WorkflowEvent",
    "RunRequestedEvent",
    "UserResponseEvent",
    # Project events
    "EventType",
    "ProjectEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
