"""Event type definitions for the Sitesmith event system.

Two families of events live here:

- Workflow events (``RunRequestedEvent``, ``UserResponseEvent``) enter the
  system from the API and drive the workflow coordinator. Their wire format
  uses camelCase field names.
- Project events (``ProjectEvent``) flow from the coordinator and the agent
  network to the chat UI over WebSocket. Every meaningful state change of a
  run produces one.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RUN_REQUESTED_EVENT = "code-agent/run"
USER_RESPONSE_EVENT = "project/user.response"


class EventType(StrEnum):
    """All project event types streamed to the UI.

    Events are categorized by:
    - Conversation: Message rows appended to the project
    - Run lifecycle: Start, skip, suspension, resumption and terminal states
    - Agent activity: Which agent is active and which tools it calls
    - Questions: Questions asked of the user and their answers
    - Workspace: File changes and sandbox readiness
    - Observability: LLM call metrics
    """

    # Conversation
    MESSAGE_CREATED = "message_created"

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_SKIPPED = "run_skipped"
    RUN_WAITING = "run_waiting"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETE = "run_complete"
    RUN_ERROR = "run_error"
    PROJECT_CLOSED = "project_closed"

    # Agent activity
    AGENT_ACTIVE = "agent_active"
    AGENT_MESSAGE = "agent_message"
    AGENT_TOOL_CALL = "agent_tool_call"
    AGENT_TOOL_RESULT = "agent_tool_result"
    AGENT_ERROR = "agent_error"

    # Questions
    QUESTION_ASKED = "question_asked"
    QUESTION_ANSWERED = "question_answered"
    QUESTION_EXPIRED = "question_expired"

    # Workspace
    FILE_CHANGED = "file_changed"
    SANDBOX_READY = "sandbox_ready"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class ProjectEvent(BaseModel):
    """An event emitted while a project's workflow runs.

    Payload schemas by event type:

    MESSAGE_CREATED:
        - message: dict - The persisted message row (fragment included)

    RUN_SKIPPED:
        - reason: str - "awaiting_user_response" or "run_in_progress"

    RUN_WAITING:
        - question_id: str - The persisted question message the run waits on

    AGENT_ACTIVE:
        - agent: str - gather_business_info or generate_code
        - iteration: int - Network iteration number

    AGENT_TOOL_CALL / AGENT_TOOL_RESULT:
        - tool: str - Tool name
        - args: dict - Arguments (call only)
        - result: str - Truncated result (result only)
        - success: bool - Whether the tool succeeded (result only)

    QUESTION_ASKED:
        - question_id: str - Persisted message id (correlation id)
        - question: str - The question text
        - step: int - Question number within the run

    FILE_CHANGED:
        - path: str - File path relative to the sandbox workdir
        - sandbox_id: str - Which sandbox the file is in

    SANDBOX_READY:
        - sandbox_id: str - The sandbox handle
        - url: str - Preview URL
        - recreated: bool - Whether the sandbox was provisioned fresh

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    project_id: str
    run_id: str | None = None
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class WorkflowEvent(BaseModel):
    """Base class for inbound events that drive the workflow coordinator."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str


class RunRequestedEvent(WorkflowEvent):
    """A user submitted a new value for a project."""

    name: Literal["code-agent/run"] = RUN_REQUESTED_EVENT
    value: str


class UserResponseEvent(WorkflowEvent):
    """A user answered a question the agent asked.

    ``question_id`` must equal the identifier of the persisted QUESTION
    message; it is the only thing the correlator matches on.
    """

    name: Literal["project/user.response"] = USER_RESPONSE_EVENT
    response: str
    question_id: str
    question_content: str = ""
    question_metadata: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "openai/gpt-4o")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
