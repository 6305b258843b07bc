"""Pydantic schemas and enums for persisted rows and the HTTP API.

All models use Pydantic v2. Enum values match what is stored in SQLite.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(StrEnum):
    """Who authored a message."""

    USER = "USER"
    ASSISTANT = "ASSISTANT"


class MessageType(StrEnum):
    """What a message represents.

    QUESTION is the only type written for agent questions. AGENT_QUESTION
    exists so legacy rows still load; it is never written and never counts
    as an outstanding question.
    """

    RESULT = "RESULT"
    QUESTION = "QUESTION"
    AGENT_QUESTION = "AGENT_QUESTION"
    ERROR = "ERROR"


class RunStatus(StrEnum):
    """Workflow run lifecycle status."""

    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_RUN_STATUSES = (RunStatus.RUNNING, RunStatus.WAITING)


class PendingQuestionStatus(StrEnum):
    """State of a persisted wait for a user's answer."""

    WAITING = "waiting"
    ANSWERED = "answered"
    EXPIRED = "expired"


class CreateProjectRequest(BaseModel):
    """Request body for creating a project."""

    name: str = Field(
        default="",
        max_length=200,
        description="Display name of the project",
        examples=["Bakery site"],
    )
    value: str | None = Field(
        default=None,
        min_length=1,
        max_length=10000,
        description="Optional first message; starts a run immediately",
        examples=["Build me a website for my bakery"],
    )


class ProjectResponse(BaseModel):
    """A project row."""

    id: str = Field(description="Unique project identifier")
    user_id: str = Field(description="Owning user reference")
    name: str = Field(default="", description="Display name")
    sandbox_id: str | None = Field(
        default=None,
        description="Sandbox used by the most recent run",
    )
    business_info: dict[str, str] = Field(
        default_factory=dict,
        description="Business details gathered so far",
    )
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last update")


class FragmentResponse(BaseModel):
    """A generated artifact snapshot."""

    id: str = Field(description="Unique fragment identifier")
    message_id: str = Field(description="Owning RESULT message")
    sandbox_url: str = Field(description="Preview URL of the sandbox")
    title: str = Field(description="Short title of the artifact")
    files: dict[str, str] = Field(description="Mapping of path to file content")
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last update")


class MessageResponse(BaseModel):
    """One conversation turn, with its fragment when it has one."""

    id: str = Field(description="Unique message identifier")
    project_id: str = Field(description="Owning project")
    role: MessageRole = Field(description="USER or ASSISTANT")
    type: MessageType = Field(description="RESULT, QUESTION or ERROR")
    content: str = Field(description="Message text")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Correlation fields such as questionId, respondingTo, step",
    )
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last update")
    fragment: FragmentResponse | None = Field(
        default=None,
        description="Fragment owned by a RESULT message",
    )


class CreateMessageRequest(BaseModel):
    """Request body for submitting a new user value."""

    value: str = Field(
        min_length=1,
        max_length=10000,
        description="What the user wants built or changed",
        examples=["Build me a website for my bakery"],
    )


class RunResponse(BaseModel):
    """Outcome of asking the coordinator to start a run."""

    status: Literal["started", "skipped"] = Field(description="Whether a run started")
    run_id: str | None = Field(default=None, description="Id of the started run")
    reason: str | None = Field(
        default=None,
        description="Why the request was skipped",
    )


class CreateMessageResponse(BaseModel):
    """Response for a submitted user value."""

    message: MessageResponse
    run: RunResponse


class CreateProjectResponse(BaseModel):
    """Response for a created project, with the first run when a value was given."""

    project: ProjectResponse
    message: MessageResponse | None = None
    run: RunResponse | None = None


class AnswerQuestionRequest(BaseModel):
    """Request body for answering an agent question."""

    answer: str = Field(
        min_length=1,
        max_length=10000,
        description="The user's answer",
        examples=["Sunrise Bakery"],
    )
    question_id: str | None = Field(
        default=None,
        description="Question message to answer; defaults to the latest open one",
    )


class AnswerQuestionResponse(BaseModel):
    """Response for an answered question."""

    message: MessageResponse
    question_id: str = Field(description="The question that was answered")
    delivered: bool = Field(
        description="Whether a waiting run accepted the answer",
    )


class LegacyAnswerRequest(BaseModel):
    """Request body of the legacy answer endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    answer: str = Field(min_length=1, max_length=10000)
    project_id: str = Field(alias="projectId")


class LegacyAnswerResponse(BaseModel):
    """Response of the legacy answer endpoint."""

    success: bool
    question_id: str | None = None


class RegenerateSandboxResponse(BaseModel):
    """Result of recreating a fragment's sandbox."""

    success: bool
    new_sandbox_url: str
    sandbox_id: str
    fragment: FragmentResponse
    failed_files: list[str] = Field(
        default_factory=list,
        description="Paths that could not be replayed into the new sandbox",
    )


class QuestionStateResponse(BaseModel):
    """Question/answer state of a project (debug)."""

    latest_question: MessageResponse | None = None
    latest_user_message: MessageResponse | None = None
    has_unanswered_question: bool
    waiting_for_response: bool


class EmitResponseRequest(BaseModel):
    """Request body for emitting a synthetic response event (debug)."""

    response: str = Field(min_length=1, max_length=10000)
    question_id: str | None = Field(
        default=None,
        description="Question to target; defaults to the latest question",
    )


class EmitResponseResponse(BaseModel):
    """Result of a synthetic response event (debug)."""

    question_id: str
    delivered: bool


class UsageResponse(BaseModel):
    """Remaining credits for the calling user."""

    remaining_points: int = Field(ge=0)
    consumed_points: int = Field(ge=0)
    resets_at: float | None = Field(
        default=None,
        description="Unix timestamp when the credit window resets",
    )


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_sandboxes: int = Field(
        default=0,
        description="Number of currently live sandbox containers",
    )
