"""Models module for Pydantic schemas and the SQLite message store.

This module exposes the request/response models used by the API and the
MessageStore that persists projects, messages, fragments and runs.
"""

from models.database import MessageStore
from models.schemas import (
    ACTIVE_RUN_STATUSES,
    AnswerQuestionRequest,
    AnswerQuestionResponse,
    CreateMessageRequest,
    CreateMessageResponse,
    CreateProjectRequest,
    CreateProjectResponse,
    EmitResponseRequest,
    EmitResponseResponse,
    FragmentResponse,
    HealthResponse,
    LegacyAnswerRequest,
    LegacyAnswerResponse,
    MessageResponse,
    MessageRole,
    MessageType,
    PendingQuestionStatus,
    ProjectResponse,
    QuestionStateResponse,
    RegenerateSandboxResponse,
    RunResponse,
    RunStatus,
    UsageResponse,
)

__all__ = [
    "ACTIVE_RUN_STATUSES",
    "AnswerQuestionRequest",
    "AnswerQuestionResponse",
    "CreateMessageRequest",
    "CreateMessageResponse",
    "CreateProjectRequest",
    "CreateProjectResponse",
    "EmitResponseRequest",
    "EmitResponseResponse",
    "FragmentResponse",
    "HealthResponse",
    "LegacyAnswerRequest",
    "LegacyAnswerResponse",
    "MessageResponse",
    "MessageRole",
    "MessageStore",
    "MessageType",
    "PendingQuestionStatus",
    "ProjectResponse",
    "QuestionStateResponse",
    "RegenerateSandboxResponse",
    "RunResponse",
    "RunStatus",
    "UsageResponse",
]
