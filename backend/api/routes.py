"""HTTP API routes for the app builder backend.

This module defines the HTTP endpoints for projects, messages, question
answers, sandbox regeneration, credit usage and health checks. Real-time
events are handled via WebSocket in websocket.py.

Caller identity comes from the ``X-User-Id`` header; projects are only
visible to the user that created them.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Header, HTTPException, Path, status

from coordinator import FragmentNotFoundError, ProjectNotFoundError, QuestionNotFoundError
from credits import InsufficientCreditsError, seconds_until
from events.types import RunRequestedEvent
from models.schemas import (
    AnswerQuestionRequest,
    AnswerQuestionResponse,
    CreateMessageRequest,
    CreateMessageResponse,
    CreateProjectRequest,
    CreateProjectResponse,
    EmitResponseRequest,
    EmitResponseResponse,
    HealthResponse,
    LegacyAnswerRequest,
    LegacyAnswerResponse,
    MessageResponse,
    MessageRole,
    MessageType,
    ProjectResponse,
    QuestionStateResponse,
    RegenerateSandboxResponse,
    RunResponse,
    UsageResponse,
)

if TYPE_CHECKING:
    from coordinator import RunOutcome, WorkflowCoordinator
    from credits import CreditLedger

logger = structlog.get_logger(__name__)

router = APIRouter()
debug_router = APIRouter(prefix="/api/debug")

UserId = Annotated[str, Header(description="Caller identity")]

OUT_OF_CREDITS_DETAIL = "You have run out of credits"

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_run_response(outcome: RunOutcome) -> RunResponse:
    return RunResponse(status=outcome.status, run_id=outcome.run_id, reason=outcome.reason)


def _project_not_found(project_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Project {project_id} not found",
    )


# Coordinator and credit ledger dependencies (set during application startup)
_coordinator: WorkflowCoordinator | None = None
_credit_ledger: CreditLedger | None = None


def set_coordinator(coordinator: WorkflowCoordinator) -> None:
    """Set the workflow coordinator instance for the routes.

    This should be called during application startup to inject the
    coordinator dependency.

    Args:
        coordinator: The WorkflowCoordinator instance to use for all routes.
    """
    global _coordinator
    _coordinator = coordinator
    logger.info("coordinator_configured")


def get_coordinator() -> WorkflowCoordinator:
    """Get the workflow coordinator instance.

    Raises:
        RuntimeError: If the coordinator has not been configured.
    """
    if _coordinator is None:
        logger.error("coordinator_not_configured")
        raise RuntimeError(
            "WorkflowCoordinator not configured. Call set_coordinator() during startup."
        )
    return _coordinator


def set_credit_ledger(ledger: CreditLedger) -> None:
    """Set the credit ledger used to gate new runs."""
    global _credit_ledger
    _credit_ledger = ledger
    logger.info("credit_ledger_configured")


def get_credit_ledger() -> CreditLedger:
    """Get the credit ledger instance.

    Raises:
        RuntimeError: If the ledger has not been configured.
    """
    if _credit_ledger is None:
        logger.error("credit_ledger_not_configured")
        raise RuntimeError(
            "CreditLedger not configured. Call set_credit_ledger() during startup."
        )
    return _credit_ledger


async def _consume_credit(user_id: str) -> None:
    """Charge one credit, mapping exhaustion to 429."""
    try:
        await get_credit_ledger().consume(user_id)
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=OUT_OF_CREDITS_DETAIL,
            headers={"Retry-After": str(seconds_until(e.resets_at))},
        ) from e
    except Exception as e:
        logger.error("credit_consume_failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Something went wrong",
        ) from e


async def _submit_value(project_id: str, value: str) -> tuple[MessageResponse, RunResponse]:
    """Persist a user value and ask the coordinator to run on it."""
    coordinator = get_coordinator()
    message = await coordinator.store.create_message(
        project_id=project_id,
        role=MessageRole.USER,
        message_type=MessageType.RESULT,
        content=value,
    )
    outcome = await coordinator.dispatch(RunRequestedEvent(project_id=project_id, value=value))
    return MessageResponse.model_validate(message), _to_run_response(outcome)


# -----------------------------------------------------------------------------
# Projects and messages
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects",
    response_model=CreateProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
    description="Create a project, optionally submitting its first value.",
)
async def create_project(
    request: CreateProjectRequest,
    x_user_id: UserId = "anonymous",
) -> CreateProjectResponse:
    """Create a project for the calling user.

    When ``value`` is given, one credit is charged and a run starts on it.
    """
    coordinator = get_coordinator()

    if request.value is not None:
        await _consume_credit(x_user_id)

    project = await coordinator.store.create_project(user_id=x_user_id, name=request.name)
    logger.info("project_created", project_id=project["id"], user_id=x_user_id)

    if request.value is None:
        return CreateProjectResponse(project=ProjectResponse.model_validate(project))

    message, run = await _submit_value(project["id"], request.value)
    return CreateProjectResponse(
        project=ProjectResponse.model_validate(project),
        message=message,
        run=run,
    )


@router.get(
    "/api/projects/{project_id}",
    response_model=ProjectResponse,
    summary="Get project",
)
async def get_project(
    project_id: Annotated[str, Path(description="The project ID")],
    x_user_id: UserId = "anonymous",
) -> ProjectResponse:
    """Return a project owned by the caller."""
    project = await get_coordinator().store.get_project(project_id, x_user_id)
    if project is None:
        raise _project_not_found(project_id)
    return ProjectResponse.model_validate(project)


@router.get(
    "/api/projects/{project_id}/messages",
    response_model=list[MessageResponse],
    summary="List messages",
    description="List a project's messages ordered by update time, fragments embedded.",
)
async def list_messages(
    project_id: Annotated[str, Path(description="The project ID")],
    x_user_id: UserId = "anonymous",
) -> list[MessageResponse]:
    """List every message of a project owned by the caller."""
    store = get_coordinator().store
    if await store.get_project(project_id, x_user_id) is None:
        raise _project_not_found(project_id)

    messages = await store.list_messages(project_id)
    logger.debug("messages_listed", project_id=project_id, count=len(messages))
    return [MessageResponse.model_validate(message) for message in messages]


@router.post(
    "/api/projects/{project_id}/messages",
    response_model=CreateMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a value",
    description="Persist a user message and request a run (one credit).",
)
async def create_message(
    project_id: Annotated[str, Path(description="The project ID")],
    request: CreateMessageRequest,
    x_user_id: UserId = "anonymous",
) -> CreateMessageResponse:
    """Persist the user's value and request a run on it.

    Raises:
        HTTPException: 404 if the project is unknown, 429 when out of credits.
    """
    coordinator = get_coordinator()
    if await coordinator.store.get_project(project_id, x_user_id) is None:
        raise _project_not_found(project_id)

    await _consume_credit(x_user_id)

    message, run = await _submit_value(project_id, request.value)
    logger.info(
        "value_submitted",
        project_id=project_id,
        run_status=run.status,
        run_id=run.run_id,
        value_length=len(request.value),
    )
    return CreateMessageResponse(message=message, run=run)


@router.post(
    "/api/projects/{project_id}/answers",
    response_model=AnswerQuestionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Answer a question",
    description="Answer the given (or latest open) question and resume its run.",
)
async def answer_question(
    project_id: Annotated[str, Path(description="The project ID")],
    request: AnswerQuestionRequest,
    x_user_id: UserId = "anonymous",
) -> AnswerQuestionResponse:
    """Persist the answer and deliver it to the run waiting on it."""
    coordinator = get_coordinator()
    try:
        result = await coordinator.answer_question(
            project_id,
            request.answer,
            question_id=request.question_id,
            user_id=x_user_id,
        )
    except ProjectNotFoundError:
        raise _project_not_found(project_id) from None
    except QuestionNotFoundError as e:
        raise HTTPException(
            status_code=(
                status.HTTP_404_NOT_FOUND
                if request.question_id
                else status.HTTP_409_CONFLICT
            ),
            detail=str(e),
        ) from None

    return AnswerQuestionResponse(
        message=MessageResponse.model_validate(result["message"]),
        question_id=result["question_id"],
        delivered=result["delivered"],
    )


@router.post(
    "/api/projects/{project_id}/fragments/{fragment_id}/regenerate",
    response_model=RegenerateSandboxResponse,
    summary="Regenerate a fragment's sandbox",
    description="Create a fresh sandbox, replay the fragment's files and update its URL.",
)
async def regenerate_sandbox(
    project_id: Annotated[str, Path(description="The project ID")],
    fragment_id: Annotated[str, Path(description="The fragment ID")],
    x_user_id: UserId = "anonymous",
) -> RegenerateSandboxResponse:
    """Rebuild the sandbox behind a fragment."""
    coordinator = get_coordinator()
    try:
        result = await coordinator.regenerate_sandbox(project_id, fragment_id, user_id=x_user_id)
    except ProjectNotFoundError:
        raise _project_not_found(project_id) from None
    except FragmentNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Fragment not found",
        ) from None
    except Exception as e:
        logger.error(
            "sandbox_regeneration_failed",
            project_id=project_id,
            fragment_id=fragment_id,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to regenerate sandbox",
        ) from e

    return RegenerateSandboxResponse.model_validate(result)


@router.post(
    "/api/user-question",
    response_model=LegacyAnswerResponse,
    summary="Answer the open question (legacy)",
    description="Legacy answer path; the answer goes to the project's open question.",
)
async def legacy_user_question(request: LegacyAnswerRequest) -> LegacyAnswerResponse:
    """Answer a project's open question without naming it."""
    coordinator = get_coordinator()
    try:
        result = await coordinator.answer_question(request.project_id, request.answer)
    except ProjectNotFoundError:
        raise _project_not_found(request.project_id) from None
    except QuestionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None

    logger.info(
        "legacy_answer_received",
        project_id=request.project_id,
        question_id=result["question_id"],
        delivered=result["delivered"],
    )
    return LegacyAnswerResponse(success=True, question_id=result["question_id"])


@router.get(
    "/api/usage",
    response_model=UsageResponse,
    summary="Credit usage",
)
async def get_usage(x_user_id: UserId = "anonymous") -> UsageResponse:
    """Return the caller's remaining credits."""
    return UsageResponse.model_validate(await get_credit_ledger().get_status(x_user_id))


# -----------------------------------------------------------------------------
# Debug
# -----------------------------------------------------------------------------


@debug_router.get(
    "/projects/{project_id}/question-state",
    response_model=QuestionStateResponse,
    summary="Question state",
)
async def debug_question_state(
    project_id: Annotated[str, Path(description="The project ID")],
) -> QuestionStateResponse:
    """Latest question, latest user message and whether a run is waiting."""
    try:
        state = await get_coordinator().get_question_state(project_id)
    except ProjectNotFoundError:
        raise _project_not_found(project_id) from None
    return QuestionStateResponse.model_validate(state)


@debug_router.post(
    "/projects/{project_id}/response",
    response_model=EmitResponseResponse,
    summary="Emit a response event",
)
async def debug_emit_response(
    project_id: Annotated[str, Path(description="The project ID")],
    request: EmitResponseRequest,
) -> EmitResponseResponse:
    """Send a response event for a question without persisting a message."""
    try:
        result = await get_coordinator().emit_response(
            project_id, request.response, question_id=request.question_id
        )
    except ProjectNotFoundError:
        raise _project_not_found(project_id) from None
    except QuestionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None

    logger.info(
        "debug_response_emitted",
        project_id=project_id,
        question_id=result["question_id"],
        delivered=result["delivered"],
    )
    return EmitResponseResponse.model_validate(result)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and sandbox status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns Docker daemon connectivity and active sandbox count in addition
    to the basic health status and timestamp.
    """
    docker_available = False
    active_sandboxes = 0

    try:
        provider = get_coordinator().sandbox_provider
        docker_available = provider.is_docker_available()
        active_sandboxes = provider.get_active_sandbox_count()
    except RuntimeError:
        # Coordinator not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if docker_available else "unhealthy",
        timestamp=time.time(),
        docker_available=docker_available,
        active_sandboxes=active_sandboxes,
    )
