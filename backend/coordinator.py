"""Workflow coordinator for app-builder runs.

This module provides the WorkflowCoordinator class that turns inbound
workflow events into agent network runs and owns the lifecycle of each run:
sandbox acquisition, network execution, suspension on questions, resumption
on answers or timeouts, and finalization into exactly one RESULT or ERROR
message.

The WorkflowCoordinator coordinates between:
- MessageStore: Projects, messages, fragments, runs and pending questions
- SandboxProvider: Isolated Next.js environments (via sandbox.lifecycle)
- QuestionCorrelator: Persisted question waits and their resolution
- AgentNetworkGraph: The checkpointed LangGraph agent network
- EventBus: Real-time event streaming to the frontend

Usage:
    >>> coordinator = WorkflowCoordinator(
    ...     store, provider, event_bus, correlator, network, llm_client
    ... )
    >>> outcome = await coordinator.dispatch(
    ...     RunRequestedEvent(project_id=project_id, value="Build a bakery site")
    ... )
    >>> outcome.status
    'started'
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from agents.network_graph import (
    AgentNetworkGraph,
    NetworkRunResult,
    create_network_state,
)
from agents.prompts import FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT
from agents.utils import LLMClient, complete_text
from config import settings
from correlator import QuestionCorrelator
from events.bus import EventBus
from events.types import (
    EventType,
    ProjectEvent,
    RunRequestedEvent,
    UserResponseEvent,
    WorkflowEvent,
)
from models.database import MessageStore
from models.schemas import (
    ACTIVE_RUN_STATUSES,
    MessageRole,
    MessageType,
    PendingQuestionStatus,
    RunStatus,
)
from sandbox import SandboxProvider, acquire_sandbox, provision_sandbox

logger = structlog.get_logger()

ERROR_MESSAGE = "Something went wrong"
DEFAULT_FRAGMENT_TITLE = "Fragment"
DEFAULT_RESPONSE = "Here you go"


class ProjectNotFoundError(Exception):
    """Raised when a project does not exist (or belongs to another user)."""


class FragmentNotFoundError(Exception):
    """Raised when a fragment does not exist within a project."""


class QuestionNotFoundError(Exception):
    """Raised when there is no question to answer."""


@dataclass
class RunOutcome:
    """Result of a run request.

    Attributes:
        status: "started" when a run was scheduled, otherwise "skipped"
        run_id: The scheduled run (None when skipped)
        reason: Why the request was skipped
    """

    status: Literal["started", "skipped"]
    run_id: str | None = None
    reason: str | None = None


@dataclass
class _RunLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _history_entry(message: dict[str, Any]) -> dict[str, str]:
    role = "assistant" if message["role"] == MessageRole.ASSISTANT.value else "user"
    return {"role": role, "content": message["content"]}


def _resume_payload(record: dict[str, Any] | None) -> dict[str, Any] | None:
    """Resume payload for a resolved pending record, None while still waiting."""
    if record is None or record["status"] == PendingQuestionStatus.WAITING.value:
        return None
    if record["status"] == PendingQuestionStatus.EXPIRED.value:
        return {"question_id": record["question_id"], "timed_out": True}
    return {"question_id": record["question_id"], "answer": record.get("answer") or ""}


class WorkflowCoordinator:
    """Drives agent network runs from inbound workflow events.

    Each project has at most one active (running or waiting) run; the lease
    is taken in the store when a run is requested. Work on a single run is
    serialized by a per-run lock, so an answer that arrives while the run is
    still suspending is applied only after the suspension is recorded.

    Thread Safety:
        The task registry is guarded by an asyncio.Lock; run state lives in
        the store and the LangGraph checkpointer.

    Attributes:
        store: Message store
        sandbox_provider: Provider for sandbox containers
        event_bus: Event bus for real-time event streaming
        correlator: Question/response correlator
        network: Compiled agent network
        llm_client: LLM client for fragment titles and responses
    """

    def __init__(
        self,
        store: MessageStore,
        sandbox_provider: SandboxProvider,
        event_bus: EventBus,
        correlator: QuestionCorrelator,
        network: AgentNetworkGraph,
        llm_client: LLMClient | None = None,
    ) -> None:
        """Initialize the WorkflowCoordinator.

        Args:
            store: Message store for projects, messages and runs
            sandbox_provider: Provider for sandbox operations
            event_bus: Event bus for emitting events
            correlator: Correlator shared with the agent network
            network: The agent network graph
            llm_client: Client for single-shot completions (defaults to the
                network's client)
        """
        self.store = store
        self.sandbox_provider = sandbox_provider
        self.event_bus = event_bus
        self.correlator = correlator
        self.network = network
        self.llm_client = llm_client or network.llm_client
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._run_locks: dict[str, _RunLock] = {}
        self._lock = asyncio.Lock()

    def _generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex[:12]}"

    @asynccontextmanager
    async def _run_lock(self, run_id: str) -> AsyncIterator[None]:
        """Serialize work on one run.

        The lock is dropped from the registry once nobody holds or awaits it.
        """
        entry = self._run_locks.get(run_id)
        if entry is None:
            entry = self._run_locks[run_id] = _RunLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._run_locks.get(run_id) is entry:
                del self._run_locks[run_id]

    async def _schedule(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        """Create and register a background task."""
        async with self._lock:
            background_task = asyncio.create_task(coro, name=name)
            self._tasks[name] = background_task

            # Clean up task reference when it completes
            def _remove_task(t: asyncio.Task[None], key: str = name) -> None:
                if self._tasks.get(key) is t:
                    self._tasks.pop(key, None)

            background_task.add_done_callback(_remove_task)

    async def _publish(
        self,
        event_type: EventType,
        project_id: str,
        run_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.event_bus.publish(
            ProjectEvent(type=event_type, project_id=project_id, run_id=run_id, data=data)
        )

    async def _require_project(
        self, project_id: str, user_id: str | None = None
    ) -> dict[str, Any]:
        project = await self.store.get_project(project_id, user_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    # -----------------------------------------------------------------
    # Inbound events
    # -----------------------------------------------------------------

    async def dispatch(self, event: WorkflowEvent) -> Any:
        """Route an inbound workflow event to its handler."""
        if isinstance(event, RunRequestedEvent):
            return await self.request_run(event.project_id, event.value)
        if isinstance(event, UserResponseEvent):
            return await self.deliver_response(event)
        raise ValueError(f"Unsupported workflow event: {type(event).__name__}")

    async def request_run(self, project_id: str, value: str) -> RunOutcome:
        """Start a run for a project unless one must not start now.

        A request is skipped while the project's latest question is still
        unanswered, or while another run holds the project's lease.

        Raises:
            ProjectNotFoundError: If the project does not exist
        """
        await self._require_project(project_id)

        question = await self.store.find_unanswered_question(project_id)
        if question is not None:
            logger.info(
                "run_skipped_awaiting_answer",
                project_id=project_id,
                question_id=question["id"],
            )
            await self._publish(
                EventType.RUN_SKIPPED,
                project_id,
                reason="awaiting_user_response",
                question_id=question["id"],
            )
            return RunOutcome(status="skipped", reason="awaiting_user_response")

        run_id = self._generate_run_id()
        if not await self.store.create_run(run_id, project_id):
            await self._publish(EventType.RUN_SKIPPED, project_id, reason="run_in_progress")
            return RunOutcome(status="skipped", reason="run_in_progress")

        logger.info("run_requested", project_id=project_id, run_id=run_id, value_length=len(value))
        await self._schedule(f"run:{run_id}", self._execute_run(run_id, project_id))
        return RunOutcome(status="started", run_id=run_id)

    async def deliver_response(self, event: UserResponseEvent) -> dict[str, Any]:
        """Correlate a response event and resume the run that asked.

        Returns:
            ``question_id`` and whether the response resolved a waiting
            question (``delivered``)
        """
        record = await self.correlator.deliver(event)
        if record is None:
            return {"question_id": event.question_id, "delivered": False}

        payload = {"question_id": event.question_id, "answer": event.response}
        await self._schedule(
            f"resume:{record['run_id']}:{event.question_id}",
            self._resume_run(record["run_id"], record["project_id"], payload),
        )
        return {"question_id": event.question_id, "delivered": True}

    async def answer_question(
        self,
        project_id: str,
        answer: str,
        question_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Persist a user's answer and deliver it to the waiting run.

        Without ``question_id`` the answer goes to the project's open
        question.

        Raises:
            ProjectNotFoundError: If the project does not exist
            QuestionNotFoundError: If there is no question to answer
        """
        await self._require_project(project_id, user_id)

        if question_id:
            question = await self.store.get_message(question_id)
            if (
                question is None
                or question["project_id"] != project_id
                or question["type"]
                not in (MessageType.QUESTION.value, MessageType.AGENT_QUESTION.value)
            ):
                raise QuestionNotFoundError(f"Question {question_id} not found")
        else:
            question = await self.store.find_unanswered_question(project_id)
            if question is None:
                raise QuestionNotFoundError(f"Project {project_id} has no open question")

        message = await self.store.create_message(
            project_id=project_id,
            role=MessageRole.USER,
            message_type=MessageType.RESULT,
            content=answer,
            metadata={"respondingTo": question["id"], "questionId": question["id"]},
        )
        await self._publish(EventType.MESSAGE_CREATED, project_id, message=message)

        outcome = await self.deliver_response(
            UserResponseEvent(
                project_id=project_id,
                response=answer,
                question_id=question["id"],
                question_content=question["content"],
                question_metadata=question["metadata"],
            )
        )
        return {"message": message, **outcome}

    async def emit_response(
        self,
        project_id: str,
        response: str,
        question_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a response event without persisting a USER message.

        Without ``question_id`` the event targets the open question, or the
        latest question when none is open.

        Raises:
            ProjectNotFoundError: If the project does not exist
            QuestionNotFoundError: If the project has never asked anything
        """
        await self._require_project(project_id)

        if question_id:
            question = await self.store.get_message(question_id)
        else:
            question = await self.store.find_unanswered_question(
                project_id
            ) or await self.store.find_latest_question(project_id)
        if question is None:
            raise QuestionNotFoundError(f"No question found for project {project_id}")

        return await self.deliver_response(
            UserResponseEvent(
                project_id=project_id,
                response=response,
                question_id=question["id"],
                question_content=question["content"],
                question_metadata=question["metadata"],
            )
        )

    # -----------------------------------------------------------------
    # Running
    # -----------------------------------------------------------------

    async def _execute_run(self, run_id: str, project_id: str) -> None:
        """Acquire a sandbox, seed the network state and start the network."""

        async def _start() -> NetworkRunResult:
            project = await self._require_project(project_id)
            latest_fragment = await self.store.get_latest_fragment(project_id)
            files = dict(latest_fragment["files"]) if latest_fragment else {}

            sandbox_id = await self._acquire_sandbox(
                run_id, project_id, project.get("sandbox_id"), files
            )

            recent = await self.store.list_recent_messages(project_id, settings.history_window)
            state = create_network_state(
                project_id=project_id,
                run_id=run_id,
                history=[_history_entry(message) for message in recent],
                business_info=project.get("business_info") or {},
                files=files,
            )

            await self._publish(
                EventType.RUN_STARTED,
                project_id,
                run_id,
                sandbox_id=sandbox_id,
                history_messages=len(recent),
            )
            logger.info(
                "run_started",
                project_id=project_id,
                run_id=run_id,
                sandbox_id=sandbox_id,
                seeded_files=len(files),
            )
            return await self.network.start(state, sandbox_id)

        async with self._run_lock(run_id):
            await self._drive(run_id, project_id, _start)

    async def _resume_run(
        self,
        run_id: str,
        project_id: str,
        payload: dict[str, Any],
    ) -> None:
        """Resume a suspended run with an answer or timeout payload."""
        async with self._run_lock(run_id):
            run = await self.store.get_run(run_id)
            if run is None or run["status"] not in {s.value for s in ACTIVE_RUN_STATUSES}:
                logger.warning(
                    "resume_skipped_inactive_run",
                    run_id=run_id,
                    status=run["status"] if run else None,
                )
                return

            await self.store.update_run(run_id, status=RunStatus.RUNNING)
            await self._publish(
                EventType.RUN_RESUMED,
                project_id,
                run_id,
                question_id=payload.get("question_id"),
                timed_out=bool(payload.get("timed_out")),
            )
            logger.info(
                "run_resumed",
                project_id=project_id,
                run_id=run_id,
                question_id=payload.get("question_id"),
                timed_out=bool(payload.get("timed_out")),
            )

            async def _resume() -> NetworkRunResult:
                sandbox_id = await self._reacquire_sandbox(run_id, project_id)
                return await self.network.resume(run_id, payload, sandbox_id)

            await self._drive(run_id, project_id, _resume)

    async def _drive(
        self,
        run_id: str,
        project_id: str,
        advance: Callable[[], Awaitable[NetworkRunResult]],
    ) -> None:
        """Advance the network and record where the run ended up.

        Must be called with the run's lock held.
        """
        try:
            result = await advance()

            if result.suspended:
                await self.store.update_run(run_id, status=RunStatus.WAITING)
                await self._save_business_info(project_id, result.values)
                question_id = (result.pending_question or {}).get("message_id")
                await self._publish(
                    EventType.RUN_WAITING, project_id, run_id, question_id=question_id
                )
                logger.info(
                    "run_waiting",
                    project_id=project_id,
                    run_id=run_id,
                    question_id=question_id,
                )
                return

            await self._finalize(run_id, project_id, result.values)

        except asyncio.CancelledError:
            logger.info("run_cancelled", project_id=project_id, run_id=run_id)
            raise
        except Exception as e:
            logger.error(
                "run_failed",
                project_id=project_id,
                run_id=run_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                await self._finalize_error(run_id, project_id, reason=str(e))
            except Exception as finalize_error:
                logger.error(
                    "run_error_finalize_failed",
                    project_id=project_id,
                    run_id=run_id,
                    error=str(finalize_error),
                )

    async def _acquire_sandbox(
        self,
        run_id: str,
        project_id: str,
        sandbox_id: str | None,
        files: dict[str, str],
    ) -> str:
        """Reconnect to or rebuild the run's sandbox and record its id."""
        handle = await acquire_sandbox(self.sandbox_provider, sandbox_id, files)
        if handle.sandbox_id != sandbox_id:
            await self.store.update_project_state(project_id, sandbox_id=handle.sandbox_id)
        await self.store.update_run(run_id, sandbox_id=handle.sandbox_id)
        await self._publish(
            EventType.SANDBOX_READY,
            project_id,
            run_id,
            sandbox_id=handle.sandbox_id,
            url=handle.url,
            recreated=handle.recreated,
            failed_files=handle.failed,
        )
        return handle.sandbox_id

    async def _reacquire_sandbox(self, run_id: str, project_id: str) -> str:
        """Sandbox for a resumed run, rebuilt from the checkpointed files."""
        run = await self.store.get_run(run_id)
        snapshot = await self.network.get_state(run_id)
        files = dict(snapshot.values.get("files") or {})
        return await self._acquire_sandbox(
            run_id, project_id, run["sandbox_id"] if run else None, files
        )

    async def _save_business_info(self, project_id: str, values: dict[str, Any]) -> None:
        business_info = values.get("business_info")
        if business_info:
            await self.store.update_project_state(project_id, business_info=business_info)

    # -----------------------------------------------------------------
    # Finalization
    # -----------------------------------------------------------------

    async def _generate_text(
        self,
        system_prompt: str,
        summary: str,
        model: str,
        fallback: str,
        *,
        project_id: str,
        agent_id: str,
    ) -> str:
        try:
            text = await complete_text(
                self.llm_client,
                system_prompt,
                summary,
                model,
                project_id=project_id,
                agent_id=agent_id,
            )
        except Exception as e:
            logger.warning(
                "completion_fallback_used",
                project_id=project_id,
                agent_id=agent_id,
                error=str(e),
            )
            return fallback
        return text or fallback

    async def _finalize(self, run_id: str, project_id: str, values: dict[str, Any]) -> None:
        """Persist RESULT + Fragment for a finished run, or ERROR."""
        await self._save_business_info(project_id, values)

        summary = values.get("summary") or ""
        files = dict(values.get("files") or {})
        if not summary or not files:
            reason = "no_summary" if not summary else "no_files"
            logger.warning(
                "run_incomplete",
                project_id=project_id,
                run_id=run_id,
                reason=reason,
                iterations=values.get("iteration", 0),
            )
            await self._finalize_error(run_id, project_id, reason=reason)
            return

        title = await self._generate_text(
            FRAGMENT_TITLE_PROMPT,
            summary,
            settings.title_model,
            DEFAULT_FRAGMENT_TITLE,
            project_id=project_id,
            agent_id="fragment_title_generator",
        )
        response = await self._generate_text(
            RESPONSE_PROMPT,
            summary,
            settings.response_model,
            DEFAULT_RESPONSE,
            project_id=project_id,
            agent_id="response_generator",
        )

        run = await self.store.get_run(run_id)
        handle = await acquire_sandbox(
            self.sandbox_provider, run["sandbox_id"] if run else None, files
        )
        if run is not None and handle.sandbox_id != run["sandbox_id"]:
            await self.store.update_project_state(project_id, sandbox_id=handle.sandbox_id)
            await self.store.update_run(run_id, sandbox_id=handle.sandbox_id)

        message = await self.store.complete_run(
            run_id,
            RunStatus.COMPLETED,
            message={
                "project_id": project_id,
                "role": MessageRole.ASSISTANT,
                "type": MessageType.RESULT,
                "content": response,
                "metadata": {"runId": run_id},
            },
            fragment={"sandbox_url": handle.url, "title": title, "files": files},
        )
        if message is None:
            return

        await self._publish(EventType.MESSAGE_CREATED, project_id, run_id, message=message)
        await self._publish(
            EventType.RUN_COMPLETE,
            project_id,
            run_id,
            message_id=message["id"],
            fragment_id=message["fragment"]["id"],
            sandbox_url=handle.url,
            title=title,
            files=sorted(files),
        )
        logger.info(
            "run_complete",
            project_id=project_id,
            run_id=run_id,
            title=title,
            files=len(files),
            iterations=values.get("iteration", 0),
        )

    async def _finalize_error(self, run_id: str, project_id: str, reason: str) -> None:
        message = await self.store.complete_run(
            run_id,
            RunStatus.FAILED,
            message={
                "project_id": project_id,
                "role": MessageRole.ASSISTANT,
                "type": MessageType.ERROR,
                "content": ERROR_MESSAGE,
                "metadata": {"runId": run_id},
            },
        )
        if message is None:
            return

        await self._publish(EventType.MESSAGE_CREATED, project_id, run_id, message=message)
        await self._publish(EventType.RUN_ERROR, project_id, run_id, reason=reason)

    # -----------------------------------------------------------------
    # Timeouts and recovery
    # -----------------------------------------------------------------

    async def expire_overdue_questions(self) -> int:
        """Expire overdue questions and resume their runs with a timeout.

        Returns:
            Number of questions expired
        """
        expired = await self.correlator.expire_overdue()
        for record in expired:
            await self._schedule(
                f"resume:{record['run_id']}:{record['question_id']}",
                self._resume_run(
                    record["run_id"],
                    record["project_id"],
                    {"question_id": record["question_id"], "timed_out": True},
                ),
            )
        return len(expired)

    async def start_question_expiry_loop(
        self, interval_seconds: float | None = None
    ) -> asyncio.Task[None]:
        """Start a background task that periodically expires overdue questions.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between sweeps (default from config).

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """
        interval = interval_seconds or settings.question_expiry_check_interval_seconds

        async def _loop() -> None:
            logger.info("question_expiry_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.expire_overdue_questions()
                except asyncio.CancelledError:
                    logger.info("question_expiry_loop_stopped")
                    return
                except Exception as e:
                    logger.error("question_expiry_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="question_expiry")

    async def recover_incomplete_runs(self) -> int:
        """Pick up runs left active by a previous process.

        Returns:
            Number of runs scheduled for recovery
        """
        runs = [
            *await self.store.list_runs_by_status(RunStatus.RUNNING),
            *await self.store.list_runs_by_status(RunStatus.WAITING),
        ]
        for run in runs:
            await self._schedule(f"recover:{run['id']}", self._recover_run(run))

        if runs:
            logger.info("run_recovery_scheduled", runs=len(runs))
        return len(runs)

    async def _recover_run(self, run: dict[str, Any]) -> None:
        run_id, project_id = run["id"], run["project_id"]
        snapshot = await self.network.get_state(run_id)

        if not snapshot.values:
            # Never reached the network
            if run["status"] == RunStatus.RUNNING.value:
                await self._execute_run(run_id, project_id)
            return

        values = dict(snapshot.values)
        pending = values.get("pending_question") if snapshot.next else None
        if pending:
            record = await self.store.get_pending_question(pending["message_id"])
            payload = _resume_payload(record)
            if payload is None:
                await self.store.update_run(run_id, status=RunStatus.WAITING)
                logger.info("run_recovered_waiting", run_id=run_id, question_id=pending["message_id"])
                return
            await self._resume_run(run_id, project_id, payload)
            return

        async with self._run_lock(run_id):
            if not snapshot.next:
                try:
                    await self._finalize(run_id, project_id, values)
                except Exception as e:
                    logger.error("run_recovery_finalize_failed", run_id=run_id, error=str(e))
                    await self._finalize_error(run_id, project_id, reason=str(e))
                return

            await self.store.update_run(run_id, status=RunStatus.RUNNING)
            logger.info("run_recovered", project_id=project_id, run_id=run_id, next=list(snapshot.next))

            async def _continue() -> NetworkRunResult:
                sandbox_id = await self._reacquire_sandbox(run_id, project_id)
                return await self.network.continue_run(run_id, sandbox_id)

            await self._drive(run_id, project_id, _continue)

    # -----------------------------------------------------------------
    # Sandbox regeneration and inspection
    # -----------------------------------------------------------------

    async def regenerate_sandbox(
        self,
        project_id: str,
        fragment_id: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Rebuild a fragment's sandbox and point the fragment at it.

        Raises:
            ProjectNotFoundError: If the project does not exist
            FragmentNotFoundError: If the fragment is not part of the project
            RuntimeError: If no sandbox could be created
        """
        await self._require_project(project_id, user_id)

        fragment = await self.store.get_fragment(fragment_id)
        if fragment is None or fragment["project_id"] != project_id:
            raise FragmentNotFoundError(f"Fragment {fragment_id} not found")

        started = time.time()
        handle = await provision_sandbox(self.sandbox_provider, fragment["files"])
        updated = await self.store.update_fragment_sandbox_url(fragment_id, handle.url)

        await self._publish(
            EventType.SANDBOX_READY,
            project_id,
            sandbox_id=handle.sandbox_id,
            url=handle.url,
            recreated=True,
            fragment_id=fragment_id,
            failed_files=handle.failed,
        )
        logger.info(
            "sandbox_regenerated",
            project_id=project_id,
            fragment_id=fragment_id,
            sandbox_id=handle.sandbox_id,
            replayed=len(handle.replayed),
            failed=len(handle.failed),
            duration_ms=int((time.time() - started) * 1000),
        )
        return {
            "success": True,
            "new_sandbox_url": handle.url,
            "sandbox_id": handle.sandbox_id,
            "fragment": updated,
            "failed_files": handle.failed,
        }

    async def get_question_state(self, project_id: str) -> dict[str, Any]:
        """Describe the project's question/answer state for debugging.

        Raises:
            ProjectNotFoundError: If the project does not exist
        """
        await self._require_project(project_id)

        latest_question = await self.store.find_latest_question(project_id)
        latest_user_message = await self.store.find_latest_user_message(project_id)
        unanswered = await self.store.find_unanswered_question(project_id)
        active_run = await self.store.get_active_run(project_id)

        return {
            "latest_question": latest_question,
            "latest_user_message": latest_user_message,
            "has_unanswered_question": unanswered is not None,
            "waiting_for_response": (
                active_run is not None and active_run["status"] == RunStatus.WAITING.value
            ),
        }

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def join(self) -> None:
        """Wait until every scheduled background task has finished."""
        while True:
            async with self._lock:
                pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def get_active_task_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        """Cancel in-flight tasks; their runs resume from checkpoints later."""
        async with self._lock:
            tasks_to_cancel = list(self._tasks.items())
            self._tasks.clear()

        logger.info("coordinator_shutdown", tasks=len(tasks_to_cancel))

        for name, task in tasks_to_cancel:
            if not task.done():
                task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception) as e:
                if not isinstance(e, asyncio.CancelledError):
                    logger.error("shutdown_task_failed", task=name, error=str(e))

        # Close event streams so WebSocket subscribers can exit.
        for project_id in self.event_bus.get_active_projects():
            try:
                await self.event_bus.close_project(project_id)
            except Exception as e:
                logger.warning(
                    "shutdown_close_project_failed",
                    project_id=project_id,
                    error=str(e),
                )
