"""Question/response correlation.

A question asked by an agent becomes two persisted records:

- a QUESTION message in the project's conversation, whose id is the
  correlation id a response must carry;
- a ``pending_questions`` row (status ``waiting``, deadline now + 24 h)
  that marks the run as awaiting that id.

``deliver`` resolves a waiting record when a response with the same id and
project arrives; ``expire_overdue`` resolves records whose deadline passed.
Both use compare-and-set on the record status, so each wait is resolved
exactly once no matter how often an event is delivered.
"""

import time
import uuid
from typing import Any

import structlog

from config import settings
from events.bus import EventBus
from events.types import EventType, ProjectEvent, UserResponseEvent
from models.database import MessageStore
from models.schemas import MessageRole, MessageType, PendingQuestionStatus

logger = structlog.get_logger(__name__)


def question_message_id(run_id: str, step: int, question: str) -> str:
    """Deterministic QUESTION message id for one ask within a run.

    Replaying a checkpointed node re-derives the same id, so the message
    insert stays idempotent.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"question:{run_id}:{step}:{question}"))


class QuestionCorrelator:
    """Persists questions and matches responses to them by id.

    Attributes:
        store: Message store holding messages and pending records
        event_bus: Event bus for UI notifications
        timeout_seconds: How long a question waits for its answer
    """

    def __init__(
        self,
        store: MessageStore,
        event_bus: EventBus,
        timeout_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.timeout_seconds = timeout_seconds or settings.question_timeout_seconds

    async def ask(
        self,
        project_id: str,
        run_id: str,
        question: str,
        step: int,
        question_id: str | None = None,
    ) -> dict[str, Any]:
        """Persist a QUESTION message and register the wait for its answer.

        Args:
            project_id: Owning project
            run_id: Run that asked the question
            question: Question text shown to the user
            step: Ordinal of the question within the run
            question_id: Optional id the agent attached to the question

        Returns:
            The persisted QUESTION message
        """
        message_id = question_message_id(run_id, step, question)
        metadata: dict[str, Any] = {"questionId": message_id, "step": step, "runId": run_id}
        if question_id:
            metadata["agentQuestionId"] = question_id

        message = await self.store.create_message(
            project_id=project_id,
            role=MessageRole.ASSISTANT,
            message_type=MessageType.QUESTION,
            content=question,
            metadata=metadata,
            message_id=message_id,
        )
        deadline = time.time() + self.timeout_seconds
        await self.store.save_pending_question(
            question_id=message_id,
            project_id=project_id,
            run_id=run_id,
            question=question,
            deadline=deadline,
        )

        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.MESSAGE_CREATED,
                project_id=project_id,
                run_id=run_id,
                data={"message": message},
            )
        )
        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.QUESTION_ASKED,
                project_id=project_id,
                run_id=run_id,
                data={"question_id": message_id, "question": question, "step": step},
            )
        )
        logger.info(
            "question_asked",
            project_id=project_id,
            run_id=run_id,
            question_id=message_id,
            step=step,
        )
        return message

    async def reopen(
        self,
        project_id: str,
        run_id: str,
        message_id: str,
        question: str,
    ) -> None:
        """Wait again on an already persisted question with a fresh deadline."""
        await self.store.save_pending_question(
            question_id=message_id,
            project_id=project_id,
            run_id=run_id,
            question=question,
            deadline=time.time() + self.timeout_seconds,
        )
        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.QUESTION_ASKED,
                project_id=project_id,
                run_id=run_id,
                data={"question_id": message_id, "question": question, "reopened": True},
            )
        )
        logger.info(
            "question_reopened",
            project_id=project_id,
            run_id=run_id,
            question_id=message_id,
        )

    async def deliver(self, event: UserResponseEvent) -> dict[str, Any] | None:
        """Resolve the wait a response event belongs to.

        Returns:
            The resolved pending record, or None when the event matches no
            waiting question of its project (unknown id, other project,
            already answered or expired).
        """
        record = await self.store.get_pending_question(event.question_id)
        if record is None or record["project_id"] != event.project_id:
            logger.warning(
                "response_not_correlated",
                project_id=event.project_id,
                question_id=event.question_id,
            )
            return None

        resolved = await self.store.resolve_pending_question(
            event.question_id, PendingQuestionStatus.ANSWERED, answer=event.response
        )
        if not resolved:
            logger.info(
                "response_already_resolved",
                project_id=event.project_id,
                question_id=event.question_id,
                status=record["status"],
            )
            return None

        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.QUESTION_ANSWERED,
                project_id=event.project_id,
                run_id=record["run_id"],
                data={"question_id": event.question_id},
            )
        )
        logger.info(
            "question_answered",
            project_id=event.project_id,
            run_id=record["run_id"],
            question_id=event.question_id,
        )
        return {
            **record,
            "status": PendingQuestionStatus.ANSWERED.value,
            "answer": event.response,
        }

    async def expire_overdue(self, now: float | None = None) -> list[dict[str, Any]]:
        """Expire every waiting record whose deadline has passed.

        Returns:
            The records this call expired
        """
        now = now if now is not None else time.time()
        expired: list[dict[str, Any]] = []

        for record in await self.store.list_overdue_pending_questions(now):
            resolved = await self.store.resolve_pending_question(
                record["question_id"], PendingQuestionStatus.EXPIRED
            )
            if not resolved:
                continue

            expired.append({**record, "status": PendingQuestionStatus.EXPIRED.value})
            await self.event_bus.publish(
                ProjectEvent(
                    type=EventType.QUESTION_EXPIRED,
                    project_id=record["project_id"],
                    run_id=record["run_id"],
                    data={"question_id": record["question_id"]},
                )
            )
            logger.info(
                "question_expired",
                project_id=record["project_id"],
                run_id=record["run_id"],
                question_id=record["question_id"],
            )

        return expired
