"""Tests for models/database.py -- the SQLite message store."""

import time
from typing import Any

import pytest

from models.database import MessageStore
from models.schemas import MessageRole, MessageType, PendingQuestionStatus, RunStatus


@pytest.fixture()
async def project(store: MessageStore) -> dict[str, Any]:
    return await store.create_project(user_id="user_1", name="Bakery")


async def _user(store: MessageStore, project_id: str, content: str, **metadata: Any) -> dict[str, Any]:
    return await store.create_message(
        project_id=project_id,
        role=MessageRole.USER,
        message_type=MessageType.RESULT,
        content=content,
        metadata=metadata or None,
    )


async def _question(
    store: MessageStore,
    project_id: str,
    content: str = "Where is the bakery?",
    message_id: str = "q_1",
    with_record: bool = True,
) -> dict[str, Any]:
    message = await store.create_message(
        project_id=project_id,
        role=MessageRole.ASSISTANT,
        message_type=MessageType.QUESTION,
        content=content,
        metadata={"questionId": message_id},
        message_id=message_id,
    )
    if with_record:
        await store.save_pending_question(
            question_id=message_id,
            project_id=project_id,
            run_id="run_1",
            question=content,
            deadline=time.time() + 60,
        )
    return message


class TestProjects:
    async def test_create_and_get(self, store: MessageStore, project: dict[str, Any]) -> None:
        loaded = await store.get_project(project["id"])
        assert loaded is not None
        assert loaded["name"] == "Bakery"
        assert loaded["business_info"] == {}
        assert loaded["sandbox_id"] is None

    async def test_owner_filter(self, store: MessageStore, project: dict[str, Any]) -> None:
        assert await store.get_project(project["id"], "user_1") is not None
        assert await store.get_project(project["id"], "user_2") is None

    async def test_update_state(self, store: MessageStore, project: dict[str, Any]) -> None:
        await store.update_project_state(
            project["id"], sandbox_id="sbx_1", business_info={"name": "Sunrise Bakery"}
        )
        loaded = await store.get_project(project["id"])
        assert loaded["sandbox_id"] == "sbx_1"  # type: ignore[index]
        assert loaded["business_info"] == {"name": "Sunrise Bakery"}  # type: ignore[index]


class TestMessages:
    async def test_metadata_round_trips(self, store: MessageStore, project: dict[str, Any]) -> None:
        message = await _user(store, project["id"], "12 Main St", respondingTo="q_1")
        loaded = await store.get_message(message["id"])
        assert loaded is not None
        assert loaded["metadata"] == {"respondingTo": "q_1"}

    async def test_explicit_id_is_idempotent(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        first = await _question(store, project["id"])
        second = await _question(store, project["id"], content="Changed?")
        assert second["content"] == first["content"]
        assert len(await store.list_messages(project["id"])) == 1

    async def test_recent_messages_oldest_first(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        for i in range(7):
            await _user(store, project["id"], f"message {i}")
        recent = await store.list_recent_messages(project["id"], 5)
        assert [m["content"] for m in recent] == [f"message {i}" for i in range(2, 7)]

    async def test_list_attaches_fragments(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _user(store, project["id"], "Build it")
        await store.create_run("run_1", project["id"])
        await store.complete_run(
            "run_1",
            RunStatus.COMPLETED,
            message={
                "project_id": project["id"],
                "role": MessageRole.ASSISTANT,
                "type": MessageType.RESULT,
                "content": "Here you go",
            },
            fragment={"sandbox_url": "http://x", "title": "Site", "files": {"a.tsx": "a"}},
        )
        messages = await store.list_messages(project["id"])
        assert messages[0]["fragment"] is None
        assert messages[1]["fragment"]["files"] == {"a.tsx": "a"}


class TestUnansweredQuestion:
    async def test_none_without_questions(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _user(store, project["id"], "Build it")
        assert await store.find_unanswered_question(project["id"]) is None

    async def test_waiting_question_is_open(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"])
        await _user(store, project["id"], "Unrelated chatter")
        open_question = await store.find_unanswered_question(project["id"])
        assert open_question is not None
        assert open_question["id"] == "q_1"

    async def test_responding_message_closes_it(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"])
        await _user(store, project["id"], "12 Main St", respondingTo="q_1")
        assert await store.find_unanswered_question(project["id"]) is None

    async def test_resolved_record_closes_it(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"])
        await store.resolve_pending_question("q_1", PendingQuestionStatus.EXPIRED)
        assert await store.find_unanswered_question(project["id"]) is None

    async def test_legacy_row_closed_by_any_later_user_message(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"], with_record=False)
        assert await store.find_unanswered_question(project["id"]) is not None
        await _user(store, project["id"], "Downtown")
        assert await store.find_unanswered_question(project["id"]) is None

    async def test_closed_questions_stay_closed(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"], message_id="q_1")
        await store.resolve_pending_question("q_1", PendingQuestionStatus.EXPIRED)
        await _question(store, project["id"], content="What hours?", message_id="q_2")
        await store.resolve_pending_question("q_2", PendingQuestionStatus.ANSWERED, answer="9-5")
        assert await store.find_unanswered_question(project["id"]) is None

    async def test_waiting_record_wins_over_latest_question(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"], message_id="q_1")
        await store.resolve_pending_question("q_1", PendingQuestionStatus.EXPIRED)
        await _question(store, project["id"], content="What hours?", message_id="q_2")
        await store.resolve_pending_question("q_2", PendingQuestionStatus.ANSWERED, answer="9-5")

        await store.save_pending_question(
            question_id="q_1",
            project_id=project["id"],
            run_id="run_1",
            question="Where is the bakery?",
            deadline=time.time() + 60,
        )

        open_question = await store.find_unanswered_question(project["id"])
        assert open_question is not None
        assert open_question["id"] == "q_1"

    async def test_agent_question_type_ignored(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await store.create_message(
            project_id=project["id"],
            role=MessageRole.ASSISTANT,
            message_type=MessageType.AGENT_QUESTION,
            content="Legacy?",
        )
        assert await store.find_unanswered_question(project["id"]) is None
        assert await store.find_latest_question(project["id"]) is None


class TestRuns:
    async def test_one_active_run_per_project(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        assert await store.create_run("run_1", project["id"]) is True
        assert await store.create_run("run_2", project["id"]) is False

        await store.update_run("run_1", status=RunStatus.WAITING)
        assert await store.create_run("run_2", project["id"]) is False

    async def test_lease_released_on_completion(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await store.create_run("run_1", project["id"])
        await store.complete_run(
            "run_1",
            RunStatus.FAILED,
            message={
                "project_id": project["id"],
                "role": MessageRole.ASSISTANT,
                "type": MessageType.ERROR,
                "content": "Something went wrong",
            },
        )
        assert await store.get_active_run(project["id"]) is None
        assert await store.create_run("run_2", project["id"]) is True

    async def test_complete_run_writes_once(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await store.create_run("run_1", project["id"])
        message = {
            "project_id": project["id"],
            "role": MessageRole.ASSISTANT,
            "type": MessageType.RESULT,
            "content": "Here you go",
        }
        fragment = {"sandbox_url": "http://x", "title": "Site", "files": {"a.tsx": "a"}}

        first = await store.complete_run("run_1", RunStatus.COMPLETED, message, fragment)
        second = await store.complete_run("run_1", RunStatus.FAILED, message)

        assert first is not None
        assert first["fragment"]["message_id"] == first["id"]
        assert second is None
        run = await store.get_run("run_1")
        assert run["status"] == RunStatus.COMPLETED.value  # type: ignore[index]
        assert len(await store.list_messages(project["id"])) == 1

    async def test_list_by_status(self, store: MessageStore, project: dict[str, Any]) -> None:
        other = await store.create_project(user_id="user_1")
        await store.create_run("run_1", project["id"])
        await store.create_run("run_2", other["id"])
        await store.update_run("run_2", status=RunStatus.WAITING, sandbox_id="sbx_9")

        running = await store.list_runs_by_status(RunStatus.RUNNING)
        waiting = await store.list_runs_by_status(RunStatus.WAITING)
        assert [r["id"] for r in running] == ["run_1"]
        assert [r["sandbox_id"] for r in waiting] == ["sbx_9"]


class TestPendingQuestions:
    async def test_resolve_is_compare_and_set(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"])
        assert await store.resolve_pending_question(
            "q_1", PendingQuestionStatus.ANSWERED, answer="Downtown"
        ) is True
        assert await store.resolve_pending_question("q_1", PendingQuestionStatus.EXPIRED) is False

        record = await store.get_pending_question("q_1")
        assert record["status"] == PendingQuestionStatus.ANSWERED.value  # type: ignore[index]
        assert record["answer"] == "Downtown"  # type: ignore[index]

    async def test_save_reopens_and_clears_answer(
        self, store: MessageStore, project: dict[str, Any]
    ) -> None:
        await _question(store, project["id"])
        await store.resolve_pending_question("q_1", PendingQuestionStatus.ANSWERED, answer="x")
        await store.save_pending_question("q_1", project["id"], "run_1", "Where?", time.time() + 5)

        record = await store.get_pending_question("q_1")
        assert record["status"] == PendingQuestionStatus.WAITING.value  # type: ignore[index]
        assert record["answer"] is None  # type: ignore[index]

    async def test_overdue_listing(self, store: MessageStore, project: dict[str, Any]) -> None:
        now = time.time()
        await store.save_pending_question("q_old", project["id"], "run_1", "Old?", now - 1)
        await store.save_pending_question("q_new", project["id"], "run_1", "New?", now + 60)

        overdue = await store.list_overdue_pending_questions(now)
        assert [r["question_id"] for r in overdue] == ["q_old"]


class TestCredits:
    async def test_fixed_window(self, store: MessageStore) -> None:
        now = 1_000.0
        first = await store.consume_credit("credits:u", 2, 100, now=now)
        second = await store.consume_credit("credits:u", 2, 100, now=now + 1)
        third = await store.consume_credit("credits:u", 2, 100, now=now + 2)

        assert (first["allowed"], first["remaining_points"]) == (True, 1)
        assert (second["allowed"], second["remaining_points"]) == (True, 0)
        assert third["allowed"] is False
        assert third["resets_at"] == now + 100

    async def test_window_resets(self, store: MessageStore) -> None:
        await store.consume_credit("credits:u", 1, 100, now=1_000.0)
        after = await store.consume_credit("credits:u", 1, 100, now=1_101.0)
        assert after["allowed"] is True
        assert after["resets_at"] == 1_201.0

    async def test_usage_expires(self, store: MessageStore) -> None:
        await store.consume_credit("credits:u", 5, 100, now=1_000.0)
        assert (await store.get_credit_usage("credits:u", now=1_050.0))["points"] == 1  # type: ignore[index]
        assert await store.get_credit_usage("credits:u", now=1_100.0) is None
