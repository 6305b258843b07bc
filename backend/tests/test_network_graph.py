"""Tests for agents/network_graph.py -- the checkpointed agent network.

The network runs against a MockLLMClient, the in-memory sandbox provider,
a temporary MessageStore and LangGraph's InMemorySaver, so suspension and
resumption go through the real interrupt/Command machinery.
"""

from typing import Any

import pytest
from langgraph.checkpoint.memory import InMemorySaver

from agents.network_graph import (
    CODE_AGENT_ID,
    GATHERER_AGENT_ID,
    NO_RESPONSE_SENTINEL,
    AgentNetworkGraph,
    create_network_state,
)
from agents.utils import LLMResponse, MockLLMClient
from correlator import QuestionCorrelator
from events.bus import EventBus
from events.types import EventType
from models.database import MessageStore
from models.schemas import MessageType, PendingQuestionStatus
from sandbox.docker_sandbox import CommandResult
from tests.conftest import (
    COMPLETE_BUSINESS_INFO,
    FakeSandboxProvider,
    business_info_reply,
    make_llm_response,
    make_question_call,
    make_tool_call,
)

PAGE = "export default function Page() { return <h1>Sunrise Bakery</h1> }"


def _build(
    store: MessageStore,
    provider: FakeSandboxProvider,
    bus: EventBus,
    responses: list[LLMResponse],
    **kwargs: Any,
) -> tuple[AgentNetworkGraph, MockLLMClient]:
    llm = MockLLMClient(responses=responses, event_bus=bus)
    network = AgentNetworkGraph(
        QuestionCorrelator(store, bus),
        provider,  # type: ignore[arg-type]
        bus,
        llm_client=llm,
        checkpointer=InMemorySaver(),
        **kwargs,
    )
    return network, llm


def _write_page() -> LLMResponse:
    return make_llm_response(tool_calls=[
        make_tool_call(
            "create_or_update_files",
            {"files": [{"path": "app/page.tsx", "content": PAGE}]},
            call_id="tc_files",
        )
    ])


def _summary() -> LLMResponse:
    return make_llm_response("<task_summary>Built a landing page for the bakery</task_summary>")


@pytest.fixture()
async def project(store: MessageStore) -> dict[str, Any]:
    return await store.create_project(user_id="user_1", name="Bakery")


@pytest.fixture()
async def sandbox_id(sandbox_provider: FakeSandboxProvider) -> str:
    info = await sandbox_provider.create(timeout_seconds=600)
    return info.sandbox_id


def _history() -> list[dict[str, str]]:
    return [{"role": "user", "content": "Build me a website for my bakery"}]


# =========================================================================
# Routing through the network
# =========================================================================


class TestCompleteBusinessInfo:
    async def test_goes_straight_to_code_agent(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, llm = _build(store, sandbox_provider, event_bus, [_write_page(), _summary()])
        state = create_network_state(
            project["id"], "run_a", _history(), business_info=COMPLETE_BUSINESS_INFO
        )

        result = await network.start(state, sandbox_id)

        assert result.suspended is False
        assert "<task_summary>" in result.values["summary"]
        assert result.values["files"] == {"app/page.tsx": PAGE}
        assert sandbox_provider.sandboxes[sandbox_id]["app/page.tsx"] == PAGE
        assert [call["agent_id"] for call in llm.call_history] == [CODE_AGENT_ID, CODE_AGENT_ID]

    async def test_tool_round_continues_same_iteration(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, _ = _build(store, sandbox_provider, event_bus, [_write_page(), _summary()])
        state = create_network_state(
            project["id"], "run_a", _history(), business_info=COMPLETE_BUSINESS_INFO
        )

        result = await network.start(state, sandbox_id)

        assert result.values["iteration"] == 1
        active = [
            e for e in event_bus.get_event_history(project["id"])
            if e.type == EventType.AGENT_ACTIVE
        ]
        assert len(active) == 1
        assert active[0].data == {"agent": "generate_code", "iteration": 1}

    async def test_tool_results_fed_back_to_agent(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, llm = _build(store, sandbox_provider, event_bus, [_write_page(), _summary()])
        state = create_network_state(
            project["id"], "run_a", _history(), business_info=COMPLETE_BUSINESS_INFO
        )

        await network.start(state, sandbox_id)

        second_call = llm.call_history[1]["messages"]
        assert second_call[0]["role"] == "system"
        assert second_call[-1] == {
            "role": "tool",
            "tool_call_id": "tc_files",
            "content": "Updated files: app/page.tsx",
        }

    async def test_seeded_files_carried_in_state(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, _ = _build(store, sandbox_provider, event_bus, [_write_page(), _summary()])
        state = create_network_state(
            project["id"],
            "run_a",
            _history(),
            business_info=COMPLETE_BUSINESS_INFO,
            files={"app/layout.tsx": "layout"},
        )

        result = await network.start(state, sandbox_id)

        assert result.values["files"] == {"app/layout.tsx": "layout", "app/page.tsx": PAGE}


class TestIterationLimits:
    async def test_network_stops_at_max_iterations(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [make_llm_response("Tell me more about the bakery.") for _ in range(3)]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_cap", _history(), max_iterations=2)

        result = await network.start(state, sandbox_id)

        assert result.suspended is False
        assert result.values["summary"] == ""
        assert result.values["iteration"] == 2
        assert len(llm.call_history) == 2
        assert {call["agent_id"] for call in llm.call_history} == {GATHERER_AGENT_ID}

    async def test_default_cap_is_fifteen(self, project: dict[str, Any]) -> None:
        state = create_network_state(project["id"], "run_x", _history())
        assert state["max_iterations"] == 15

    async def test_tool_round_limit_closes_turn(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        terminal = make_llm_response(
            tool_calls=[make_tool_call("terminal", {"command": "npm run lint"})]
        )
        network, _ = _build(
            store,
            sandbox_provider,
            event_bus,
            [terminal, terminal, _write_page(), _summary()],
            max_tool_rounds=2,
        )
        state = create_network_state(
            project["id"], "run_rounds", _history(), business_info=COMPLETE_BUSINESS_INFO
        )

        result = await network.start(state, sandbox_id)

        assert len(sandbox_provider.commands) == 2
        assert result.values["iteration"] == 2
        assert "<task_summary>" in result.values["summary"]

    async def test_failed_command_reported_to_agent(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        sandbox_provider.command_results.append(
            CommandResult(stdout="", stderr="Type error in app/page.tsx", exit_code=1)
        )
        terminal = make_llm_response(
            tool_calls=[make_tool_call("terminal", {"command": "npx tsc --noEmit"}, "tc_t")]
        )
        network, llm = _build(
            store, sandbox_provider, event_bus, [terminal, _write_page(), _summary()]
        )
        state = create_network_state(
            project["id"], "run_cmd", _history(), business_info=COMPLETE_BUSINESS_INFO
        )

        await network.start(state, sandbox_id)

        tool_message = llm.call_history[1]["messages"][-1]
        assert tool_message["tool_call_id"] == "tc_t"
        assert tool_message["content"].startswith("Command failed: exit code 1")
        assert "Type error" in tool_message["content"]


# =========================================================================
# Questions
# =========================================================================


def _ask(question: str, call_id: str = "tc_q1", **info: str) -> LLMResponse:
    return make_llm_response(business_info_reply(**info), [make_question_call(question, call_id)])


class TestAskUserQuestion:
    async def test_question_suspends_run(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, llm = _build(
            store, sandbox_provider, event_bus, [_ask("Where is the bakery?", name="Sunrise Bakery")]
        )
        state = create_network_state(project["id"], "run_q", _history())

        result = await network.start(state, sandbox_id)

        assert result.suspended is True
        assert result.pending_question is not None
        message_id = result.pending_question["message_id"]
        assert result.values["waiting_for_user_response"] is True
        assert result.values["business_info"]["name"] == "Sunrise Bakery"

        question = await store.get_message(message_id)
        assert question is not None
        assert question["type"] == MessageType.QUESTION.value
        assert question["content"] == "Where is the bakery?"
        assert question["metadata"]["questionId"] == message_id
        assert question["metadata"]["step"] == 1
        assert question["metadata"]["runId"] == "run_q"

        record = await store.get_pending_question(message_id)
        assert record is not None
        assert record["status"] == PendingQuestionStatus.WAITING.value
        assert len(llm.call_history) == 1

    async def test_resume_delivers_answer_and_finishes(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [
            _ask("Where is the bakery?", name="Sunrise Bakery"),
            make_llm_response(business_info_reply(**COMPLETE_BUSINESS_INFO)),
            _write_page(),
            _summary(),
        ]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_q", _history())
        suspended = await network.start(state, sandbox_id)
        message_id = suspended.pending_question["message_id"]  # type: ignore[index]

        result = await network.resume(
            "run_q", {"question_id": message_id, "answer": "12 Main St"}, sandbox_id
        )

        assert result.suspended is False
        assert result.values["responses"] == {"Where is the bakery?": "12 Main St"}
        assert result.values["business_info"] == COMPLETE_BUSINESS_INFO
        assert result.values["files"] == {"app/page.tsx": PAGE}
        assert {
            "role": "tool",
            "tool_call_id": "tc_q1",
            "content": "12 Main St",
        } in llm.call_history[1]["messages"]
        assert [call["agent_id"] for call in llm.call_history] == [
            GATHERER_AGENT_ID,
            GATHERER_AGENT_ID,
            CODE_AGENT_ID,
            CODE_AGENT_ID,
        ]

    async def test_mismatched_answer_keeps_waiting(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [_ask("Where is the bakery?"), make_llm_response("Thanks!")]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_q", _history(), max_iterations=1)
        suspended = await network.start(state, sandbox_id)
        message_id = suspended.pending_question["message_id"]  # type: ignore[index]

        result = await network.resume(
            "run_q", {"question_id": "someone-else", "answer": "Nope"}, sandbox_id
        )

        assert result.suspended is True
        assert result.pending_question["message_id"] == message_id  # type: ignore[index]
        assert result.values["responses"] == {}
        assert len(llm.call_history) == 1

        result = await network.resume(
            "run_q", {"question_id": message_id, "answer": "12 Main St"}, sandbox_id
        )
        assert result.suspended is False
        assert len(llm.call_history) == 2

    async def test_repeated_question_reuses_answer(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [
            _ask("Where is the bakery?"),
            _ask("Where is the bakery?", call_id="tc_q2"),
            make_llm_response("Got it."),
        ]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_q", _history(), max_iterations=1)
        suspended = await network.start(state, sandbox_id)
        message_id = suspended.pending_question["message_id"]  # type: ignore[index]

        result = await network.resume(
            "run_q", {"question_id": message_id, "answer": "12 Main St"}, sandbox_id
        )

        assert result.suspended is False
        assert result.values["asked_questions"] == ["Where is the bakery?"]
        assert result.values["current_step"] == 1
        assert {
            "role": "tool",
            "tool_call_id": "tc_q2",
            "content": "12 Main St",
        } in llm.call_history[2]["messages"]

        questions = [
            m for m in await store.list_messages(project["id"])
            if m["type"] == MessageType.QUESTION.value
        ]
        assert len(questions) == 1

    async def test_timeout_sentinel_not_cached(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [
            _ask("Where is the bakery?"),
            _ask("Where is the bakery?", call_id="tc_q2"),
        ]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_q", _history())
        suspended = await network.start(state, sandbox_id)
        message_id = suspended.pending_question["message_id"]  # type: ignore[index]
        await store.resolve_pending_question(message_id, PendingQuestionStatus.EXPIRED)

        result = await network.resume(
            "run_q", {"question_id": message_id, "timed_out": True}, sandbox_id
        )

        assert {
            "role": "tool",
            "tool_call_id": "tc_q1",
            "content": NO_RESPONSE_SENTINEL,
        } in llm.call_history[1]["messages"]
        assert result.values["responses"] == {}

        # Asked again: same persisted question, waiting once more
        assert result.suspended is True
        assert result.pending_question["message_id"] == message_id  # type: ignore[index]
        assert result.values["current_step"] == 1
        record = await store.get_pending_question(message_id)
        assert record is not None
        assert record["status"] == PendingQuestionStatus.WAITING.value

    async def test_empty_question_is_a_tool_error(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        responses = [
            make_llm_response(tool_calls=[make_question_call("   ")]),
            make_llm_response("Let me try again."),
        ]
        network, llm = _build(store, sandbox_provider, event_bus, responses)
        state = create_network_state(project["id"], "run_q", _history(), max_iterations=1)

        result = await network.start(state, sandbox_id)

        assert result.suspended is False
        assert llm.call_history[1]["messages"][-1]["content"] == (
            "Error: Missing required arguments: question"
        )
        assert await store.find_latest_question(project["id"]) is None

    async def test_agent_question_id_kept_in_metadata(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        call = make_tool_call(
            "ask_user_question",
            {"question": "What do you sell?", "question_id": "products"},
            "tc_q1",
        )
        network, _ = _build(
            store, sandbox_provider, event_bus, [make_llm_response(tool_calls=[call])]
        )
        state = create_network_state(project["id"], "run_q", _history())

        result = await network.start(state, sandbox_id)

        message_id = result.pending_question["message_id"]  # type: ignore[index]
        question = await store.get_message(message_id)
        assert question is not None
        assert question["metadata"]["agentQuestionId"] == "products"
        assert message_id != "products"

    async def test_calls_after_question_run_after_answer(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        both = make_llm_response(tool_calls=[
            make_question_call("Where is the bakery?", "tc_q1"),
            make_question_call("What are your opening hours?", "tc_q2"),
        ])
        network, _ = _build(store, sandbox_provider, event_bus, [both])
        state = create_network_state(project["id"], "run_q", _history())
        first = await network.start(state, sandbox_id)
        first_id = first.pending_question["message_id"]  # type: ignore[index]

        second = await network.resume(
            "run_q", {"question_id": first_id, "answer": "12 Main St"}, sandbox_id
        )

        assert second.suspended is True
        assert second.pending_question["question"] == "What are your opening hours?"  # type: ignore[index]
        assert second.values["current_step"] == 2

    async def test_state_snapshot_available(
        self,
        store: MessageStore,
        sandbox_provider: FakeSandboxProvider,
        event_bus: EventBus,
        project: dict[str, Any],
        sandbox_id: str,
    ) -> None:
        network, _ = _build(
            store, sandbox_provider, event_bus, [_ask("Where is the bakery?")]
        )
        await network.start(create_network_state(project["id"], "run_q", _history()), sandbox_id)

        snapshot = await network.get_state("run_q")

        assert snapshot.next == ("await_answer",)
        assert snapshot.values["current_question"] == "Where is the bakery?"
