"""Agent network LangGraph implementation.

The network alternates between a business-info gatherer and a code agent
until the code agent reports a task summary:

    START -> [router] -> gather_business_info | generate_code | END
    agent -> run_tools (when the reply has tool calls) -> agent ...
    run_tools -> await_answer (when ask_user_question must wait)
    await_answer -> run_tools | agent | [router]

Each agent run is one router selection; the agent keeps calling tools until
it replies without tool calls (or hits the per-turn tool round limit), then
the router is consulted again. The network stops after ``max_iterations``
agent runs.

``await_answer`` suspends the run with LangGraph's ``interrupt``. The graph
is compiled with a checkpointer (thread id = run id), so the process may
stop while a question is outstanding; the run continues when
``resume`` is called with a payload carrying the same question id.

Events emitted:
- AGENT_ACTIVE: When a new agent run starts
- AGENT_MESSAGE: Text replies from an agent
- AGENT_TOOL_CALL / AGENT_TOOL_RESULT / FILE_CHANGED: Via ToolExecutor
"""

import json
import operator
from dataclasses import dataclass
from typing import Annotated, Any, TypedDict

import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, StateSnapshot, interrupt

from agents.prompts import BUSINESS_INFO_GATHERER_PROMPT, CODE_AGENT_PROMPT
from agents.router import (
    NextStep,
    empty_business_info,
    merge_business_info,
    select_next_agent,
)
from agents.tools import (
    ASK_USER_QUESTION_TOOL,
    CODE_AGENT_TOOLS,
    GATHERER_TOOLS,
    ToolCall,
    ToolContext,
    ToolExecutor,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    has_task_summary,
    parse_business_info_tag,
)
from config import settings
from correlator import QuestionCorrelator
from events.bus import EventBus
from events.types import EventType, ProjectEvent
from sandbox.docker_sandbox import SandboxProvider

logger = structlog.get_logger()

NO_RESPONSE_SENTINEL = "No response received from the user within the time limit."

GATHERER_AGENT_ID = "business_info_gatherer"
CODE_AGENT_ID = "code_agent"

_AGENT_IDS: dict[str, str] = {
    NextStep.GATHER_BUSINESS_INFO.value: GATHERER_AGENT_ID,
    NextStep.GENERATE_CODE.value: CODE_AGENT_ID,
}


class NetworkState(TypedDict):
    """State shared by every agent of one run.

    Attributes:
        messages: Conversation shared by both agents (no system prompts)
        business_info: Gathered business details, canonical field names
        files: Files written so far (path relative to workdir -> content)
        summary: Code agent reply containing <task_summary>; ends the run
        waiting_for_user_response: True while a question awaits its answer
        current_question: Text of the outstanding question
        pending_question: message_id, question and tool_call_id of the wait
        asked_questions: Questions asked in this run, in order
        question_ids: Question text -> persisted QUESTION message id
        responses: Question text -> answer
        current_step: Number of distinct questions asked
        pending_tool_calls: Tool calls of the last reply not yet executed
        active_agent: Node name of the agent owning the current turn
        turn_open: Whether the active agent's run continues after tools
        turn_rounds: Tool rounds executed in the current agent run
        iteration: Agent runs started so far
        max_iterations: Agent runs allowed
        project_id: Owning project
        run_id: Workflow run (also the checkpoint thread id)
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    business_info: dict[str, str]
    files: dict[str, str]
    summary: str
    waiting_for_user_response: bool
    current_question: str
    pending_question: dict[str, str] | None
    asked_questions: list[str]
    question_ids: dict[str, str]
    responses: dict[str, str]
    current_step: int
    pending_tool_calls: list[dict[str, Any]]
    active_agent: str
    turn_open: bool
    turn_rounds: int
    iteration: int
    max_iterations: int
    project_id: str
    run_id: str


def create_network_state(
    project_id: str,
    run_id: str,
    history: list[dict[str, Any]],
    business_info: dict[str, str] | None = None,
    files: dict[str, str] | None = None,
    max_iterations: int | None = None,
) -> NetworkState:
    """Create the initial state for a network run.

    Args:
        project_id: Owning project
        run_id: Workflow run id
        history: Seed conversation, oldest first, as role/content dicts
        business_info: Business details already known for the project
        files: Files of the project's latest fragment
        max_iterations: Agent runs allowed (defaults to config)

    Returns:
        Initial NetworkState dict
    """
    return NetworkState(
        messages=list(history),
        business_info=merge_business_info(empty_business_info(), business_info or {}),
        files=dict(files or {}),
        summary="",
        waiting_for_user_response=False,
        current_question="",
        pending_question=None,
        asked_questions=[],
        question_ids={},
        responses={},
        current_step=0,
        pending_tool_calls=[],
        active_agent="",
        turn_open=False,
        turn_rounds=0,
        iteration=0,
        max_iterations=max_iterations or settings.max_network_iterations,
        project_id=project_id,
        run_id=run_id,
    )


@dataclass
class NetworkRunResult:
    """Where a run stands after the graph returned.

    Attributes:
        run_id: The run (checkpoint thread id)
        suspended: True when the graph stopped at an interrupt
        values: Latest state values
        pending_question: The outstanding question when suspended
    """

    run_id: str
    suspended: bool
    values: dict[str, Any]
    pending_question: dict[str, str] | None = None


class AgentNetworkGraph:
    """The gatherer/code-agent network.

    Usage:
        >>> network = AgentNetworkGraph(correlator, provider, event_bus, llm, saver)
        >>> state = create_network_state("proj_1", "run_1", history)
        >>> result = await network.start(state, sandbox_id="sbx_123")
        >>> if result.suspended:
        ...     result = await network.resume(
        ...         "run_1", {"question_id": qid, "answer": "Sunrise Bakery"}, "sbx_123"
        ...     )
    """

    # Targets shared by every conditional edge
    _ROUTES: dict[str, str] = {
        NextStep.GATHER_BUSINESS_INFO.value: NextStep.GATHER_BUSINESS_INFO.value,
        NextStep.GENERATE_CODE.value: NextStep.GENERATE_CODE.value,
        "run_tools": "run_tools",
        "await_answer": "await_answer",
        NextStep.PAUSED.value: END,
        NextStep.DONE.value: END,
        "max_iterations": END,
    }

    def __init__(
        self,
        correlator: QuestionCorrelator,
        sandbox_provider: SandboxProvider,
        event_bus: EventBus,
        llm_client: LLMClient | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        max_tool_rounds: int | None = None,
    ) -> None:
        """Initialize the network graph.

        Args:
            correlator: Persists questions and registers their waits
            sandbox_provider: Sandbox operations for the code agent's tools
            event_bus: Event bus for emitting events
            llm_client: LLM client for model calls (creates default if None)
            checkpointer: LangGraph checkpointer that makes runs resumable
            max_tool_rounds: Tool rounds allowed per agent run
        """
        self.correlator = correlator
        self.event_bus = event_bus
        self.llm_client = llm_client or LLMClient(event_bus=event_bus)
        self.tool_executor = ToolExecutor(sandbox_provider, event_bus)
        self.max_tool_rounds = max_tool_rounds or settings.max_tool_rounds_per_turn
        self._compiled_graph = self._build_graph(checkpointer)

    def _build_graph(self, checkpointer: BaseCheckpointSaver | None) -> Any:
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(NetworkState)

        graph.add_node(NextStep.GATHER_BUSINESS_INFO.value, self._gather_business_info)
        graph.add_node(NextStep.GENERATE_CODE.value, self._generate_code)
        graph.add_node("run_tools", self._run_tools)
        graph.add_node("await_answer", self._await_answer)

        graph.add_conditional_edges(START, self._route_network, self._ROUTES)
        graph.add_conditional_edges(
            NextStep.GATHER_BUSINESS_INFO.value, self._after_agent_turn, self._ROUTES
        )
        graph.add_conditional_edges(
            NextStep.GENERATE_CODE.value, self._after_agent_turn, self._ROUTES
        )
        graph.add_conditional_edges("run_tools", self._after_tools, self._ROUTES)
        graph.add_conditional_edges("await_answer", self._after_answer, self._ROUTES)

        return graph.compile(checkpointer=checkpointer)

    # -----------------------------------------------------------------
    # Routing
    # -----------------------------------------------------------------

    def _route_network(self, state: NetworkState) -> str:
        """Consult the router, then apply the iteration cap."""
        step = select_next_agent(state)
        if step in (NextStep.PAUSED, NextStep.DONE):
            return step.value

        if state["iteration"] >= state["max_iterations"]:
            logger.warning(
                "max_network_iterations_reached",
                project_id=state["project_id"],
                run_id=state["run_id"],
                iterations=state["iteration"],
            )
            return "max_iterations"

        return step.value

    def _after_agent_turn(self, state: NetworkState) -> str:
        if state["pending_tool_calls"]:
            return "run_tools"
        return self._route_network(state)

    def _after_tools(self, state: NetworkState) -> str:
        if state["waiting_for_user_response"]:
            return "await_answer"
        if state["turn_open"]:
            return state["active_agent"]
        return self._route_network(state)

    def _after_answer(self, state: NetworkState) -> str:
        # A mismatched answer leaves the wait in place
        if state["waiting_for_user_response"]:
            return "await_answer"
        if state["pending_tool_calls"]:
            return "run_tools"
        if state["turn_open"]:
            return state["active_agent"]
        return self._route_network(state)

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def _start_turn(self, state: NetworkState, node_name: str) -> dict[str, Any]:
        """Open a new agent run unless the active one continues after tools."""
        if state["turn_open"] and state["active_agent"] == node_name:
            return {"iteration": state["iteration"], "turn_rounds": state["turn_rounds"]}

        iteration = state["iteration"] + 1
        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.AGENT_ACTIVE,
                project_id=state["project_id"],
                run_id=state["run_id"],
                agent_id=_AGENT_IDS[node_name],
                data={"agent": node_name, "iteration": iteration},
            )
        )
        logger.info(
            "agent_run_started",
            project_id=state["project_id"],
            run_id=state["run_id"],
            agent=node_name,
            iteration=iteration,
        )
        return {"iteration": iteration, "turn_rounds": 0}

    async def _emit_agent_message(self, state: NetworkState, agent_id: str, content: str) -> None:
        if not content:
            return
        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.AGENT_MESSAGE,
                project_id=state["project_id"],
                run_id=state["run_id"],
                agent_id=agent_id,
                data={"content": content},
            )
        )

    async def _gather_business_info(self, state: NetworkState) -> dict[str, Any]:
        """Ask the gatherer for its next move and record reported details."""
        node_name = NextStep.GATHER_BUSINESS_INFO.value
        turn = await self._start_turn(state, node_name)

        system_prompt = BUSINESS_INFO_GATHERER_PROMPT.format(
            business_info=json.dumps(state["business_info"], indent=2)
        )
        response = await self.llm_client.call(
            messages=[{"role": "system", "content": system_prompt}, *state["messages"]],
            tools=get_tool_definitions_for_llm(GATHERER_TOOLS),
            model=settings.gatherer_model,
            project_id=state["project_id"],
            agent_id=GATHERER_AGENT_ID,
        )
        await self._emit_agent_message(state, GATHERER_AGENT_ID, response.content)

        updates: dict[str, Any] = {
            **turn,
            "messages": [
                format_assistant_message_with_tools(response.content, response.tool_calls)
            ],
            "pending_tool_calls": [
                {"id": tc.id, "name": tc.name, "args": tc.args}
                for tc in response.tool_calls
            ],
            "active_agent": node_name,
            "turn_open": bool(response.tool_calls),
        }

        reported = parse_business_info_tag(response.content)
        if reported:
            updates["business_info"] = merge_business_info(state["business_info"], reported)
            logger.info(
                "business_info_updated",
                project_id=state["project_id"],
                fields=sorted(k for k, v in updates["business_info"].items() if v),
            )

        return updates

    async def _generate_code(self, state: NetworkState) -> dict[str, Any]:
        """Let the code agent work; a <task_summary> reply finishes the run."""
        node_name = NextStep.GENERATE_CODE.value
        turn = await self._start_turn(state, node_name)

        system_prompt = CODE_AGENT_PROMPT.format(
            business_info=json.dumps(state["business_info"], indent=2)
        )
        response = await self.llm_client.call(
            messages=[{"role": "system", "content": system_prompt}, *state["messages"]],
            tools=get_tool_definitions_for_llm(CODE_AGENT_TOOLS),
            model=settings.code_model,
            temperature=settings.code_agent_temperature,
            project_id=state["project_id"],
            agent_id=CODE_AGENT_ID,
        )
        await self._emit_agent_message(state, CODE_AGENT_ID, response.content)

        finished = has_task_summary(response.content)
        updates: dict[str, Any] = {
            **turn,
            "messages": [
                format_assistant_message_with_tools(response.content, response.tool_calls)
            ],
            "pending_tool_calls": [
                {"id": tc.id, "name": tc.name, "args": tc.args}
                for tc in response.tool_calls
            ],
            "active_agent": node_name,
            "turn_open": bool(response.tool_calls) and not finished,
        }
        if finished:
            updates["summary"] = response.content
            logger.info(
                "task_summary_received",
                project_id=state["project_id"],
                run_id=state["run_id"],
                files=len(state["files"]),
            )
        return updates

    async def _run_tools(self, state: NetworkState, config: RunnableConfig) -> dict[str, Any]:
        """Execute pending tool calls in order.

        Stops early when ask_user_question has to wait; the remaining calls
        stay pending until the answer arrives.
        """
        sandbox_id = config["configurable"]["sandbox_id"]
        agent_id = _AGENT_IDS.get(state["active_agent"])
        pending = list(state["pending_tool_calls"])
        files = dict(state["files"])
        messages: list[dict[str, Any]] = []

        asked_questions = list(state["asked_questions"])
        question_ids = dict(state["question_ids"])
        current_step = state["current_step"]

        while pending:
            call = pending.pop(0)

            if call["name"] == ASK_USER_QUESTION_TOOL:
                question = str(call["args"].get("question") or "").strip()
                if not question:
                    messages.append(format_tool_result_for_llm(
                        call["id"], "Error: Missing required arguments: question"
                    ))
                    continue

                cached = state["responses"].get(question)
                if cached is not None:
                    logger.info(
                        "question_answer_reused",
                        project_id=state["project_id"],
                        run_id=state["run_id"],
                        question=question[:80],
                    )
                    messages.append(format_tool_result_for_llm(call["id"], cached))
                    continue

                message_id = question_ids.get(question)
                if message_id is not None:
                    await self.correlator.reopen(
                        project_id=state["project_id"],
                        run_id=state["run_id"],
                        message_id=message_id,
                        question=question,
                    )
                else:
                    current_step += 1
                    message = await self.correlator.ask(
                        project_id=state["project_id"],
                        run_id=state["run_id"],
                        question=question,
                        step=current_step,
                        question_id=call["args"].get("question_id"),
                    )
                    message_id = message["id"]
                    question_ids[question] = message_id
                    asked_questions.append(question)

                return {
                    "messages": messages,
                    "files": files,
                    "pending_tool_calls": pending,
                    "waiting_for_user_response": True,
                    "current_question": question,
                    "pending_question": {
                        "message_id": message_id,
                        "question": question,
                        "tool_call_id": call["id"],
                    },
                    "asked_questions": asked_questions,
                    "question_ids": question_ids,
                    "current_step": current_step,
                }

            result = await self.tool_executor.execute(
                ToolCall(id=call["id"], name=call["name"], args=call["args"]),
                ToolContext(
                    project_id=state["project_id"],
                    run_id=state["run_id"],
                    sandbox_id=sandbox_id,
                    files=files,
                    agent_id=agent_id,
                ),
            )
            if result.files is not None:
                files = result.files
            messages.append(format_tool_result_for_llm(call["id"], result.content))

        turn_rounds = state["turn_rounds"] + 1
        turn_open = state["turn_open"] and turn_rounds < self.max_tool_rounds
        if state["turn_open"] and not turn_open:
            logger.warning(
                "max_tool_rounds_reached",
                project_id=state["project_id"],
                run_id=state["run_id"],
                agent=state["active_agent"],
                rounds=turn_rounds,
            )

        return {
            "messages": messages,
            "files": files,
            "pending_tool_calls": [],
            "asked_questions": asked_questions,
            "question_ids": question_ids,
            "current_step": current_step,
            "turn_rounds": turn_rounds,
            "turn_open": turn_open,
        }

    async def _await_answer(self, state: NetworkState) -> dict[str, Any]:
        """Suspend until an answer for the outstanding question is resumed in.

        This node re-executes from the top on resume, so nothing happens
        before ``interrupt``.
        """
        pending = state["pending_question"] or {}
        payload = interrupt({
            "question_id": pending.get("message_id"),
            "question": pending.get("question"),
        })

        if not isinstance(payload, dict) or payload.get("question_id") != pending.get("message_id"):
            logger.warning(
                "answer_correlation_mismatch",
                project_id=state["project_id"],
                run_id=state["run_id"],
                expected=pending.get("message_id"),
                received=payload.get("question_id") if isinstance(payload, dict) else None,
            )
            return {}

        question = pending["question"]
        responses = dict(state["responses"])
        if payload.get("timed_out"):
            answer = NO_RESPONSE_SENTINEL
            logger.info(
                "question_timed_out",
                project_id=state["project_id"],
                run_id=state["run_id"],
                question_id=pending["message_id"],
            )
        else:
            answer = str(payload.get("answer") or "")
            responses[question] = answer

        return {
            "messages": [format_tool_result_for_llm(pending["tool_call_id"], answer)],
            "responses": responses,
            "waiting_for_user_response": False,
            "current_question": "",
            "pending_question": None,
        }

    # -----------------------------------------------------------------
    # Driving
    # -----------------------------------------------------------------

    def _config(self, run_id: str, sandbox_id: str) -> RunnableConfig:
        return {
            "configurable": {"thread_id": run_id, "sandbox_id": sandbox_id},
            "recursion_limit": settings.graph_recursion_limit,
        }

    async def _result(self, run_id: str, config: RunnableConfig) -> NetworkRunResult:
        snapshot = await self._compiled_graph.aget_state(config)
        values = dict(snapshot.values)
        suspended = bool(snapshot.next)
        return NetworkRunResult(
            run_id=run_id,
            suspended=suspended,
            values=values,
            pending_question=values.get("pending_question") if suspended else None,
        )

    async def start(self, state: NetworkState, sandbox_id: str) -> NetworkRunResult:
        """Run the network from a fresh state until it ends or suspends."""
        config = self._config(state["run_id"], sandbox_id)
        await self._compiled_graph.ainvoke(state, config)
        return await self._result(state["run_id"], config)

    async def resume(
        self,
        run_id: str,
        payload: dict[str, Any],
        sandbox_id: str,
    ) -> NetworkRunResult:
        """Resume a suspended run with an answer payload.

        Args:
            run_id: The suspended run
            payload: ``question_id`` plus ``answer`` or ``timed_out``
            sandbox_id: Sandbox for any tools executed after the answer
        """
        config = self._config(run_id, sandbox_id)
        await self._compiled_graph.ainvoke(Command(resume=payload), config)
        return await self._result(run_id, config)

    async def continue_run(self, run_id: str, sandbox_id: str) -> NetworkRunResult:
        """Re-drive a run from its last checkpoint (after a restart)."""
        config = self._config(run_id, sandbox_id)
        await self._compiled_graph.ainvoke(None, config)
        return await self._result(run_id, config)

    async def get_state(self, run_id: str) -> StateSnapshot:
        """Return the latest checkpointed snapshot of a run."""
        return await self._compiled_graph.aget_state(
            {"configurable": {"thread_id": run_id}}
        )
