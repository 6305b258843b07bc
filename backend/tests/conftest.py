"""Shared test fixtures for backend tests.

Provides an in-memory sandbox provider, a temporary MessageStore, a fresh
EventBus, LLM response factories and a fully wired coordinator so tests
never touch real Docker containers or LLM APIs.
"""

import json
import sys
import time
import uuid
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from langgraph.checkpoint.memory import InMemorySaver  # noqa: E402

from agents.network_graph import AgentNetworkGraph  # noqa: E402
from agents.utils import LLMResponse, MockLLMClient, ToolCallData  # noqa: E402
from coordinator import WorkflowCoordinator  # noqa: E402
from correlator import QuestionCorrelator  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import LLMMetrics, ProjectEvent  # noqa: E402
from models.database import MessageStore  # noqa: E402
from sandbox.docker_sandbox import (  # noqa: E402
    CommandResult,
    SandboxInfo,
    SandboxUnavailableError,
)
from sandbox.security import relative_to_workdir, validate_path  # noqa: E402

WORKDIR = "/home/user"

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


# ---------------------------------------------------------------------------
# Message Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Any) -> MessageStore:
    """Provide an initialized MessageStore on a temporary SQLite file."""
    message_store = MessageStore(str(tmp_path / "test.db"))
    await message_store.init()
    return message_store


# ---------------------------------------------------------------------------
# Fake Sandbox Provider
# ---------------------------------------------------------------------------


class FakeSandboxProvider:
    """In-memory stand-in for SandboxProvider.

    Each sandbox is a dict of relative path -> content. Tests can mark
    sandboxes unreachable (``lost``), make writes fail for given paths
    (``failing_paths``) or queue command results (``command_results``).
    """

    def __init__(self) -> None:
        self.sandboxes: dict[str, dict[str, str]] = {}
        self.timeouts: dict[str, int] = {}
        self.lost: set[str] = set()
        self.failing_paths: set[str] = set()
        self.command_results: list[CommandResult] = []
        self.commands: list[tuple[str, str]] = []
        self.created: list[str] = []
        self.fail_create = False

    def _info(self, sandbox_id: str) -> SandboxInfo:
        return SandboxInfo(
            sandbox_id=sandbox_id,
            container_id=f"container-{sandbox_id}",
            host_port=32768,
            workdir=WORKDIR,
            expires_at=time.time() + self.timeouts.get(sandbox_id, 0),
        )

    def _require(self, sandbox_id: str) -> dict[str, str]:
        if sandbox_id not in self.sandboxes or sandbox_id in self.lost:
            raise KeyError(f"Sandbox {sandbox_id} not found")
        return self.sandboxes[sandbox_id]

    async def create(self, timeout_seconds: int | None = None) -> SandboxInfo:
        if self.fail_create:
            raise RuntimeError("Failed to create sandbox: docker unavailable")
        sandbox_id = f"sbx_{uuid.uuid4().hex[:12]}"
        self.sandboxes[sandbox_id] = {}
        self.timeouts[sandbox_id] = timeout_seconds or 0
        self.created.append(sandbox_id)
        return self._info(sandbox_id)

    async def connect(self, sandbox_id: str) -> SandboxInfo:
        if sandbox_id not in self.sandboxes or sandbox_id in self.lost:
            raise SandboxUnavailableError(f"Sandbox {sandbox_id} is unavailable")
        return self._info(sandbox_id)

    async def set_timeout(self, sandbox_id: str, timeout_seconds: int) -> None:
        self._require(sandbox_id)
        self.timeouts[sandbox_id] = timeout_seconds

    async def write_file(self, sandbox_id: str, path: str, content: str) -> str:
        files = self._require(sandbox_id)
        ok, error, resolved = validate_path(WORKDIR, path)
        if not ok:
            raise ValueError(error)
        relative = relative_to_workdir(WORKDIR, resolved)
        if relative in self.failing_paths:
            raise OSError(f"Disk full writing {relative}")
        files[relative] = content
        return relative

    async def read_file(self, sandbox_id: str, path: str) -> str:
        files = self._require(sandbox_id)
        ok, error, resolved = validate_path(WORKDIR, path)
        if not ok:
            raise ValueError(error)
        relative = relative_to_workdir(WORKDIR, resolved)
        if relative not in files:
            raise FileNotFoundError(f"File not found: {path}")
        return files[relative]

    async def run_command(
        self, sandbox_id: str, command: str, timeout: int | None = None
    ) -> CommandResult:
        self._require(sandbox_id)
        self.commands.append((sandbox_id, command))
        if self.command_results:
            return self.command_results.pop(0)
        return CommandResult(stdout="ok", stderr="", exit_code=0)

    async def get_host(self, sandbox_id: str, port: int | None = None) -> str:
        self._require(sandbox_id)
        return f"http://{sandbox_id}.localhost:{port or 3000}"

    async def kill(self, sandbox_id: str) -> None:
        self.sandboxes.pop(sandbox_id, None)

    def is_docker_available(self) -> bool:
        return True

    def get_active_sandbox_count(self) -> int:
        return len(self.sandboxes) - len(self.lost & set(self.sandboxes))


@pytest.fixture()
def sandbox_provider() -> FakeSandboxProvider:
    """Provide an in-memory sandbox provider for each test."""
    return FakeSandboxProvider()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


def make_question_call(question: str, call_id: str = "tc_q1") -> ToolCallData:
    """Create an ask_user_question tool call."""
    return make_tool_call("ask_user_question", {"question": question}, call_id)


def business_info_reply(**fields: str) -> str:
    """Gatherer reply ending with a <business_info> block."""
    info = {
        "name": "",
        "description": "",
        "industry": "",
        "sub_industry": "",
        "address": "",
        "contact_info": "",
        **fields,
    }
    return f"Thanks!\n<business_info>{json.dumps(info)}</business_info>"


COMPLETE_BUSINESS_INFO = {
    "name": "Sunrise Bakery",
    "description": "Artisan breads and pastries baked daily",
    "industry": "Food & Beverage",
    "sub_industry": "Bakery",
    "address": "12 Main St, Springfield",
    "contact_info": "hello@sunrise.example",
}


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


async def collect_events(event_bus: EventBus, project_id: str) -> list[ProjectEvent]:
    """Subscribe to a project and drain all buffered events."""
    queue = event_bus.subscribe(project_id)
    events: list[ProjectEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_coordinator(
    store: MessageStore,
    sandbox_provider: FakeSandboxProvider,
    event_bus: EventBus,
    responses: list[LLMResponse],
    checkpointer: InMemorySaver | None = None,
) -> tuple[WorkflowCoordinator, MockLLMClient]:
    """Wire a coordinator around a mock LLM and an in-memory checkpointer."""
    llm = MockLLMClient(responses=responses, event_bus=event_bus)
    correlator = QuestionCorrelator(store, event_bus)
    network = AgentNetworkGraph(
        correlator,
        sandbox_provider,  # type: ignore[arg-type]
        event_bus,
        llm_client=llm,
        checkpointer=checkpointer or InMemorySaver(),
    )
    coordinator = WorkflowCoordinator(
        store,
        sandbox_provider,  # type: ignore[arg-type]
        event_bus,
        correlator,
        network,
        llm_client=llm,
    )
    return coordinator, llm
