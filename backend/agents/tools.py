"""Tool definitions and sandbox dispatch for the agent network.

This module defines the tools available to the network's agents and provides
the ToolExecutor class that routes tool calls to sandbox operations. Every
call receives an explicit ToolContext naming the project, run and sandbox it
acts on; the only state a tool may change is the returned files mapping.

``ask_user_question`` is declared here so the gatherer can call it, but it
suspends the run and is therefore handled by the network graph itself.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from config import settings
from events.bus import EventBus
from events.types import EventType, ProjectEvent
from sandbox.docker_sandbox import SandboxProvider

logger = structlog.get_logger()

ASK_USER_QUESTION_TOOL = "ask_user_question"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "terminal",
        "description": (
            "Use the terminal to run commands in the sandbox, e.g. "
            "`npm install <package> --yes`. Working directory is /home/user."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to execute inside the sandbox",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": "create_or_update_files",
        "description": (
            "Create or update files in the sandbox. Paths are relative to "
            "/home/user, e.g. 'app/page.tsx'."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string"},
                            "content": {"type": "string"},
                        },
                        "required": ["path", "content"],
                    },
                    "description": "Files to write, each with path and complete content",
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": "read_files",
        "description": "Read files from the sandbox. Returns a JSON list of {path, content}.",
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Paths to read, relative to /home/user",
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": ASK_USER_QUESTION_TOOL,
        "description": (
            "Ask the user a question and wait for the answer. Ask one short, "
            "specific question per call."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "question": {
                    "type": "string",
                    "description": "The question to ask the user",
                },
                "question_id": {
                    "type": "string",
                    "description": "Optional caller-supplied identifier for the question",
                },
            },
            "required": ["question"],
        },
    },
]

_TOOL_DEFINITION_MAP: dict[str, dict[str, Any]] = {
    tool["name"]: tool for tool in TOOL_DEFINITIONS
}

CODE_AGENT_TOOLS: tuple[str, ...] = ("terminal", "create_or_update_files", "read_files")
GATHERER_TOOLS: tuple[str, ...] = (ASK_USER_QUESTION_TOOL,)

# Keep tool payloads bounded so a single call cannot flood model context.
MAX_READ_FILES_CHARS = 60_000
MAX_COMMAND_OUTPUT_CHARS = 20_000

# The sandbox image already runs the dev server; a second one never returns.
_DEV_SERVER_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*(?:npm|pnpm|yarn)\s+(?:run\s+)?(?:dev|start)\b", re.IGNORECASE),
    re.compile(r"^\s*(?:npx\s+)?next\s+(?:dev|start)\b", re.IGNORECASE),
)
_BLOCKED_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"\brm\s+-rf\s+/\*"),
    re.compile(r"\b(?:shutdown|reboot|halt|poweroff)\b", re.IGNORECASE),
    re.compile(r":\(\)\{:\|:&\};:"),
)


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


def get_tool_definitions_for_llm(names: tuple[str, ...]) -> list[dict[str, Any]]:
    """Get the named tool definitions formatted for LLM function calling."""
    return [
        {
            "type": "function",
            "function": {
                "name": _TOOL_DEFINITION_MAP[name]["name"],
                "description": _TOOL_DEFINITION_MAP[name]["description"],
                "parameters": _TOOL_DEFINITION_MAP[name]["parameters"],
            },
        }
        for name in names
    ]


@dataclass
class ToolCall:
    """Represents a parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call (from LLM)
        name: Name of the tool to execute
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class ToolContext:
    """Everything a tool may read, scoped to one run.

    Attributes:
        project_id: Project the run belongs to
        run_id: The run executing the tool
        sandbox_id: Sandbox the tool acts on
        files: Files written so far (path relative to the workdir -> content)
        agent_id: Agent that issued the call
    """

    project_id: str
    run_id: str
    sandbox_id: str
    files: dict[str, str] = field(default_factory=dict)
    agent_id: str | None = None


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: The result content as a string (returned to the LLM)
        success: Whether the tool execution succeeded
        error: Error message if execution failed
        files: Updated files mapping when the tool wrote files, else None
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None
    files: dict[str, str] | None = None


class ToolExecutor:
    """Executes tool calls against a sandbox and emits events.

    Tool failures never raise: they come back as ``Error: ...`` or
    ``Command failed: ...`` text so the calling agent can react.

    Attributes:
        sandbox_provider: The SandboxProvider for sandbox operations.
        event_bus: The EventBus for emitting tool events.
    """

    def __init__(
        self,
        sandbox_provider: SandboxProvider,
        event_bus: EventBus,
    ) -> None:
        self.sandbox_provider = sandbox_provider
        self.event_bus = event_bus

    def _truncate_text(self, text: str, *, max_chars: int) -> str:
        """Trim large text payloads while preserving a clear truncation marker."""
        if len(text) <= max_chars:
            return text
        omitted = len(text) - max_chars
        return (
            f"{text[:max_chars]}\n"
            f"... [truncated {omitted} characters to protect context window]"
        )

    def _summarize_args_for_event(self, args: Any) -> dict[str, Any]:
        """Create a lightweight args payload for event emission."""
        if not isinstance(args, dict):
            return {"raw": str(args)[:500]}

        summarized: dict[str, Any] = {}
        for key, value in args.items():
            if key == "files" and isinstance(value, list):
                summarized[key] = [
                    item.get("path") if isinstance(item, dict) else item
                    for item in value
                ]
            elif isinstance(value, str) and len(value) > 500:
                summarized[key] = f"{value[:500]}... [truncated]"
            else:
                summarized[key] = value
        return summarized

    def _normalize_tool_args(
        self,
        tool_name: str,
        args: Any,
    ) -> dict[str, Any]:
        """Validate and normalize tool arguments against schema metadata."""
        tool_def = _TOOL_DEFINITION_MAP.get(tool_name)
        if tool_def is None:
            raise ToolArgumentError(f"Unknown tool: {tool_name}")

        if not isinstance(args, dict):
            raise ToolArgumentError(
                f"Invalid arguments for {tool_name}: expected an object"
            )

        params = tool_def.get("parameters", {})
        properties = params.get("properties", {})
        required = params.get("required", [])

        normalized: dict[str, Any] = {}
        for key, value in args.items():
            if key not in properties:
                # Ignore unknown fields to keep calls resilient to model drift.
                continue

            if key in {"command", "question", "question_id"}:
                if not isinstance(value, str):
                    raise ToolArgumentError(
                        f"Invalid type for '{key}': expected string"
                    )
                normalized[key] = value.strip()
            elif key == "files" and tool_name == "create_or_update_files":
                normalized[key] = self._normalize_file_entries(value)
            elif key == "files":
                if not isinstance(value, list) or not all(
                    isinstance(path, str) for path in value
                ):
                    raise ToolArgumentError(
                        "Invalid type for 'files': expected a list of paths"
                    )
                normalized[key] = [path.strip() for path in value]
            else:
                normalized[key] = value

        missing = []
        for req in required:
            value = normalized.get(req)
            if value is None or isinstance(value, str | list) and not value:
                missing.append(req)
        if missing:
            joined = ", ".join(sorted(missing))
            raise ToolArgumentError(f"Missing required arguments: {joined}")

        return normalized

    def _normalize_file_entries(self, value: Any) -> list[dict[str, str]]:
        if not isinstance(value, list):
            raise ToolArgumentError("Invalid type for 'files': expected a list")

        entries: list[dict[str, str]] = []
        for item in value:
            if not isinstance(item, dict):
                raise ToolArgumentError("Each file must be an object with path and content")
            path = item.get("path")
            content = item.get("content")
            if not isinstance(path, str) or not path.strip():
                raise ToolArgumentError("Each file needs a non-empty 'path'")
            if not isinstance(content, str):
                raise ToolArgumentError(f"File '{path}' needs string 'content'")
            entries.append({"path": path.strip(), "content": content})
        return entries

    def _preflight_command(self, command: str) -> None:
        """Reject commands that are harmful or never terminate."""
        for pattern in _BLOCKED_COMMAND_PATTERNS:
            if pattern.search(command):
                raise ToolArgumentError(
                    "Command blocked by safety policy: potentially destructive operation"
                )

        for pattern in _DEV_SERVER_COMMAND_PATTERNS:
            if pattern.search(command):
                raise ToolArgumentError(
                    "Command blocked: the dev server is already running on port 3000"
                )

    async def execute(self, tool_call: ToolCall, context: ToolContext) -> ToolResult:
        """Execute a tool call against the context's sandbox.

        Args:
            tool_call: The ToolCall to execute.
            context: Project, run, sandbox and current files.

        Returns:
            ToolResult with the execution outcome.
        """
        start_time = time.time()

        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.AGENT_TOOL_CALL,
                project_id=context.project_id,
                run_id=context.run_id,
                agent_id=context.agent_id,
                data={
                    "tool": tool_call.name,
                    "args": self._summarize_args_for_event(tool_call.args),
                    "tool_call_id": tool_call.id,
                },
            )
        )

        try:
            normalized_args = self._normalize_tool_args(tool_call.name, tool_call.args)
            result = await self._dispatch_tool(tool_call, normalized_args, context)
        except Exception as e:
            logger.error(
                "tool_execution_failed",
                tool_name=tool_call.name,
                sandbox_id=context.sandbox_id,
                error=str(e),
            )
            result = ToolResult(
                tool_call_id=tool_call.id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
            )

        duration_ms = int((time.time() - start_time) * 1000)

        await self.event_bus.publish(
            ProjectEvent(
                type=EventType.AGENT_TOOL_RESULT,
                project_id=context.project_id,
                run_id=context.run_id,
                agent_id=context.agent_id,
                data={
                    "tool": tool_call.name,
                    "result": result.content[:2000],
                    "success": result.success,
                    "tool_call_id": tool_call.id,
                    "duration_ms": duration_ms,
                },
            )
        )

        logger.debug(
            "tool_executed",
            tool_name=tool_call.name,
            sandbox_id=context.sandbox_id,
            success=result.success,
            duration_ms=duration_ms,
        )
        return result

    async def _dispatch_tool(
        self,
        tool_call: ToolCall,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Route tool call to the matching handler.

        Raises:
            ValueError: If the tool is unknown or handled elsewhere.
        """
        if tool_call.name == "terminal":
            return await self._execute_terminal(tool_call.id, args, context)
        elif tool_call.name == "create_or_update_files":
            return await self._execute_create_or_update_files(tool_call.id, args, context)
        elif tool_call.name == "read_files":
            return await self._execute_read_files(tool_call.id, args, context)
        elif tool_call.name == ASK_USER_QUESTION_TOOL:
            raise ValueError(f"{ASK_USER_QUESTION_TOOL} is handled by the agent network")
        else:
            raise ValueError(f"Unknown tool: {tool_call.name}")

    async def _execute_terminal(
        self,
        tool_call_id: str,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Run a shell command; non-zero exits become ``Command failed`` text."""
        command = args["command"]
        self._preflight_command(command)

        result = await self.sandbox_provider.run_command(
            context.sandbox_id,
            command,
            timeout=settings.tool_timeout_seconds,
        )
        stdout = self._truncate_text(result.stdout, max_chars=MAX_COMMAND_OUTPUT_CHARS)
        stderr = self._truncate_text(result.stderr, max_chars=MAX_COMMAND_OUTPUT_CHARS)

        if result.timed_out or result.exit_code != 0:
            reason = (
                f"timed out after {settings.tool_timeout_seconds} seconds"
                if result.timed_out
                else f"exit code {result.exit_code}"
            )
            content = f"Command failed: {reason} \nstdout: {stdout} \nstderr: {stderr}"
            logger.info(
                "terminal_command_failed",
                sandbox_id=context.sandbox_id,
                command=command[:50],
                exit_code=result.exit_code,
            )
            return ToolResult(
                tool_call_id=tool_call_id,
                content=content,
                success=False,
                error=reason,
            )

        return ToolResult(
            tool_call_id=tool_call_id,
            content=stdout or "(no output)",
            success=True,
        )

    async def _execute_create_or_update_files(
        self,
        tool_call_id: str,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Write each file and merge it into the run's files mapping.

        Files written before a failure stay in the returned mapping.
        """
        updated_files = dict(context.files)
        written: list[str] = []

        try:
            for entry in args["files"]:
                relative_path = await self.sandbox_provider.write_file(
                    context.sandbox_id, entry["path"], entry["content"]
                )
                updated_files[relative_path] = entry["content"]
                written.append(relative_path)
                await self.event_bus.publish(
                    ProjectEvent(
                        type=EventType.FILE_CHANGED,
                        project_id=context.project_id,
                        run_id=context.run_id,
                        agent_id=context.agent_id,
                        data={
                            "path": relative_path,
                            "sandbox_id": context.sandbox_id,
                        },
                    )
                )
        except Exception as e:
            logger.error(
                "file_write_failed",
                sandbox_id=context.sandbox_id,
                written=len(written),
                error=str(e),
            )
            return ToolResult(
                tool_call_id=tool_call_id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
                files=updated_files,
            )

        return ToolResult(
            tool_call_id=tool_call_id,
            content=f"Updated files: {', '.join(written)}",
            success=True,
            files=updated_files,
        )

    async def _execute_read_files(
        self,
        tool_call_id: str,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Read files and return them as a JSON list of {path, content}."""
        contents: list[dict[str, str]] = []
        for path in args["files"]:
            content = await self.sandbox_provider.read_file(context.sandbox_id, path)
            contents.append({"path": path, "content": content})

        return ToolResult(
            tool_call_id=tool_call_id,
            content=self._truncate_text(json.dumps(contents), max_chars=MAX_READ_FILES_CHARS),
            success=True,
        )
