"""LLM client utilities and helper functions for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model
  support, and metrics events
- MockLLMClient: Scripted client for tests
- Message formatting helpers for tool-calling conversations
- Tag parsers for the agents' structured replies (<business_info>,
  <task_summary>)
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import EventType, LLMMetrics, ProjectEvent

logger = structlog.get_logger()


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). This helper guarantees downstream tool
    execution always receives a dict-like payload.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback, and metrics.

    The LLMClient provides:
    - Multi-provider support via LiteLLM
    - Automatic retry on transient failures with exponential backoff
    - Fallback model support when primary model fails after retries
    - Token counting and latency tracking
    - Event emission for observability (including AGENT_ERROR on failure)

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Default model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Delay between retry attempts in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize the LLM client.

        Args:
            event_bus: Optional EventBus for metric emission
            default_model: Model to use if not specified in calls
            fallback_model: Model to try if primary fails (defaults to config)
            retry_attempts: Number of retries (defaults to config llm_max_retries)
            retry_delay: Base seconds between retries (exponential backoff applied)
        """
        self.event_bus = event_bus
        self.default_model = default_model or settings.code_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        project_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic, fallback, and metrics.

        Retries on: RateLimitError (429), ServiceUnavailableError (500/502/503),
        Timeout errors.
        Does NOT retry on: AuthenticationError (401/403), BadRequestError (400).

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response
            project_id: Optional project ID for event emission
            agent_id: Optional agent ID for event emission

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            Exception: After all retries and fallback exhausted
        """
        model = model or self.default_model
        start_time = time.time()

        last_exception: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )

                latency_ms = int((time.time() - start_time) * 1000)
                llm_response = self._parse_response(response, model, latency_ms)

                if self.event_bus and project_id:
                    await self._emit_metrics_event(
                        llm_response.metrics,
                        project_id,
                        agent_id,
                    )

                logger.info(
                    "llm_call_complete",
                    model=model,
                    input_tokens=llm_response.metrics.input_tokens,
                    output_tokens=llm_response.metrics.output_tokens,
                    latency_ms=latency_ms,
                    tool_calls=len(llm_response.tool_calls),
                    attempt=attempt + 1,
                )

                return llm_response

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                retry_count = attempt + 1
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if self.event_bus and project_id:
                    await self._emit_error_event(
                        project_id=project_id,
                        agent_id=agent_id,
                        error=e,
                        model=model,
                        retry_count=0,
                        used_fallback=False,
                    )
                raise

        # All retries exhausted -- try fallback model if configured
        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
                primary_error=str(last_exception),
            )

            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=self.fallback_model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )

                latency_ms = int((time.time() - start_time) * 1000)
                llm_response = self._parse_response(
                    response, self.fallback_model, latency_ms
                )

                if self.event_bus and project_id:
                    await self._emit_metrics_event(
                        llm_response.metrics,
                        project_id,
                        agent_id,
                    )

                logger.info(
                    "llm_fallback_success",
                    fallback_model=self.fallback_model,
                    input_tokens=llm_response.metrics.input_tokens,
                    output_tokens=llm_response.metrics.output_tokens,
                    latency_ms=latency_ms,
                )

                return llm_response

            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        if self.event_bus and project_id and last_exception:
            await self._emit_error_event(
                project_id=project_id,
                agent_id=agent_id,
                error=last_exception,
                model=model,
                retry_count=retry_count,
                used_fallback=bool(
                    self.fallback_model and self.fallback_model != model
                ),
            )

        raise last_exception or Exception("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        kwargs["timeout"] = settings.llm_request_timeout_seconds

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        content = message.content or ""

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = response.usage
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        project_id: str,
        agent_id: str | None,
    ) -> None:
        """Emit an LLM call complete event with metrics."""
        if self.event_bus:
            await self.event_bus.publish(
                ProjectEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    project_id=project_id,
                    agent_id=agent_id,
                    data={
                        "model": metrics.model,
                        "input_tokens": metrics.input_tokens,
                        "output_tokens": metrics.output_tokens,
                        "latency_ms": metrics.latency_ms,
                    },
                )
            )

    async def _emit_error_event(
        self,
        project_id: str,
        agent_id: str | None,
        error: Exception,
        model: str,
        retry_count: int,
        used_fallback: bool,
    ) -> None:
        """Emit an AGENT_ERROR event when an LLM call fails.

        Args:
            project_id: Project ID for the event
            agent_id: Optional agent ID
            error: The exception that caused the failure
            model: The model that was being called
            retry_count: How many retries were attempted
            used_fallback: Whether a fallback model was attempted
        """
        if self.event_bus:
            await self.event_bus.publish(
                ProjectEvent(
                    type=EventType.AGENT_ERROR,
                    project_id=project_id,
                    agent_id=agent_id,
                    data={
                        "error": str(error),
                        "error_type": type(error).__name__,
                        "model": model,
                        "retry_count": retry_count,
                        "used_fallback": used_fallback,
                        "fallback_model": self.fallback_model,
                        "phase": "llm_call",
                    },
                )
            )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


async def complete_text(
    llm_client: LLMClient,
    system_prompt: str,
    user_content: str,
    model: str,
    *,
    project_id: str | None = None,
    agent_id: str | None = None,
) -> str:
    """Run a single-shot, tool-less completion and return its text."""
    response = await llm_client.call(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ],
        model=model,
        project_id=project_id,
        agent_id=agent_id,
    )
    return response.content.strip()


def format_tool_result_for_llm(
    tool_call_id: str,
    result: str,
) -> dict[str, Any]:
    """Format a tool result as a message for the LLM.

    Args:
        tool_call_id: The ID of the tool call this result corresponds to
        result: The string result from tool execution

    Returns:
        A message dict in the format expected by LLMs
    """
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that includes tool calls.

    Args:
        content: The assistant's text response
        tool_calls: List of ToolCallData the assistant made

    Returns:
        A message dict in the format expected by LLMs
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
                continue

            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract JSON from an LLM response that may contain extra text.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    # 1) Pure JSON response.
    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    # 2) JSON within fenced blocks.
    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    # 3) Balanced object extraction from free-form response.
    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


def parse_business_info_tag(response: str) -> dict[str, Any] | None:
    """Extract the JSON object inside <business_info> tags.

    The gatherer reports what it has learned in a
    ``<business_info>{...}</business_info>`` block.

    Returns:
        The parsed object, or None when the tag is missing or not JSON.
    """
    match = re.search(r"<business_info>([\s\S]*?)</business_info>", response)
    if not match:
        return None
    return extract_json_from_response(match.group(1))


def has_task_summary(response: str) -> bool:
    """Return True if the code agent marked its work as finished."""
    return "<task_summary>" in response


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Provides predefined responses for testing agent behavior
    without incurring API costs or network latency.

    Usage:
        >>> responses = [
        ...     LLMResponse(content="Hello", tool_calls=[], ...),
        ...     LLMResponse(content="<task_summary>done</task_summary>", ...),
        ... ]
        >>> client = MockLLMClient(responses=responses)
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize with predefined responses.

        Args:
            responses: List of responses to return in order
            **kwargs: Additional args passed to parent
        """
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        project_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Records the call for later inspection.

        Raises:
            IndexError: If no more responses available
        """
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )

        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
