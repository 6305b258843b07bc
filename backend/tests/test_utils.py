"""Tests for agents/utils.py -- LLM client utilities and helpers.

Covers:
- normalize_tool_args: malformed tool argument payloads
- extract_json_from_response: balanced-brace JSON extraction
- parse_business_info_tag and has_task_summary: agent reply tags
- format_tool_result_for_llm and format_assistant_message_with_tools
- LLMClient retry, fallback and error events (LiteLLM request patched out)
- MockLLMClient and complete_text
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from litellm.exceptions import AuthenticationError, RateLimitError

from agents.utils import (
    LLMClient,
    MockLLMClient,
    ToolCallData,
    complete_text,
    extract_json_from_response,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    has_task_summary,
    normalize_tool_args,
    parse_business_info_tag,
)
from events.bus import EventBus
from events.types import EventType
from tests.conftest import make_llm_response

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _model_response(
    content: str | None = "Hello",
    tool_calls: list[Any] | None = None,
    finish_reason: str = "stop",
) -> MagicMock:
    """Build an object shaped like a LiteLLM ModelResponse."""
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls
    choice = MagicMock()
    choice.message = message
    choice.finish_reason = finish_reason
    response = MagicMock()
    response.choices = [choice]
    response.usage.prompt_tokens = 12
    response.usage.completion_tokens = 34
    return response


def _raw_tool_call(call_id: str, name: str, arguments: str) -> MagicMock:
    tc = MagicMock()
    tc.id = call_id
    tc.function.name = name
    tc.function.arguments = arguments
    return tc


def _rate_limited() -> RateLimitError:
    return RateLimitError(message="rate limited", llm_provider="openai", model="gpt-4o")


def _client(
    event_bus: EventBus | None = None,
    fallback_model: str | None = "fallback/model",
    retry_attempts: int = 2,
) -> LLMClient:
    client = LLMClient(
        event_bus=event_bus,
        default_model="primary/model",
        fallback_model=fallback_model,
        retry_attempts=retry_attempts,
        retry_delay=0.01,
    )
    client._async_sleep = AsyncMock()  # type: ignore[method-assign]
    return client


# =========================================================================
# normalize_tool_args
# =========================================================================


class TestNormalizeToolArgs:
    """Normalize malformed tool-call argument payloads."""

    def test_dict_passthrough(self) -> None:
        raw = {"command": "npm install"}
        assert normalize_tool_args(raw) == raw

    def test_json_string_dict(self) -> None:
        result = normalize_tool_args('{"question":"What is the business called?"}')
        assert result["question"] == "What is the business called?"

    def test_json_string_non_dict_wrapped(self) -> None:
        assert normalize_tool_args('["a", "b"]') == {"value": ["a", "b"]}

    def test_invalid_json_string_wrapped_as_raw(self) -> None:
        assert normalize_tool_args("{bad json") == {"raw": "{bad json"}

    def test_none_returns_empty_dict(self) -> None:
        assert normalize_tool_args(None) == {}

    def test_primitive_wrapped(self) -> None:
        assert normalize_tool_args(42) == {"value": 42}


# =========================================================================
# extract_json_from_response -- balanced-brace parser
# =========================================================================


class TestExtractJsonFromResponse:
    """JSON extraction from free-form LLM responses."""

    def test_pure_json(self) -> None:
        assert extract_json_from_response('{"name": "Sunrise Bakery"}') == {
            "name": "Sunrise Bakery"
        }

    def test_json_in_code_fence(self) -> None:
        response = """Collected so far:
```json
{"name": "Sunrise Bakery", "industry": "Food"}
```
Thanks!"""
        result = extract_json_from_response(response)
        assert result is not None
        assert result["industry"] == "Food"

    def test_json_with_surrounding_text(self) -> None:
        result = extract_json_from_response('Info: {"address": "12 Main St"} end')
        assert result == {"address": "12 Main St"}

    def test_nested_json(self) -> None:
        result = extract_json_from_response('Sure! {"a": {"b": {"c": "found"}}}')
        assert result is not None
        assert result["a"]["b"]["c"] == "found"

    def test_no_json(self) -> None:
        assert extract_json_from_response("No JSON here at all.") is None

    def test_empty_string(self) -> None:
        assert extract_json_from_response("") is None

    def test_first_valid_json_returned(self) -> None:
        result = extract_json_from_response('Ignore {invalid and {"valid": true}')
        assert result == {"valid": True}

    def test_string_containing_braces(self) -> None:
        result = extract_json_from_response('{"description": "we bake {everything}"}')
        assert result is not None
        assert result["description"] == "we bake {everything}"


# =========================================================================
# Reply tags
# =========================================================================


class TestParseBusinessInfoTag:
    """<business_info> extraction from gatherer replies."""

    def test_basic(self) -> None:
        reply = 'Got it.\n<business_info>{"name": "Sunrise Bakery"}</business_info>'
        assert parse_business_info_tag(reply) == {"name": "Sunrise Bakery"}

    def test_multiline_with_fence(self) -> None:
        reply = """<business_info>
```json
{"name": "Sunrise Bakery", "address": "12 Main St"}
```
</business_info>"""
        result = parse_business_info_tag(reply)
        assert result is not None
        assert result["address"] == "12 Main St"

    def test_missing_tag(self) -> None:
        assert parse_business_info_tag('{"name": "Sunrise Bakery"}') is None

    def test_invalid_json_inside_tag(self) -> None:
        assert parse_business_info_tag("<business_info>not json</business_info>") is None


class TestHasTaskSummary:
    def test_present(self) -> None:
        assert has_task_summary("Done.\n<task_summary>Built the site</task_summary>")

    def test_absent(self) -> None:
        assert not has_task_summary("Still working on the header")


# =========================================================================
# Message formatting
# =========================================================================


class TestFormatToolResult:
    """Format tool results for LLM message history."""

    def test_basic_result(self) -> None:
        assert format_tool_result_for_llm("call_123", "Updated files: app/page.tsx") == {
            "role": "tool",
            "tool_call_id": "call_123",
            "content": "Updated files: app/page.tsx",
        }


class TestFormatAssistantMessage:
    """Format assistant messages that include tool calls."""

    def test_with_tool_calls(self) -> None:
        tc = ToolCallData(id="tc_1", name="terminal", args={"command": "npm install zod"})
        msg = format_assistant_message_with_tools("Installing.", [tc])
        assert msg["role"] == "assistant"
        assert msg["content"] == "Installing."
        assert msg["tool_calls"] == [{
            "id": "tc_1",
            "type": "function",
            "function": {"name": "terminal", "arguments": '{"command": "npm install zod"}'},
        }]

    def test_without_tool_calls(self) -> None:
        msg = format_assistant_message_with_tools("Just text.", [])
        assert "tool_calls" not in msg


# =========================================================================
# LLMClient
# =========================================================================


class TestLLMClientParsing:
    """LiteLLM responses become LLMResponse objects."""

    async def test_parses_content_and_tool_calls(self) -> None:
        client = _client()
        client._make_request = AsyncMock(return_value=_model_response(  # type: ignore[method-assign]
            content=None,
            tool_calls=[_raw_tool_call("tc_1", "read_files", '{"files": ["app/page.tsx"]}')],
            finish_reason="tool_calls",
        ))

        response = await client.call([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls == [
            ToolCallData(id="tc_1", name="read_files", args={"files": ["app/page.tsx"]})
        ]
        assert response.metrics.model == "primary/model"
        assert (response.metrics.input_tokens, response.metrics.output_tokens) == (12, 34)

    async def test_emits_metrics_event(self, event_bus: EventBus) -> None:
        client = _client(event_bus=event_bus)
        client._make_request = AsyncMock(return_value=_model_response())  # type: ignore[method-assign]

        await client.call([], project_id="proj_1", agent_id="code_agent")

        history = event_bus.get_event_history("proj_1")
        assert [e.type for e in history] == [EventType.LLM_CALL_COMPLETE]
        assert history[0].agent_id == "code_agent"
        assert history[0].data["input_tokens"] == 12


class TestLLMClientRetry:
    """Retry, fallback and non-retryable failures."""

    async def test_retries_then_succeeds(self) -> None:
        client = _client()
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limited(), _model_response("ok")]
        )

        response = await client.call([])

        assert response.content == "ok"
        assert client._make_request.await_count == 2
        client._async_sleep.assert_awaited_once()  # type: ignore[attr-defined]

    async def test_falls_back_after_retries(self) -> None:
        client = _client(retry_attempts=1)
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limited(), _rate_limited(), _model_response("fallback")]
        )

        response = await client.call([])

        assert response.content == "fallback"
        assert response.metrics.model == "fallback/model"
        assert client._make_request.await_args.kwargs["model"] == "fallback/model"

    async def test_raises_and_emits_error_when_everything_fails(
        self, event_bus: EventBus
    ) -> None:
        client = _client(event_bus=event_bus, retry_attempts=0)
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=[_rate_limited(), RuntimeError("fallback down")]
        )

        with pytest.raises(RateLimitError):
            await client.call([], project_id="proj_1")

        errors = [
            e for e in event_bus.get_event_history("proj_1") if e.type == EventType.AGENT_ERROR
        ]
        assert len(errors) == 1
        assert errors[0].data["used_fallback"] is True
        assert errors[0].data["retry_count"] == 1

    async def test_authentication_error_not_retried(self) -> None:
        client = _client()
        client._make_request = AsyncMock(  # type: ignore[method-assign]
            side_effect=AuthenticationError(
                message="bad key", llm_provider="openai", model="gpt-4o"
            )
        )

        with pytest.raises(AuthenticationError):
            await client.call([])

        assert client._make_request.await_count == 1


# =========================================================================
# MockLLMClient / complete_text
# =========================================================================


class TestMockLLMClient:
    async def test_returns_scripted_responses_in_order(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("one"), make_llm_response("two")])
        first = await client.call([{"role": "user", "content": "a"}], agent_id="gatherer")
        second = await client.call([])
        assert (first.content, second.content) == ("one", "two")
        assert client.call_history[0]["agent_id"] == "gatherer"

    async def test_exhausted_raises(self) -> None:
        client = MockLLMClient(responses=[])
        with pytest.raises(IndexError):
            await client.call([])

    async def test_reset(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("one")])
        await client.call([])
        client.reset()
        assert client.call_history == []
        assert (await client.call([])).content == "one"


class TestCompleteText:
    async def test_single_shot_completion(self) -> None:
        client = MockLLMClient(responses=[make_llm_response("  Sunrise Bakery Site \n")])

        text = await complete_text(
            client, "Write a title", "Build a bakery site", "mock/model", agent_id="fragment_title"
        )

        assert text == "Sunrise Bakery Site"
        call = client.call_history[0]
        assert call["model"] == "mock/model"
        assert call["tools"] is None
        assert [m["role"] for m in call["messages"]] == ["system", "user"]
