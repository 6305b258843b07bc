"""Agent tools, prompts, LLM integration, routing and the agent network.

This module exports the key components needed for agent execution:
- Tool definitions and executor for sandbox operations
- System prompts for the gatherer, code agent and finalization calls
- LLM client utilities with retry logic and metrics events
- The pure router and the LangGraph agent network
"""

from agents.network_graph import (
    NO_RESPONSE_SENTINEL,
    AgentNetworkGraph,
    NetworkRunResult,
    NetworkState,
    create_network_state,
)
from agents.prompts import (
    BUSINESS_INFO_GATHERER_PROMPT,
    CODE_AGENT_PROMPT,
    FRAGMENT_TITLE_PROMPT,
    RESPONSE_PROMPT,
)
from agents.router import (
    REQUIRED_BUSINESS_FIELDS,
    NextStep,
    merge_business_info,
    missing_business_fields,
    select_next_agent,
)
from agents.tools import (
    TOOL_DEFINITIONS,
    ToolCall,
    ToolContext,
    ToolExecutor,
    ToolResult,
    get_tool_definitions_for_llm,
)
from agents.utils import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    complete_text,
    extract_json_from_response,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)

__all__ = [
    # Tools
    "TOOL_DEFINITIONS",
    "ToolCall",
    "ToolContext",
    "ToolExecutor",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Prompts
    "BUSINESS_INFO_GATHERER_PROMPT",
    "CODE_AGENT_PROMPT",
    "FRAGMENT_TITLE_PROMPT",
    "RESPONSE_PROMPT",
    # Utils
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "complete_text",
    "extract_json_from_response",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
    # Router
    "NextStep",
    "REQUIRED_BUSINESS_FIELDS",
    "merge_business_info",
    "missing_business_fields",
    "select_next_agent",
    # Agent network
    "AgentNetworkGraph",
    "NetworkRunResult",
    "NetworkState",
    "NO_RESPONSE_SENTINEL",
    "create_network_state",
]
