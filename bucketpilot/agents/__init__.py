"""Assistant collaborator package."""

from bucketpilot.agents.ai_agents import (
    AssistantError,
    AssistantInterface,
    GeminiAssistant,
    build_assistant_context,
    parse_assistant_response,
)

__all__ = [
    "AssistantError",
    "AssistantInterface",
    "GeminiAssistant",
    "build_assistant_context",
    "parse_assistant_response",
]
