from atendente.services.llm.base import LLMProvider, LLMResponse, ToolCall
from atendente.services.llm.openai_provider import OpenAIError, OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIError", "OpenAIProvider", "ToolCall"]
