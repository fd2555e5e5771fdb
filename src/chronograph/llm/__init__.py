"""LLM provider interfaces using LiteLLM."""

from src.chronograph.llm.provider import LLMProvider, LLMConfig, LLMResponse

__all__ = ["LLMProvider", "LLMConfig", "LLMResponse"]
