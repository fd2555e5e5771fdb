"""Reasoning collaborator transport over LiteLLM.

The graph memory only ever sends short structured-output prompts, so the
provider exposes a single ``complete(messages)`` call, resolves credentials
per model family from the environment and keeps running token totals.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

import litellm
from dotenv import load_dotenv
from litellm import acompletion

load_dotenv()


@dataclass(frozen=True)
class ProviderRoute:
    """How one model family is reached through LiteLLM."""
    name: str
    prefixes: tuple[str, ...]
    env_prefix: str
    litellm_prefix: str = ""        # prepended when LiteLLM needs an explicit route
    json_mode: bool = True          # accepts response_format={"type": "json_object"}


ROUTES: tuple[ProviderRoute, ...] = (
    ProviderRoute("openai", ("gpt-", "o1-", "o3-", "o4-"), "OPENAI"),
    ProviderRoute("anthropic", ("claude-",), "ANTHROPIC", json_mode=False),
    # DashScope speaks the OpenAI wire format
    ProviderRoute("dashscope", ("qwen-", "qwen/", "qwen2", "qwen3"), "DASHSCOPE", litellm_prefix="openai/"),
    ProviderRoute("deepseek", ("deepseek-", "deepseek/"), "DEEPSEEK"),
    ProviderRoute("ollama", ("ollama/", "ollama_chat/"), "OLLAMA"),
)

DEFAULT_ROUTE = ROUTES[0]


def route_for(model: str) -> ProviderRoute:
    """Route whose prefix matches ``model``; OpenAI-compatible otherwise."""
    lowered = model.lower()
    for route in ROUTES:
        if lowered.startswith(route.prefixes):
            return route
    return DEFAULT_ROUTE


@dataclass
class LLMConfig:
    """Configuration for the reasoning model."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 2048
    json_mode: bool = True

    # Resolved from <PREFIX>_API_KEY / <PREFIX>_BASE_URL when unset
    api_key: str | None = None
    api_base: str | None = None

    # Transport-level retries; task-level retries live in the processor
    num_retries: int = 0
    timeout: float = 120.0


@dataclass
class LLMResponse:
    content: str | None = None
    finish_reason: str = "stop"
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class UsageTotals:
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, response: LLMResponse) -> None:
        self.calls += 1
        self.prompt_tokens += response.prompt_tokens
        self.completion_tokens += response.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "calls": self.calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }


class LLMProvider:
    """Completion client for reasoning tasks.

    Supported families: OpenAI, Anthropic, DashScope/Qwen, DeepSeek and
    Ollama. Credentials come from ``<PREFIX>_API_KEY`` and
    ``<PREFIX>_BASE_URL`` (or ``<PREFIX>_API_BASE``).
    """

    def __init__(self, config: LLMConfig | None = None, logger: logging.Logger | None = None):
        self.config = config or LLMConfig()
        self.route = route_for(self.config.model)
        self.usage = UsageTotals()
        self._log = logger or logging.getLogger(__name__)
        litellm.drop_params = True
        self._resolve_credentials()

    @property
    def provider(self) -> str:
        return self.route.name

    def _resolve_credentials(self) -> None:
        prefix = self.route.env_prefix
        self.config.api_key = self.config.api_key or os.getenv(f"{prefix}_API_KEY")
        self.config.api_base = (
            self.config.api_base
            or os.getenv(f"{prefix}_BASE_URL")
            or os.getenv(f"{prefix}_API_BASE")
        )

    def model_name(self) -> str:
        """Model identifier as LiteLLM expects it."""
        model = self.config.model
        prefix = self.route.litellm_prefix
        if prefix and not model.startswith(prefix):
            return prefix + model
        return model

    def request_params(self, messages: list[dict]) -> dict:
        params = {
            "model": self.model_name(),
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "timeout": self.config.timeout,
            "num_retries": self.config.num_retries,
        }
        if self.config.json_mode and self.route.json_mode:
            params["response_format"] = {"type": "json_object"}
        if self.config.api_base:
            params["api_base"] = self.config.api_base
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        return params

    async def complete(self, messages: list[dict]) -> LLMResponse:
        """One completion. Transport errors propagate to the caller's retry policy."""
        raw = await acompletion(**self.request_params(messages))
        response = _to_response(raw)
        self.usage.add(response)
        self._log.debug(
            "%s completion: %d prompt / %d completion tokens",
            self.config.model, response.prompt_tokens, response.completion_tokens,
        )
        return response

    def get_provider_info(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.config.model,
            "api_base": self.config.api_base or "(default)",
            "api_key_set": bool(self.config.api_key),
            "usage": self.usage.to_dict(),
        }


def _to_response(raw) -> LLMResponse:
    choice = raw.choices[0]
    usage = getattr(raw, "usage", None)
    return LLMResponse(
        content=choice.message.content,
        finish_reason=choice.finish_reason or "stop",
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )
