"""LLM provider abstraction via LiteLLM Router.

Resolves model handles from (provider, model, temperature, max_tokens)
and invokes them:
- One LiteLLM Router per resolved handle, cached by a composite key
- Provider inferred from the model name when not given
- API keys taken from settings; a missing key makes invocation raise
  LLMUnavailableError so callers can degrade gracefully
- Streaming support via async generators

Also converts langchain messages into the role/content dicts LiteLLM
expects.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import Router
from pydantic import BaseModel, Field

from src.agentmesh.config import Settings, get_settings
from src.agentmesh.errors import LLMUnavailableError

logger = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic")

_ROLE_BY_TYPE = {
    "human": "user",
    "ai": "assistant",
    "system": "system",
    "tool": "tool",
}


# ── Message conversion ───────────────────────────────────────────────────────


def to_llm_messages(messages: list[Any]) -> list[dict[str, Any]]:
    """Convert langchain messages (or dicts) to LiteLLM role/content dicts.

    Tool results are rendered as user messages since the routing prompt
    never issues tool definitions.
    """
    converted = []
    for message in messages:
        if isinstance(message, dict):
            converted.append({
                "role": message.get("role", "user"),
                "content": str(message.get("content", "")),
            })
            continue

        role = _ROLE_BY_TYPE.get(getattr(message, "type", ""), "user")
        content = message.content if isinstance(message.content, str) else str(message.content)
        if role == "tool":
            role = "user"
            content = f"[tool result] {content}"
        entry: dict[str, Any] = {"role": role, "content": content}
        name = getattr(message, "name", None)
        if name and role != "system":
            entry["name"] = name
        converted.append(entry)
    return converted


# ── Model handle ─────────────────────────────────────────────────────────────


@dataclass
class ModelHandle:
    """A resolved, ready-to-invoke model.

    Attributes:
        key: Composite cache key.
        provider: LLM provider id ("openai", "anthropic").
        model: Provider model name.
        temperature: Sampling temperature.
        max_tokens: Response token limit.
        router: LiteLLM Router serving this handle, None without an API key.
    """

    key: str
    provider: str
    model: str
    temperature: float
    max_tokens: int
    router: Router | None = field(default=None, repr=False)

    @property
    def available(self) -> bool:
        return self.router is not None


class LLMResponse(BaseModel):
    content: str = ""
    model: str = ""
    usage: dict[str, int] = Field(default_factory=dict)


# ── LLM Provider ─────────────────────────────────────────────────────────────


class LLMProvider:
    """Stateless model factory with a handle cache.

    Args:
        settings: Optional settings (defaults to get_settings()).
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._cache: dict[str, ModelHandle] = {}

    @staticmethod
    def detect_provider(model: str) -> str:
        """Infer the provider from a model name.

        Raises:
            LLMUnavailableError: If the name matches no known provider.
        """
        name = model.lower()
        if name.startswith(("gpt-", "o1-", "o3-")):
            return "openai"
        if name.startswith("claude-"):
            return "anthropic"
        raise LLMUnavailableError(
            f"Cannot infer provider for model '{model}'",
            details={"model": model},
        )

    @staticmethod
    def cache_key(provider: str, model: str, temperature: float, max_tokens: int) -> str:
        return f"{provider}:{model}:{temperature}:{max_tokens}"

    def resolve(
        self,
        provider: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 1024,
    ) -> ModelHandle:
        """Return a cached handle for the given model parameters.

        Args:
            provider: Provider id; empty infers it from the model name.
            model: Provider model name.
            temperature: Sampling temperature.
            max_tokens: Response token limit.

        Returns:
            ModelHandle, possibly unavailable when no API key is configured.

        Raises:
            LLMUnavailableError: If the provider is unsupported.
        """
        provider = provider or self.detect_provider(model)
        if provider not in SUPPORTED_PROVIDERS:
            raise LLMUnavailableError(
                f"Unsupported LLM provider: {provider}",
                details={"provider": provider, "supported": list(SUPPORTED_PROVIDERS)},
            )

        key = self.cache_key(provider, model, temperature, max_tokens)
        handle = self._cache.get(key)
        if handle is not None:
            return handle

        api_key = self._settings.api_key_for(provider)
        router = None
        if api_key:
            router = Router(
                model_list=[{
                    "model_name": key,
                    "litellm_params": {
                        "model": f"{provider}/{model}",
                        "api_key": api_key,
                    },
                }],
                num_retries=self._settings.LLM_MAX_RETRIES,
                timeout=self._settings.LLM_TIMEOUT,
            )
        else:
            logger.warning("llm_api_key_missing", provider=provider, model=model)

        handle = ModelHandle(
            key=key,
            provider=provider,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            router=router,
        )
        self._cache[key] = handle
        logger.debug("llm_handle_resolved", key=key, available=handle.available)
        return handle

    async def invoke(self, handle: ModelHandle, messages: list[Any]) -> LLMResponse:
        """Run a completion against a resolved handle.

        Args:
            handle: Handle from resolve().
            messages: Langchain messages or role/content dicts.

        Returns:
            LLMResponse with content, model, and usage.

        Raises:
            LLMUnavailableError: If the handle has no API key or the call fails.
        """
        if handle.router is None:
            raise LLMUnavailableError(
                f"No API key configured for provider '{handle.provider}'",
                details={"provider": handle.provider},
            )

        try:
            response = await handle.router.acompletion(
                model=handle.key,
                messages=to_llm_messages(messages),
                max_tokens=handle.max_tokens,
                temperature=handle.temperature,
            )
        except Exception as exc:
            logger.warning("llm_invoke_failed", model=handle.model, error=str(exc))
            raise LLMUnavailableError(
                f"LLM call failed: {exc}",
                details={"provider": handle.provider, "model": handle.model},
            ) from exc

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or handle.model,
            usage=usage,
        )

    async def stream(self, handle: ModelHandle, messages: list[Any]) -> AsyncGenerator[str, None]:
        """Stream a completion, yielding content chunks."""
        if handle.router is None:
            raise LLMUnavailableError(
                f"No API key configured for provider '{handle.provider}'",
                details={"provider": handle.provider},
            )

        response = await handle.router.acompletion(
            model=handle.key,
            messages=to_llm_messages(messages),
            max_tokens=handle.max_tokens,
            temperature=handle.temperature,
            stream=True,
        )

        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    def supported_providers(self) -> list[str]:
        return list(SUPPORTED_PROVIDERS)

    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("llm_cache_cleared")
