"""
Text-generation clients supporting Claude (Anthropic) and OpenAI.

Every client exposes ``await client.generate(prompt, options)`` and maps
provider failures onto the engine's taxonomy:

    ProviderTimeout      - the request exceeded its deadline
    ProviderUnavailable  - connection errors, rate limits, 5xx responses
    SafetyBlocked        - the provider refused or filtered the output

Usage:
    from core.llm import GenerationOptions, LLMProvider, create_llm_client

    client = create_llm_client(LLMProvider.ANTHROPIC, api_key="...")

    text = await client.generate("Summarize ...", GenerationOptions(max_tokens=1024))
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union
from dataclasses import dataclass

from .errors import ProviderTimeout, ProviderUnavailable, SafetyBlocked, TransientProviderError

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class GenerationOptions:
    """Per-call generation settings."""
    system: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.3
    timeout_seconds: float = 120.0

    @classmethod
    def coerce(cls, options: Union["GenerationOptions", Dict[str, Any], None]) -> "GenerationOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(**options)


class AnthropicLLMClient:
    """Wrapper for Anthropic's Claude Messages API."""

    provider = LLMProvider.ANTHROPIC

    def __init__(self, api_key: str, default_model: str = "claude-sonnet-4-20250514", base_url: str = None):
        from anthropic import AsyncAnthropic

        # Use base_url if provided, otherwise let Anthropic use its default or env var
        if base_url:
            self.client = AsyncAnthropic(api_key=api_key, base_url=base_url)
        else:
            self.client = AsyncAnthropic(api_key=api_key)
            base_url = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com")
        logger.info("Anthropic client using base URL: %s", base_url)

        self.default_model = default_model

    async def generate(
        self,
        prompt: str,
        options: Union[GenerationOptions, Dict[str, Any], None] = None,
    ) -> str:
        """Generate text for ``prompt`` using Claude."""
        import anthropic

        opts = GenerationOptions.coerce(options)
        request_kwargs = {
            "model": opts.model or self.default_model,
            "max_tokens": opts.max_tokens,
            "temperature": opts.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if opts.system:
            request_kwargs["system"] = opts.system

        try:
            response = await asyncio.wait_for(
                self.client.messages.create(**request_kwargs),
                timeout=opts.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"Anthropic request exceeded {opts.timeout_seconds}s", reason="request timed out")
        except anthropic.APITimeoutError as e:
            raise ProviderTimeout(str(e), reason="request timed out")
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as e:
            raise ProviderUnavailable(str(e), reason="provider unavailable")
        except anthropic.APIStatusError as e:
            # 529 is Anthropic's "overloaded" status
            if e.status_code >= 500:
                raise ProviderUnavailable(str(e), reason="provider unavailable")
            raise

        if response.stop_reason == "refusal":
            raise SafetyBlocked("Anthropic refused the request", reason="blocked by provider safety filter")

        return "".join(block.text for block in response.content if hasattr(block, "text"))


class OpenAILLMClient:
    """Wrapper for OpenAI's Chat Completions API."""

    provider = LLMProvider.OPENAI

    def __init__(self, api_key: str, default_model: str = "gpt-4-turbo-preview"):
        from openai import AsyncOpenAI
        self.client = AsyncOpenAI(api_key=api_key)
        self.default_model = default_model

    async def generate(
        self,
        prompt: str,
        options: Union[GenerationOptions, Dict[str, Any], None] = None,
    ) -> str:
        """Generate text for ``prompt`` using OpenAI."""
        import openai

        opts = GenerationOptions.coerce(options)
        messages: List[Dict[str, str]] = []
        if opts.system:
            messages.append({"role": "system", "content": opts.system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=opts.model or self.default_model,
                    messages=messages,
                    max_tokens=opts.max_tokens,
                    temperature=opts.temperature,
                ),
                timeout=opts.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"OpenAI request exceeded {opts.timeout_seconds}s", reason="request timed out")
        except openai.APITimeoutError as e:
            raise ProviderTimeout(str(e), reason="request timed out")
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise ProviderUnavailable(str(e), reason="provider unavailable")

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise SafetyBlocked("OpenAI filtered the response", reason="blocked by provider safety filter")
        return choice.message.content or ""


class FallbackTextGenerator:
    """Tries each generator in order, moving on after a transient failure."""

    def __init__(self, generators: Sequence[Any]):
        if not generators:
            raise ValueError("FallbackTextGenerator needs at least one generator")
        self.generators = list(generators)

    async def generate(
        self,
        prompt: str,
        options: Union[GenerationOptions, Dict[str, Any], None] = None,
    ) -> str:
        last_error: Optional[TransientProviderError] = None
        for generator in self.generators:
            try:
                return await generator.generate(prompt, options)
            except TransientProviderError as e:
                logger.warning(
                    "Text generator %s failed (%s), trying next provider",
                    type(generator).__name__, e.label,
                )
                last_error = e
        raise last_error


def create_llm_client(provider: LLMProvider, api_key: str, model: Optional[str] = None) -> Any:
    """Client for one provider; ``model`` defaults to the provider default."""
    if not api_key:
        raise ValueError(f"An API key is required for {provider.value}")
    default_model = model or get_default_model(provider)
    if provider == LLMProvider.ANTHROPIC:
        return AnthropicLLMClient(api_key=api_key, default_model=default_model)
    if provider == LLMProvider.OPENAI:
        return OpenAILLMClient(api_key=api_key, default_model=default_model)
    raise ValueError(f"Unknown provider: {provider}")


def create_text_generator(
    anthropic_api_key: Optional[str] = None,
    openai_api_key: Optional[str] = None,
    model: Optional[str] = None,
    preferred: LLMProvider = LLMProvider.ANTHROPIC,
) -> Optional[Any]:
    """
    Build the generator for every configured provider, preferred one first.

    Returns None when no key is configured; agents then use their heuristic
    fallback paths.
    """
    clients = []
    keys = {LLMProvider.ANTHROPIC: anthropic_api_key, LLMProvider.OPENAI: openai_api_key}
    order = [preferred] + [p for p in LLMProvider if p != preferred]
    for provider in order:
        if keys[provider]:
            # The configured model only applies to the preferred provider.
            clients.append(create_llm_client(provider, keys[provider], model if provider == preferred else None))

    if not clients:
        return None
    if len(clients) == 1:
        return clients[0]
    return FallbackTextGenerator(clients)


def get_default_model(provider: LLMProvider) -> str:
    """Get the default model for a provider."""
    defaults = {
        LLMProvider.ANTHROPIC: "claude-sonnet-4-20250514",
        LLMProvider.OPENAI: "gpt-4-turbo-preview"
    }
    return defaults.get(provider, "claude-sonnet-4-20250514")
