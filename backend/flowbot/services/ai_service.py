# /flowbot/services/ai_service.py

import logging
from dataclasses import dataclass
from typing import Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from flowbot.config.settings import Settings
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.errors import ConfigError, ProviderError, UpstreamTimeoutError
from flowbot.utils.metrics import ai_requests_counter

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-3.5-turbo",
    "anthropic": "claude-3-sonnet-20240229",
}
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000


@dataclass
class Completion:
    text: str
    tokens_used: int = 0
    provider: str = ""
    model: str = ""


class AIService:
    """AI completion collaborator for `ai_agent` nodes."""

    def __init__(self, openai_api_key: Optional[str] = None, anthropic_api_key: Optional[str] = None, timeout: float = 30.0):
        self.openai_client = AsyncOpenAI(api_key=openai_api_key, timeout=timeout) if openai_api_key else None
        self.anthropic_client = AsyncAnthropic(api_key=anthropic_api_key, timeout=timeout) if anthropic_api_key else None
        self.breakers = {name: CircuitBreaker(f"ai_{name}") for name in DEFAULT_MODELS}

        if self.openai_client:
            logger.info("OpenAI client configured.")
        if self.anthropic_client:
            logger.info("Anthropic client configured.")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIService":
        return cls(settings.openai_api_key, settings.anthropic_api_key, settings.ai_timeout_seconds)

    async def complete(
        self,
        provider: str,
        model: Optional[str],
        system_prompt: Optional[str],
        user_prompt: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> Completion:
        """
        Runs one chat completion.

        Raises:
            ConfigError: Unknown provider or no API key for it.
            ProviderError: The provider returned an error.
            UpstreamTimeoutError: The provider did not answer in time.
        """
        provider = (provider or "openai").lower()
        if provider not in DEFAULT_MODELS:
            raise ConfigError(f"Unsupported AI provider '{provider}'")
        model = model or DEFAULT_MODELS[provider]

        client = self.openai_client if provider == "openai" else self.anthropic_client
        if client is None:
            ai_requests_counter.labels(provider=provider, status="not_configured").inc()
            raise ConfigError(f"{provider} API key not configured")

        try:
            if provider == "openai":
                completion = await self.breakers[provider].call(
                    self._complete_openai, model, system_prompt, user_prompt, temperature, max_tokens
                )
            else:
                completion = await self.breakers[provider].call(
                    self._complete_anthropic, model, system_prompt, user_prompt, temperature, max_tokens
                )
        except (openai.APITimeoutError, anthropic.APITimeoutError) as e:
            ai_requests_counter.labels(provider=provider, status="timeout").inc()
            raise UpstreamTimeoutError(f"{provider} completion timed out") from e
        except (openai.APIError, anthropic.APIError) as e:
            ai_requests_counter.labels(provider=provider, status="error").inc()
            logger.error(f"{provider} completion failed: {e}")
            raise ProviderError(f"{provider} API error: {e}") from e
        except ProviderError:
            ai_requests_counter.labels(provider=provider, status="error").inc()
            raise

        ai_requests_counter.labels(provider=provider, status="success").inc()
        return completion

    async def _complete_openai(self, model, system_prompt, user_prompt, temperature, max_tokens) -> Completion:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        response = await self.openai_client.chat.completions.create(
            model=model, messages=messages, max_tokens=max_tokens, temperature=temperature
        )
        text = (response.choices[0].message.content or "").strip()
        tokens = response.usage.total_tokens if response.usage else 0
        return Completion(text=text, tokens_used=tokens, provider="openai", model=model)

    async def _complete_anthropic(self, model, system_prompt, user_prompt, temperature, max_tokens) -> Completion:
        kwargs = {}
        if system_prompt:
            kwargs["system"] = system_prompt

        response = await self.anthropic_client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": user_prompt}],
            **kwargs,
        )
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text").strip()
        usage = response.usage
        tokens = (usage.input_tokens + usage.output_tokens) if usage else 0
        return Completion(text=text, tokens_used=tokens, provider="anthropic", model=model)
