"""
Language model backends and the fallback-aware LLMService.

Each backend answers complete(system, messages, model, max_tokens,
temperature) -> str and is registered under Capability.LLM. The registry
hint is the model name, so supports(model) decides which backend serves
a given model:

  anthropic     claude-*
  openai        gpt-*, o1*, o3*, o4*
  cloudflare    @cf/*
  huggingface   org/model (anything with a slash that is not @cf/)

LLMService retries once on the default Workers AI model when everything
that could serve the requested model has failed.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from voice.providers import (
    AllProvidersFailed, Capability, LLMProvider, ProviderError, ProviderRegistry, from_sdk_error,
)

logger = structlog.get_logger()

FALLBACK_MODEL = "@cf/meta/llama-3.1-8b-instruct"


# ══════════════════════════════════════════════════════════════
#  SDK BACKENDS
# ══════════════════════════════════════════════════════════════

class AnthropicLLM:
    name = LLMProvider.ANTHROPIC.value

    def __init__(self, api_key: str, default_model: str = "claude-sonnet-4-20250514"):
        self.api_key = api_key
        self.default_model = default_model
        self._client = None

    def supports(self, model: str) -> bool:
        return model.startswith("claude")

    async def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
            logger.info("llm_client_initialized", provider="anthropic")
        return self._client

    async def complete(self, system: str, messages: list[dict[str, str]], model: str = "",
                       max_tokens: int = 1024, temperature: float = 0.7) -> str:
        if not self.api_key:
            raise ProviderError("Anthropic API key not configured", provider=self.name)
        client = await self._get_client()
        import anthropic
        try:
            # system prompt is a separate parameter
            response = await client.messages.create(
                model=model or self.default_model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
        except anthropic.APIError as e:
            raise from_sdk_error(e, self.name) from e
        return response.content[0].text

    async def close(self) -> None:
        self._client = None


class OpenAILLM:
    name = LLMProvider.OPENAI.value

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.default_model = default_model
        self._client = None

    def supports(self, model: str) -> bool:
        return model.startswith(("gpt", "o1", "o3", "o4"))

    async def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)
            logger.info("llm_client_initialized", provider="openai")
        return self._client

    async def complete(self, system: str, messages: list[dict[str, str]], model: str = "",
                       max_tokens: int = 1024, temperature: float = 0.7) -> str:
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured", provider=self.name)
        client = await self._get_client()
        import openai
        try:
            # system prompt travels as the first message
            response = await client.chat.completions.create(
                model=model or self.default_model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
        except openai.APIError as e:
            raise from_sdk_error(e, self.name) from e
        return response.choices[0].message.content or ""

    async def close(self) -> None:
        self._client = None


# ══════════════════════════════════════════════════════════════
#  REST BACKENDS
# ══════════════════════════════════════════════════════════════

class CloudflareLLM:
    """Workers AI text generation."""

    name = LLMProvider.CLOUDFLARE.value

    def __init__(self, account_id: str, api_token: str, timeout_s: float = 60.0):
        self.account_id = account_id
        self.api_token = api_token
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run"
        self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    def supports(self, model: str) -> bool:
        return model.startswith("@cf/")

    @staticmethod
    def _extract_text(data: dict[str, Any]) -> str:
        result = data.get("result")
        if isinstance(result, dict) and result.get("response"):
            return result["response"]
        if isinstance(result, str):
            return result
        return data.get("response") or data.get("text") or ""

    async def complete(self, system: str, messages: list[dict[str, str]], model: str = "",
                       max_tokens: int = 1024, temperature: float = 0.7) -> str:
        if not self.account_id or not self.api_token:
            raise ProviderError("Cloudflare credentials not configured", provider=self.name)
        client = await self._get_client()
        resp = await client.post(
            f"{self.base_url}/{model or FALLBACK_MODEL}",
            json={
                "messages": [{"role": "system", "content": system}] + messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        if resp.status_code >= 400:
            logger.error("cloudflare_llm_error", status=resp.status_code, body=resp.text[:500])
            raise ProviderError(f"Cloudflare LLM request failed ({resp.status_code})",
                                provider=self.name, code=resp.status_code)
        return self._extract_text(resp.json()).strip()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class HuggingFaceLLM:
    """Inference API text generation; the chat is flattened into one prompt."""

    name = LLMProvider.HUGGINGFACE.value
    BASE_URL = "https://api-inference.huggingface.co/models"

    def __init__(self, api_key: str, timeout_s: float = 60.0):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    def supports(self, model: str) -> bool:
        return not model.startswith("@cf/") and "/" in model

    async def complete(self, system: str, messages: list[dict[str, str]], model: str = "",
                       max_tokens: int = 1024, temperature: float = 0.7) -> str:
        if not self.api_key:
            raise ProviderError("HuggingFace API key not configured", provider=self.name)
        lines = [system] + [f"{m['role']}: {m['content']}" for m in messages] + ["assistant:"]
        client = await self._get_client()
        resp = await client.post(
            f"{self.BASE_URL}/{model}",
            json={
                "inputs": "\n".join(lines),
                "parameters": {
                    "max_new_tokens": max_tokens,
                    "temperature": max(temperature, 0.01),
                    "return_full_text": False,
                },
            },
        )
        if resp.status_code >= 400:
            logger.error("huggingface_llm_error", status=resp.status_code, body=resp.text[:500])
            raise ProviderError(f"HuggingFace LLM request failed ({resp.status_code})",
                                provider=self.name, code=resp.status_code)
        data = resp.json()
        if isinstance(data, list):
            data = data[0] if data else {}
        return (data.get("generated_text") or "").strip()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  SERVICE
# ══════════════════════════════════════════════════════════════

class LLMService:
    """Routes completions through the registry by model name."""

    def __init__(self, registry: ProviderRegistry, default_model: str = FALLBACK_MODEL,
                 max_tokens: int = 1024, temperature: float = 0.7):
        self.registry = registry
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(
        self,
        system: str,
        messages: list[dict[str, str]],
        model: str = "",
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        model = model or self.default_model
        params = {
            "system": system,
            "messages": messages,
            "model": model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        text, _ = await self.registry.call(
            Capability.LLM, model, lambda p, kw: p.complete(**kw), params,
        )
        return text

    async def complete_with_fallback(
        self,
        system: str,
        messages: list[dict[str, str]],
        model: str = "",
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """complete(), then once more on FALLBACK_MODEL if that failed."""
        model = model or self.default_model
        try:
            return await self.complete(system, messages, model, max_tokens, temperature)
        except AllProvidersFailed as e:
            if model == FALLBACK_MODEL:
                raise
            logger.warning("llm_model_fallback", requested=model, fallback=FALLBACK_MODEL,
                           error=str(e))
            return await self.complete(system, messages, FALLBACK_MODEL, max_tokens, temperature)
