"""
LLM Service - Handles interactions with different LLM providers
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import aiohttp

from services.retry_policy import LLMAPIError, RetryPolicy, call_with_policy

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "openai", "vllm")


class LLMService:
    """Service for interacting with various LLM providers"""

    def __init__(self, config: dict[str, Any], *, sleep=asyncio.sleep):
        self.config = config
        self.provider = config.get("provider", "anthropic")
        self.policy = RetryPolicy.from_config(config.get("retry", {}))
        self._sleep = sleep

    # ========== Config Helpers ==========

    def _get_stage_config(self, stage_model_key: str | None) -> dict[str, Any]:
        """Model, fallback, token budget and temperature for a pipeline stage"""
        stages = self.config.get("stages", {})
        cfg = dict(stages.get("DEFAULT", {}))
        if stage_model_key:
            cfg.update(stages.get(stage_model_key, {}))

        # Non-Anthropic providers serve a single configured model
        if self.provider != "anthropic":
            provider_cfg = self.config.get(self.provider, {})
            cfg["model"] = provider_cfg.get("model", "default")
            cfg["fallbackModel"] = provider_cfg.get("fallbackModel")
        return cfg

    def _get_anthropic_config(self) -> tuple[str, dict[str, str]]:
        """Get Anthropic config: (url, headers). Raises if api_key missing."""
        cfg = self.config.get("anthropic", {})
        api_key = cfg.get("apiKey")
        if not api_key:
            raise ValueError("Anthropic API key not configured")
        url = cfg.get("endpoint", "https://api.anthropic.com/v1/messages")
        headers = {
            "x-api-key": api_key,
            "anthropic-version": cfg.get("version", "2023-06-01"),
            "Content-Type": "application/json",
        }
        return url, headers

    def _get_openai_config(self) -> tuple[str, dict[str, str]]:
        """Get OpenAI config: (url, headers). Raises if api_key missing."""
        cfg = self.config.get("openai", {})
        api_key = cfg.get("apiKey")
        if not api_key:
            raise ValueError("OpenAI API key not configured")
        url = "https://api.openai.com/v1/chat/completions"
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        return url, headers

    def _get_vllm_config(self) -> tuple[str, dict[str, str]]:
        """Get vLLM config: (url, headers)."""
        cfg = self.config.get("vllm", {})
        endpoint = cfg.get("endpoint", "http://localhost:8000")
        url = f"{endpoint.rstrip('/')}/v1/chat/completions"
        headers = {"Content-Type": "application/json"}
        if cfg.get("apiKey"):
            headers["Authorization"] = f"Bearer {cfg['apiKey']}"
        return url, headers

    # ========== Message/Payload Builders ==========

    def _build_openai_messages(self, system_prompt: str, user_prompt: str) -> list:
        """Build OpenAI-style messages array"""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    def _build_openai_payload(
        self,
        model: str,
        messages: list,
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Build OpenAI-compatible request payload"""
        return {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": False,
        }

    def _build_anthropic_payload(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ) -> dict[str, Any]:
        """Build Anthropic messages API payload"""
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    # ========== HTTP ==========

    @asynccontextmanager
    async def _request(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        timeout_seconds: int = 120,
        provider: str = "API",
    ):
        """Context manager for HTTP POST requests with automatic session cleanup"""
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error("[LLMService] %s API error (%s): %s", provider, response.status, error_text)
                    raise LLMAPIError(response.status, error_text, provider)
                yield response

    async def _request_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        provider: str = "API",
    ) -> dict[str, Any]:
        """Make request and return JSON response"""
        timeout_seconds = self.config.get("requestTimeoutSeconds", 120)
        try:
            async with self._request(url, payload, headers, timeout_seconds, provider) as response:
                return await response.json()
        except asyncio.TimeoutError as e:
            raise LLMAPIError(None, f"request timed out after {timeout_seconds}s", provider) from e
        except aiohttp.ClientError as e:
            raise LLMAPIError(None, str(e), provider) from e

    # ========== Response Parsers ==========

    def _parse_openai_response(self, data: dict[str, Any]) -> str:
        """Parse OpenAI-compatible response format"""
        if "choices" in data and len(data["choices"]) > 0:
            choice = data["choices"][0]
            if "message" in choice and "content" in choice["message"]:
                return choice["message"]["content"]
            elif "text" in choice:
                return choice["text"]
        raise LLMAPIError(200, "No valid response from API", "OpenAI")

    def _parse_anthropic_response(self, data: dict[str, Any]) -> str:
        """Concatenate the text blocks of an Anthropic messages response"""
        blocks = data.get("content") or []
        texts = [block.get("text", "") for block in blocks if block.get("type") == "text"]
        if not texts:
            raise LLMAPIError(200, "No text content in response", "Anthropic")
        if data.get("stop_reason") == "max_tokens":
            logger.warning("[LLMService] Anthropic response hit max_tokens; output may be truncated")
        return "".join(texts)

    # ========== Calls ==========

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        stage_name: str,
        stage_model_key: str | None = None,
    ) -> str:
        """Complete one prompt pair for a pipeline stage under the retry policy"""
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {self.provider}")

        cfg = self._get_stage_config(stage_model_key)
        max_tokens = cfg.get("maxTokens", 4096)
        temperature = cfg.get("temperature", 0.0)

        async def _attempt(model: str) -> str:
            logger.info("[LLMService] %s: calling %s model %s", stage_name, self.provider, model)
            if self.provider == "anthropic":
                text = await self._call_anthropic(model, system_prompt, user_prompt, max_tokens, temperature)
            elif self.provider == "openai":
                text = await self._call_openai(model, system_prompt, user_prompt, max_tokens, temperature)
            else:
                text = await self._call_vllm(model, system_prompt, user_prompt, max_tokens, temperature)
            logger.info("[LLMService] %s: received %d chars from %s", stage_name, len(text), model)
            return text

        return await call_with_policy(
            _attempt,
            self.policy,
            cfg.get("model", "default"),
            cfg.get("fallbackModel"),
            label=stage_name,
            sleep=self._sleep,
        )

    async def _call_anthropic(
        self, model: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
    ) -> str:
        """Call Anthropic messages API"""
        url, headers = self._get_anthropic_config()
        payload = self._build_anthropic_payload(model, system_prompt, user_prompt, max_tokens, temperature)
        data = await self._request_json(url, payload, headers, provider="Anthropic")
        return self._parse_anthropic_response(data)

    async def _call_vllm(
        self, model: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
    ) -> str:
        """Call vLLM endpoint with OpenAI Compatible API"""
        url, headers = self._get_vllm_config()
        messages = self._build_openai_messages(system_prompt, user_prompt)
        payload = self._build_openai_payload(model, messages, max_tokens, temperature)
        data = await self._request_json(url, payload, headers, provider="vLLM")
        return self._parse_openai_response(data)

    async def _call_openai(
        self, model: str, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float
    ) -> str:
        """Call OpenAI API"""
        url, headers = self._get_openai_config()
        messages = self._build_openai_messages(system_prompt, user_prompt)
        payload = self._build_openai_payload(model, messages, max_tokens, temperature)
        data = await self._request_json(url, payload, headers, provider="OpenAI")
        return self._parse_openai_response(data)


# ═══════════════════════════════════════════════════════════════════════════
# Module-level helper functions
# ═══════════════════════════════════════════════════════════════════════════


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    config: dict[str, Any],
    stage_name: str = "LLM call",
    stage_model_key: str | None = None,
) -> str:
    """Convenience function to call LLM with the given config."""
    service = LLMService(config)
    return await service.call(system_prompt, user_prompt, stage_name, stage_model_key)
