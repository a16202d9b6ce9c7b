"""
LLM Client - Multi-provider OpenAI-compatible transport
Supports: OpenAI, DeepSeek, OpenRouter, Gemini (OpenAI endpoint), Zhipu
Features: Async calls, debug logging, retry with backoff, vision content
"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..utils.error_handler import is_fatal_llm_error, log_fatal_error

logger = logging.getLogger("chapterindex.llm")


@dataclass
class LLMResponse:
    """Raw completion text plus token counts"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class LLMClient:
    """
    Async LLM client with multi-provider support

    The model is chosen per call so one client can serve both the primary
    and the fallback binding of every stage.
    """

    def __init__(
        self,
        provider: str = "openai",
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        debug: bool = False
    ):
        self.provider = provider.lower()
        self.debug = debug
        self.model = model or self._get_default_model()
        self.api_key = api_key or self._get_api_key()
        self.base_url = base_url or self._get_base_url()
        self.client: Optional[AsyncOpenAI] = None
        self._init_client()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Properly close the async client"""
        if self.client:
            try:
                await self.client.close()
                logger.debug(f"[LLM] Closed {self.provider} client")
            finally:
                self.client = None

    def _get_default_model(self) -> str:
        defaults = {
            "deepseek": "deepseek-chat",
            "openai": "gpt-4o",
            "openrouter": "openai/gpt-4o",
            "gemini": "gemini-2.0-flash",
            "zhipu": "glm-4v-plus",
        }
        return defaults.get(self.provider, "gpt-4o")

    def _get_api_key(self) -> str:
        """Get API key from environment"""
        env_vars = {
            "deepseek": "DEEPSEEK_API_KEY",
            "openai": "OPENAI_API_KEY",
            "openrouter": "OPENROUTER_API_KEY",
            "gemini": "GEMINI_API_KEY",
            "zhipu": "ZHIPU_API_KEY",
        }
        env_var = env_vars.get(self.provider)
        if not env_var:
            logger.warning(f"[LLM] Unknown provider '{self.provider}'")
            return ""
        key = os.getenv(env_var, "")

        if self.debug and key:
            masked = key[:10] + "..." + key[-4:] if len(key) > 14 else "***"
            logger.debug(f"[LLM] Loaded {self.provider.upper()} API Key: {masked}")

        return key

    def _get_base_url(self) -> Optional[str]:
        urls = {
            "deepseek": "https://api.deepseek.com/v1",
            "openai": None,  # Use default
            "openrouter": "https://openrouter.ai/api/v1",
            "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
            "zhipu": "https://open.bigmodel.cn/api/paas/v4",
        }
        return urls.get(self.provider)

    def _init_client(self):
        if not self.api_key:
            logger.warning(f"[LLM] No API key for {self.provider}")
            return

        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["base_url"] = self.base_url

        self.client = AsyncOpenAI(**kwargs)
        logger.debug(f"[LLM] Initialized {self.provider} client (default model: {self.model})")

    def _supports_json(self) -> bool:
        return self.provider in ["openai", "deepseek", "openrouter"]

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_retries: int = 3,
        max_tokens: Optional[int] = None,
        json_mode: bool = False
    ) -> LLMResponse:
        """
        Send chat messages with retry and debug logging

        Args:
            messages: OpenAI chat messages (content may hold image parts)
            model: Model name, defaults to the client's model
            temperature: Sampling temperature
            max_retries: Maximum attempts for transport errors
            max_tokens: Maximum tokens in response
            json_mode: Request response_format json_object where supported
        """
        if not self.client:
            raise ValueError("LLM client not initialized. Check API key.")

        model = model or self.model
        max_retries = max(1, max_retries)

        if self.debug:
            first = messages[-1]["content"]
            preview = first if isinstance(first, str) else next(
                (part.get("text", "") for part in first if part.get("type") == "text"), "")
            logger.debug(f"[LLM REQUEST] {model} temp={temperature} json={json_mode}")
            logger.debug(f"[PROMPT] {preview[:300].replace(chr(10), ' ')}...")

        params: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode and self._supports_json():
            params["response_format"] = {"type": "json_object"}
        if max_tokens:
            params["max_tokens"] = max_tokens

        for attempt in range(max_retries):
            start_time = time.time()
            try:
                response = await self.client.chat.completions.create(**params)
            except Exception as e:
                if is_fatal_llm_error(e):
                    log_fatal_error(e, f"completion with {model}")
                    raise
                logger.warning(f"[LLM ERROR] Attempt {attempt + 1}/{max_retries}: {e}")
                if attempt < max_retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))
                    continue
                raise

            content = response.choices[0].message.content or ""
            usage = response.usage
            duration_ms = int((time.time() - start_time) * 1000)

            if self.debug:
                logger.debug(
                    f"[LLM RESPONSE] {duration_ms}ms, tokens: "
                    f"{usage.prompt_tokens if usage else 0} -> {usage.completion_tokens if usage else 0}"
                )
                logger.debug(f"[CONTENT] {content[:200].replace(chr(10), ' ')}...")

            return LLMResponse(
                content=content,
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            )
