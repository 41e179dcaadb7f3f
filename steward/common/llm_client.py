"""
Provider-agnostic LLM client for Steward.

Supports a local Ollama server, Anthropic, OpenAI, and Google Gemini with a
shared text-generation interface. ``FallbackCompletion`` tries the configured
providers in order, and ``complete_async`` runs a completion off the event
loop under a bounded timeout.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol

import httpx

from .config import LLMConfig
from .errors import CompletionUnavailableError

logger = logging.getLogger("steward.common.llm_client")


class Completion(Protocol):
    """The single capability the pipeline needs from a language model."""

    @property
    def is_available(self) -> bool: ...

    def complete(self, prompt: str, max_tokens: int = 300) -> str: ...


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "ollama",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
        ollama_endpoint: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.provider = (provider or "ollama").lower()
        self.model = model
        self.timeout = timeout
        self._client = None

        if self.provider == "ollama":
            if not ollama_endpoint:
                logger.info("%s endpoint not provided, LLM client unavailable", self.provider)
                return
            self._ollama_endpoint = ollama_endpoint
            self._client = httpx.Client(timeout=timeout)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=anthropic_api_key)
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=openai_api_key)
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, config: LLMConfig, provider: Optional[str] = None) -> "LLMClient":
        provider = (provider or config.provider).lower()
        models = {
            "ollama": config.ollama_model,
            "anthropic": config.anthropic_model,
            "openai": config.openai_model,
            "google": config.google_model,
        }
        return cls(
            provider=provider,
            model=models.get(provider, ""),
            anthropic_api_key=config.anthropic_api_key or None,
            openai_api_key=config.openai_api_key or None,
            google_api_key=config.google_api_key or None,
            ollama_endpoint=config.ollama_endpoint or None,
            timeout=config.timeout,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def complete(self, prompt: str, max_tokens: int = 300) -> str:
        return self.generate(prompt, max_tokens=max_tokens, timeout=self.timeout)

    def close(self) -> None:
        """Release pooled HTTP connections; the google client holds none"""
        if self.provider in ("ollama", "anthropic", "openai") and self._client is not None:
            self._client.close()

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        if not self.is_available:
            raise CompletionUnavailableError("LLM client is not available")

        if self.provider == "ollama":
            full_prompt = f"{system}\n\n{prompt}" if system else prompt
            response = self._client.post(
                self._ollama_endpoint,
                json={
                    "model": self.model,
                    "prompt": full_prompt,
                    "stream": False,
                    "options": {"temperature": 0.3, "num_predict": max_tokens, "top_p": 0.9},
                },
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
            return (data.get("response") or "").strip()

        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            return response.content[0].text.strip()

        if self.provider == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=messages,
                timeout=timeout,
            )
            return (response.choices[0].message.content or "").strip()

        if self.provider == "google":
            kwargs = {"model_name": self.model}
            if system:
                kwargs["system_instruction"] = system
            model = self._client.GenerativeModel(**kwargs)
            response = model.generate_content(
                prompt,
                generation_config={"max_output_tokens": max_tokens},
                request_options={"timeout": timeout},
            )
            return response.text.strip()

        raise CompletionUnavailableError(f"Unsupported LLM provider: {self.provider}")


class FallbackCompletion:
    """Tries each available client in order until one returns text."""

    def __init__(self, clients: List[LLMClient]) -> None:
        self._clients = [c for c in clients if c.is_available]

    @classmethod
    def from_config(cls, config: LLMConfig) -> "FallbackCompletion":
        order = [config.provider] + [p for p in config.fallback_providers if p != config.provider]
        return cls([LLMClient.from_config(config, provider=p) for p in order])

    @property
    def is_available(self) -> bool:
        return bool(self._clients)

    @property
    def providers(self) -> List[str]:
        return [c.provider for c in self._clients]

    def close(self) -> None:
        for client in self._clients:
            client.close()

    def complete(self, prompt: str, max_tokens: int = 300) -> str:
        last_error: Optional[Exception] = None
        for client in self._clients:
            try:
                return client.complete(prompt, max_tokens=max_tokens)
            except Exception as e:
                logger.warning("Provider %s failed, trying next: %s", client.provider, e)
                last_error = e
        raise CompletionUnavailableError(f"All LLM providers failed: {last_error}")


async def complete_async(
    llm: Completion,
    prompt: str,
    max_tokens: int = 300,
    timeout: float = 30.0,
) -> str:
    """Run a blocking completion in a worker thread, bounded by ``timeout``.

    Raises ``asyncio.TimeoutError`` on timeout and propagates provider errors;
    callers apply their own fallback.
    """
    if llm is None or not llm.is_available:
        raise CompletionUnavailableError("No LLM provider available")
    return await asyncio.wait_for(
        asyncio.to_thread(llm.complete, prompt, max_tokens),
        timeout=timeout,
    )
