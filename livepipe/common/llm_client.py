"""
Provider-agnostic LLM client for LivePipe.

Supports a local Ollama server plus Anthropic, OpenAI and Google Gemini behind
a single chat interface. Every provider failure surfaces as ProviderError with
a reason code; callers never see SDK-specific exceptions.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from .errors import ProviderError
from .llm_utils import has_json_object

logger = logging.getLogger("livepipe.common.llm_client")

MAX_JSON_RETRIES = 2

PROVIDER_ALIASES = {"gemini": "google"}
CLOUD_PROVIDERS = ("anthropic", "openai", "google")


def normalize_provider(provider: str) -> str:
    name = (provider or "").strip().lower()
    return PROVIDER_ALIASES.get(name, name)


def reason_for_status(status: Optional[int]) -> str:
    if status == 429:
        return "rate_limited"
    if status in (401, 403):
        return "auth_failed"
    return "http_error"


def translate_error(exc: Exception, provider: str) -> ProviderError:
    """Map an SDK/httpx exception onto ProviderError"""
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = getattr(exc, "code", None)
    if not isinstance(status, int):
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if not isinstance(status, int):
        status = None

    name = type(exc).__name__
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)) or "Timeout" in name:
        reason = "timeout"
    elif status is not None:
        reason = reason_for_status(status)
    else:
        reason = "network_error"

    return ProviderError(
        f"{provider} request failed: {exc}",
        provider=provider,
        reason=reason,
        status=status,
        response_text=str(exc)[:300],
    )


class LLMClient:
    """Unified chat client across local and cloud LLM providers."""

    def __init__(
        self,
        provider: str = "ollama",
        model: str = "",
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self.provider = normalize_provider(provider) or "ollama"
        self.model = model
        self.endpoint = (endpoint or "http://localhost:11434").rstrip("/")
        self.timeout = timeout
        self._client = None

        if self.provider == "ollama":
            self._client = httpx.Client(timeout=timeout)
            return

        if self.provider in CLOUD_PROVIDERS and not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        if self.provider == "anthropic":
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            try:
                import google.generativeai as genai

                genai.configure(api_key=api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by system prompt
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.1,
        max_tokens: int = 300,
        json_mode: bool = False,
    ) -> str:
        """Send ordered role/content messages, return the model's text.

        In json_mode the provider's structured output is requested where
        supported and the call is retried up to MAX_JSON_RETRIES times while
        the reply contains no JSON object. The last reply is returned as-is.

        Raises:
            ProviderError: transport, auth, rate-limit or HTTP failure
        """
        if not self.is_available:
            raise ProviderError(
                "LLM client is not available", provider=self.provider, reason="unavailable"
            )

        attempts = 1 + (MAX_JSON_RETRIES if json_mode else 0)
        text = ""
        for attempt in range(1, attempts + 1):
            text = self._chat_once(messages, temperature, max_tokens, json_mode)
            if not json_mode or has_json_object(text):
                return text
            logger.warning(
                "%s returned invalid JSON (attempt %d/%d): %s",
                self.provider, attempt, attempts, text[:120],
            )
        return text

    def close(self) -> None:
        if self.provider == "ollama" and self._client is not None:
            self._client.close()

    def _chat_once(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> str:
        try:
            if self.provider == "ollama":
                return self._chat_ollama(messages, temperature, max_tokens, json_mode)
            if self.provider == "anthropic":
                return self._chat_anthropic(messages, temperature, max_tokens)
            if self.provider == "openai":
                return self._chat_openai(messages, temperature, max_tokens, json_mode)
            if self.provider == "google":
                return self._chat_google(messages, temperature, max_tokens, json_mode)
        except ProviderError:
            raise
        except Exception as e:
            raise translate_error(e, self.provider) from e

        raise ProviderError(
            f"Unsupported LLM provider: {self.provider}", provider=self.provider, reason="unavailable"
        )

    def _chat_ollama(self, messages, temperature, max_tokens, json_mode) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_mode:
            payload["format"] = "json"

        response = self._client.post(f"{self.endpoint}/api/chat", json=payload)
        if response.status_code >= 400:
            raise ProviderError(
                f"ollama HTTP {response.status_code}",
                provider="ollama",
                reason=reason_for_status(response.status_code),
                status=response.status_code,
                response_text=response.text[:300],
            )

        data = response.json()
        return ((data.get("message") or {}).get("content") or "").strip()

    def _chat_anthropic(self, messages, temperature, max_tokens) -> str:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": turns,
            "timeout": self.timeout,
        }
        if system:
            kwargs["system"] = system
        response = self._client.messages.create(**kwargs)
        return response.content[0].text.strip()

    def _chat_openai(self, messages, temperature, max_tokens, json_mode) -> str:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
            "timeout": self.timeout,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self._client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()

    def _chat_google(self, messages, temperature, max_tokens, json_mode) -> str:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        if system not in self._google_models:
            kwargs = {"model_name": self.model}
            if system:
                kwargs["system_instruction"] = system
            self._google_models[system] = self._client.GenerativeModel(**kwargs)
        model = self._google_models[system]

        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [m["content"]]}
            for m in messages
            if m["role"] != "system"
        ]
        generation_config = {"temperature": temperature, "max_output_tokens": max_tokens}
        if json_mode:
            generation_config["response_mime_type"] = "application/json"

        response = model.generate_content(
            contents,
            generation_config=generation_config,
            request_options={"timeout": self.timeout},
        )
        return response.text.strip()
