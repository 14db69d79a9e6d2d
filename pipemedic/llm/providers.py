from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import httpx

from pipemedic.errors import ProviderError
from pipemedic.settings import Settings


class Provider(Protocol):
    name: str

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        """Return the model's text or raise ProviderError."""
        ...


def _non_empty(provider: str, text: Any) -> str:
    if not isinstance(text, str) or not text.strip():
        raise ProviderError(provider, "empty_output")
    return text


@dataclass(frozen=True)
class OpenAICompatibleProvider:
    """
    Any OpenAI-compatible chat endpoint (DeepSeek, OpenRouter, Groq).

    Endpoint: POST {base_url}/chat/completions
    """

    name: str
    api_key: str
    model: str
    base_url: str
    timeout_s: float = 60.0
    max_tokens: int = 4096

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": int(max(1, min(int(self.max_tokens), 8192))),
        }
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                r = client.post(url, headers=headers, json=payload)
                if r.status_code != 200:
                    raise ProviderError(self.name, f"http_{r.status_code}: {r.text[:500]}")
                data = r.json()
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport_error: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, f"response_not_json: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"response_parse_error: {str(data)[:500]}") from e
        return _non_empty(self.name, content)


@dataclass(frozen=True)
class GeminiProvider:
    """
    Google Gemini generateContent API.

    Endpoint: POST {base_url}/models/{model}:generateContent?key=...
    Gemini has no system role on v1, so framing is prepended to the prompt.
    """

    api_key: str
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1"
    timeout_s: float = 60.0
    name: str = "gemini"

    def invoke(self, prompt: str, *, system: str | None = None) -> str:
        url = f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"
        text = f"{system}\n\n{prompt}" if system else prompt
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {"temperature": 0},
        }
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                r = client.post(url, params={"key": self.api_key}, json=payload)
                if r.status_code != 200:
                    raise ProviderError(self.name, f"http_{r.status_code}: {r.text[:500]}")
                data = r.json()
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"transport_error: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ProviderError(self.name, f"response_not_json: {e}") from e

        try:
            content = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"response_parse_error: {str(data)[:500]}") from e
        return _non_empty(self.name, content)


def build_providers(settings: Settings) -> List[Provider]:
    """
    Ordered provider chain from settings.ai_provider_order. Providers with no
    API key configured are left out rather than failing on every call.
    """
    out: List[Provider] = []
    common = {"timeout_s": settings.ai_timeout_s}
    for name in settings.provider_order():
        if name == "deepseek" and settings.deepseek_api_key:
            out.append(
                OpenAICompatibleProvider(
                    name="deepseek",
                    api_key=settings.deepseek_api_key,
                    model=settings.deepseek_model,
                    base_url=settings.deepseek_base_url,
                    max_tokens=settings.ai_max_tokens,
                    **common,
                )
            )
        elif name == "openrouter" and settings.openrouter_api_key:
            out.append(
                OpenAICompatibleProvider(
                    name="openrouter",
                    api_key=settings.openrouter_api_key,
                    model=settings.openrouter_model,
                    base_url=settings.openrouter_base_url,
                    max_tokens=settings.ai_max_tokens,
                    **common,
                )
            )
        elif name == "groq" and settings.groq_api_key:
            out.append(
                OpenAICompatibleProvider(
                    name="groq",
                    api_key=settings.groq_api_key,
                    model=settings.groq_model,
                    base_url=settings.groq_base_url,
                    max_tokens=settings.ai_max_tokens,
                    **common,
                )
            )
        elif name == "gemini" and settings.gemini_api_key:
            out.append(
                GeminiProvider(
                    api_key=settings.gemini_api_key,
                    model=settings.gemini_model,
                    base_url=settings.gemini_base_url,
                    **common,
                )
            )
    return out
