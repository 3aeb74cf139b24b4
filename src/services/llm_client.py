"""
Chat-completion client for OpenRouter (or any OpenAI-compatible endpoint).
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import requests

from src.services.alert_prompts import SYSTEM_PROMPT
from src.services.config import DEFAULT_MODEL, DEFAULT_OPENROUTER_BASE_URL
from src.services.errors import GenerationError

LOGGER = logging.getLogger(__name__)


class OpenRouterClient:
    """Minimal wrapper over `/chat/completions` returning the first choice's text."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_OPENROUTER_BASE_URL,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
        max_tokens: int = 1500,
        timeout: float = 60.0,
        referer: str = "http://localhost:3000",
        title: str = "Safety News App",
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.referer = referer
        self.title = title

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(
        self,
        messages: Sequence[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        if not self.api_key:
            raise GenerationError(
                "OpenRouter API key not configured. Please set OPENROUTER_API_KEY in your environment."
            )
        body: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GenerationError(f"OpenRouter request failed: {exc}") from exc
        if not response.ok:
            raise GenerationError(
                f"OpenRouter API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationError("OpenRouter returned a non-JSON response") from exc
        content = _first_choice_content(payload)
        if not content:
            raise GenerationError("No content generated by OpenRouter")
        LOGGER.debug("OpenRouter returned %s characters", len(content))
        return content

    def generate(self, context: str) -> str:
        """Run the alert prompt in JSON mode and return the raw model text."""
        return self.complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": context},
            ],
            json_mode=True,
        )


def _first_choice_content(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return None
    return content.strip() or None
