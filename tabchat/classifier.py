"""Topic classifier collaborators."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from tabchat.errors import ClassifierUnavailable

logger = logging.getLogger(__name__)


class BaseTopicClassifier(ABC):
    """Abstract interface: prompt in, free text out."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """Return the model's text, or raise ClassifierUnavailable."""
        ...

    def close(self) -> None:
        """Release underlying resources."""


class GeminiClassifier(BaseTopicClassifier):
    """Gemini generateContent over plain HTTP."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 10.0,
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.95,
        max_output_tokens: int = 100,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("Gemini API key is required")
        self.model = model
        self.generation_config = {
            "temperature": temperature,
            "topK": top_k,
            "topP": top_p,
            "maxOutputTokens": max_output_tokens,
        }
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def generate(self, prompt: str) -> str:
        """
        Send one prompt to Gemini.

        Raises:
            ClassifierUnavailable: on timeout, transport error, non-2xx
                status, or a response without candidate text
        """
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": self.generation_config,
        }
        try:
            response = self._client.post(f"/models/{self.model}:generateContent", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ClassifierUnavailable(f"Gemini request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ClassifierUnavailable(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise ClassifierUnavailable(f"Gemini returned invalid JSON: {e}") from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ClassifierUnavailable(f"Malformed Gemini response: {e}") from e

        if not text.strip():
            raise ClassifierUnavailable("Gemini returned empty text")
        logger.debug(f"Gemini returned {len(text)} characters")
        return text

    def close(self) -> None:
        self._client.close()
