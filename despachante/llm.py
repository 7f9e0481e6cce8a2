"""
HTTP clients for the LLM providers.

Both providers are used as plain text-in/text-out services. Any transport
error, non-2xx status or unexpected response body is raised as
UpstreamDegraded so callers can fall back.
"""

import base64
import json
import logging
import re
from typing import Any, Optional

import httpx

from despachante.errors import UpstreamDegraded

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json(raw: str) -> dict:
    """
    Pull the first JSON object out of an LLM answer.

    Models often wrap JSON in prose or code fences.

    Raises:
        UpstreamDegraded: no parseable object found
    """
    match = JSON_OBJECT_RE.search(raw or "")
    if not match:
        raise UpstreamDegraded("LLM answer contains no JSON object")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise UpstreamDegraded(f"LLM answer has malformed JSON: {e}")
    if not isinstance(data, dict):
        raise UpstreamDegraded("LLM answer JSON is not an object")
    return data


class GeminiClient:
    """Gemini generateContent over REST."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        http: httpx.AsyncClient,
        timeout: float = 15.0,
        temperature: float = 0.2,
        max_output_tokens: int = 500,
    ):
        self.api_key = api_key
        self.model = model
        self.http = http
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    async def generate(self, prompt: str, inline_data: Optional[tuple[bytes, str]] = None) -> str:
        """
        Generate text for a prompt.

        Args:
            prompt: Prompt text
            inline_data: Optional (content, mime_type) pair sent as an inline part

        Returns:
            Text of the first candidate
        """
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if inline_data is not None:
            content, mime_type = inline_data
            parts.append({
                "inline_data": {
                    "mime_type": mime_type,
                    "data": base64.b64encode(content).decode("ascii"),
                }
            })

        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

        try:
            response = await self.http.post(
                GEMINI_URL.format(model=self.model),
                params={"key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except httpx.HTTPError as e:
            raise UpstreamDegraded(f"Gemini request failed: {e}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamDegraded(f"Gemini response not understood: {e!r}")


class OpenRouterClient:
    """OpenRouter chat completions (DeepSeek by default)."""

    name = "openrouter"

    def __init__(self, api_key: str, model: str, http: httpx.AsyncClient, timeout: float = 15.0):
        self.api_key = api_key
        self.model = model
        self.http = http
        self.timeout = timeout

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.http.post(
                OPENROUTER_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": 0.2,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]
        except httpx.HTTPError as e:
            raise UpstreamDegraded(f"OpenRouter request failed: {e}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamDegraded(f"OpenRouter response not understood: {e!r}")
