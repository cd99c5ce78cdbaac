from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import requests

from config import settings, mask_key
from errors import GeneratorError

logger = logging.getLogger(__name__)


class OpenRouterClient:
    """
    Minimal OpenRouter chat client.
    Docs: https://openrouter.ai/docs/api-reference/chat-completion

    The key is resolved per call: an explicit ``api_key`` argument wins,
    otherwise the server key from the environment is used.
    """
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or settings.OPENROUTER_API_KEY or None
        self.api_url = api_url or settings.OPENROUTER_URL
        self.model = model or settings.OPENROUTER_MODEL

        # Optional attribution headers recommended by OpenRouter
        self.referer = referer or settings.APP_REFERER
        self.title = title or settings.APP_TITLE
        self.timeout = timeout or settings.OPENROUTER_TIMEOUT

        logger.info(
            "OpenRouter client ready: model=%s url=%s server_key=%s",
            self.model, self.api_url, mask_key(self.api_key),
        )

    def _headers(self, api_key: str) -> Dict[str, str]:
        h = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if self.referer:
            h["HTTP-Referer"] = self.referer
        if self.title:
            h["X-Title"] = self.title
        return h

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        api_key: Optional[str] = None,
        json_mode: bool = False,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        key = api_key or self.api_key
        if not key:
            raise GeneratorError("No API key available for the language-model service")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if extra:
            payload.update(extra)

        logger.debug("POST %s model=%s key=%s", self.api_url, self.model, mask_key(key))
        try:
            resp = requests.post(
                self.api_url, json=payload, headers=self._headers(key), timeout=self.timeout
            )
        except requests.Timeout as e:
            raise GeneratorError(f"OpenRouter timed out after {self.timeout:.0f}s") from e
        except requests.RequestException as e:
            raise GeneratorError(f"OpenRouter request failed: {e}") from e

        if resp.status_code != 200:
            logger.warning("OpenRouter returned HTTP %s", resp.status_code)
            raise GeneratorError(f"OpenRouter error {resp.status_code}: {resp.text[:500]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeneratorError("OpenRouter returned an unexpected response body") from e
        if not content:
            raise GeneratorError("OpenRouter returned an empty completion")
        return content
