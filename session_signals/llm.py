"""Ollama client for the pattern analyzer.

Uses Ollama's native /api/generate endpoint (non-streaming).
Requires: ollama serve running locally with the configured model pulled.

Usage:
    with OllamaClient("http://localhost:11434", "llama3.2") as client:
        if client.is_available():
            payload = client.generate_json(prompt)
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from .errors import SessionSignalsError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0


class OllamaError(SessionSignalsError):
    """Ollama returned something unusable (HTTP error, missing field)."""


class OllamaConnectionError(OllamaError):
    """Ollama could not be reached (connection refused, timeout)."""

    def __init__(self, cause: BaseException | None = None):
        super().__init__(f"Ollama is not reachable: {cause}" if cause else "Ollama is not reachable")
        self.cause = cause


class OllamaParseError(OllamaError):
    """The model's response was not valid JSON, even after one regeneration."""

    def __init__(self, raw_response: str, first_response: str | None = None):
        super().__init__("Failed to parse Ollama JSON response")
        self.raw_response = raw_response
        self.first_response = first_response


class OllamaClient:
    """Synchronous Ollama client with bounded retries.

    Every request is attempted up to ``max_retries`` times, sleeping
    ``backoff_base * 2**(attempt-1)`` seconds before each retry.

    Args:
        base_url: Ollama server URL.
        default_model: Model used when ``generate`` gets none.
        timeout: Per-request timeout in seconds.
        max_retries: Total attempts per request (at least 1).
        backoff_base: First backoff delay in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        base_url: str,
        default_model: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def __enter__(self) -> OllamaClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def generate(self, prompt: str, model: str | None = None, json_format: bool = False) -> str:
        """Generate a completion and return the ``response`` text.

        Raises:
            OllamaConnectionError: If the server is unreachable after all attempts.
            OllamaError: If the last attempt failed with an HTTP or payload error.
        """
        body: dict[str, Any] = {
            "model": model or self.default_model,
            "prompt": prompt,
            "stream": False,
        }
        if json_format:
            body["format"] = "json"

        last_error: OllamaError = OllamaConnectionError()
        for attempt in range(self.max_retries):
            if attempt > 0:
                delay = self.backoff_base * 2 ** (attempt - 1)
                logger.debug("Retrying Ollama request in %.1fs (attempt %d)", delay, attempt + 1)
                self._sleep(delay)
            try:
                return self._generate_once(body)
            except OllamaError as e:
                last_error = e
                logger.debug("Ollama attempt %d failed: %s", attempt + 1, e)

        raise last_error

    def _generate_once(self, body: dict[str, Any]) -> str:
        try:
            response = self._client.post("/api/generate", json=body)
        except httpx.TransportError as e:
            raise OllamaConnectionError(e) from e

        if response.status_code != 200:
            raise OllamaError(f"Ollama returned HTTP {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise OllamaError(f"Ollama returned a non-JSON body: {e}") from e
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise OllamaError("Ollama response missing 'response' field")
        return text

    def generate_json(self, prompt: str, model: str | None = None) -> Any:
        """Generate in JSON mode and parse the result.

        A response that is not valid JSON is regenerated exactly once.

        Raises:
            OllamaParseError: If both responses fail to parse.
        """
        raw = self.generate(prompt, model=model, json_format=True)
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ollama returned malformed JSON, regenerating once")

        retry = self.generate(prompt, model=model, json_format=True)
        try:
            return json.loads(retry)
        except json.JSONDecodeError:
            raise OllamaParseError(retry, first_response=raw) from None

    def is_available(self) -> bool:
        try:
            response = self._client.get("/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
