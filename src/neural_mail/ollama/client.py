"""Ollama client implementation.

This module provides an async client for the local Ollama HTTP API.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from neural_mail.config import Settings
from neural_mail.exceptions import (
    OllamaConnectionError,
    OllamaInferenceError,
    OllamaModelNotFoundError,
)

logger = structlog.get_logger()


class OllamaClient:
    """Ollama LLM client for local inference.

    Wraps ``/api/generate``, ``/api/chat`` and ``/api/tags``. Transport
    failures are mapped onto the client's own exceptions; a read timeout
    surfaces as the built-in :class:`TimeoutError`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Ollama client.

        Args:
            settings: Application settings. If None, uses default settings.
            transport: Optional httpx transport, used by tests to fake the API.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.ollama_host,
            timeout=httpx.Timeout(
                self.settings.ollama_timeout,
                connect=self.settings.ollama_connect_timeout,
            ),
            transport=transport,
        )
        logger.info(
            "ollama_client_initialized",
            host=self.settings.ollama_host,
            model=self.settings.ollama_model,
        )

    async def list_models(self) -> list[str]:
        """Return the names of the installed models.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaInferenceError: If the response cannot be used.
        """

        data = await self._request("GET", "/api/tags")
        models = data.get("models")
        if not isinstance(models, list):
            raise OllamaInferenceError("Unexpected /api/tags response")
        return [m["name"] for m in models if isinstance(m, dict) and "name" in m]

    async def has_model(self, model: str | None = None) -> bool:
        """Check whether ``model`` (default: the configured one) is installed."""

        model = model or self.settings.ollama_model
        names = set(await self.list_models())
        return model in names or f"{model}:latest" in names

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Generate text using Ollama in a single response.

        Args:
            prompt: The prompt to send to the model.
            model: Model name to use. If None, uses default from settings.
            options: Model options such as ``num_ctx``.

        Returns:
            Response dictionary containing generated text and metadata.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaModelNotFoundError: If the model is not installed.
            OllamaInferenceError: If inference fails.
        """
        model = model or self.settings.ollama_model
        logger.info("generating_text", model=model, prompt_length=len(prompt))
        payload = self._payload(model, stream=False, options=options, prompt=prompt)
        return await self._request("POST", "/api/generate", json=payload)

    async def generate_stream(
        self,
        prompt: str,
        model: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """Stream generated text chunks.

        Closing the iterator (or cancelling the consuming task) closes the
        HTTP response, which stops generation on the server.

        Yields:
            Non-empty text fragments in the order the model produced them.
        """
        model = model or self.settings.ollama_model
        logger.info("generating_text_stream", model=model, prompt_length=len(prompt))
        payload = self._payload(model, stream=True, options=options, prompt=prompt)

        try:
            async with self._client.stream("POST", "/api/generate", json=payload) as response:
                if response.is_error:
                    await response.aread()
                    self._raise_for_status(response, model)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = _decode(line)
                    if "error" in data:
                        logger.warning("ollama_stream_error", model=model, error=str(data["error"]))
                        raise OllamaInferenceError("Model reported an error")
                    chunk = data.get("response") or ""
                    if chunk:
                        yield chunk
                    if data.get("done"):
                        break
        except httpx.HTTPError as exc:
            raise _translate(exc) from exc

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Have a chat conversation with Ollama.

        Args:
            messages: List of message dictionaries with 'role' and 'content'.
            model: Model name to use. If None, uses default from settings.
            options: Model options such as ``num_ctx``.

        Returns:
            Response dictionary containing chat response and metadata.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaModelNotFoundError: If the model is not installed.
            OllamaInferenceError: If inference fails.
        """
        model = model or self.settings.ollama_model
        logger.info("chat_started", model=model, message_count=len(messages))
        payload = self._payload(model, stream=False, options=options, messages=messages)
        return await self._request("POST", "/api/chat", json=payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise _translate(exc) from exc

        if response.is_error:
            self._raise_for_status(response, kwargs.get("json", {}).get("model"))
        try:
            data = response.json()
        except ValueError as exc:
            raise OllamaInferenceError("Ollama returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise OllamaInferenceError("Ollama returned an unexpected payload")
        if "error" in data:
            logger.warning("ollama_error_response", error=str(data["error"]))
            raise OllamaInferenceError("Model reported an error")
        return data

    @staticmethod
    def _payload(model: str, *, stream: bool, options: dict[str, Any] | None, **body: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "stream": stream, **body}
        if options:
            payload["options"] = options
        return payload

    @staticmethod
    def _raise_for_status(response: httpx.Response, model: str | None) -> None:
        logger.warning(
            "ollama_http_error",
            status_code=response.status_code,
            model=model,
            body=response.text[:200],
        )
        if response.status_code == 404:
            raise OllamaModelNotFoundError(f"Model {model} is not installed")
        raise OllamaInferenceError(f"Ollama answered with HTTP {response.status_code}")


def _decode(line: str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise OllamaInferenceError("Ollama streamed invalid JSON") from exc
    if not isinstance(data, dict):
        raise OllamaInferenceError("Ollama streamed an unexpected payload")
    return data


def _translate(exc: httpx.HTTPError) -> Exception:
    """Map an httpx failure onto the client's exceptions."""

    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return OllamaConnectionError("Unable to connect to Ollama")
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutError("Ollama did not answer in time")
    return OllamaInferenceError(f"Ollama request failed: {type(exc).__name__}")
