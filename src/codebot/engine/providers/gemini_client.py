"""Minimal HTTP client for the Gemini ``generateContent`` API."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Protocol

import httpx

from codebot.engine.providers.base import ProviderError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FunctionCall:
    """One tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelTurn:
    """Text, tool calls, and citation URIs from one response (or stream chunk)."""

    text: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)

    def merge(self, other: ModelTurn) -> None:
        self.text += other.text
        self.function_calls.extend(other.function_calls)
        for uri in other.sources:
            if uri not in self.sources:
                self.sources.append(uri)


class GenerativeClient(Protocol):
    """Protocol implemented by remote generative model clients."""

    def generate(self, payload: dict[str, Any]) -> ModelTurn:
        """Send one request and return the full response."""

    def stream_generate(self, payload: dict[str, Any]) -> Iterator[ModelTurn]:
        """Send one request and yield incremental response chunks."""

    def close(self) -> None:
        """Release network resources."""


class GeminiClient:
    """Calls ``models/{model}:generateContent`` and its SSE streaming variant."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    def generate(self, payload: dict[str, Any]) -> ModelTurn:
        try:
            response = self._client.post(
                f"/v1beta/models/{self.model}:generateContent",
                json=payload,
            )
        except httpx.HTTPError as error:
            raise ProviderError(f"Gemini request failed: {error}") from error
        _raise_for_status(response)
        return parse_response(response.json())

    def stream_generate(self, payload: dict[str, Any]) -> Iterator[ModelTurn]:
        try:
            with self._client.stream(
                "POST",
                f"/v1beta/models/{self.model}:streamGenerateContent",
                params={"alt": "sse"},
                json=payload,
            ) as response:
                if not response.is_success:
                    response.read()
                    _raise_for_status(response)
                for line in response.iter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    try:
                        yield parse_response(json.loads(data))
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed Gemini stream event: %s", data[:200])
        except httpx.HTTPError as error:
            raise ProviderError(f"Gemini stream failed: {error}") from error

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def parse_response(payload: Any) -> ModelTurn:
    """Extract text, function calls, and grounding URIs from a response body."""

    turn = ModelTurn()
    if not isinstance(payload, dict):
        return turn
    candidates = payload.get("candidates") or []
    if not isinstance(candidates, list):
        return turn

    for index, candidate in enumerate(candidates):
        if not isinstance(candidate, dict):
            continue
        if index == 0:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                if not isinstance(part, dict):
                    continue
                text = part.get("text")
                if isinstance(text, str):
                    turn.text += text
                call = part.get("functionCall")
                if isinstance(call, dict) and call.get("name"):
                    args = call.get("args")
                    turn.function_calls.append(
                        FunctionCall(
                            name=str(call["name"]),
                            args=args if isinstance(args, dict) else {},
                        ),
                    )
        grounding = candidate.get("groundingMetadata") or {}
        for chunk in grounding.get("groundingChunks") or []:
            if not isinstance(chunk, dict):
                continue
            web = chunk.get("web") or {}
            retrieved = chunk.get("retrievedContext") or {}
            uri = web.get("uri") or retrieved.get("uri") or web.get("url")
            if isinstance(uri, str) and uri and uri not in turn.sources:
                turn.sources.append(uri)
    return turn


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    message = response.text[:500]
    try:
        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = str(body["error"].get("message", message))
    except ValueError:
        pass
    raise ProviderError(f"Gemini API error {response.status_code}: {message}")
