"""Async transport for OpenAI-compatible chat-completions endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.deepseek.com/chat/completions"
DEFAULT_MODEL = "deepseek-chat"
_CHAT_PATH_SUFFIX = "/chat/completions"


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to reach the chat endpoint."""

    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    model: str = DEFAULT_MODEL
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @property
    def base_url(self) -> str:
        """Endpoint without the ``/chat/completions`` suffix, as the OpenAI SDK expects."""

        endpoint = self.endpoint.rstrip("/")
        if endpoint.endswith(_CHAT_PATH_SUFFIX):
            return endpoint[: -len(_CHAT_PATH_SUFFIX)]
        return endpoint


class ChatCompletionsClient:
    """Issues streamed chat-completion requests and hands back the raw response.

    Parsing of the event stream is left to the caller; this class only owns
    the HTTP concerns: headers, payload shape, timeouts and retrying the
    connection phase.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        openai_client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=settings.request_timeout)
        self._openai = openai_client
        self._owns_openai = openai_client is None
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def update_settings(self, **changes: Any) -> ClientSettings:
        """Swap connection settings; the next request picks them up."""

        updates = {key: value for key, value in changes.items() if value is not None}
        if not updates:
            return self._settings
        previous = self._settings
        self._settings = replace(previous, **updates)
        if self._settings.base_url != previous.base_url or self._settings.api_key != previous.api_key:
            self._models_cache = None
            if self._owns_openai:
                self._openai = None
        LOGGER.debug("Client settings updated: %s", sorted(updates))
        return self._settings

    def build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
                "Authorization": f"Bearer {self._settings.api_key}",
            }
        )
        return headers

    def build_payload(
        self,
        messages: Iterable[ChatCompletionMessageParam],
        *,
        tools: Sequence[ChatCompletionToolParam] | None = None,
        model: str | None = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "stream": True,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = list(tools)
            payload["tool_choice"] = "auto"
        return payload

    @contextlib.asynccontextmanager
    async def stream(self, payload: Mapping[str, Any]) -> AsyncIterator[httpx.Response]:
        """POST ``payload`` and yield the streaming response, closing it on exit."""

        LOGGER.debug(
            "Starting streamed chat completion via %s (%s message(s), tools=%s)",
            payload.get("model"),
            len(payload.get("messages") or ()),
            len(payload.get("tools") or ()),
        )
        if self._settings.debug_logging:
            self._log_payload(payload)
        request = self._http.build_request(
            "POST",
            self._settings.endpoint,
            json=dict(payload),
            headers=self.build_headers(),
            timeout=self._settings.request_timeout,
        )
        response = await self._send(request)
        try:
            yield response
        finally:
            await response.aclose()

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers advertised by the endpoint."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            response = await self._openai_client().models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def aclose(self) -> None:
        """Release the HTTP resources this client created."""

        if self._owns_http:
            await self._http.aclose()
        client, self._openai = self._openai, None
        if client is None or not self._owns_openai:
            return
        result = client.close()
        if inspect.isawaitable(result):
            await result

    async def _send(self, request: httpx.Request) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                return await self._http.send(request, stream=True)
        raise RuntimeError("retry loop exited without a response")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        # Only the connection phase is retried; status errors are reported to the caller.
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        )

    def _openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(
                api_key=self._settings.api_key or "unset",
                base_url=self._settings.base_url,
                timeout=self._settings.request_timeout,
                default_headers=dict(self._settings.default_headers or {}) or None,
            )
        return self._openai

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)


__all__ = ["ChatCompletionsClient", "ClientSettings", "DEFAULT_ENDPOINT", "DEFAULT_MODEL"]
