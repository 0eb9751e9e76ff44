from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

LOG = logging.getLogger("invokers")

ERROR_BODY_LIMIT = 2000
MALFORMED_ERRORS = (AttributeError, TypeError, KeyError, IndexError)


class InvokeError(Exception):
    pass


@dataclass
class InvokeResponse:
    content: str
    input_tokens: int
    output_tokens: int
    ttft_ms: Optional[float] = None
    tokens_per_sec: Optional[float] = None


class Invoker(Protocol):
    async def invoke(self, system_prompt: str, user_prompt: str, stream: bool) -> InvokeResponse:
        ...

    async def __aenter__(self) -> "Invoker":
        ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        ...


class BaseInvoker:
    async def invoke(self, system_prompt: str, user_prompt: str, stream: bool) -> InvokeResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "BaseInvoker":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class _StreamState:
    started: float
    first_token_at: Optional[float] = None
    content_parts: list[str] = field(default_factory=list)
    content_chunks: int = 0
    input_tokens: int = 0
    output_tokens: Optional[int] = None


class HTTPInvoker(BaseInvoker):
    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        api_key: str,
        params: Optional[dict[str, Any]] = None,
        timeout_s: float = 30.0,
        max_connections: int = 64,
        proxy_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.base_url = (base_url or self.default_base_url()).rstrip("/")
        self.api_key = api_key
        self.params = dict(params or {})
        self.model = str(self.params.pop("model", name))
        self.timeout_s = timeout_s
        self.max_connections = max(1, max_connections)
        self.proxy_url = proxy_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def default_base_url(cls) -> str:
        raise NotImplementedError

    async def __aenter__(self) -> "HTTPInvoker":
        limits = httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=max(self.max_connections // 2, 1),
        )
        kwargs: dict[str, Any] = {"limits": limits, "timeout": self.timeout_s}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self.proxy_url:
            kwargs["proxy"] = self.proxy_url
        self._client = httpx.AsyncClient(**kwargs)
        return self

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} used outside of its async context")
        return self._client

    def _url(self, stream: bool) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _payload(self, system_prompt: str, user_prompt: str, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_response(self, body: Any) -> InvokeResponse:
        raise NotImplementedError

    def _apply_chunk(self, chunk: dict[str, Any], state: _StreamState) -> str:
        raise NotImplementedError

    async def invoke(self, system_prompt: str, user_prompt: str, stream: bool) -> InvokeResponse:
        url = self._url(stream)
        payload = self._payload(system_prompt, user_prompt, stream)
        if stream:
            return await self._invoke_stream(url, payload)
        return await self._invoke_atomic(url, payload)

    async def _invoke_atomic(self, url: str, payload: dict[str, Any]) -> InvokeResponse:
        response = await self.client.post(
            url, headers=self._headers(), json=payload, timeout=self.timeout_s
        )
        if response.status_code >= 400:
            raise InvokeError(
                f"HTTP {response.status_code}: {response.text[:ERROR_BODY_LIMIT]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise InvokeError(f"malformed response from {self.name}: {exc}") from exc
        if not isinstance(body, dict):
            raise InvokeError(f"malformed response from {self.name}: expected a JSON object")
        try:
            return self._parse_response(body)
        except MALFORMED_ERRORS as exc:
            raise InvokeError(f"malformed response from {self.name}: {exc!r}") from exc

    async def _invoke_stream(self, url: str, payload: dict[str, Any]) -> InvokeResponse:
        state = _StreamState(started=time.perf_counter())
        async with self.client.stream(
            "POST", url, headers=self._headers(), json=payload, timeout=self.timeout_s
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise InvokeError(f"HTTP {response.status_code}: {body[:ERROR_BODY_LIMIT]}")
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload_text = line[5:].strip()
                if not payload_text:
                    continue
                if payload_text == "[DONE]":
                    break
                try:
                    chunk = json.loads(payload_text)
                except json.JSONDecodeError:
                    LOG.debug("Skipping undecodable stream chunk from %s: %s", self.name, payload_text)
                    continue
                if not isinstance(chunk, dict):
                    continue
                try:
                    text = self._apply_chunk(chunk, state)
                except MALFORMED_ERRORS as exc:
                    raise InvokeError(
                        f"malformed stream chunk from {self.name}: {exc!r}"
                    ) from exc
                if text:
                    if state.first_token_at is None:
                        state.first_token_at = time.perf_counter()
                    state.content_parts.append(text)
                    state.content_chunks += 1
        return self._finish_stream(state)

    def _finish_stream(self, state: _StreamState) -> InvokeResponse:
        ended = time.perf_counter()
        output_tokens = (
            state.output_tokens if state.output_tokens is not None else state.content_chunks
        )
        ttft_ms: Optional[float] = None
        tokens_per_sec: Optional[float] = None
        if state.first_token_at is not None:
            ttft_ms = (state.first_token_at - state.started) * 1000.0
            emit_s = ended - state.first_token_at
            if output_tokens > 0 and emit_s > 0:
                tokens_per_sec = output_tokens / emit_s
        return InvokeResponse(
            content="".join(state.content_parts),
            input_tokens=state.input_tokens,
            output_tokens=output_tokens,
            ttft_ms=ttft_ms,
            tokens_per_sec=tokens_per_sec,
        )


class OpenAIInvoker(HTTPInvoker):
    @classmethod
    def default_base_url(cls) -> str:
        return "https://api.openai.com/v1"

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, system_prompt: str, user_prompt: str, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        payload: dict[str, Any] = dict(self.params)
        payload.update({"model": self.model, "messages": messages, "stream": stream})
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_response(self, body: Any) -> InvokeResponse:
        usage = body.get("usage") or {}
        content = ""
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
        return InvokeResponse(
            content=content,
            input_tokens=_safe_int(usage.get("prompt_tokens")) or 0,
            output_tokens=_safe_int(usage.get("completion_tokens")) or 0,
        )

    def _apply_chunk(self, chunk: dict[str, Any], state: _StreamState) -> str:
        usage = chunk.get("usage")
        if isinstance(usage, dict):
            state.input_tokens = _safe_int(usage.get("prompt_tokens")) or state.input_tokens
            completion = _safe_int(usage.get("completion_tokens"))
            if completion is not None:
                state.output_tokens = completion
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str):
                return content
        return ""


class AnthropicInvoker(HTTPInvoker):
    api_version = "2023-06-01"
    default_max_tokens = 1024

    @classmethod
    def default_base_url(cls) -> str:
        return "https://api.anthropic.com/v1"

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }

    def _payload(self, system_prompt: str, user_prompt: str, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"max_tokens": self.default_max_tokens}
        payload.update(self.params)
        payload.update(
            {
                "model": self.model,
                "messages": [{"role": "user", "content": user_prompt}],
                "stream": stream,
            }
        )
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _parse_response(self, body: Any) -> InvokeResponse:
        usage = body.get("usage") or {}
        parts = [
            block.get("text", "")
            for block in body.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return InvokeResponse(
            content="".join(parts),
            input_tokens=_safe_int(usage.get("input_tokens")) or 0,
            output_tokens=_safe_int(usage.get("output_tokens")) or 0,
        )

    def _apply_chunk(self, chunk: dict[str, Any], state: _StreamState) -> str:
        event_type = chunk.get("type")
        if event_type == "error":
            error = chunk.get("error") or {}
            raise InvokeError(f"stream error from {self.name}: {error.get('message', error)}")
        if event_type == "message_start":
            usage = (chunk.get("message") or {}).get("usage") or {}
            state.input_tokens = _safe_int(usage.get("input_tokens")) or 0
            return ""
        if event_type == "message_delta":
            usage = chunk.get("usage") or {}
            output = _safe_int(usage.get("output_tokens"))
            if output is not None:
                state.output_tokens = output
            return ""
        if event_type == "content_block_delta":
            delta = chunk.get("delta") or {}
            if delta.get("type") == "text_delta":
                return str(delta.get("text") or "")
        return ""


class GeminiInvoker(HTTPInvoker):
    param_aliases = {
        "max_tokens": "maxOutputTokens",
        "top_p": "topP",
        "top_k": "topK",
        "stop": "stopSequences",
    }

    @classmethod
    def default_base_url(cls) -> str:
        return "https://generativelanguage.googleapis.com/v1beta"

    def _url(self, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _payload(self, system_prompt: str, user_prompt: str, stream: bool) -> dict[str, Any]:
        generation_config = {
            self.param_aliases.get(key, key): value for key, value in self.params.items()
        }
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        }
        if generation_config:
            payload["generationConfig"] = generation_config
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    @staticmethod
    def _candidate_text(body: dict[str, Any]) -> str:
        candidates = body.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        if not isinstance(content, dict):
            return ""
        return "".join(
            str(part.get("text", ""))
            for part in content.get("parts") or []
            if isinstance(part, dict)
        )

    def _parse_response(self, body: Any) -> InvokeResponse:
        usage = body.get("usageMetadata") or {}
        return InvokeResponse(
            content=self._candidate_text(body),
            input_tokens=_safe_int(usage.get("promptTokenCount")) or 0,
            output_tokens=_safe_int(usage.get("candidatesTokenCount")) or 0,
        )

    def _apply_chunk(self, chunk: dict[str, Any], state: _StreamState) -> str:
        usage = chunk.get("usageMetadata")
        if isinstance(usage, dict):
            state.input_tokens = _safe_int(usage.get("promptTokenCount")) or state.input_tokens
            output = _safe_int(usage.get("candidatesTokenCount"))
            if output is not None:
                state.output_tokens = output
        return self._candidate_text(chunk)


INVOKER_TYPES: dict[str, type[HTTPInvoker]] = {
    "openai": OpenAIInvoker,
    "anthropic": AnthropicInvoker,
    "gemini": GeminiInvoker,
}


def build_invoker(kind: str, **settings: Any) -> HTTPInvoker:
    invoker_cls = INVOKER_TYPES.get(kind)
    if invoker_cls is None:
        raise ValueError(
            f"Unsupported model type: {kind}. Expected one of {sorted(INVOKER_TYPES)}."
        )
    return invoker_cls(**settings)
