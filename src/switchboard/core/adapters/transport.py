"""HTTP plumbing shared by network adapters: headers, rate limits, error mapping."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx

from ..errors import (
    MalformedEventError,
    ParameterIncompatibleError,
    ProviderError,
    RateLimitedError,
    UpstreamError,
)
from ..rate_limiter import ModelRateLimiter
from ..timeouts import StreamTimeoutGuard

LOGGER = logging.getLogger(__name__)

RESERVED_HEADERS = frozenset({"authorization", "x-api-key", "anthropic-version", "content-type", "accept"})
TOKEN_PARAMETERS = ("max_tokens", "max_completion_tokens", "max_output_tokens")

_UNSUPPORTED_PATTERN = re.compile(
    r"unsupported parameter|unsupported_parameter|is not supported|unrecognized request argument|unknown parameter",
    re.IGNORECASE,
)
_SUGGESTION_PATTERN = re.compile(r"""use\s+['"`]?([A-Za-z_][A-Za-z0-9_]*)['"`]?\s+instead""", re.IGNORECASE)
_REJECTED_PATTERN = re.compile(r"""parameter:?\s+['"`]([A-Za-z_][A-Za-z0-9_]*)['"`]""", re.IGNORECASE)
_RESPONSES_ONLY_PATTERN = re.compile(r"only supported in v1/responses", re.IGNORECASE)


def merge_headers(base: Mapping[str, str], *extras: Mapping[str, str] | None) -> dict[str, str]:
    """Layer ``extras`` over ``base`` without overriding reserved headers."""

    headers = dict(base)
    for extra in extras:
        for key, value in (extra or {}).items():
            if key.lower() in RESERVED_HEADERS:
                LOGGER.debug("dropping reserved header %r from custom headers", key)
                continue
            headers[key] = str(value)
    return headers


def _error_details(body: str) -> tuple[str, str | None]:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or "empty response body", None

    if isinstance(payload, dict):
        error = payload.get("error", payload)
        if isinstance(error, dict):
            message = error.get("message") or error.get("detail") or json.dumps(error)
            param = error.get("param")
            return str(message), param if isinstance(param, str) else None
        if isinstance(error, str):
            return error, None
    return body.strip(), None


def suggested_parameter(message: str, rejected: str | None = None) -> str | None:
    """Name of the parameter a backend asks for instead of the rejected one."""

    match = _SUGGESTION_PATTERN.search(message)
    if match:
        return match.group(1)

    if rejected is None:
        rejected_match = _REJECTED_PATTERN.search(message)
        rejected = rejected_match.group(1) if rejected_match else None
    for candidate in TOKEN_PARAMETERS:
        if candidate != rejected and candidate in message:
            return candidate
    return None


def error_from_response(
    status: int,
    body: str,
    *,
    model: str | None = None,
    shape: str | None = None,
    recognize_parameters: bool = True,
) -> ProviderError:
    """Classify a failed HTTP response into a typed error."""

    message, param = _error_details(body)
    if status == 429:
        return RateLimitedError(message, model=model, shape=shape)

    if recognize_parameters and status in (400, 404, 422):
        if _RESPONSES_ONLY_PATTERN.search(message):
            return ParameterIncompatibleError(
                message, suggested_param="max_output_tokens", model=model, shape=shape
            )
        if _UNSUPPORTED_PATTERN.search(message):
            return ParameterIncompatibleError(
                message,
                suggested_param=suggested_parameter(message, param),
                model=model,
                shape=shape,
            )

    return UpstreamError(f"HTTP {status}: {message}", status=status, model=model, shape=shape)


class HttpTransport:
    """POST JSON to one backend, absorbing rate limits for one model.

    Every attempt first waits on the shared :class:`ModelRateLimiter`. A 429
    answer records backoff and retries; after ``max_rate_limit_retries``
    consecutive 429s the failure surfaces as :class:`UpstreamError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        model: str,
        rate_limiter: ModelRateLimiter,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 120.0,
        max_rate_limit_retries: int = 8,
        recognize_parameters: bool = True,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.rate_limiter = rate_limiter
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.recognize_parameters = recognize_parameters
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def post_json(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        extra_headers: Mapping[str, str] | None = None,
        shape: str | None = None,
    ) -> dict[str, Any]:
        async with self._client() as client:
            response = await self._send(client, path, payload, extra_headers, shape=shape, stream=False)
            try:
                document = response.json()
            except ValueError as exc:
                msg = f"response from {path} is not valid JSON"
                raise MalformedEventError(msg, model=self.model, shape=shape) from exc
        if not isinstance(document, dict):
            msg = f"response from {path} must be a JSON object"
            raise MalformedEventError(msg, model=self.model, shape=shape)
        return document

    @asynccontextmanager
    async def stream(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        extra_headers: Mapping[str, str] | None = None,
        shape: str | None = None,
        guard: StreamTimeoutGuard | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming POST; the response is closed when the block exits."""

        async with self._client() as client:
            response = await self._send(
                client, path, payload, extra_headers, shape=shape, stream=True, guard=guard
            )
            try:
                yield response
            finally:
                await response.aclose()

    async def _send(
        self,
        client: httpx.AsyncClient,
        path: str,
        payload: Mapping[str, Any],
        extra_headers: Mapping[str, str] | None,
        *,
        shape: str | None,
        stream: bool,
        guard: StreamTimeoutGuard | None = None,
    ) -> httpx.Response:
        attempts = 0
        while True:
            await self.rate_limiter.acquire(self.model)
            attempts += 1
            try:
                response = await self._attempt(
                    client, path, payload, extra_headers, shape=shape, stream=stream, guard=guard
                )
            except RateLimitedError as exc:
                self.rate_limiter.record_429(self.model)
                if attempts > self.max_rate_limit_retries:
                    msg = f"still rate limited after {attempts} attempts: {exc.message}"
                    raise UpstreamError(msg, status=429, model=self.model, shape=shape) from exc
                continue
            self.rate_limiter.record_success(self.model)
            return response

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        path: str,
        payload: Mapping[str, Any],
        extra_headers: Mapping[str, str] | None,
        *,
        shape: str | None,
        stream: bool,
        guard: StreamTimeoutGuard | None,
    ) -> httpx.Response:
        request = client.build_request("POST", path, json=payload, headers=merge_headers({}, extra_headers))
        LOGGER.debug("POST %s%s model=%s shape=%s", self.base_url, path, self.model, shape)
        try:
            if guard is not None:
                guard.mark_dispatched()
                response = await guard.wait_first(client.send(request, stream=stream))
            else:
                response = await client.send(request, stream=stream)
        except httpx.HTTPError as exc:
            msg = f"request to {self.base_url}{path} failed: {exc}"
            raise UpstreamError(msg, model=self.model, shape=shape) from exc

        if response.status_code < 400:
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        raise error_from_response(
            response.status_code,
            body,
            model=self.model,
            shape=shape,
            recognize_parameters=self.recognize_parameters,
        )


async def iter_response_bytes(response: httpx.Response, *, model: str | None = None) -> AsyncIterator[bytes]:
    """Yield raw body chunks, mapping transport failures to :class:`UpstreamError`."""

    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        msg = f"stream transport failed: {exc}"
        raise UpstreamError(msg, model=model) from exc
