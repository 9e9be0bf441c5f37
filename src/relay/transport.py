"""
Shared HTTP primitive underneath every backend adapter.

- request(): one JSON round-trip, returned as a Result (never raises)
- stream_request(): server-sent events, one Result per `data:` fragment
- no retries and no caching here; every failure is surfaced once, typed
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

import httpx

from .config_schema import ApiKeyAuth, BasicAuth, BearerAuth, ProviderConfig
from .core.cancellation import CancellationToken
from .core.errors import (
    CancellationError,
    ErrorCode,
    NetworkError,
    ProviderAuthError,
    ProviderError,
    ProviderInvalidResponseError,
    ProviderQuotaError,
    ProviderRateLimitError,
    RequestTimeoutError,
)
from .core.result import Err, Ok, Result

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
USER_AGENT = "relay-cli/0.1.0"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class RequestOptions:
    method: str
    path: str
    json: Optional[Any] = None
    timeout: Optional[float] = None  # seconds; falls back to the provider's timeout


@dataclass(frozen=True)
class HttpResponse:
    status: int
    data: Any
    headers: Dict[str, str] = field(default_factory=dict)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return fallback


def _retry_after(headers: Mapping[str, str]) -> Optional[int]:
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def classify_http_error(provider: str, status: int, body: Any, headers: Mapping[str, str]) -> ProviderError:
    """Map a non-2xx response onto the provider error taxonomy."""
    message = _error_message(body, f"HTTP {status}")
    context = {"status": status, "message": message}

    if status == 401:
        return ProviderAuthError(provider, context)
    if status == 429:
        return ProviderRateLimitError(provider, _retry_after(headers), context)
    if status in (402, 403):
        return ProviderQuotaError(provider, context)
    if status == 422:
        return ProviderInvalidResponseError(provider, body, context)
    if status >= 500:
        # server side trouble: a later call may well succeed
        return ProviderError(f"HTTP error from {provider}: {message}", provider, ErrorCode.NETWORK_ERROR, context)
    return ProviderError(f"HTTP error from {provider}: {message}", provider, ErrorCode.INVALID_ARGUMENT, context)


def _decode_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def build_headers(config: ProviderConfig) -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    headers.update(config.auth.headers)
    auth = config.auth
    if isinstance(auth, ApiKeyAuth) and auth.api_key:
        headers["Authorization"] = f"Bearer {auth.api_key}"
    elif isinstance(auth, BearerAuth):
        headers["Authorization"] = f"Bearer {auth.token}"
    return headers


class Transport:
    """
    Thin wrapper over one httpx.AsyncClient bound to a provider's endpoint.
    The client is created lazily so construction never touches the network.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        base_url: Optional[str] = None,
        client_factory: Optional[Callable[..., httpx.AsyncClient]] = None,
    ):
        self.provider = config.name
        self.timeout = config.timeout or DEFAULT_TIMEOUT
        self._base_url = base_url or config.endpoint or config.auth.base_url or ""
        self._headers = build_headers(config)
        self._auth = (
            httpx.BasicAuth(config.auth.username, config.auth.password)
            if isinstance(config.auth, BasicAuth) else None
        )
        self._client_factory = client_factory or httpx.AsyncClient
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = self._client_factory(
                base_url=self._base_url,
                headers=self._headers,
                auth=self._auth,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ----- plain request -----

    async def request(self, options: RequestOptions, token: Optional[CancellationToken] = None) -> Result[HttpResponse]:
        if token is not None and token.is_cancelled:
            return Err(CancellationError("Request was cancelled"))

        task = asyncio.ensure_future(self._send(options))
        if token is not None:
            loop = asyncio.get_running_loop()
            token.on_cancelled(lambda: loop.call_soon_threadsafe(task.cancel))

        try:
            return await task
        except asyncio.CancelledError:
            if token is not None and token.is_cancelled:
                return Err(CancellationError("Request was cancelled"))
            raise

    async def _send(self, options: RequestOptions) -> Result[HttpResponse]:
        timeout = options.timeout or self.timeout
        try:
            # httpx times each phase separately; wait_for bounds the whole call
            resp = await asyncio.wait_for(
                self.client.request(
                    options.method,
                    options.path,
                    json=options.json,
                    timeout=timeout,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            return Err(RequestTimeoutError(f"Request to {self.provider} timed out", timeout, cause=e))
        except httpx.TransportError as e:
            return Err(NetworkError(f"Could not reach {self.provider}: {e}", {"provider": self.provider}, cause=e))

        body = _decode_body(resp.content)
        headers = {k.lower(): v for k, v in resp.headers.items()}
        if not resp.is_success:
            return Err(classify_http_error(self.provider, resp.status_code, body, headers))
        if isinstance(body, str):
            return Err(ProviderInvalidResponseError(self.provider, body, {"status": resp.status_code}))
        return Ok(HttpResponse(status=resp.status_code, data=body, headers=headers))

    # ----- streaming -----

    def stream_request(self, options: RequestOptions, token: Optional[CancellationToken] = None) -> "SSEStream":
        return SSEStream(self, options, token)


class SSEStream:
    """
    Finite, single-consumption async iterator of Result[dict], one per SSE fragment.

    Nothing is sent until the first __anext__. Once cancelled the stream ends
    without yielding anything else (no error item) and .aborted is True.
    Always aclose() (or exhaust) it so the connection is released.
    """

    def __init__(self, transport: Transport, options: RequestOptions, token: Optional[CancellationToken]):
        self._transport = transport
        self._options = options
        self._token = token
        self._response: Optional[httpx.Response] = None
        self._aborted = False
        self._send_task: Optional[asyncio.Future] = None
        self._close_task: Optional[asyncio.Future] = None
        self._finished = False
        self._gen = self._run()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def __aiter__(self) -> "SSEStream":
        return self

    async def __anext__(self) -> Result[Dict[str, Any]]:
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        await self._gen.aclose()

    def _cancelled(self) -> bool:
        if self._token is not None and self._token.is_cancelled:
            self._aborted = True
            return True
        return False

    def _abort_connection(self, loop: asyncio.AbstractEventLoop) -> None:
        self._aborted = True
        resp = self._response
        if resp is not None:
            # release a read that is currently blocked on the socket
            loop.call_soon_threadsafe(self._start_close, resp)
        elif self._send_task is not None:
            loop.call_soon_threadsafe(self._send_task.cancel)

    def _start_close(self, resp: httpx.Response) -> None:
        # runs on the loop; skipped once _run has closed the response itself
        if self._finished or self._close_task is not None:
            return
        self._close_task = asyncio.ensure_future(resp.aclose())

    async def _run(self) -> AsyncIterator[Result[Dict[str, Any]]]:
        provider = self._transport.provider
        if self._cancelled():
            return

        timeout = self._options.timeout or self._transport.timeout
        client = self._transport.client
        request = client.build_request(
            self._options.method,
            self._options.path,
            json=self._options.json,
            headers={"Accept": "text/event-stream"},
            timeout=timeout,
        )

        self._send_task = asyncio.ensure_future(client.send(request, stream=True))
        if self._token is not None:
            loop = asyncio.get_running_loop()
            self._token.on_cancelled(lambda: self._abort_connection(loop))

        try:
            self._response = await self._send_task
        except asyncio.CancelledError:
            if self._cancelled():
                return
            raise
        except httpx.TimeoutException as e:
            yield Err(RequestTimeoutError(f"Request to {provider} timed out", timeout, cause=e))
            return
        except httpx.TransportError as e:
            yield Err(NetworkError(f"Could not reach {provider}: {e}", {"provider": provider}, cause=e))
            return

        resp = self._response
        lines = resp.aiter_lines()
        try:
            if self._cancelled():
                return

            if not resp.is_success:
                raw = await resp.aread()
                headers = {k.lower(): v for k, v in resp.headers.items()}
                yield Err(classify_http_error(provider, resp.status_code, _decode_body(raw), headers))
                return

            while True:
                if self._cancelled():
                    return
                try:
                    line = await lines.__anext__()
                except StopAsyncIteration:
                    return
                except (httpx.StreamError, httpx.TransportError) as e:
                    if self._cancelled():
                        return
                    if isinstance(e, httpx.TimeoutException):
                        yield Err(RequestTimeoutError(f"Stream from {provider} timed out", timeout, cause=e))
                    else:
                        yield Err(NetworkError(f"Stream from {provider} failed: {e}", {"provider": provider}, cause=e))
                    return

                data = _sse_data(line)
                if data is None:
                    continue
                if data == DONE_SENTINEL:
                    return
                # a line read just before cancel is dropped, not delivered
                if self._cancelled():
                    return
                try:
                    parsed = json.loads(data)
                except ValueError as e:
                    yield Err(ProviderInvalidResponseError(provider, data, cause=e))
                    continue
                if not isinstance(parsed, dict):
                    yield Err(ProviderInvalidResponseError(provider, data))
                    continue
                yield Ok(parsed)
        finally:
            self._finished = True
            await lines.aclose()
            await resp.aclose()
            if self._close_task is not None:
                try:
                    await self._close_task
                except Exception as e:
                    logger.warning("Closing aborted stream from %s failed: %s", provider, e)


def _sse_data(line: str) -> Optional[str]:
    """Return the payload of a `data:` line; None for blanks, comments and other SSE fields."""
    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()

