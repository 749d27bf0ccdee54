"""Forwarding handler bound to a single destination.

Flow per request:
1. Take the raw (percent-preserving) request path, or the decoded path
2. Rewrite it with the first effective path rewrite rule
3. Join it onto the destination path prefix, keep the query string
4. Apply the header policy to a copy of the inbound headers
5. Stream the request body upstream over the shared client
6. Stream the upstream status, headers and body back unchanged

Transport failures become 502 (or 504 on timeout) for that request only.
Nothing is retried. If the client goes away before the destination answers,
the upstream exchange is cancelled and 499 is returned.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from urllib.parse import quote

import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from hfwd.config import Configuration, parse_destination
from hfwd.errors import UpstreamError
from hfwd.logging_config import get_logger

from .headers import strip_hop_by_hop

logger = get_logger(__name__)

# Status sent when the client went away before the upstream answered
CLIENT_CLOSED_REQUEST = 499

# httpx client defaults that a transparent proxy must not add on its own
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")


def join_path(prefix: str, path: str) -> str:
    """Join two URL paths with exactly one slash at the seam."""
    prefix_slash = prefix.endswith("/")
    path_slash = path.startswith("/")
    if prefix_slash and path_slash:
        return prefix + path[1:]
    if not prefix_slash and not path_slash:
        return prefix + "/" + path
    return prefix + path


def request_target(scope: Scope) -> tuple[str, str, bool]:
    """Return ``(path, query, raw)`` for an ASGI HTTP scope.

    ``raw`` is True when the path is the percent-preserving wire form.
    """
    query = scope.get("query_string", b"").decode("latin-1")
    raw_path = scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1"), query, True
    return scope["path"], query, False


def _decode_headers(raw: list[tuple[bytes, bytes]]) -> list[tuple[str, str]]:
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in raw]


def _encode_headers(headers: list[tuple[str, str]]) -> list[tuple[bytes, bytes]]:
    return [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers]


def _has_body(headers: list[tuple[str, str]]) -> bool:
    return any(k.lower() in ("content-length", "transfer-encoding") for k, _ in headers)


async def _wait_for_disconnect(request: Request, body_sent: asyncio.Event) -> None:
    """Return once the client has gone away.

    Until the request body is fully read, ``receive`` belongs to the upstream
    send and is left alone.
    """
    await body_sent.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _request_body(request: Request, body_sent: asyncio.Event) -> AsyncIterator[bytes]:
    async for chunk in request.stream():
        yield chunk
    body_sent.set()


async def _relay_body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    if upstream.is_stream_consumed:
        # Buffered by the transport
        yield upstream.content
        return
    async for chunk in upstream.aiter_raw():
        yield chunk


class UpstreamResponse(StreamingResponse):
    """Streams a destination response to the client and always closes it."""

    def __init__(self, upstream: httpx.Response):
        super().__init__(_relay_body(upstream), status_code=upstream.status_code)
        self.raw_headers = _encode_headers(
            strip_hop_by_hop(_decode_headers(upstream.headers.raw))
        )
        self._upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._upstream.aclose()


class ForwardingHandler:
    """ASGI request handler forwarding everything to one destination.

    Built once at startup and shared by all requests; it holds no per-request
    state. ``transport`` replaces the network transport, mainly for tests.
    """

    def __init__(
        self,
        destination: httpx.URL | str,
        configuration: Configuration,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if isinstance(destination, str):
            destination = parse_destination(destination)
        self._destination = destination
        self._prefix = destination.raw_path.split(b"?", 1)[0].decode("ascii")
        self._config = configuration
        self._client = httpx.AsyncClient(
            verify=configuration.tls.ssl_context,
            transport=transport,
        )
        for name in _CLIENT_DEFAULT_HEADERS:
            self._client.headers.pop(name, None)

    @property
    def destination(self) -> httpx.URL:
        return self._destination

    @property
    def configuration(self) -> Configuration:
        return self._config

    def upstream_url(self, path: str, query: str = "") -> httpx.URL:
        """Build the destination URL for an (already rewritten) request path."""
        dst = self._destination
        url = f"{dst.scheme}://{dst.netloc.decode('ascii')}{join_path(self._prefix, path)}"
        dst_query = dst.query.decode("ascii")
        if dst_query and query:
            query = f"{dst_query}&{query}"
        elif dst_query:
            query = dst_query
        if query:
            url += f"?{query}"
        return httpx.URL(url)

    async def handle(self, request: Request) -> Response:
        """Forward one inbound request and relay the destination's response."""
        path, query, raw = request_target(request.scope)
        path, _ = self._config.rewriter.rewrite(path)
        if not raw:
            path = quote(path, safe="/:@!$&'()*+,;=~")
        url = self.upstream_url(path, query)

        inbound = _decode_headers(request.headers.raw)
        client_host = request.client.host if request.client else None
        headers = self._config.header_policy.apply(inbound, client_host=client_host)

        body_sent = asyncio.Event()
        content: AsyncIterator[bytes] | None = None
        if _has_body(inbound):
            content = _request_body(request, body_sent)
        else:
            body_sent.set()

        try:
            upstream = await self._send_while_connected(
                request, body_sent, request.method, url, headers, content
            )
        except UpstreamError as e:
            return PlainTextResponse(
                "Bad Gateway" if e.status_code == 502 else "Gateway Timeout",
                status_code=e.status_code,
            )
        except ClientDisconnect:
            logger.info("Client disconnected before destination answered", url=str(url))
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        return UpstreamResponse(upstream)

    async def _send_while_connected(
        self,
        request: Request,
        body_sent: asyncio.Event,
        method: str,
        url: httpx.URL,
        headers: list[tuple[str, str]],
        content: AsyncIterator[bytes] | None,
    ) -> httpx.Response:
        """Run the upstream send, cancelling it if the client disconnects first.

        Raises ClientDisconnect when the client left before the response
        headers arrived.
        """
        send_task = asyncio.create_task(self._send(method, url, headers, content))
        watch_task = asyncio.create_task(_wait_for_disconnect(request, body_sent))

        try:
            done, pending = await asyncio.wait(
                [send_task, watch_task], return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            send_task.cancel()
            watch_task.cancel()
            raise

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if watch_task not in done:
            return send_task.result()

        if send_task in done and not send_task.cancelled() and send_task.exception() is None:
            await send_task.result().aclose()
        watch_task.result()
        logger.debug("Cancelled upstream request", method=method, url=str(url))
        raise ClientDisconnect()

    async def _send(
        self,
        method: str,
        url: httpx.URL,
        headers: list[tuple[str, str]],
        content: AsyncIterator[bytes] | None,
    ) -> httpx.Response:
        """Dispatch a request upstream without reading the response body."""
        upstream_request = self._client.build_request(
            method=method,
            url=url,
            headers=headers,
            content=content,
        )
        logger.debug("Forwarding request", method=method, url=str(url))
        try:
            return await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("Destination request timed out", url=str(url), error=str(e))
            raise UpstreamError("destination timed out", url=str(url), status_code=504) from e
        except httpx.TransportError as e:
            logger.warning("Destination connection failed", url=str(url), error=str(e))
            raise UpstreamError("destination unreachable", url=str(url), status_code=502) from e

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            raise RuntimeError(f"unsupported ASGI scope type {scope['type']!r}")
        response = await self.handle(Request(scope, receive))
        await response(scope, receive, send)

    async def aclose(self) -> None:
        """Close the upstream client and its pooled connections."""
        await self._client.aclose()
