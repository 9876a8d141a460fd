"""
Single-request HTTP execution on a pooled aiohttp session.
"""

import asyncio
import errno
import json as jsonlib
import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from load_errors import TransportError, TransportErrorKind

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "User-Agent": "LibraryLoad/1.0",
}


@dataclass(frozen=True)
class RequestResult:
    """Outcome of one HTTP call. status is 0 when the transport failed."""
    method: str
    url: str
    status: int
    latency_ms: float
    body: bytes = b""
    transport_error: Optional[TransportErrorKind] = None
    error: Optional[str] = None

    @property
    def body_bytes(self) -> int:
        return len(self.body)

    @property
    def ok(self) -> bool:
        return self.transport_error is None and 200 <= self.status < 300

    def json(self) -> Any:
        return jsonlib.loads(self.body)

    @classmethod
    def from_transport_error(cls, method: str, url: str, error: TransportError) -> "RequestResult":
        return cls(
            method=method,
            url=url,
            status=0,
            latency_ms=error.latency_ms,
            transport_error=error.kind,
            error=str(error),
        )


def classify_client_error(error: BaseException) -> TransportErrorKind:
    """Map an aiohttp/OS level exception to a transport error kind."""
    if isinstance(error, asyncio.TimeoutError):
        return TransportErrorKind.TIMEOUT
    if isinstance(error, aiohttp.ClientConnectorError):
        os_error = error.os_error
        if isinstance(os_error, socket.gaierror):
            return TransportErrorKind.DNS_FAILURE
        if isinstance(os_error, ConnectionRefusedError) or getattr(os_error, "errno", None) == errno.ECONNREFUSED:
            return TransportErrorKind.CONNECTION_REFUSED
        return TransportErrorKind.OTHER
    if isinstance(error, socket.gaierror):
        return TransportErrorKind.DNS_FAILURE
    if isinstance(error, ConnectionRefusedError):
        return TransportErrorKind.CONNECTION_REFUSED
    return TransportErrorKind.OTHER


class HttpExecutor:
    """
    Issues HTTP requests over one shared connection pool.

    Non-2xx responses are ordinary results. Anything that prevents a
    response (timeout, refused connection, DNS failure, protocol error)
    raises TransportError.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        verify_ssl: bool = True,
        max_connections: int = 100,
    ):
        self.timeout = timeout
        self.headers = dict(DEFAULT_HEADERS if headers is None else headers)
        self.verify_ssl = verify_ssl
        self.max_connections = max_connections
        self._client_timeout = aiohttp.ClientTimeout(total=timeout, connect=connect_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    async def open(self) -> None:
        if self.is_open:
            return
        connector = aiohttp.TCPConnector(
            limit=self.max_connections,
            limit_per_host=self.max_connections,
            keepalive_timeout=30,
        )
        self._session = aiohttp.ClientSession(timeout=self._client_timeout, connector=connector)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "HttpExecutor":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> RequestResult:
        if not self.is_open:
            raise RuntimeError("HttpExecutor is not open")

        method = method.upper()
        request_headers = {**self.headers, **(headers or {})}
        if json is not None:
            body = jsonlib.dumps(json).encode()
        options: Dict[str, Any] = {}
        if timeout is not None:
            options["timeout"] = aiohttp.ClientTimeout(
                total=timeout, connect=min(timeout, self._client_timeout.connect)
            )

        start = time.perf_counter()
        try:
            async with self._session.request(
                method,
                url,
                headers=request_headers,
                data=body,
                ssl=self.verify_ssl,
                **options,
            ) as response:
                payload = await response.read()
                latency = (time.perf_counter() - start) * 1000
                return RequestResult(
                    method=method,
                    url=url,
                    status=response.status,
                    latency_ms=latency,
                    body=payload,
                )
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            latency = (time.perf_counter() - start) * 1000
            kind = classify_client_error(e)
            raise TransportError(kind, f"{type(e).__name__}: {e}"[:200], latency_ms=latency) from e
