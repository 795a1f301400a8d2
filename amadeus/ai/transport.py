"""
HTTP transport - Sends provider requests with httpx, whole or streamed.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from .errors import ErrorKind, ProviderError
from ..utils.logger import redact_secrets, sanitize_headers_for_log
from .provider_base import ProviderRequest

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Status and body of a completed request."""
    status: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class StreamResponse:
    """An open streamed response. Only valid inside ``HttpTransport.open_stream``."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self.status = response.status_code

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise ProviderError(f"Stream timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Stream connection lost: {e}",
                                kind=ErrorKind.NETWORK_UNREACHABLE) from e

    async def aread(self) -> str:
        data = await self._response.aread()
        return data.decode("utf-8", errors="replace")


class HttpTransport:
    """Thin wrapper over ``httpx.AsyncClient`` mapping transport failures to ProviderError."""

    def __init__(self, timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def send(self, request: ProviderRequest) -> TransportResponse:
        """Send a request and read the whole body."""
        try:
            response = await self._client.request(
                request.method,
                request.url,
                content=request.encoded_body(),
                headers=request.headers,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Network error: {e}", kind=ErrorKind.NETWORK_UNREACHABLE) from e

        logger.debug(f"{request.method} {redact_secrets(request.url)} -> {response.status_code} "
                     f"headers={sanitize_headers_for_log(request.headers)}")
        return TransportResponse(status=response.status_code, body=response.text)

    @asynccontextmanager
    async def open_stream(self, request: ProviderRequest) -> AsyncIterator[StreamResponse]:
        """Open a streamed request. The connection closes when the block exits."""
        try:
            async with self._client.stream(
                request.method,
                request.url,
                content=request.encoded_body(),
                headers=request.headers,
            ) as response:
                logger.debug(f"{request.method} {redact_secrets(request.url)} -> {response.status_code} (stream)")
                yield StreamResponse(response)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Network error: {e}", kind=ErrorKind.NETWORK_UNREACHABLE) from e

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()