"""Streaming response relay for Relaystat proxy."""

import asyncio
import logging
import time
from typing import AsyncGenerator, Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# Per-connection headers; length is dropped because the relay is chunked
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}


class UpstreamStreamError(Exception):
    """The upstream stream failed after the response status was already sent."""


def relay_headers(headers: httpx.Headers) -> dict:
    """Upstream response headers minus hop-by-hop ones."""
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


class StreamOutcome:
    """What the relay observed once the stream is finished."""

    def __init__(self):
        self.out_bytes = 0
        self.error: Optional[str] = None
        self.timed_out = False


class ByteCountingRelay:
    """
    Pass-through for an httpx streaming response.

    Chunks are relayed exactly as the upstream sent them (still content-encoded)
    as soon as they arrive, and the byte total is accumulated. The whole relay
    shares one absolute deadline. A timeout or upstream failure raises
    ``UpstreamStreamError`` so the server aborts the client connection instead
    of ending the body cleanly. ``on_complete`` runs exactly once, after the
    upstream response has been closed.
    """

    def __init__(
        self,
        response: httpx.Response,
        deadline: float,
        on_complete: Callable[[StreamOutcome], Awaitable[None]],
        request_id: str = "-",
    ):
        self.response = response
        self.deadline = deadline
        self.on_complete = on_complete
        self.request_id = request_id
        self.outcome = StreamOutcome()

    async def __aiter__(self) -> AsyncGenerator[bytes, None]:
        chunks = self.response.aiter_raw()
        try:
            while True:
                remaining = self.deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                self.outcome.out_bytes += len(chunk)
                yield chunk
        except asyncio.TimeoutError as e:
            self.outcome.timed_out = True
            self.outcome.error = "Upstream timeout while streaming"
            logger.error(f"[{self.request_id}] upstream timed out mid-stream after {self.outcome.out_bytes}B")
            raise UpstreamStreamError(self.outcome.error) from e
        except httpx.HTTPError as e:
            self.outcome.error = str(e) or e.__class__.__name__
            logger.error(f"[{self.request_id}] upstream stream failed: {self.outcome.error}")
            raise UpstreamStreamError(self.outcome.error) from e
        finally:
            try:
                await self.response.aclose()
            finally:
                await self.on_complete(self.outcome)
