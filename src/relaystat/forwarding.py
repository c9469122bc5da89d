"""Forwarding engine: relays one request to the upstream and records telemetry."""

import asyncio
import logging
import time
from typing import Dict, Mapping, Optional

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse

from .config import Settings, WarnThresholds, telemetry_logger
from .models import AgentTag, TelemetryRecord
from .storage import StoreCapability
from .streaming import ByteCountingRelay, StreamOutcome, relay_headers
from .utils import error_response, estimate_tokens

logger = logging.getLogger(__name__)

NO_RESPONSE_STATUS = 0


def now_ms() -> int:
    return int(time.time() * 1000)


def build_upstream_headers(
    headers: Mapping[str, str], api_key: str, request_id: str, default_title: str
) -> Dict[str, str]:
    """
    Headers sent upstream. The credential is always the server-held key;
    an Authorization header sent by the client is never forwarded.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    return {
        "Content-Type": lowered.get("content-type") or "application/json",
        "Accept": lowered.get("accept") or "*/*",
        # The body is relayed undecoded, so only the client may ask for compression
        "Accept-Encoding": lowered.get("accept-encoding") or "identity",
        "Authorization": f"Bearer {api_key}",
        "HTTP-Referer": lowered.get("http-referer") or lowered.get("referer") or "",
        "X-Title": lowered.get("x-title") or default_title,
        "X-Request-Id": request_id,
    }


class ForwardingEngine:
    """Forwards request bodies verbatim to the configured upstream endpoint."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        capability: StoreCapability,
        warn_tokens: Optional[WarnThresholds] = None,
    ):
        self.settings = settings
        self.client = client
        self.capability = capability
        self.warn_tokens = warn_tokens or settings.warn_tokens

    def _warn_if_large(self, agent: AgentTag, estimated: int, request_id: str) -> None:
        threshold = self.warn_tokens.for_agent(agent)
        if estimated > threshold:
            logger.warning(
                f"[{request_id}] high input for agent={agent.value}: ~{estimated} tokens (>{threshold})"
            )

    async def record(self, record: TelemetryRecord, request_id: str) -> None:
        """Append a record without ever failing the request it describes."""
        telemetry_logger.info(
            f"[{request_id}] agent={record.agent.value} in={record.in_bytes}B "
            f"(~{record.estimated_tokens} tok) out={record.out_bytes}B "
            f"upstream={record.upstream_status} {record.duration_ms}ms"
        )
        if not self.capability.available:
            return
        try:
            # Shielded so a client disconnect cannot drop the record
            await asyncio.shield(asyncio.to_thread(self.capability.store.append, record))
        except Exception as e:
            logger.error(f"[{request_id}] [stats] insert failed: {str(e)}")

    async def forward(
        self,
        body: bytes,
        headers: Mapping[str, str],
        request_id: str,
        agent: AgentTag,
    ) -> Response:
        """
        Relay one request upstream.

        Args:
            body: Inbound body exactly as received
            headers: Inbound request headers
            request_id: Correlation id for logs and upstream headers
            agent: Classified caller role

        Returns:
            A streaming response mirroring the upstream, or a 502 error
            response when no upstream response could be obtained.
        """
        in_bytes = len(body)
        estimated = estimate_tokens(in_bytes)
        self._warn_if_large(agent, estimated, request_id)

        upstream_headers = build_upstream_headers(
            headers, self.settings.api_key, request_id, self.settings.default_title
        )
        request = self.client.build_request(
            "POST", self.settings.upstream_url, content=body, headers=upstream_headers
        )

        started = time.monotonic()
        deadline = started + self.settings.upstream_timeout

        def make_record(status: int, out_bytes: int) -> TelemetryRecord:
            return TelemetryRecord(
                timestamp=now_ms(),
                agent=agent,
                in_bytes=in_bytes,
                estimated_tokens=estimated,
                out_bytes=out_bytes,
                upstream_status=status,
                duration_ms=max(0, int((time.monotonic() - started) * 1000)),
            )

        try:
            upstream = await asyncio.wait_for(
                self.client.send(request, stream=True),
                timeout=self.settings.upstream_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            detail = f"Upstream timeout after {self.settings.upstream_timeout_ms}ms"
            logger.error(f"[{request_id}] [upstream] {detail}")
            await self.record(make_record(NO_RESPONSE_STATUS, 0), request_id)
            return error_response(502, detail, "bad_gateway")
        except httpx.HTTPError as e:
            detail = str(e) or e.__class__.__name__
            logger.error(f"[{request_id}] [upstream] {detail}")
            await self.record(make_record(NO_RESPONSE_STATUS, 0), request_id)
            return error_response(502, detail, "bad_gateway")
        except asyncio.CancelledError:
            logger.warning(f"[{request_id}] [upstream] client went away before upstream answered")
            await self.record(make_record(NO_RESPONSE_STATUS, 0), request_id)
            raise

        status = upstream.status_code or 502

        async def finish(outcome: StreamOutcome) -> None:
            await self.record(make_record(status, outcome.out_bytes), request_id)

        relay = ByteCountingRelay(upstream, deadline, finish, request_id=request_id)
        return StreamingResponse(
            relay,
            status_code=status,
            headers=relay_headers(upstream.headers),
        )
