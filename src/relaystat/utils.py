"""Utility functions for Relaystat proxy."""

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional, Union
from urllib.parse import parse_qs

from fastapi.responses import JSONResponse

from .models import AgentTag, ErrorBody, ErrorDetail

logger = logging.getLogger(__name__)

SIZE_UNITS = {
    "b": 1,
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmg]?b)?\s*$", re.IGNORECASE)


class ClientIdleTimeout(Exception):
    """The inbound connection sent nothing for longer than the idle bound."""


class PayloadTooLarge(Exception):
    """The inbound body exceeded the configured size limit."""


def parse_size(value: Union[str, int]) -> int:
    """
    Convert a size such as "2mb", "512kb" or 1024 into a number of bytes.

    Units are binary (1kb == 1024 bytes). A bare number is taken as bytes.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Invalid size: {value!r}")
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * SIZE_UNITS[(unit or "b").lower()])


def estimate_tokens(in_bytes: int) -> int:
    """Crude token estimate: four bytes per token."""
    return in_bytes // 4


def classify_agent(query: Optional[str]) -> AgentTag:
    """
    Map the ``agent`` query parameter onto an AgentTag.

    Matching is case-insensitive; anything unrecognised, including a missing
    parameter, yields the default tag.
    """
    if not query:
        return AgentTag.default()
    values = parse_qs(query.lstrip("?"), keep_blank_values=True).get("agent")
    if not values:
        return AgentTag.default()
    try:
        return AgentTag(values[0].strip().lower())
    except ValueError:
        return AgentTag.default()


def classify_target(target: str) -> AgentTag:
    """Classify a full request target such as ``/v1/chat/completions?agent=coder``."""
    _, _, query = target.partition("?")
    return classify_agent(query)


def is_well_formed_json(body: bytes, content_type: Optional[str]) -> bool:
    """
    Check that a JSON body parses. Bodies declared as something other than
    JSON, and empty bodies, are not checked.
    """
    if not body:
        return True
    if content_type and "json" not in content_type.lower():
        return True
    try:
        json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return False
    return True


async def read_body(
    chunks: AsyncIterator[bytes], limit: int, idle_timeout: float
) -> bytes:
    """
    Read an inbound body to completion.

    Raises:
        ClientIdleTimeout: if no chunk arrives within ``idle_timeout`` seconds.
        PayloadTooLarge: if the body grows past ``limit`` bytes.
    """
    body = bytearray()
    iterator = chunks.__aiter__()
    while True:
        try:
            chunk = await asyncio.wait_for(iterator.__anext__(), timeout=idle_timeout)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError:
            raise ClientIdleTimeout(f"Idle > {int(idle_timeout * 1000)}ms")
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge(f"Body exceeds {limit} bytes")
    return bytes(body)


def error_response(
    status_code: int, message: str, error_type: str, headers: Optional[dict] = None
) -> JSONResponse:
    """Build the structured error response used by every endpoint."""
    body = ErrorBody(error=ErrorDetail(message=message, type=error_type))
    return JSONResponse(
        content=body.model_dump(), status_code=status_code, headers=headers
    )


def to_iso_ms(timestamp_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string, e.g. 2024-01-01T00:00:00.000Z."""
    dt = datetime.fromtimestamp(timestamp_ms // 1000, tz=timezone.utc)
    dt += timedelta(milliseconds=timestamp_ms % 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp back into epoch milliseconds."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000
