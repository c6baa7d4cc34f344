"""Aggregation of Server-Sent-Events chat-completion streams.

The narrative request streams ``data: <json>`` lines terminated by
``data: [DONE]``. Each frame carries an incremental text delta; the
aggregator accumulates them and reports the *cumulative* text after
every delta, so a UI can render the growing summary without keeping
partial state of its own.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    import httpx

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str], Awaitable[None] | None]

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"


def _extract_delta(frame: Any) -> str:
    """Pull ``choices[0].delta.content`` out of a decoded frame."""
    if not isinstance(frame, dict):
        return ""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def notify_progress(on_progress: ProgressCallback | None, text: str) -> None:
    """Invoke a sync or async progress callback, if any."""
    if on_progress is None:
        return
    outcome = on_progress(text)
    if inspect.isawaitable(outcome):
        await outcome


async def aggregate_sse_lines(
    lines: AsyncIterator[str],
    on_progress: ProgressCallback | None = None,
) -> str:
    """Accumulate the text deltas of an SSE line stream.

    Malformed frames are skipped without aborting the stream. Blank
    lines, comments and non-``data`` fields are ignored.

    Args:
        lines: Decoded lines of the response body, without newlines.
        on_progress: Optional sync or async callback receiving the
            cumulative text after each non-empty delta.

    Returns:
        The full accumulated text.
    """
    accumulated: list[str] = []
    frames = 0
    skipped = 0

    async for line in lines:
        stripped = line.strip()
        if not stripped.startswith(_DATA_PREFIX):
            continue

        payload = stripped[len(_DATA_PREFIX) :].strip()
        if payload == _DONE_SENTINEL:
            break

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            skipped += 1
            continue

        frames += 1
        delta = _extract_delta(frame)
        if not delta:
            continue
        accumulated.append(delta)
        await notify_progress(on_progress, "".join(accumulated))

    text = "".join(accumulated)
    logger.debug(
        "stream_aggregated",
        frames=frames,
        skipped_frames=skipped,
        length=len(text),
    )
    return text


async def aggregate_response(
    response: httpx.Response,
    on_progress: ProgressCallback | None = None,
) -> str:
    """Aggregate a streamed ``httpx`` response and always close it.

    Args:
        response: An open response obtained with ``client.send(..., stream=True)``.
        on_progress: Optional callback, see :func:`aggregate_sse_lines`.

    Returns:
        The full accumulated text.
    """
    try:
        return await aggregate_sse_lines(response.aiter_lines(), on_progress)
    finally:
        await response.aclose()
