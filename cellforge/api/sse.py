"""Server-Sent Events encoding of pipeline events."""

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

from cellforge.core.exceptions import CellForgeException
from cellforge.services.generation.types import PipelineEvent

logger = logging.getLogger(__name__)


def format_sse(event: str, data: dict[str, Any]) -> str:
    """Format data as SSE event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def stream_pipeline_events(events: AsyncGenerator[PipelineEvent, None]) -> AsyncIterator[str]:
    """
    Encode pipeline events as SSE frames.

    Emits ``column`` and ``cell`` events, then ``complete`` with totals. A
    failure that aborts the run becomes a final ``error`` event since the
    HTTP status has already been sent.
    """
    total = 0
    failed = 0
    try:
        async for event in events:
            if event.column is not None:
                yield format_sse("column", event.to_dict())
                continue
            if event.done:
                total += 1
                if event.cell is not None and event.cell.error:
                    failed += 1
            yield format_sse("cell", event.to_dict())
        yield format_sse("complete", {"cells": total, "failed": failed})
    except CellForgeException as e:
        logger.error(f"Generation stream aborted: {e.detail}")
        yield format_sse("error", e.to_dict())
    finally:
        await events.aclose()
