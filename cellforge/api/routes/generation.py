"""Column generation endpoints (Server-Sent Events)."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from cellforge.api.dependencies import get_access_token, get_pipeline
from cellforge.api.sse import stream_pipeline_events
from cellforge.core.cancellation import CancellationToken, with_cancellation
from cellforge.core.exceptions import ColumnNotFoundError, ProcessNotConfiguredError
from cellforge.schemas.generation import GenerateColumnRequest, RegenerateCellsRequest
from cellforge.services.generation.pipeline import GenerationPipeline
from cellforge.services.generation.types import Column, ColumnKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/columns", tags=["generation"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


async def _load_column(pipeline: GenerationPipeline, column_id: str) -> Column:
    column = await pipeline.repository.get_column(column_id)
    if column is None:
        raise ColumnNotFoundError(column_id)
    if column.kind != ColumnKind.DYNAMIC or column.process is None:
        raise ProcessNotConfiguredError(column_id)
    return column


@router.post("/{column_id}/generate")
async def generate_column(
    column_id: str,
    body: GenerateColumnRequest,
    request: Request,
    pipeline: GenerationPipeline = Depends(get_pipeline),
    access_token: str | None = Depends(get_access_token),
):
    """
    Fill a dynamic column. Streams ``column``, ``cell``, ``complete`` and
    ``error`` events; disconnecting cancels outstanding rows.
    """
    column = await _load_column(pipeline, column_id)
    token = CancellationToken()
    events = pipeline.generate(column, options=body.to_options(access_token), cancel_token=token)

    return StreamingResponse(
        with_cancellation(request, stream_pipeline_events(events), token),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{column_id}/regenerate")
async def regenerate_cells(
    column_id: str,
    body: RegenerateCellsRequest,
    request: Request,
    pipeline: GenerationPipeline = Depends(get_pipeline),
    access_token: str | None = Depends(get_access_token),
):
    """Regenerate selected rows; validated rows are left untouched."""
    column = await _load_column(pipeline, column_id)
    token = CancellationToken()
    events = pipeline.regenerate_cells(
        column, body.rows, options=body.to_options(access_token), cancel_token=token
    )

    return StreamingResponse(
        with_cancellation(request, stream_pipeline_events(events), token),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
