"""
Resume/Offset Resolution
========================

Decides which rows a generation run should touch.

- ``compute_offset``: length of the contiguous prefix of done cells starting
  at row 0. Validated cells count as done; the first error, empty, still
  generating, or missing row is where a resumed run starts.
- ``plan_rows``: the concrete row indices to generate. Validated cells are
  never regenerated. When resuming, any other done cell inside the window is
  skipped as well.
"""

from collections.abc import Iterable

from cellforge.services.generation.types import Cell


def compute_offset(cells: Iterable[Cell]) -> int:
    by_idx = {cell.idx: cell for cell in cells}
    offset = 0
    while offset in by_idx and by_idx[offset].is_done:
        offset += 1
    return offset


def plan_rows(
    cells: Iterable[Cell],
    limit: int,
    offset: int = 0,
    resume_from_last: bool = False,
) -> list[int]:
    """
    Args:
        cells: Existing cells of the column being generated
        limit: Number of row slots to consider from the start row
        offset: Start row for a non-resumed run
        resume_from_last: Start at ``compute_offset`` and skip done cells

    Returns:
        Ascending row indices to dispatch
    """
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be non-negative")

    by_idx = {cell.idx: cell for cell in cells}
    start = compute_offset(by_idx.values()) if resume_from_last else offset

    rows = []
    for idx in range(start, start + limit):
        cell = by_idx.get(idx)
        if cell is not None and cell.validated:
            continue
        if resume_from_last and cell is not None and cell.is_done:
            continue
        rows.append(idx)
    return rows
