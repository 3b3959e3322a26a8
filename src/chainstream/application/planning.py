from __future__ import annotations
from ..domain.models import Chunk

def plan_chunks(start_block: int, end_block: int, step: int, *, first_index: int = 0) -> list[Chunk]:
    """Contiguous, non-overlapping inclusive chunks covering [start_block, end_block]."""
    if step <= 0:
        raise ValueError(f"chunk size must be > 0, got {step}")
    out: list[Chunk] = []
    b, i = start_block, first_index
    while b <= end_block:
        fb, tb = b, min(end_block, b + step - 1)
        out.append(Chunk(index=i, start=fb, end=tb))
        b, i = tb + 1, i + 1
    return out

def plan_start_block(deployment_block: int | None, current_block: int, history_blocks: int | None,
                     *, fallback_window: int = 0) -> int:
    """
    fromBlock = max(deploymentBlock, currentBlock - historyBlocks).
    Without a deployment block (degraded start) the tier window, or the fallback
    window for unlimited tiers, bounds the scan.
    """
    window = history_blocks if history_blocks is not None else (None if deployment_block is not None else fallback_window)
    floor = 0 if window is None else max(0, current_block - window)
    if deployment_block is None:
        return min(floor, current_block)
    return min(max(deployment_block, floor), current_block)

def merge_intervals(intervals: list[tuple[int, int]]) -> list[tuple[int, int]]:
    if not intervals: return []
    intervals = sorted(intervals)
    merged: list[list[int]] = [[intervals[0][0], intervals[0][1]]]
    for s, e in intervals[1:]:
        ms, me = merged[-1]
        if s <= me + 1: merged[-1][1] = max(me, e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]
