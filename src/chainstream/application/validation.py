"""
Horizontal Validator: consistency checks within one chunk's fetched data.

Errors (chunk rejected): block outside the chunk, duplicate transaction hash,
duplicate (tx, log_index) event. Warnings (recorded, chunk accepted): events
arriving out of block order, transactions referenced by events but missing from
the result, and unexplained large jumps between referenced blocks. The gap check
is a heuristic; most chains have no cheap "block exists" signal.
"""
from __future__ import annotations

from ..domain.models import Chunk, FetchedRange, ValidationIssue, ValidationResult


class HorizontalValidator:
    def __init__(self, *, gap_warning_blocks: int = 50_000, gap_factor: float = 4.0) -> None:
        self.gap_warning_blocks = gap_warning_blocks
        self.gap_factor = gap_factor

    def validate(self, chunk: Chunk, data: FetchedRange) -> ValidationResult:
        issues: list[ValidationIssue] = []
        issues += self._range(chunk, data)
        issues += self._duplicates(data)
        issues += self._coverage(chunk, data)
        return ValidationResult(ok=not any(i.severity == "error" for i in issues), issues=tuple(issues))

    def _range(self, chunk: Chunk, data: FetchedRange) -> list[ValidationIssue]:
        out: list[ValidationIssue] = []
        if (data.from_block, data.to_block) != (chunk.start, chunk.end):
            out.append(ValidationIssue(
                "range_mismatch", "error",
                f"fetched [{data.from_block}, {data.to_block}] for chunk [{chunk.start}, {chunk.end}]"))
        for tx in data.transactions:
            if not chunk.contains(tx.block_number):
                out.append(ValidationIssue(
                    "out_of_range", "error",
                    f"tx {tx.hash} at block {tx.block_number} outside [{chunk.start}, {chunk.end}]",
                    block=tx.block_number, tx_hash=tx.hash))
        for ev in data.events:
            if not chunk.contains(ev.block_number):
                out.append(ValidationIssue(
                    "out_of_range", "error",
                    f"event {ev.tx_hash}#{ev.log_index} at block {ev.block_number} outside [{chunk.start}, {chunk.end}]",
                    block=ev.block_number, tx_hash=ev.tx_hash))
        return out

    def _duplicates(self, data: FetchedRange) -> list[ValidationIssue]:
        out: list[ValidationIssue] = []
        seen: set[str] = set()
        for tx in data.transactions:
            if tx.hash in seen:
                out.append(ValidationIssue("duplicate_hash", "error", f"tx {tx.hash} appears more than once",
                                           block=tx.block_number, tx_hash=tx.hash))
            seen.add(tx.hash)
        seen_ev: set[tuple[str, int]] = set()
        for ev in data.events:
            key = (ev.tx_hash, ev.log_index)
            if key in seen_ev:
                out.append(ValidationIssue("duplicate_event", "error", f"event {ev.tx_hash}#{ev.log_index} appears more than once",
                                           block=ev.block_number, tx_hash=ev.tx_hash))
            seen_ev.add(key)
        return out

    def _coverage(self, chunk: Chunk, data: FetchedRange) -> list[ValidationIssue]:
        out: list[ValidationIssue] = []
        blocks = [ev.block_number for ev in data.events]
        for prev, cur in zip(blocks, blocks[1:]):
            if cur < prev:
                out.append(ValidationIssue("ordering", "warning", f"event block {cur} follows {prev}", block=cur))
                break

        tx_hashes = {tx.hash for tx in data.transactions}
        missing = {ev.tx_hash for ev in data.events} - tx_hashes
        if missing:
            out.append(ValidationIssue("missing_detail", "warning",
                                       f"{len(missing)} referenced transaction(s) without detail"))

        distinct = sorted(set(blocks) | {tx.block_number for tx in data.transactions if chunk.contains(tx.block_number)})
        if not distinct:
            return out
        expected = chunk.span() / (len(distinct) + 1)
        threshold = max(self.gap_warning_blocks, self.gap_factor * expected)
        edges = [chunk.start - 1, *distinct, chunk.end + 1]
        for prev, cur in zip(edges, edges[1:]):
            jump = cur - prev - 1
            if jump > threshold:
                out.append(ValidationIssue("gap", "warning",
                                           f"{jump} blocks without activity between {prev + 1} and {cur - 1}",
                                           block=prev + 1))
        return out
