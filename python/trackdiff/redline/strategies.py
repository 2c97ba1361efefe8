"""
Secondary strategies used once the token table can no longer be trusted.

Both work against the live range directly: CursorReplayStrategy re-finds every
Equal/Delete chunk by text search at a cursor that only moves forward;
BlockReplaceStrategy replaces the whole range as one deletion plus one insertion.
"""

from typing import Sequence, Tuple

import structlog

from trackdiff.diff import reconstruct_original, reconstruct_revised
from trackdiff.errors import FallbackChunkNotFoundError
from trackdiff.host.context import RequestContext
from trackdiff.host.ranges import DocRange, InsertLocation, RangeLocation
from trackdiff.models import CommitResult, DiffOp, DiffOpKind

logger = structlog.get_logger(__name__)


class CursorReplayStrategy:
    name = "cursor-replay"

    def replay(self, context: RequestContext, live_range: DocRange, diff_ops: Sequence[DiffOp]) -> CommitResult:
        """
        Walks the diff with a cursor starting at the range start.

        Equal chunks move the cursor past their match, Delete chunks are deleted
        where they are found, Insert chunks go directly after the cursor, or at the
        range end once the cursor has reached it. A chunk must be found exactly at
        the cursor; otherwise the replay stops with FallbackChunkNotFoundError and
        the document keeps what was done so far.
        """
        result = CommitResult(strategy=self.name)
        cursor = None  # None while the cursor is still at the range start
        at_end = False  # the last Equal/Delete chunk reached the range end

        for op, chunk in diff_ops:
            if op == DiffOpKind.INSERT:
                if at_end:
                    inserted = live_range.insert_text(chunk, InsertLocation.END)
                elif cursor is None:
                    inserted = live_range.insert_text(chunk, InsertLocation.START)
                else:
                    inserted = cursor.insert_text(chunk, InsertLocation.AFTER)
                cursor = inserted.get_range(RangeLocation.END)
                context.sync()
                result.inserted += 1
                continue

            match, at_end = self._find_at_cursor(context, live_range, cursor, op, chunk)
            if op == DiffOpKind.EQUAL:
                cursor = match.get_range(RangeLocation.END)
                context.sync()
            else:
                match.delete()
                context.sync()
                result.deleted_indices.append(len(result.deleted_indices))

        logger.info("Replay completed", chunks=len(diff_ops), deleted=len(result.deleted_indices))
        return result

    def _find_at_cursor(self, context, live_range, cursor, op, chunk) -> Tuple[DocRange, bool]:
        start = cursor if cursor is not None else live_range.get_range(RangeLocation.START)
        search_range = start.expand_to(live_range.get_range(RangeLocation.END))
        text_pending = search_range.load_text()
        matches_pending = search_range.search(chunk, match_case=True)
        context.sync()

        ahead = text_pending.value
        matches = matches_pending.value
        if not matches or not ahead.startswith(chunk):
            logger.warning("Lost sync during replay", op=int(op), chunk=chunk[:20], cursor=ahead[:20])
            raise FallbackChunkNotFoundError(int(op), chunk, ahead[: len(chunk)])
        return matches[0], len(ahead) == len(chunk)


class BlockReplaceStrategy:
    """Replaces the whole range: one tracked insertion of the revised text, one deletion of the old text."""

    name = "block-replace"

    def replay(self, context: RequestContext, live_range: DocRange, diff_ops: Sequence[DiffOp]) -> CommitResult:
        result = CommitResult(strategy=self.name)
        original = reconstruct_original(diff_ops)
        revised = reconstruct_revised(diff_ops)
        if original == revised:
            return result

        old = live_range.get_range(RangeLocation.WHOLE)
        old_text = old.load_text()
        context.sync()
        if old_text.value != original:
            raise FallbackChunkNotFoundError(int(DiffOpKind.DELETE), original, old_text.value)

        if revised:
            live_range.insert_text(revised, InsertLocation.END)
            result.inserted = 1
        if old_text.value:
            old.delete()
            result.deleted_indices.append(0)
        context.sync()

        logger.info("Block replaced", deleted=len(old_text.value), inserted=len(revised))
        return result
