from typing import Dict, Optional

import structlog

from trackdiff.errors import ExecutionError, HostRejectedError
from trackdiff.host.context import ChangeTrackingMode, RequestContext
from trackdiff.host.ranges import DocRange, InsertLocation
from trackdiff.models import CommitResult, EditPlan

logger = structlog.get_logger(__name__)


class TrackingScope:
    """
    Scoped acquisition of the document's change tracking mode.

    On entry the prior mode is read and the requested mode queued ahead of any
    mutation; on every exit path unsynchronised requests are dropped and the
    prior mode is restored.
    """

    def __init__(self, context: RequestContext, mode: ChangeTrackingMode = ChangeTrackingMode.TRACK_ALL):
        self.context = context
        self.mode = mode
        self.prior: Optional[ChangeTrackingMode] = None

    def __enter__(self) -> "TrackingScope":
        pending = self.context.load_change_tracking_mode()
        self.context.sync()
        self.prior = pending.value
        self.context.set_change_tracking_mode(self.mode)
        return self

    def commit(self):
        """Synchronisation barrier for everything queued inside the scope."""
        self.context.sync()

    def __exit__(self, exc_type, exc, tb):
        self.context.discard()
        if self.prior is None:
            return False
        try:
            self.context.set_change_tracking_mode(self.prior)
            self.context.sync()
        except HostRejectedError as e:
            if exc is None:
                raise
            # Keep the error that ended the scope.
            logger.error("Could not restore change tracking mode", mode=self.prior.value, reason=e.reason)
        return False


class PlanExecutor:
    name = "token-plan"

    def execute(self, plan: EditPlan, scope: TrackingScope, live_range: DocRange) -> CommitResult:
        """
        Queues every deletion (descending token index) and then every insertion, and
        commits them through one barrier. A host rejection is reported as
        ExecutionError; undoing what already ran is left to the caller.
        """
        plan.validate()
        result = CommitResult(strategy=self.name)

        for token in plan.delete_targets:
            token.range.delete()
            result.deleted_indices.append(token.index)

        # Consecutive inserts at the same anchor are chained to keep their order.
        # Text after the last token is appended at the range end so the range owns it.
        last = plan.token_count - 1
        chain: Dict[Optional[int], DocRange] = {}
        for op in plan.insert_ops:
            key = op.anchor.index if op.anchor is not None else None
            if key is not None and key == last:
                inserted = live_range.insert_text(op.text, InsertLocation.END)
            elif key in chain:
                inserted = chain[key].insert_text(op.text, InsertLocation.AFTER)
            elif op.anchor is None:
                inserted = live_range.insert_text(op.text, InsertLocation.START)
            else:
                inserted = op.anchor.range.insert_text(op.text, InsertLocation.AFTER)
            chain[key] = inserted
            result.inserted += 1

        try:
            scope.commit()
        except HostRejectedError as e:
            logger.warning("Plan commit rejected", operation=e.operation, reason=e.reason)
            raise ExecutionError(f"Commit rejected at '{e.operation}': {e.reason}") from e

        logger.info(
            "Plan committed",
            generation=plan.generation,
            deleted=len(result.deleted_indices),
            inserted=result.inserted,
        )
        return result
