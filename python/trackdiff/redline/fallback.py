from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

import structlog

from trackdiff.diff import diff
from trackdiff.errors import (
    AlignmentError,
    ExecutionError,
    HostRejectedError,
    InputError,
    StaleRangeError,
    TokenResolutionError,
    TrackDiffError,
)
from trackdiff.host.context import ChangeTrackingMode, RequestContext
from trackdiff.host.ranges import DocRange, InsertLocation, RangeLocation
from trackdiff.models import ApplyResult, CommitResult, DiffOp, FallbackState, Granularity
from trackdiff.redline.executor import PlanExecutor, TrackingScope
from trackdiff.redline.mapper import TokenMapper
from trackdiff.redline.planner import EditPlanner
from trackdiff.redline.strategies import CursorReplayStrategy

logger = structlog.get_logger(__name__)

# Failures of the primary strategy that route to the reset + secondary path.
RECOVERABLE_ERRORS = (TokenResolutionError, AlignmentError, ExecutionError)

TRANSITIONS: Dict[FallbackState, FrozenSet[FallbackState]] = {
    FallbackState.PRIMARY: frozenset({FallbackState.DONE, FallbackState.RESETTING}),
    FallbackState.RESETTING: frozenset({FallbackState.SECONDARY, FallbackState.TERMINAL_FAILURE}),
    FallbackState.SECONDARY: frozenset({FallbackState.DONE, FallbackState.TERMINAL_FAILURE}),
}

FINAL_STATES = frozenset({FallbackState.DONE, FallbackState.TERMINAL_FAILURE})


@dataclass
class _Attempt:
    """Everything one apply_with_fallback call carries between states."""

    context: RequestContext
    live_range: DocRange
    original_text: str
    revised_text: str
    diff_ops: List[DiffOp]
    states: List[FallbackState] = field(default_factory=list)
    commit: Optional[CommitResult] = None
    primary_error: Optional[TrackDiffError] = None
    error: Optional[Exception] = None


class FallbackController:
    """
    Applies a revision to a live range as tracked changes with one level of fallback.

    PRIMARY (token map -> plan -> execute) either finishes or moves to RESETTING,
    which restores the original text untracked. SECONDARY then replays the diff
    with a search-anchored strategy. Each state runs at most once per call.
    """

    def __init__(
        self,
        mapper: Optional[TokenMapper] = None,
        planner: Optional[EditPlanner] = None,
        executor: Optional[PlanExecutor] = None,
        secondary=None,
        fallback_granularity: Granularity = Granularity.TOKEN,
        track_changes: bool = True,
    ):
        self.mapper = mapper or TokenMapper()
        self.planner = planner or EditPlanner()
        self.executor = executor or PlanExecutor()
        self.secondary = secondary or CursorReplayStrategy()
        self.fallback_granularity = Granularity(fallback_granularity)
        self.mode = ChangeTrackingMode.TRACK_ALL if track_changes else ChangeTrackingMode.OFF
        self._handlers: Dict[FallbackState, Callable[[_Attempt], FallbackState]] = {
            FallbackState.PRIMARY: self._run_primary,
            FallbackState.RESETTING: self._run_reset,
            FallbackState.SECONDARY: self._run_secondary,
        }

    def apply_with_fallback(
        self, context: RequestContext, live_range: DocRange, original_text: str, revised_text: str
    ) -> ApplyResult:
        """
        Transforms `live_range` from `original_text` into `revised_text`.

        Raises InputError (nothing is mutated) for empty texts or a range that no
        longer reads `original_text`. Terminal failures of the reset or the
        secondary strategy are re-raised after the state machine stops.
        """
        if not original_text:
            raise InputError("Selection is empty")
        if not revised_text:
            raise InputError("Revised text is empty")

        current = live_range.load_text()
        context.sync()
        if current.value != original_text:
            raise StaleRangeError(original_text, current.value)

        attempt = _Attempt(
            context=context,
            live_range=live_range,
            original_text=original_text,
            revised_text=revised_text,
            diff_ops=diff(original_text, revised_text),
        )

        state = FallbackState.PRIMARY
        attempt.states.append(state)
        while state not in FINAL_STATES:
            next_state = self._handlers[state](attempt)
            if next_state not in TRANSITIONS[state]:
                raise RuntimeError(f"Illegal fallback transition {state.value} -> {next_state.value}")
            logger.debug("Fallback transition", source=state.value, target=next_state.value)
            state = next_state
            attempt.states.append(state)

        if state == FallbackState.TERMINAL_FAILURE:
            logger.error("Change request failed", states=[s.value for s in attempt.states], error=str(attempt.error))
            raise attempt.error

        commit = attempt.commit or CommitResult(strategy="none")
        return ApplyResult(
            strategy=commit.strategy,
            states=attempt.states,
            primary_error=str(attempt.primary_error) if attempt.primary_error else None,
            deleted=len(commit.deleted_indices),
            inserted=commit.inserted,
        )

    # --- States ---

    def _run_primary(self, attempt: _Attempt) -> FallbackState:
        try:
            token_map = self.mapper.tokenize(attempt.context, attempt.live_range)
            plan = self.planner.plan(attempt.diff_ops, token_map)
            with TrackingScope(attempt.context, self.mode) as scope:
                attempt.commit = self.executor.execute(plan, scope, attempt.live_range)
            self._verify(attempt, attempt.revised_text, "primary")
        except RECOVERABLE_ERRORS as e:
            logger.warning("Primary strategy failed, falling back", error_type=type(e).__name__, error=str(e))
            attempt.primary_error = e
            return FallbackState.RESETTING
        except HostRejectedError as e:
            # Rejections outside the commit barrier (e.g. the scope's own syncs) are execution failures too.
            logger.warning("Primary strategy rejected by host, falling back", error=str(e))
            attempt.primary_error = ExecutionError(str(e))
            return FallbackState.RESETTING
        return FallbackState.DONE

    def _run_reset(self, attempt: _Attempt) -> FallbackState:
        try:
            with TrackingScope(attempt.context, ChangeTrackingMode.OFF) as scope:
                old = attempt.live_range.get_range(RangeLocation.WHOLE)
                attempt.live_range.insert_text(attempt.original_text, InsertLocation.START)
                old.delete()
                scope.commit()
            self._verify(attempt, attempt.original_text, "reset")
        except HostRejectedError as e:
            attempt.error = e
            return FallbackState.TERMINAL_FAILURE
        except ExecutionError as e:
            attempt.error = HostRejectedError("reset", str(e))
            return FallbackState.TERMINAL_FAILURE
        logger.info("Range reset to original text", length=len(attempt.original_text))
        return FallbackState.SECONDARY

    def _run_secondary(self, attempt: _Attempt) -> FallbackState:
        diff_ops = attempt.diff_ops
        if self.fallback_granularity != Granularity.TOKEN:
            diff_ops = diff(attempt.original_text, attempt.revised_text, self.fallback_granularity)
        try:
            with TrackingScope(attempt.context, self.mode):
                attempt.commit = self.secondary.replay(attempt.context, attempt.live_range, diff_ops)
            self._verify(attempt, attempt.revised_text, self.secondary.name)
        except TrackDiffError as e:
            attempt.error = e
            return FallbackState.TERMINAL_FAILURE
        return FallbackState.DONE

    def _verify(self, attempt: _Attempt, expected: str, phase: str):
        text = attempt.live_range.load_text()
        attempt.context.sync()
        if text.value != expected:
            raise ExecutionError(f"Range reads '{text.value}' after {phase}, expected '{expected}'")
