"""
Exception classes for trackdiff.

TokenResolutionError, AlignmentError and ExecutionError are expected control
flow inside the FallbackController and never reach callers. Everything else
is user-visible.
"""

from typing import Optional


class TrackDiffError(Exception):
    """Base exception for all trackdiff errors."""

    pass


class InputError(TrackDiffError):
    """Raised before any document mutation when the request itself is unusable."""

    pass


class StaleRangeError(InputError):
    """The live range no longer holds the text the revision was computed from."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Range text changed since the selection was read "
            f"(expected {len(expected)} chars, found {len(actual)} chars: '{_preview(actual)}')"
        )


class TokenResolutionError(TrackDiffError):
    """A fine token could not be located inside its coarse parent range.

    Attributes:
        token_text: The fine token that could not be resolved
        coarse_text: Text of the coarse range that was searched
    """

    def __init__(self, token_text: str, coarse_text: str = "", hint: Optional[str] = None) -> None:
        self.token_text = token_text
        self.coarse_text = coarse_text
        self.hint = hint
        msg = f"Token mapping failed for '{token_text}'"
        if coarse_text:
            msg += f" inside '{_preview(coarse_text)}'"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class AlignmentError(TrackDiffError):
    """The diff token stream and the document token stream diverged.

    Attributes:
        expected: Remaining diff text that had to be consumed
        found: Text of the document token found instead (None at end of stream)
        position: Index into the token stream being walked
    """

    def __init__(self, expected: str, found: Optional[str], position: int) -> None:
        self.expected = expected
        self.found = found
        self.position = position
        if found is None:
            msg = f"Token stream exhausted at {position} while expecting '{_preview(expected)}'"
        else:
            msg = f"Token mismatch at {position}: expected '{_preview(expected)}' but found token '{found}'"
        super().__init__(msg)


class PlanIntegrityError(AlignmentError):
    """An edit plan references tokens outside its own TokenMap generation."""

    def __init__(self, message: str, position: int = -1) -> None:
        self.expected = ""
        self.found = None
        self.position = position
        TrackDiffError.__init__(self, message)


class ExecutionError(TrackDiffError):
    """The host rejected a queued mutation while an edit plan was committed."""

    pass


class FallbackChunkNotFoundError(TrackDiffError):
    """The search-based replay lost sync with the document.

    Terminal for the change request: the document is left where the replay
    stopped and needs manual inspection.
    """

    def __init__(self, op: int, chunk: str, found: str = "") -> None:
        self.op = op
        self.chunk = chunk
        self.found = found
        kind = "DELETE" if op == -1 else "EQUAL"
        msg = f"Could not find {kind} chunk '{_preview(chunk)}' at the replay cursor"
        if found:
            msg += f" (cursor is at '{_preview(found)}')"
        super().__init__(msg)


class HostError(TrackDiffError):
    """Base class for failures reported by the document host."""

    pass


class HostRejectedError(HostError):
    """A queued request failed when its batch was synchronised.

    Attributes:
        operation: Description of the rejected request
    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Host rejected '{operation}': {reason}")


class PendingValueError(HostError):
    """A queued result was read before the context was synchronised."""

    pass


class UpstreamError(InputError):
    """The text-generation service failed or returned an unusable response; nothing was mutated."""

    pass


def _preview(text: str, limit: int = 30) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
