"""
Batched request model over a HostDocument.

Every read or write against the document is queued on a RequestContext and only
runs at the next `sync()`. Requests run in queue order; a result is readable
through its Pending handle once the batch holding it has been synchronised.
"""

from enum import Enum
from typing import TYPE_CHECKING, Callable, Generic, List, Optional, Tuple, TypeVar

import structlog

from trackdiff.errors import HostRejectedError, PendingValueError

if TYPE_CHECKING:
    from trackdiff.host.document import HostDocument

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UNSET = object()


class ChangeTrackingMode(str, Enum):
    OFF = "Off"
    TRACK_ALL = "TrackAll"


class Pending(Generic[T]):
    """Result slot of a queued request."""

    __slots__ = ("description", "_value")

    def __init__(self, description: str):
        self.description = description
        self._value = _UNSET

    @property
    def ready(self) -> bool:
        return self._value is not _UNSET

    @property
    def value(self) -> T:
        if self._value is _UNSET:
            raise PendingValueError(f"'{self.description}' was read before context.sync()")
        return self._value  # type: ignore[return-value]

    def _resolve(self, value: T):
        self._value = value

    def __repr__(self) -> str:
        state = repr(self._value) if self.ready else "<pending>"
        return f"Pending({self.description}={state})"


class RequestContext:
    def __init__(self, document: "HostDocument"):
        self.document = document
        self._queue: List[Tuple[str, Callable[[], object], Optional[Pending]]] = []
        self.sync_count = 0

    @property
    def queued(self) -> int:
        return len(self._queue)

    def enqueue(self, description: str, action: Callable[[], T], want_result: bool = False) -> Optional[Pending[T]]:
        pending: Optional[Pending[T]] = Pending(description) if want_result else None
        self._queue.append((description, action, pending))
        return pending

    def sync(self):
        """
        Runs every queued request in order. If one fails, the requests before it stay
        applied, it and everything after it are dropped, and HostRejectedError is raised.
        """
        batch, self._queue = self._queue, []
        self.sync_count += 1
        logger.debug("context.sync", requests=len(batch), sync=self.sync_count)

        for position, (description, action, pending) in enumerate(batch):
            try:
                result = action()
            except HostRejectedError:
                self._log_dropped(batch, position)
                raise
            except (ValueError, KeyError, IndexError) as e:
                self._log_dropped(batch, position)
                raise HostRejectedError(description, str(e)) from e
            if pending is not None:
                pending._resolve(result)

    def discard(self):
        """Drops queued requests without running them."""
        if self._queue:
            logger.debug("Discarding queued requests", requests=len(self._queue))
        self._queue = []

    def _log_dropped(self, batch, position: int):
        dropped = len(batch) - position - 1
        logger.warning("Batch aborted", failed=batch[position][0], dropped=dropped)

    # --- Document-level requests ---

    def set_change_tracking_mode(self, mode: ChangeTrackingMode):
        def action():
            self.document.change_tracking_mode = mode

        self.enqueue(f"document.changeTrackingMode = {mode.value}", action)

    def load_change_tracking_mode(self) -> Pending[ChangeTrackingMode]:
        return self.enqueue("document.changeTrackingMode", lambda: self.document.change_tracking_mode, True)
