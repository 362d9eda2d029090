import time
from threading import Event
from typing import Optional

from sqlbulk.errors import ContextCancelled, DeadlineExceeded


class ExecutionContext:
    """
    Carries cancellation and an optional deadline to the statements executed on its behalf.
    A child context (see `with_timeout`) is done as soon as its parent is done.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional["ExecutionContext"] = None) -> None:
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline  # time.monotonic() based
        self.parent = parent
        self._cancelled = Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.parent.cancelled if self.parent is not None else False

    def with_timeout(self, seconds: float) -> "ExecutionContext":
        return ExecutionContext(time.monotonic() + seconds, parent=self)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def err(self) -> Optional[ContextCancelled]:
        if self.cancelled:
            return ContextCancelled("context cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def check(self) -> None:
        if (error := self.err()) is not None:
            raise error


def background() -> ExecutionContext:
    return ExecutionContext()
