"""
Cancellation and deadline propagation for the indexer threads.

A Context is handed down from the poller to every tick, from a tick to the
TzKT client and the repository, and from the backfill to both sides of its
pipeline. Cancelling a context cancels all of its children; a child never
outlives the earliest deadline of its ancestors.

    with parent.child(timeout_in_secs=300) as ctx:
        ctx.raise_if_done()
        ...
        if ctx.wait(1.5):
            # cancelled or deadline reached while sleeping
            ...
"""

import threading
import time
from typing import List, Optional, Type

from tezos_indexer.utils.errors import Cancelled, ContextDone, DeadlineExceeded


class Context:
    deadline: Optional[float]

    def __init__(
        self,
        parent: Optional["Context"] = None,
        timeout_in_secs: Optional[float] = None,
    ):
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["Context"] = []
        self._reason: Optional[Type[ContextDone]] = None

        deadline = None
        if timeout_in_secs is not None:
            deadline = time.monotonic() + timeout_in_secs
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self.deadline = deadline

        if parent is not None:
            parent._attach(self)

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def child(self, timeout_in_secs: Optional[float] = None) -> "Context":
        return Context(self, timeout_in_secs)

    def cancel(self) -> None:
        self._cancel(Cancelled)

    def release(self) -> None:
        # Detach from the parent once the work under this context is finished
        if self._parent is not None:
            self._parent._detach(self)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def done(self) -> bool:
        return self.err() is not None

    def err(self) -> Optional[ContextDone]:
        if self._reason is not None:
            return self._make_error(self._reason)
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceeded("context deadline exceeded")
        return None

    def raise_if_done(self) -> None:
        err = self.err()
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """Sleep for up to `seconds`. Returns True if the context is done."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.done()

    def _attach(self, child: "Context") -> None:
        with self._lock:
            reason = self._reason
            if reason is None:
                self._children.append(child)
                return
        child._cancel(reason)

    def _detach(self, child: "Context") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def _cancel(self, reason: Type[ContextDone]) -> None:
        with self._lock:
            if self._reason is not None:
                return
            self._reason = reason
            children = self._children
            self._children = []
        self._event.set()
        for child in children:
            child._cancel(reason)

    @staticmethod
    def _make_error(reason: Type[ContextDone]) -> ContextDone:
        if reason is DeadlineExceeded:
            return DeadlineExceeded("context deadline exceeded")
        return reason("context cancelled")
