import queue
import threading
from typing import Generic, TypeVar

from tezos_indexer.utils.context import Context

T = TypeVar("T")

# How often a blocked send/recv re-checks its context
POLL_INTERVAL_IN_SECS = 0.05


class ChannelClosed(Exception):
    pass


class Channel(Generic[T]):
    """Bounded single-producer channel between two threads.

    `send` blocks while the channel is full, which throttles the producer to the
    consumer's pace. `recv` keeps returning buffered items after `close` and
    raises ChannelClosed once the channel is both closed and drained.
    """

    def __init__(self, capacity: int):
        self._queue: queue.Queue = queue.Queue(capacity)
        self._closed = threading.Event()

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, item: T, ctx: Context) -> None:
        if self._closed.is_set():
            raise ChannelClosed("send on closed channel")
        while True:
            ctx.raise_if_done()
            try:
                self._queue.put(item, timeout=POLL_INTERVAL_IN_SECS)
                return
            except queue.Full:
                continue

    def recv(self, ctx: Context) -> T:
        while True:
            try:
                return self._queue.get(timeout=POLL_INTERVAL_IN_SECS)
            except queue.Empty:
                # Everything sent before close() is already queued at this point
                if self._closed.is_set() and self._queue.empty():
                    raise ChannelClosed("channel closed")
                ctx.raise_if_done()

    def close(self) -> None:
        self._closed.set()
