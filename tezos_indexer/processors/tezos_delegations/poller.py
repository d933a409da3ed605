import enum
import logging
import threading
from time import perf_counter
from typing import Optional

from tezos_indexer.processors.tezos_delegations.processor import (
    BackfillResult,
    TezosDelegationsProcessor,
)
from tezos_indexer.utils.config import IndexingConfig
from tezos_indexer.utils.context import Context
from tezos_indexer.utils.errors import AlreadyStartedError, ContextDone
from tezos_indexer.utils.metrics import POLLING_ERRORS


class LifecycleState(enum.Enum):
    IDLE = "idle"
    BACKFILL_RUNNING = "backfill_running"
    POLLING = "polling"
    STOPPED = "stopped"


class DelegationPoller:
    """
    Runs the backfill once, then one poll tick per interval, on a background
    thread. A failed tick is logged and counted; the next tick retries from the
    durable store state.
    """

    def __init__(
        self, processor: TezosDelegationsProcessor, config: IndexingConfig
    ):
        self.processor = processor
        self.polling_interval_in_secs = config.polling_interval_in_secs
        self.tick_timeout_in_secs = config.poll_tick_timeout_in_secs
        self.historical_indexing = config.historical_indexing
        self.backfill_result: Optional[BackfillResult] = None

        self._lock = threading.Lock()
        self._ctx: Optional[Context] = None
        self._thread: Optional[threading.Thread] = None
        self._state = LifecycleState.IDLE

    @property
    def state(self) -> LifecycleState:
        return self._state

    def is_running(self) -> bool:
        with self._lock:
            return self._ctx is not None

    def start(self) -> None:
        with self._lock:
            if self._ctx is not None:
                raise AlreadyStartedError("polling already started")
            ctx = Context()
            thread = threading.Thread(
                target=self._run, args=(ctx,), name="delegation-poller", daemon=True
            )
            self._ctx = ctx
            self._thread = thread
            self._state = (
                LifecycleState.BACKFILL_RUNNING
                if self.historical_indexing
                else LifecycleState.POLLING
            )

        thread.start()
        logging.info(
            "[Poller] Polling started",
            extra={
                "interval_in_secs": self.polling_interval_in_secs,
                "historical_indexing": self.historical_indexing,
            },
        )

    def stop(self, timeout_in_secs: Optional[float] = None) -> None:
        with self._lock:
            ctx, thread = self._ctx, self._thread
            if ctx is None:
                return
            self._ctx = None
            self._thread = None
            self._state = LifecycleState.STOPPED

        ctx.cancel()
        # stop() may be called from a tick; the loop exits on its own then
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_in_secs)
        logging.info("[Poller] Polling stopped")

    def _set_state(self, ctx: Context, state: LifecycleState) -> None:
        with self._lock:
            if self._ctx is ctx:
                self._state = state

    def _run(self, ctx: Context) -> None:
        if self.historical_indexing:
            self._run_backfill(ctx)
        self._set_state(ctx, LifecycleState.POLLING)

        while not ctx.done():
            tick_start = perf_counter()
            self._tick(ctx)
            # The interval is measured from the start of the tick
            elapsed = perf_counter() - tick_start
            if ctx.wait(max(0.0, self.polling_interval_in_secs - elapsed)):
                break

    def _run_backfill(self, ctx: Context) -> None:
        try:
            self.backfill_result = self.processor.index_historical(ctx)
            logging.info("[Poller] Historical indexing completed successfully")
        except ContextDone as e:
            logging.warning(
                "[Poller] Historical indexing interrupted",
                extra={"error": str(e)},
            )
        except Exception as e:
            # Polling still starts; its seed path covers an empty store
            logging.exception(
                "[Poller] Historical indexing failed",
                extra={"error": str(e)},
            )

    def _tick(self, ctx: Context) -> None:
        with ctx.child(self.tick_timeout_in_secs) as tick_ctx:
            try:
                self.processor.poll_once(tick_ctx)
            except ContextDone as e:
                if ctx.done():
                    return
                POLLING_ERRORS.inc()
                logging.error(
                    "[Poller] Poll tick timed out",
                    extra={
                        "error": str(e),
                        "timeout_in_secs": self.tick_timeout_in_secs,
                    },
                )
            except Exception as e:
                POLLING_ERRORS.inc()
                logging.exception(
                    "[Poller] Poll tick failed",
                    extra={"error": str(e)},
                )
