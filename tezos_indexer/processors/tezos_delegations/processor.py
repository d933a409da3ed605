import logging
import shlex
import subprocess
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from time import perf_counter
from typing import Callable, List, Optional, Sequence, Tuple

from tezos_indexer.processors.tezos_delegations.models import Delegation
from tezos_indexer.processors.tezos_delegations.repository import (
    DelegationRepository,
    UpsertResult,
)
from tezos_indexer.processors.tezos_delegations.tzkt_client import TzktClient
from tezos_indexer.processors.tezos_delegations.tzkt_models import (
    APPLIED_STATUS,
    DelegationResponse,
)
from tezos_indexer.utils.channel import Channel, ChannelClosed
from tezos_indexer.utils.config import IndexingConfig
from tezos_indexer.utils.context import Context
from tezos_indexer.utils.errors import BackfillError, ContextDone, IndexerError
from tezos_indexer.utils.general_utils import (
    split_trailing_group,
    start_of_day_utc,
    to_utc,
    utc_now,
)
from tezos_indexer.utils.metrics import (
    DELEGATIONS_CONFLICTS,
    DELEGATIONS_PROCESSED,
    DELEGATIONS_STORED,
    HISTORICAL_INDEXING_PROGRESS,
    LAST_INDEXED_LEVEL,
    SYNC_MISSING_DELEGATIONS,
)
from tezos_indexer.utils.operations_processor import (
    OperationsProcessor,
    ProcessingResult,
)
from tezos_indexer.utils.processor_name import ProcessorName

# TzKT timestamps have one second resolution
RESUME_EPSILON = timedelta(seconds=1)
# Pause between pages of a level based catch-up
LEVEL_INDEXING_PAUSE_IN_SECS = 0.1


@dataclass
class VerificationResult:
    source_count: int
    stored_count: int
    difference: int
    percentage_missing: float


@dataclass
class BackfillResult:
    resume_from: datetime
    skipped: bool
    processed: int = 0
    stored: int = 0
    verification: Optional[VerificationResult] = None


class TezosDelegationsProcessor(OperationsProcessor):
    def __init__(
        self,
        client: TzktClient,
        repository: DelegationRepository,
        config: IndexingConfig,
        schema_name: str = "tezos",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.repository = repository
        self.config = config
        self.schema_name = schema_name
        self.clock = clock

    def name(self) -> str:
        return ProcessorName.TEZOS_DELEGATION_PROCESSOR.value

    def schema(self) -> str:
        return self.schema_name

    @staticmethod
    def convert_to_domain_delegations(
        responses: Sequence[DelegationResponse],
    ) -> List[Delegation]:
        delegations: List[Delegation] = []
        for response in responses:
            # Only applied operations are durable
            if response.status != APPLIED_STATUS:
                continue

            delegations.append(
                Delegation(
                    id=str(uuid.uuid4()),
                    operation_hash=response.hash,
                    level=response.level,
                    timestamp=to_utc(response.timestamp),
                    delegator=response.sender.address,
                    amount=str(response.amount),
                    block_hash=response.block,
                    created_at=utc_now(),
                )
            )
        return delegations

    def process_operations(
        self,
        ctx: Context,
        operations: Sequence[DelegationResponse],
    ) -> ProcessingResult:
        start_time = perf_counter()
        delegations = self.convert_to_domain_delegations(operations)
        return self.store_delegations(ctx, delegations, perf_counter() - start_time)

    # Upserts the batch, then advances the cursor to its highest level
    def store_delegations(
        self,
        ctx: Context,
        delegations: Sequence[Delegation],
        processing_duration_in_secs: float = 0.0,
    ) -> ProcessingResult:
        ctx.raise_if_done()
        start_time = perf_counter()
        start_level = min((d.level for d in delegations), default=None)
        end_level = None

        try:
            if delegations:
                upsert_result = self.repository.upsert_batch(delegations)
                last = max(delegations, key=lambda d: (d.level, d.timestamp))
                end_level = last.level
                self.repository.update_cursor(last.level, last.timestamp)
            else:
                upsert_result = UpsertResult(inserted=0, updated=0)
        except Exception:
            DELEGATIONS_PROCESSED.labels(status="error").inc()
            raise

        DELEGATIONS_PROCESSED.labels(status="success").inc()
        DELEGATIONS_STORED.inc(upsert_result.inserted)
        DELEGATIONS_CONFLICTS.inc(upsert_result.updated)

        return ProcessingResult(
            start_level=start_level,
            end_level=end_level,
            num_of_operations=len(delegations),
            inserted=upsert_result.inserted,
            updated=upsert_result.updated,
            processing_duration_in_secs=processing_duration_in_secs,
            db_insertion_duration_in_secs=perf_counter() - start_time,
        )

    # One poll tick. Resumes from the durable store state, never from memory,
    # so a failed tick is simply retried by the next one.
    def poll_once(self, ctx: Context) -> Optional[ProcessingResult]:
        ctx.raise_if_done()
        last_level = self.repository.highest_level()

        if last_level == 0:
            # Empty store: seed from a recent window without a level cursor
            since = self.clock() - timedelta(days=self.config.seed_window_in_days)
            from_level = None
            page_size = self.config.seed_page_size
            responses = self.client.get_delegations_since(ctx, since, page_size)
        else:
            since = None
            from_level = last_level + 1
            page_size = self.config.poll_page_size
            responses = self.client.get_delegations_from_level(
                ctx, from_level, page_size
            )
        responses = self._complete_levels(ctx, responses, page_size)

        if not responses:
            logging.debug(
                "[Poller] No new delegations",
                extra={"from_level": from_level, "since": since},
            )
            return None

        result = self.process_operations(ctx, responses)
        if result.end_level is not None:
            # Only reported once the batch is durably stored
            LAST_INDEXED_LEVEL.set(max(last_level, result.end_level))

        logging.info(
            "[Poller] Saved new delegations",
            extra={
                "count": result.num_of_operations,
                "inserted": result.inserted,
                "updated": result.updated,
                "from_level": from_level,
                "since": since,
                "end_level": result.end_level,
                "processing_duration_in_secs": str(
                    format(result.processing_duration_in_secs, ".8f")
                ),
                "db_insertion_duration_in_secs": str(
                    format(result.db_insertion_duration_in_secs, ".8f")
                ),
            },
        )
        return result

    # A full page may stop in the middle of its last level. Those trailing
    # operations are left for the next fetch, which starts at that level. A full
    # page holding a single level is completed here instead.
    def _complete_levels(
        self,
        ctx: Context,
        responses: List[DelegationResponse],
        page_size: int,
    ) -> List[DelegationResponse]:
        if len(responses) < page_size:
            return responses

        ready, held = split_trailing_group(responses, key=lambda d: d.level)
        if held:
            logging.debug(
                "[Poller] Holding back operations of a partially fetched level",
                extra={"level": held[0].level, "count": len(held)},
            )
            return ready

        level = responses[0].level
        complete = list(responses)
        while True:
            more = self.client.get_delegations_at_level(
                ctx, level, page_size, offset=len(complete)
            )
            complete.extend(more)
            if len(more) < page_size:
                return complete

    def compute_resume_point(self) -> datetime:
        latest_timestamp = self.repository.latest_timestamp()
        if latest_timestamp is not None:
            resume_from = latest_timestamp + RESUME_EPSILON
            logging.info(
                "[Backfill] Continuing from existing data",
                extra={
                    "last_timestamp": latest_timestamp,
                    "resume_from": resume_from,
                },
            )
        else:
            resume_from = start_of_day_utc(self.config.historical_start_date)
            logging.info(
                "[Backfill] Starting fresh historical indexing",
                extra={"start_date": resume_from},
            )
        return resume_from

    def index_historical(self, parent_ctx: Optional[Context] = None) -> BackfillResult:
        resume_from = self.compute_resume_point()

        freshness_window = timedelta(seconds=self.config.freshness_window_in_secs)
        if self.clock() - resume_from < freshness_window:
            logging.info(
                "[Backfill] Historical data is up to date, skipping historical indexing",
                extra={"resume_from": resume_from},
            )
            HISTORICAL_INDEXING_PROGRESS.set(100)
            return BackfillResult(resume_from=resume_from, skipped=True)

        parent_ctx = parent_ctx or Context()
        HISTORICAL_INDEXING_PROGRESS.set(0)
        start_time = perf_counter()
        with parent_ctx.child(self.config.historical_timeout_in_secs) as ctx:
            processed, stored = self._run_historical_pipeline(ctx, resume_from)

        HISTORICAL_INDEXING_PROGRESS.set(100)
        logging.info(
            "[Backfill] Historical indexing completed",
            extra={
                "total_processed": processed,
                "total_stored": stored,
                "duration_in_secs": str(format(perf_counter() - start_time, ".8f")),
            },
        )

        verification = self.verify_sync_completeness(parent_ctx, resume_from)
        if processed > 0:
            self.create_backup()

        return BackfillResult(
            resume_from=resume_from,
            skipped=False,
            processed=processed,
            stored=stored,
            verification=verification,
        )

    # One producer thread fetching pages into a bounded channel, one consumer
    # (the calling thread) converting and flushing. A failure on either side
    # cancels the shared context and is raised from here.
    def _run_historical_pipeline(
        self, ctx: Context, resume_from: datetime
    ) -> Tuple[int, int]:
        channel: Channel = Channel(self.config.historical_channel_size)
        producer_errors: List[Exception] = []

        def producer() -> None:
            err = self.client.stream_historical_delegations(
                ctx, resume_from, self.config.historical_page_size, channel
            )
            if err is not None:
                producer_errors.append(err)
                ctx.cancel()

        producer_thread = threading.Thread(
            target=producer, name="historical-producer", daemon=True
        )
        logging.info(
            "[Backfill] Starting fetcher task",
            extra={
                "resume_from": resume_from,
                "page_size": self.config.historical_page_size,
                "channel_capacity": channel.capacity,
            },
        )
        producer_thread.start()

        try:
            return self._consume_historical(
                ctx, channel, producer_thread, producer_errors
            )
        except Exception as e:
            ctx.cancel()
            producer_thread.join()
            error: Exception = e
            # A producer failure cancels the consumer; report the root cause
            if isinstance(e, ContextDone) and producer_errors:
                error = producer_errors[0]
            if isinstance(error, ContextDone):
                raise error
            raise BackfillError("historical indexing failed: %s" % error) from error
        except BaseException:
            ctx.cancel()
            raise

    def _consume_historical(
        self,
        ctx: Context,
        channel: Channel,
        producer_thread: threading.Thread,
        producer_errors: List[Exception],
    ) -> Tuple[int, int]:
        flush_size = self.config.historical_flush_size
        processed = 0
        stored = 0
        buffer: List[Delegation] = []

        while True:
            try:
                delegations = channel.recv(ctx)
            except ChannelClosed:
                break

            start_time = perf_counter()
            buffer.extend(self.convert_to_domain_delegations(delegations))
            processed += len(delegations)

            if len(buffer) >= flush_size:
                # Rows of the last second wait for the next flush so that a crash
                # never leaves a partially stored second behind the resume point
                ready, held = split_trailing_group(buffer, key=lambda d: d.timestamp)
                result = self.store_delegations(
                    ctx, ready, perf_counter() - start_time
                )
                stored += result.num_of_operations
                buffer = held
                logging.info(
                    "[Backfill] Historical indexing progress",
                    extra={
                        "processed": processed,
                        "stored": stored,
                        "last_level": result.end_level,
                        "last_timestamp": delegations[-1].timestamp,
                        "channel_size": channel.qsize(),
                    },
                )

        # The channel is closed, find out whether the producer finished cleanly
        producer_thread.join()
        if producer_errors:
            raise producer_errors[0]

        if buffer:
            result = self.store_delegations(ctx, buffer)
            stored += result.num_of_operations
            logging.info(
                "[Backfill] Saved final batch",
                extra={"count": result.num_of_operations, "last_level": result.end_level},
            )
        return processed, stored

    # Compares TzKT's count of applied delegations since the resume point with
    # what is stored. A shortfall is reported, never repaired.
    def verify_sync_completeness(
        self, parent_ctx: Context, resume_from: datetime
    ) -> Optional[VerificationResult]:
        with parent_ctx.child(self.config.verification_timeout_in_secs) as ctx:
            try:
                source_count = self.client.count_delegations_since(ctx, resume_from)
                stored_count = self.repository.count_since(resume_from)
            except IndexerError as e:
                logging.warning(
                    "[Backfill] Sync verification could not run",
                    extra={"error": str(e)},
                )
                return None

        difference = source_count - stored_count
        percentage_missing = (
            difference / source_count * 100 if source_count > 0 else 0.0
        )
        SYNC_MISSING_DELEGATIONS.set(max(difference, 0))
        verification = VerificationResult(
            source_count=source_count,
            stored_count=stored_count,
            difference=difference,
            percentage_missing=percentage_missing,
        )

        logging.info(
            "[Backfill] Sync verification complete",
            extra={
                "db_count": stored_count,
                "tzkt_count": source_count,
                "difference": difference,
                "percentage_missing": "%.2f%%" % percentage_missing,
            },
        )
        if difference > 0:
            logging.warning(
                "[Backfill] Sync verification detected missing delegations",
                extra={
                    "missing": difference,
                    "percentage_missing": "%.2f%%" % percentage_missing,
                    "resume_from": resume_from,
                },
            )
        return verification

    def create_backup(self) -> Optional[threading.Thread]:
        command = self.config.backup_command
        if not command:
            return None

        def run_backup() -> None:
            try:
                subprocess.run(shlex.split(command), check=True, capture_output=True)
                logging.info("[Backfill] Database backup created successfully")
            except (OSError, subprocess.CalledProcessError) as e:
                logging.error(
                    "[Backfill] Failed to create backup",
                    extra={"error": str(e)},
                )

        logging.info("[Backfill] Creating database backup")
        thread = threading.Thread(target=run_backup, name="backup", daemon=True)
        thread.start()
        return thread

    # One-shot catch-up from a given level until TzKT returns a short page
    def index_delegations(
        self, from_level: int, parent_ctx: Optional[Context] = None
    ) -> int:
        parent_ctx = parent_ctx or Context()
        page_size = self.config.poll_page_size
        current_level = from_level
        total = 0

        with parent_ctx.child(self.config.level_indexing_timeout_in_secs) as ctx:
            while True:
                ctx.raise_if_done()
                try:
                    responses = self.client.get_delegations_from_level(
                        ctx, current_level, page_size
                    )
                except IndexerError as e:
                    logging.error(
                        "[Indexer] Failed to fetch delegations",
                        extra={"error": str(e), "level": current_level},
                    )
                    raise

                if not responses:
                    logging.info("[Indexer] No more delegations to index")
                    break

                full_page = len(responses) == page_size
                responses = self._complete_levels(ctx, responses, page_size)
                result = self.process_operations(ctx, responses)
                total += result.num_of_operations
                current_level = responses[-1].level + 1

                logging.info(
                    "[Indexer] Indexed batch of delegations",
                    extra={
                        "count": len(responses),
                        "last_level": responses[-1].level,
                        "last_timestamp": responses[-1].timestamp,
                    },
                )

                if not full_page:
                    break
                ctx.wait(LEVEL_INDEXING_PAUSE_IN_SECS)

        return total
