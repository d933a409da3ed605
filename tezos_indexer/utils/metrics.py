from prometheus_client import Counter, Gauge, Histogram

DELEGATIONS_PROCESSED = Counter(
    "tezos_delegations_processed_total",
    "Number of delegation batches processed, by outcome",
    ["status"],
)

DELEGATIONS_STORED = Counter(
    "tezos_delegations_stored_total",
    "Number of delegations written to the database",
)

DELEGATIONS_CONFLICTS = Counter(
    "tezos_delegations_conflicts_total",
    "Number of delegations that already existed and were refreshed in place",
)

POLLING_ERRORS = Counter(
    "tezos_polling_errors_total",
    "Number of poll ticks that ended with an error",
)

LAST_INDEXED_LEVEL = Gauge(
    "tezos_last_indexed_level",
    "Highest block level durably stored",
)

HISTORICAL_INDEXING_PROGRESS = Gauge(
    "tezos_historical_indexing_progress",
    "Progress of historical indexing (0-100)",
)

SYNC_MISSING_DELEGATIONS = Gauge(
    "tezos_sync_missing_delegations",
    "Applied delegations reported by TzKT but missing from the database after the last backfill",
)

TZKT_API_REQUEST_DURATION = Histogram(
    "tzkt_api_request_duration_seconds",
    "Duration of TzKT API calls in seconds, retries included",
)

TZKT_API_REQUEST_ERRORS = Counter(
    "tzkt_api_request_errors_total",
    "Number of TzKT API calls that failed",
)


def record_tzkt_api_request(duration_in_secs: float, success: bool) -> None:
    TZKT_API_REQUEST_DURATION.observe(duration_in_secs)
    if not success:
        TZKT_API_REQUEST_ERRORS.inc()
