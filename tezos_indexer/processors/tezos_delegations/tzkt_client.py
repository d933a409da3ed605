import logging
from datetime import datetime
from time import perf_counter
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tezos_indexer.processors.tezos_delegations.tzkt_models import (
    APPLIED_STATUS,
    DELEGATION_LIST_ADAPTER,
    DelegationResponse,
    LevelFilter,
    QueryParams,
    TimestampFilter,
)
from tezos_indexer.utils.channel import Channel
from tezos_indexer.utils.config import TzktApiConfig
from tezos_indexer.utils.context import Context
from tezos_indexer.utils.errors import PermanentSourceError, TransientSourceError
from tezos_indexer.utils.general_utils import format_rfc3339, truncate_str
from tezos_indexer.utils.metrics import record_tzkt_api_request
from tezos_indexer.utils.rate_limiter import TokenBucket

DELEGATIONS_PATH = "/v1/operations/delegations"
DELEGATIONS_COUNT_PATH = "/v1/operations/delegations/count"

MAX_PAGE_SIZE = 1000
# Pagination must be stable even when many operations share a level
STABLE_SORT = "id.asc"
ERROR_BODY_MAX_LEN = 256


class TzktClient:
    def __init__(
        self,
        base_url: str,
        request_timeout_in_secs: float,
        max_retries: int,
        retry_delay_in_secs: float,
        rate_limiter: TokenBucket,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout_in_secs = request_timeout_in_secs
        self.max_retries = max_retries
        self.retry_delay_in_secs = retry_delay_in_secs
        self.rate_limiter = rate_limiter
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: TzktApiConfig) -> "TzktClient":
        return cls(
            base_url=config.base_url,
            request_timeout_in_secs=config.request_timeout_in_secs,
            max_retries=config.max_retries,
            retry_delay_in_secs=config.retry_delay_in_secs,
            rate_limiter=TokenBucket(config.requests_per_second, config.burst),
        )

    def get_delegations(
        self, ctx: Context, params: QueryParams
    ) -> List[DelegationResponse]:
        query_params = self.build_query_params(params)
        logging.debug(
            "[TzktClient] Fetching delegations",
            extra={"path": DELEGATIONS_PATH, "params": query_params},
        )
        payload = self._get_json(ctx, DELEGATIONS_PATH, query_params)
        try:
            delegations = DELEGATION_LIST_ADAPTER.validate_python(payload)
        except ValidationError as e:
            raise PermanentSourceError(
                "Malformed delegations payload: %d validation errors" % e.error_count()
            ) from e
        logging.debug(
            "[TzktClient] Fetched delegations",
            extra={"count": len(delegations)},
        )
        return delegations

    def get_delegations_since(
        self, ctx: Context, timestamp: datetime, limit: int
    ) -> List[DelegationResponse]:
        params = QueryParams(
            limit=limit,
            timestamp=TimestampFilter(ge=timestamp),
            sort=[STABLE_SORT],
        )
        return self.get_delegations(ctx, params)

    def get_delegations_from_level(
        self, ctx: Context, level: int, limit: int
    ) -> List[DelegationResponse]:
        params = QueryParams(
            limit=limit,
            level=LevelFilter(ge=level),
            sort=[STABLE_SORT],
        )
        return self.get_delegations(ctx, params)

    def get_delegations_at_level(
        self, ctx: Context, level: int, limit: int, offset: int
    ) -> List[DelegationResponse]:
        params = QueryParams(
            limit=limit,
            offset=offset,
            level=LevelFilter(eq=level),
            sort=[STABLE_SORT],
        )
        return self.get_delegations(ctx, params)

    def count_delegations_since(self, ctx: Context, timestamp: datetime) -> int:
        payload = self._get_json(
            ctx,
            DELEGATIONS_COUNT_PATH,
            {"timestamp.ge": format_rfc3339(timestamp), "status": APPLIED_STATUS},
        )
        if isinstance(payload, bool) or not isinstance(payload, int):
            raise PermanentSourceError(
                "Malformed count payload: %s" % truncate_str(repr(payload), 64)
            )
        return payload

    # Fetches successive offset pages from a fixed start timestamp and sends each
    # non-empty page to the channel. Stops on the first empty page, on
    # cancellation or on error. The channel is always closed on return, and the
    # terminal error is returned (None on a clean stop).
    def stream_historical_delegations(
        self,
        ctx: Context,
        start_date: datetime,
        batch_size: int,
        channel: Channel,
    ) -> Optional[Exception]:
        offset = 0
        try:
            while True:
                ctx.raise_if_done()
                params = QueryParams(
                    limit=batch_size,
                    offset=offset,
                    timestamp=TimestampFilter(ge=start_date),
                    sort=[STABLE_SORT],
                )
                start_time = perf_counter()
                delegations = self.get_delegations(ctx, params)
                if not delegations:
                    logging.info(
                        "[TzktClient] Historical stream ended",
                        extra={"start_date": start_date, "offset": offset},
                    )
                    return None

                logging.info(
                    "[TzktClient] Received historical page. Sending to channel.",
                    extra={
                        "offset": offset,
                        "count": len(delegations),
                        "start_level": delegations[0].level,
                        "end_level": delegations[-1].level,
                        "channel_size": channel.qsize(),
                        "duration_in_secs": str(
                            format(perf_counter() - start_time, ".8f")
                        ),
                    },
                )
                channel.send(delegations, ctx)
                offset += len(delegations)
        except Exception as e:
            logging.warning(
                "[TzktClient] Historical stream stopped",
                extra={"offset": offset, "error": str(e)},
            )
            return e
        finally:
            channel.close()

    @staticmethod
    def build_query_params(params: QueryParams) -> Dict[str, str]:
        if params.limit > MAX_PAGE_SIZE:
            raise ValueError(
                "page size %d exceeds the maximum of %d" % (params.limit, MAX_PAGE_SIZE)
            )

        query_params: Dict[str, str] = {}

        if params.limit > 0:
            query_params["limit"] = str(params.limit)

        if params.offset > 0:
            query_params["offset"] = str(params.offset)

        if params.level is not None:
            for operator in ("eq", "gt", "ge", "lt", "le"):
                value = getattr(params.level, operator)
                if value is not None:
                    query_params["level." + operator] = str(value)

        if params.timestamp is not None:
            for operator in ("gt", "ge", "lt", "le"):
                value = getattr(params.timestamp, operator)
                if value is not None:
                    query_params["timestamp." + operator] = format_rfc3339(value)

        # TzKT expects sort.asc=field or sort.desc=field
        for sort in params.sort:
            parts = sort.split(".")
            if len(parts) == 2:
                field, direction = parts
                query_params["sort." + direction] = field

        if params.select:
            query_params["select"] = ",".join(params.select)

        query_params["status"] = APPLIED_STATUS

        return query_params

    def _get_json(
        self, ctx: Context, path: str, query_params: Dict[str, str]
    ) -> Any:
        # One token per logical call, retries included
        self.rate_limiter.wait(ctx)

        url = self.base_url + path
        start_time = perf_counter()
        success = False
        try:
            for attempt in Retrying(
                retry=retry_if_exception_type(TransientSourceError),
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(
                    multiplier=self.retry_delay_in_secs,
                    min=self.retry_delay_in_secs,
                    max=self.retry_delay_in_secs * 3,
                ),
                sleep=ctx.wait,
                before_sleep=before_sleep_log(logging.root, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    payload = self._request_once(ctx, url, query_params)
            success = True
            return payload
        finally:
            record_tzkt_api_request(perf_counter() - start_time, success)

    def _request_once(
        self, ctx: Context, url: str, query_params: Dict[str, str]
    ) -> Any:
        ctx.raise_if_done()

        timeout = self.request_timeout_in_secs
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        try:
            response = self.session.get(
                url,
                params=query_params,
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientSourceError(
                "TzKT request failed: %s" % type(e).__name__
            ) from e
        except requests.RequestException as e:
            raise PermanentSourceError(
                "TzKT request could not be sent: %s" % type(e).__name__
            ) from e

        status_code = response.status_code
        if status_code >= 500 or status_code == 429:
            raise TransientSourceError(
                "TzKT returned status %d: %s"
                % (status_code, truncate_str(response.text, ERROR_BODY_MAX_LEN)),
                status_code=status_code,
            )
        if status_code != 200:
            raise PermanentSourceError(
                "TzKT returned status %d: %s"
                % (status_code, truncate_str(response.text, ERROR_BODY_MAX_LEN)),
                status_code=status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise PermanentSourceError(
                "TzKT returned a non-JSON body", status_code=status_code
            ) from e
