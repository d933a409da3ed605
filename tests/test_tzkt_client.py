import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from helpers import (
    FakeHttpResponse,
    FakeTzktApi,
    ScriptedSession,
    make_client,
    make_operation,
)
from tezos_indexer.processors.tezos_delegations.tzkt_client import TzktClient
from tezos_indexer.processors.tezos_delegations.tzkt_models import (
    LevelFilter,
    QueryParams,
    TimestampFilter,
)
from tezos_indexer.utils.channel import Channel, ChannelClosed
from tezos_indexer.utils.context import Context
from tezos_indexer.utils.errors import (
    Cancelled,
    PermanentSourceError,
    TransientSourceError,
)
from tezos_indexer.utils.rate_limiter import TokenBucket

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ok(payload):
    return FakeHttpResponse(200, payload)


def test_build_query_params():
    params = TzktClient.build_query_params(
        QueryParams(
            limit=100,
            offset=200,
            level=LevelFilter(ge=5_000_000),
            timestamp=TimestampFilter(ge=datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)),
            sort=["id.asc"],
            select=["id", "level"],
        )
    )

    assert params == {
        "limit": "100",
        "offset": "200",
        "level.ge": "5000000",
        "timestamp.ge": "2024-03-01T12:30:00Z",
        "sort.asc": "id",
        "select": "id,level",
        "status": "applied",
    }


def test_build_query_params_omits_unset_filters():
    params = TzktClient.build_query_params(QueryParams(limit=10))
    assert params == {"limit": "10", "status": "applied"}


def test_build_query_params_rejects_oversized_page():
    with pytest.raises(ValueError):
        TzktClient.build_query_params(QueryParams(limit=1001))


def test_get_delegations_parses_payload():
    session = ScriptedSession([ok([make_operation(1, 10, START, sender="tz1abc", amount=42)])])
    client = make_client(session)

    delegations = client.get_delegations_from_level(Context(), 10, 100)

    assert len(delegations) == 1
    assert delegations[0].sender.address == "tz1abc"
    assert delegations[0].amount == 42
    assert delegations[0].timestamp == START
    request = session.requests[0]
    assert request["url"] == "https://tzkt.test/v1/operations/delegations"
    assert request["params"]["level.ge"] == "10"
    assert request["params"]["sort.asc"] == "id"


def test_retries_server_errors_then_succeeds():
    session = ScriptedSession(
        [FakeHttpResponse(500, text="boom"), FakeHttpResponse(502), ok([])]
    )
    client = make_client(session, max_retries=3)

    assert client.get_delegations_from_level(Context(), 1, 100) == []
    assert len(session.requests) == 3


def test_retries_rate_limited_responses():
    session = ScriptedSession([FakeHttpResponse(429), ok([])])
    client = make_client(session)

    assert client.get_delegations_from_level(Context(), 1, 100) == []
    assert len(session.requests) == 2


def test_retries_network_errors():
    session = ScriptedSession([requests.ConnectionError("reset"), requests.Timeout(), ok([])])
    client = make_client(session)

    assert client.get_delegations_from_level(Context(), 1, 100) == []
    assert len(session.requests) == 3


def test_client_errors_are_not_retried():
    session = ScriptedSession([FakeHttpResponse(404, text="not found"), ok([])])
    client = make_client(session)

    with pytest.raises(PermanentSourceError) as exc_info:
        client.get_delegations_from_level(Context(), 1, 100)

    assert exc_info.value.status_code == 404
    assert len(session.requests) == 1


def test_retries_are_bounded():
    session = ScriptedSession([FakeHttpResponse(503)] * 3)
    client = make_client(session, max_retries=2)

    with pytest.raises(TransientSourceError) as exc_info:
        client.get_delegations_from_level(Context(), 1, 100)

    assert exc_info.value.status_code == 503
    assert len(session.requests) == 3


def test_error_body_is_truncated():
    session = ScriptedSession([FakeHttpResponse(400, text="x" * 10_000)])
    client = make_client(session)

    with pytest.raises(PermanentSourceError) as exc_info:
        client.get_delegations_from_level(Context(), 1, 100)

    assert len(str(exc_info.value)) < 400


def test_malformed_payload_is_permanent():
    session = ScriptedSession([ok([{"id": "not-a-number"}])])
    client = make_client(session)

    with pytest.raises(PermanentSourceError):
        client.get_delegations_from_level(Context(), 1, 100)
    assert len(session.requests) == 1


def test_non_json_body_is_permanent():
    session = ScriptedSession([FakeHttpResponse(200, ValueError("no json"))])
    client = make_client(session)

    with pytest.raises(PermanentSourceError):
        client.get_delegations_from_level(Context(), 1, 100)


def test_retries_take_a_single_rate_limit_token():
    # A second token would take ~1000s at this rate
    limiter = TokenBucket(rate_per_sec=0.001, burst=1)
    session = ScriptedSession([FakeHttpResponse(500), ok([])])
    client = make_client(session, rate_limiter=limiter)

    assert client.get_delegations_from_level(Context(), 1, 100) == []
    assert not limiter.try_acquire()


def test_request_timeout_is_capped_by_context_deadline():
    session = ScriptedSession([ok([])])
    client = make_client(session)

    client.get_delegations_from_level(Context(timeout_in_secs=1), 1, 100)

    assert session.requests[0]["timeout"] <= 1


def test_cancelled_context_fails_fast():
    session = ScriptedSession([ok([])])
    client = make_client(session)
    ctx = Context()
    ctx.cancel()

    with pytest.raises(Cancelled):
        client.get_delegations_from_level(ctx, 1, 100)
    assert session.requests == []


def test_count_delegations_since():
    api = FakeTzktApi(
        [
            make_operation(1, 10, START - timedelta(days=1)),
            make_operation(2, 11, START),
            make_operation(3, 12, START + timedelta(hours=1)),
            make_operation(4, 12, START + timedelta(hours=1), status="failed"),
        ]
    )
    client = make_client(api)

    assert client.count_delegations_since(Context(), START) == 2
    url, params = api.requests[0]
    assert url.endswith("/v1/operations/delegations/count")
    assert params == {"timestamp.ge": "2024-01-01T00:00:00Z", "status": "applied"}


def test_count_rejects_non_integer_payload():
    client = make_client(ScriptedSession([ok({"count": 3})]))

    with pytest.raises(PermanentSourceError):
        client.count_delegations_since(Context(), START)


def test_stream_sends_pages_until_empty_page():
    api = FakeTzktApi([make_operation(i, 100 + i, START + timedelta(minutes=i)) for i in range(1, 6)])
    client = make_client(api)
    channel = Channel(10)

    err = client.stream_historical_delegations(Context(), START, 2, channel)

    assert err is None
    assert channel.closed()
    pages = [channel.recv(Context()), channel.recv(Context()), channel.recv(Context())]
    assert [len(page) for page in pages] == [2, 2, 1]
    assert [d.id for page in pages for d in page] == [1, 2, 3, 4, 5]
    with pytest.raises(ChannelClosed):
        channel.recv(Context())
    assert [params.get("offset", "0") for params in api.delegation_requests()] == [
        "0",
        "2",
        "4",
        "5",
    ]


def test_stream_returns_error_and_closes_channel():
    api = FakeTzktApi([make_operation(i, i, START) for i in range(1, 4)])
    api.fail_when(
        lambda url, params: params.get("offset") == "2",
        FakeHttpResponse(400, text="bad request"),
    )
    client = make_client(api)
    channel = Channel(10)

    err = client.stream_historical_delegations(Context(), START, 2, channel)

    assert isinstance(err, PermanentSourceError)
    assert channel.closed()
    assert len(channel.recv(Context())) == 2


def test_stream_stops_on_cancellation():
    client = make_client(FakeTzktApi([make_operation(1, 1, START)]))
    channel = Channel(1)
    ctx = Context()
    ctx.cancel()

    err = client.stream_historical_delegations(ctx, START, 10, channel)

    assert isinstance(err, Cancelled)
    assert channel.closed()


def test_stream_blocks_on_full_channel():
    api = FakeTzktApi([make_operation(i, i, START) for i in range(1, 11)])
    client = make_client(api)
    channel = Channel(1)
    ctx = Context()
    result = {}

    def produce():
        result["err"] = client.stream_historical_delegations(ctx, START, 2, channel)

    thread = threading.Thread(target=produce, daemon=True)
    thread.start()

    deadline = time.monotonic() + 5
    while len(api.requests) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.2)

    # One page queued, one waiting in send; nothing further is fetched
    assert len(api.requests) == 2
    assert channel.qsize() == 1

    # Once the consumer catches up every page arrives
    received = []
    while True:
        try:
            received.extend(d.id for d in channel.recv(ctx))
        except ChannelClosed:
            break
    thread.join(5)
    assert not thread.is_alive()
    assert result["err"] is None
    assert received == list(range(1, 11))


def test_stream_blocked_on_full_channel_is_cancellable():
    client = make_client(FakeTzktApi([make_operation(i, i, START) for i in range(1, 11)]))
    channel = Channel(1)
    ctx = Context()
    result = {}

    def produce():
        result["err"] = client.stream_historical_delegations(ctx, START, 2, channel)

    thread = threading.Thread(target=produce, daemon=True)
    thread.start()
    time.sleep(0.2)

    ctx.cancel()
    thread.join(5)
    assert not thread.is_alive()
    assert isinstance(result["err"], Cancelled)
    assert channel.closed()
