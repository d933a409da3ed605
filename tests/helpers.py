import operator
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from tezos_indexer.processors.tezos_delegations.models import Delegation
from tezos_indexer.processors.tezos_delegations.tzkt_client import TzktClient
from tezos_indexer.processors.tezos_delegations.tzkt_models import DelegationResponse
from tezos_indexer.utils.general_utils import format_rfc3339
from tezos_indexer.utils.rate_limiter import TokenBucket

LEVEL_OPERATORS = {
    "level.eq": operator.eq,
    "level.gt": operator.gt,
    "level.ge": operator.ge,
    "level.lt": operator.lt,
    "level.le": operator.le,
}
TIMESTAMP_OPERATORS = {
    "timestamp.gt": operator.gt,
    "timestamp.ge": operator.ge,
    "timestamp.lt": operator.lt,
    "timestamp.le": operator.le,
}


def make_operation(
    op_id: int,
    level: int,
    timestamp: datetime,
    sender: str = "tz1sender",
    amount: int = 1_000_000,
    status: str = "applied",
    op_hash: Optional[str] = None,
) -> dict:
    return {
        "type": "delegation",
        "id": op_id,
        "level": level,
        "timestamp": format_rfc3339(timestamp),
        "block": "B%d" % level,
        "hash": op_hash or "oo%d" % op_id,
        "sender": {"address": sender},
        "amount": amount,
        "newDelegate": {"address": "tz1baker", "alias": "Baker"},
        "status": status,
    }


def make_response(*args, **kwargs) -> DelegationResponse:
    return DelegationResponse.model_validate(make_operation(*args, **kwargs))


def make_delegation(
    op_hash: str,
    level: int,
    timestamp: datetime,
    delegator: str = "tz1sender",
    amount: str = "1000000",
) -> Delegation:
    return Delegation(
        id="id-" + op_hash,
        operation_hash=op_hash,
        level=level,
        timestamp=timestamp,
        delegator=delegator,
        amount=amount,
        block_hash="B%d" % level,
    )


class FakeHttpResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self.payload = payload
        self.text = text

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class ScriptedSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: List[dict] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeTzktApi:
    """In-memory TzKT serving operations under the filters the client sends."""

    def __init__(self, operations: List[dict]):
        self.operations = sorted(operations, key=lambda op: op["id"])
        self.requests: List[Tuple[str, dict]] = []
        self.failures: List[Tuple[Callable[[str, dict], bool], FakeHttpResponse]] = []

    def fail_when(
        self, predicate: Callable[[str, dict], bool], response: FakeHttpResponse
    ) -> None:
        self.failures.append((predicate, response))

    def delegation_requests(self) -> List[dict]:
        return [params for url, params in self.requests if not url.endswith("/count")]

    def get(self, url, params=None, headers=None, timeout=None):
        params = dict(params or {})
        self.requests.append((url, params))
        for predicate, response in self.failures:
            if predicate(url, params):
                return response

        selected = [op for op in self.operations if self._matches(op, params)]
        if url.endswith("/count"):
            return FakeHttpResponse(200, len(selected))

        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", 100))
        return FakeHttpResponse(200, selected[offset : offset + limit])

    @staticmethod
    def _matches(op: dict, params: dict) -> bool:
        if "status" in params and op["status"] != params["status"]:
            return False
        for key, compare in LEVEL_OPERATORS.items():
            if key in params and not compare(op["level"], int(params[key])):
                return False
        # RFC3339 UTC strings of one format compare like the instants they encode
        for key, compare in TIMESTAMP_OPERATORS.items():
            if key in params and not compare(op["timestamp"], params[key]):
                return False
        return True


def make_client(session, max_retries: int = 3, rate_limiter=None) -> TzktClient:
    return TzktClient(
        base_url="https://tzkt.test/",
        request_timeout_in_secs=5,
        max_retries=max_retries,
        retry_delay_in_secs=0,
        rate_limiter=rate_limiter or TokenBucket(1000, 1000),
        session=session,
    )
