from dataclasses import dataclass, field
from datetime import datetime
from pydantic import BaseModel, ConfigDict, TypeAdapter
from typing import List, Optional

APPLIED_STATUS = "applied"


class Account(BaseModel):
    address: str
    alias: Optional[str] = None


class DelegationResponse(BaseModel):
    """One delegation operation as returned by /v1/operations/delegations."""

    model_config = ConfigDict(extra="ignore")

    # TzKT internal id, used as the stable pagination sort key
    id: int
    level: int
    timestamp: datetime
    block: str
    hash: str
    sender: Account
    # Python ints are unbounded, amounts past int64 parse fine
    amount: int = 0
    newDelegate: Optional[Account] = None
    prevDelegate: Optional[Account] = None
    status: str


DELEGATION_LIST_ADAPTER = TypeAdapter(List[DelegationResponse])


@dataclass
class LevelFilter:
    eq: Optional[int] = None
    gt: Optional[int] = None
    ge: Optional[int] = None
    lt: Optional[int] = None
    le: Optional[int] = None


@dataclass
class TimestampFilter:
    gt: Optional[datetime] = None
    ge: Optional[datetime] = None
    lt: Optional[datetime] = None
    le: Optional[datetime] = None


@dataclass
class QueryParams:
    limit: int = 0
    offset: int = 0
    level: Optional[LevelFilter] = None
    timestamp: Optional[TimestampFilter] = None
    # "field.direction", e.g. "id.asc"
    sort: List[str] = field(default_factory=list)
    select: List[str] = field(default_factory=list)
