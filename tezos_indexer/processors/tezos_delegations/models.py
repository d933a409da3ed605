from tezos_indexer.utils.models.annotated_types import (
    DecimalStringType,
    IndexedBigIntegerType,
    IndexedStringType,
    IndexedTimestampType,
    InsertedAtType,
    StringPrimaryKeyType,
    StringType,
    UniqueStringType,
)
from tezos_indexer.utils.models.general_models import Base
from tezos_indexer.utils.session import SCHEMA_PLACEHOLDER


class Delegation(Base):
    __tablename__ = "delegations"
    __table_args__ = ({"schema": SCHEMA_PLACEHOLDER},)

    # Surrogate key, assigned once at conversion and never rewritten
    id: StringPrimaryKeyType
    # The operation hash is the only uniqueness constraint. Several delegations
    # can legitimately share a (delegator, level) pair.
    operation_hash: UniqueStringType
    level: IndexedBigIntegerType
    timestamp: IndexedTimestampType
    delegator: IndexedStringType
    amount: DecimalStringType
    block_hash: StringType
    created_at: InsertedAtType

    # Columns an upsert may refresh on an already stored operation hash
    MUTABLE_COLUMNS = ("timestamp", "amount", "level", "delegator", "block_hash")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_hash": self.operation_hash,
            "level": self.level,
            "timestamp": self.timestamp,
            "delegator": self.delegator,
            "amount": self.amount,
            "block_hash": self.block_hash,
            "created_at": self.created_at,
        }
