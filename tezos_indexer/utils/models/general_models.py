from sqlalchemy import BigInteger
from sqlalchemy.orm import DeclarativeBase, mapped_column, Mapped
from tezos_indexer.utils.models.annotated_types import (
    IntegerPrimaryKeyType,
    NullableTimestampType,
    UpdatedAtType,
)
from tezos_indexer.utils.session import SCHEMA_PLACEHOLDER

# The cursor table only ever holds this row
INDEXING_METADATA_ID = 1


class Base(DeclarativeBase):
    pass


class IndexingMetadata(Base):
    __tablename__ = "indexing_metadata"
    __table_args__ = {"schema": SCHEMA_PLACEHOLDER}

    id: IntegerPrimaryKeyType
    last_indexed_level: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    last_indexed_timestamp: NullableTimestampType
    updated_at: UpdatedAtType
