import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from sqlalchemy import distinct, extract, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession, sessionmaker

from tezos_indexer.processors.tezos_delegations.models import Delegation
from tezos_indexer.utils.errors import StorageError
from tezos_indexer.utils.general_utils import sum_amounts, to_utc, utc_now
from tezos_indexer.utils.models.general_models import (
    INDEXING_METADATA_ID,
    IndexingMetadata,
)
from tezos_indexer.utils.session import Session

# Rows per INSERT statement, keeps bind parameters well under the driver limits
UPSERT_CHUNK_SIZE = 1000


@dataclass
class UpsertResult:
    inserted: int
    updated: int

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass
class Cursor:
    last_indexed_level: int = 0
    last_indexed_timestamp: Optional[datetime] = None


class DelegationRepository:
    def __init__(self, session_factory: sessionmaker = Session):
        self.session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, write: bool = False) -> Iterator[OrmSession]:
        try:
            with self.session_factory() as session:
                if write:
                    with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as e:
            # Driver messages can embed statements and connection details
            raise StorageError(
                "%s failed: %s" % (operation, type(e).__name__)
            ) from e

    @staticmethod
    def _insert(session: OrmSession, model):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise StorageError("Unsupported database dialect: %s" % dialect)

    def upsert_batch(self, delegations: Sequence[Delegation]) -> UpsertResult:
        """
        Inserts the batch in one transaction. Rows whose operation hash is already
        stored have their mutable columns refreshed instead of failing.

        Duplicates inside the batch are collapsed (last one wins) and counted as
        updates, like conflicts with stored rows.
        """
        if not delegations:
            return UpsertResult(inserted=0, updated=0)

        rows_by_hash: Dict[str, dict] = {}
        for delegation in delegations:
            row = delegation.to_dict()
            row["id"] = row["id"] or str(uuid.uuid4())
            row["timestamp"] = to_utc(row["timestamp"])
            row["created_at"] = row["created_at"] or utc_now()
            rows_by_hash.pop(delegation.operation_hash, None)
            rows_by_hash[delegation.operation_hash] = row
        rows = list(rows_by_hash.values())
        in_batch_duplicates = len(delegations) - len(rows)

        with self._session("upsert_batch", write=True) as session:
            existing = set()
            for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                chunk = rows[start : start + UPSERT_CHUNK_SIZE]
                existing.update(
                    session.scalars(
                        select(Delegation.operation_hash).where(
                            Delegation.operation_hash.in_(
                                [row["operation_hash"] for row in chunk]
                            )
                        )
                    )
                )
                insert_stmt = self._insert(session, Delegation).values(chunk)
                on_conflict_do_update_stmt = insert_stmt.on_conflict_do_update(
                    index_elements=["operation_hash"],
                    set_={
                        column: insert_stmt.excluded[column]
                        for column in Delegation.MUTABLE_COLUMNS
                    },
                )
                session.execute(on_conflict_do_update_stmt)

        result = UpsertResult(
            inserted=len(rows) - len(existing),
            updated=len(existing) + in_batch_duplicates,
        )
        logging.info(
            "[Repository] Saved batch of delegations",
            extra={
                "attempted": len(delegations),
                "inserted": result.inserted,
                "updated": result.updated,
            },
        )
        return result

    def list_all(self, year: Optional[int] = None) -> List[Delegation]:
        stmt = select(Delegation)
        if year is not None:
            stmt = stmt.where(extract("year", Delegation.timestamp) == year)
        stmt = stmt.order_by(Delegation.timestamp.desc(), Delegation.level.desc())

        with self._session("list_all") as session:
            delegations = list(session.scalars(stmt))
        for delegation in delegations:
            delegation.timestamp = to_utc(delegation.timestamp)
        return delegations

    def highest_level(self) -> int:
        with self._session("highest_level") as session:
            level = session.scalar(select(func.max(Delegation.level)))
        return level or 0

    def latest_timestamp(self) -> Optional[datetime]:
        with self._session("latest_timestamp") as session:
            timestamp = session.scalar(select(func.max(Delegation.timestamp)))
        return to_utc(timestamp) if timestamp is not None else None

    def count(self) -> int:
        with self._session("count") as session:
            return session.scalar(select(func.count()).select_from(Delegation)) or 0

    def count_since(self, timestamp: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(Delegation)
            .where(Delegation.timestamp >= to_utc(timestamp))
        )
        with self._session("count_since") as session:
            return session.scalar(stmt) or 0

    # Diagnostics only, dedup is decided by operation hash
    def exists_by_delegator_and_level(self, delegator: str, level: int) -> bool:
        stmt = select(
            select(Delegation.id)
            .where(Delegation.delegator == delegator, Delegation.level == level)
            .exists()
        )
        with self._session("exists_by_delegator_and_level") as session:
            return bool(session.scalar(stmt))

    def ensure_cursor(self) -> None:
        with self._session("ensure_cursor", write=True) as session:
            insert_stmt = self._insert(session, IndexingMetadata).values(
                id=INDEXING_METADATA_ID,
                last_indexed_level=0,
                last_indexed_timestamp=None,
                updated_at=utc_now(),
            )
            session.execute(insert_stmt.on_conflict_do_nothing(index_elements=["id"]))

    def read_cursor(self) -> Cursor:
        with self._session("read_cursor") as session:
            metadata = session.get(IndexingMetadata, INDEXING_METADATA_ID)
            if metadata is None:
                return Cursor()
            timestamp = metadata.last_indexed_timestamp
            return Cursor(
                last_indexed_level=metadata.last_indexed_level,
                last_indexed_timestamp=to_utc(timestamp) if timestamp else None,
            )

    def update_cursor(self, level: int, timestamp: Optional[datetime]) -> None:
        with self._session("update_cursor", write=True) as session:
            insert_stmt = self._insert(session, IndexingMetadata).values(
                id=INDEXING_METADATA_ID,
                last_indexed_level=level,
                last_indexed_timestamp=to_utc(timestamp) if timestamp else None,
                updated_at=utc_now(),
            )
            on_conflict_do_update_stmt = insert_stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "last_indexed_level": insert_stmt.excluded.last_indexed_level,
                    "last_indexed_timestamp": insert_stmt.excluded.last_indexed_timestamp,
                    "updated_at": insert_stmt.excluded.updated_at,
                },
                # Never move the cursor backwards, whoever writes last
                where=(
                    insert_stmt.excluded.last_indexed_level
                    >= IndexingMetadata.last_indexed_level
                ),
            )
            session.execute(on_conflict_do_update_stmt)

    def get_stats(self) -> dict:
        with self._session("get_stats") as session:
            total = session.scalar(select(func.count()).select_from(Delegation)) or 0
            unique_delegators = (
                session.scalar(select(func.count(distinct(Delegation.delegator))))
                or 0
            )
            total_amount = sum_amounts(session.scalars(select(Delegation.amount)))
            latest, oldest, last_level = session.execute(
                select(
                    func.max(Delegation.timestamp),
                    func.min(Delegation.timestamp),
                    func.max(Delegation.level),
                )
            ).one()

        stats = {
            "total_delegations": total,
            "unique_delegators": unique_delegators,
            "total_amount": total_amount,
        }
        if latest is not None:
            stats["latest_delegation"] = to_utc(latest).isoformat()
            stats["oldest_delegation"] = to_utc(oldest).isoformat()
            stats["last_indexed_level"] = last_level
        return stats
