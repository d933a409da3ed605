import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tezos_indexer.processors.tezos_delegations.repository import DelegationRepository
from tezos_indexer.utils.models.general_models import Base
from tezos_indexer.utils.session import SCHEMA_PLACEHOLDER


@pytest.fixture
def engine():
    # One shared in-memory connection, usable from the poller and backfill threads
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    engine = engine.execution_options(schema_translate_map={SCHEMA_PLACEHOLDER: None})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def repository(session_factory):
    repository = DelegationRepository(session_factory)
    repository.ensure_cursor()
    return repository
