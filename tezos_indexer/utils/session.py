from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tezos_indexer.utils.config import DatabaseConfig

# Bound once at startup by IndexerProcessorServer.init_db_tables
Session = sessionmaker(expire_on_commit=False)

# Models declare this placeholder schema; it is translated to the configured one
SCHEMA_PLACEHOLDER = "per_schema"


def create_db_engine(database_config: DatabaseConfig) -> Engine:
    engine = create_engine(
        database_config.postgres_connection_string,
        pool_size=database_config.connection_pool_size,
        pool_timeout=database_config.connection_timeout_in_secs,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": database_config.connection_timeout_in_secs,
            "options": "-c statement_timeout=%d"
            % (database_config.statement_timeout_in_secs * 1000),
        },
    )
    return engine.execution_options(
        schema_translate_map={SCHEMA_PLACEHOLDER: database_config.schema_name}
    )
