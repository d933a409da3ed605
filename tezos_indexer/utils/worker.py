import json
import logging
import signal
import threading
from typing import Optional

from prometheus_client.twisted import MetricsResource
from sqlalchemy import DDL, event
from twisted.internet import reactor
from twisted.web.resource import Resource
from twisted.web.server import Site

from tezos_indexer.processors.tezos_delegations.poller import DelegationPoller
from tezos_indexer.processors.tezos_delegations.processor import (
    TezosDelegationsProcessor,
)
from tezos_indexer.processors.tezos_delegations.repository import (
    DelegationRepository,
)
from tezos_indexer.processors.tezos_delegations.tzkt_client import TzktClient
from tezos_indexer.utils.config import Config
from tezos_indexer.utils.errors import StorageError
from tezos_indexer.utils.general_utils import redact_dsn
from tezos_indexer.utils.metrics import DELEGATIONS_STORED, LAST_INDEXED_LEVEL
from tezos_indexer.utils.models.general_models import Base
from tezos_indexer.utils.processor_name import ProcessorName
from tezos_indexer.utils.session import Session, create_db_engine

PROCESSOR_SERVICE_TYPE = "processor"
# How often the main thread wakes up to notice a shutdown request
SHUTDOWN_POLL_INTERVAL_IN_SECS = 1.0


class ServerOk(Resource):
    isLeaf = True

    def render_GET(self, request):
        return b"ok"


class ReadinessResource(Resource):
    isLeaf = True

    def __init__(self, repository: DelegationRepository):
        super().__init__()
        self.repository = repository

    def render_GET(self, request):
        try:
            self.repository.read_cursor()
        except StorageError as e:
            logging.warning("[Indexer] Readiness check failed", extra={"error": str(e)})
            request.setResponseCode(503)
            return b"not ready"
        return b"ready"


class StatsResource(Resource):
    isLeaf = True

    def __init__(self, repository: DelegationRepository):
        super().__init__()
        self.repository = repository

    def render_GET(self, request):
        request.setHeader(b"Content-Type", b"application/json")
        try:
            stats = self.repository.get_stats()
        except StorageError as e:
            logging.error("[Indexer] Failed to get stats", extra={"error": str(e)})
            request.setResponseCode(503)
            return json.dumps({"error": "Failed to retrieve stats"}).encode()
        return json.dumps(stats).encode()


class IndexerProcessorServer:
    config: Config

    def __init__(self, config: Config):
        self.config = config
        logging.info(
            "[Indexer] Kicking off",
            extra={
                "processor_name": self.config.server_config.processor_config.type,
                "service_type": PROCESSOR_SERVICE_TYPE,
            },
        )

        server_config = self.config.server_config
        self.repository = DelegationRepository()
        self.client = TzktClient.from_config(server_config.tzkt_api)

        # Instantiate the correct processor based on config
        match server_config.processor_config.type:
            case ProcessorName.TEZOS_DELEGATION_PROCESSOR.value:
                self.processor = TezosDelegationsProcessor(
                    self.client,
                    self.repository,
                    server_config.indexing,
                    schema_name=server_config.database.schema_name,
                )
            case _:
                raise ValueError(
                    "Invalid processor name"
                    "\n[ERROR]: The specified processor name was invalid or not found.\n"
                    "         - Supported processors: %s\n"
                    % ", ".join(name.value for name in ProcessorName)
                )

        self.poller = DelegationPoller(self.processor, server_config.indexing)
        self._shutdown = threading.Event()

    def run(self, index_from_level: Optional[int] = None) -> None:
        # Run DB migrations
        logging.info(
            "[Indexer] Initializing DB tables",
            extra={
                "processor_name": self.processor.name(),
                "database": redact_dsn(
                    self.config.server_config.database.postgres_connection_string
                ),
                "schema": self.processor.schema(),
                "service_type": PROCESSOR_SERVICE_TYPE,
            },
        )
        self.init_db_tables()
        logging.info(
            "[Indexer] DB tables initialized",
            extra={
                "processor_name": self.processor.name(),
                "service_type": PROCESSOR_SERVICE_TYPE,
            },
        )
        self.initialize_metrics()

        if index_from_level is not None:
            total = self.processor.index_delegations(index_from_level)
            logging.info(
                "[Indexer] Level indexing finished",
                extra={"from_level": index_from_level, "total_stored": total},
            )
            return

        self.start_health_and_monitoring_ports()
        self.install_signal_handlers()
        self.poller.start()

        try:
            while not self._shutdown.wait(SHUTDOWN_POLL_INTERVAL_IN_SECS):
                pass
        finally:
            logging.info(
                "[Indexer] Shutting down",
                extra={"processor_name": self.processor.name()},
            )
            self.poller.stop()
            if reactor.running:  # type: ignore
                reactor.callFromThread(reactor.stop)  # type: ignore

    def shutdown(self) -> None:
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        def handle_signal(signum, frame) -> None:
            logging.info(
                "[Indexer] Received shutdown signal",
                extra={"signal": signal.Signals(signum).name},
            )
            self.shutdown()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def init_db_tables(self) -> None:
        engine = create_db_engine(self.config.server_config.database)
        Session.configure(bind=engine)
        Base.metadata.create_all(engine, checkfirst=True)
        self.repository.ensure_cursor()

    def initialize_metrics(self) -> None:
        try:
            count = self.repository.count()
            last_level = self.repository.highest_level()
        except StorageError as e:
            logging.warning(
                "[Indexer] Failed to initialize metrics from the database",
                extra={"error": str(e)},
            )
            return

        DELEGATIONS_STORED.inc(count)
        LAST_INDEXED_LEVEL.set(last_level)
        logging.info(
            "[Indexer] Metrics initialized",
            extra={"total_delegations": count, "last_indexed_level": last_level},
        )

    def start_health_and_monitoring_ports(self) -> None:
        repository = self.repository

        # Start the health + metrics server.
        def start_health_server() -> None:
            root = Resource()
            root.putChild(b"metrics", MetricsResource())  # type: ignore
            root.putChild(b"readiness", ReadinessResource(repository))
            root.putChild(b"stats", StatsResource(repository))
            root.putChild(b"", ServerOk())  # type: ignore
            factory = Site(root)
            reactor.listenTCP(self.config.health_check_port, factory)  # type: ignore
            reactor.run(installSignalHandlers=False)  # type: ignore

        t = threading.Thread(target=start_health_server, daemon=True)
        t.start()


@event.listens_for(Base.metadata, "before_create")
def create_schemas(target, connection, **kw):
    # SQLite has no schemas; tests run with the schema translated away
    if connection.dialect.name != "postgresql":
        return
    schema_translate_map = (
        connection.get_execution_options().get("schema_translate_map") or {}
    )
    schemas = set()
    for table in target.tables.values():
        if table.schema is not None:
            schemas.add(schema_translate_map.get(table.schema, table.schema))
    for schema in schemas:
        if schema is not None:
            connection.execute(DDL('CREATE SCHEMA IF NOT EXISTS "%s"' % schema))
