import argparse

from tezos_indexer.utils.config import Config
from tezos_indexer.utils.logging import setup_logging
from tezos_indexer.utils.worker import IndexerProcessorServer

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-c", "--config", help="Path to config file", required=True)
    args = parser.parse_args()

    config = Config.from_yaml_file(args.config)
    setup_logging(config.log_level)

    # Creates the schema, the tables and the cursor row
    IndexerProcessorServer(config).init_db_tables()
