import argparse
import logging

from tezos_indexer.utils.config import Config
from tezos_indexer.utils.logging import setup_logging
from tezos_indexer.utils.worker import IndexerProcessorServer

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-c", "--config", help="Path to config file", required=True)
    parser.add_argument(
        "--index-from-level",
        type=int,
        help="Index delegations from this level once, then exit",
    )
    args = parser.parse_args()
    config = Config.from_yaml_file(args.config)

    # Configure the logger
    setup_logging(config.log_level)
    logging.info(
        "[Indexer] Config loaded",
        extra={"config_path": args.config, "log_level": config.log_level},
    )

    indexer_server = IndexerProcessorServer(
        config,
    )
    indexer_server.run(index_from_level=args.index_from_level)
