"""
This module contains the custom logger and formatter for the indexer.

`setup_logging` installs the custom logger as the root logger, so modules can
keep calling the `logging` module functions directly:

        import logging
        logging.info("[Poller] Tick finished", extra={"from_level": 5_400_001})

The resulting log message will be in JSON format:
    {
        "timestamp": "2024-03-15 14:29:31,000",
        "level": "INFO",
        "fields": {
            "message": "[Poller] Tick finished",
            "from_level": 5400001
        },
        "module": "poller",
        "func_name": "_tick",
        "path_name": ".../tezos_indexer/processors/tezos_delegations/poller.py",
        "line_no": 120
    }
"""

import json
import logging
import sys


class CustomLogger(logging.Logger):
    def makeRecord(
        self,
        name,
        level,
        fn,
        lno,
        msg,
        args,
        exc_info,
        func=None,
        extra=None,
        sinfo=None,
    ):
        if extra:
            extra = {"fields": extra}
        record = super(CustomLogger, self).makeRecord(
            name,
            level,
            fn,
            lno,
            msg,
            args,
            exc_info,
            func=func,
            extra=extra,
            sinfo=sinfo,
        )
        return record


class JsonFormatter(logging.Formatter):
    def format(self, record):
        fields = {"message": record.getMessage()}
        extra_fields = record.__dict__.get("fields", {})
        fields.update(extra_fields)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "fields": fields,
            "module": record.module,
            "func_name": record.funcName,
            "path_name": record.pathname,
            "line_no": record.lineno,
        }
        # Values such as datetimes or Decimals are rendered with str()
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger = CustomLogger("tezos_indexer")
    logger.setLevel(level.upper())

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(JsonFormatter())
    logger.addHandler(stream_handler)

    logging.root = logger
    return logger
