from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone

from pythonjsonlogger.json import JsonFormatter as BaseJsonFormatter


class JsonFormatter(BaseJsonFormatter):
    """JSON formatter with ISO-8601 ``ts`` and ``level`` fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname


def setup_logging(log_level: str = "INFO", *, json_format: bool = False) -> logging.Logger:
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)

    # aiohttp's access log duplicates the per-event logging.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return logger
