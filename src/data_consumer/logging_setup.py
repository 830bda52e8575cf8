from __future__ import annotations

import contextvars
import logging
import os
import sys

from pythonjsonlogger.json import JsonFormatter

# Context variables the consumer sets while it works
ctx_pass = contextvars.ContextVar("pass", default=None)
ctx_item_id = contextvars.ContextVar("item_id", default=None)


class ConsumerJsonFormatter(JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["pid"] = os.getpid()

        pass_number = ctx_pass.get()
        if pass_number is not None:
            log_record["pass"] = pass_number

        item_id = ctx_item_id.get()
        if item_id is not None:
            log_record["item_id"] = str(item_id)


def setup_logging(log_format: str = "text", log_level: str = "INFO") -> logging.Logger:
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)

    if log_format.lower() == "json":
        formatter = ConsumerJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(process)d - %(levelname)s - %(message)s")

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    return root_logger
