"""Loguru configuration shared by the engine and the CLI.

Every module logs through the same object::

    from sinktrace.utils.logging import logger
    logger.debug(f"Summarized {fid}")

Handlers are built from the environment when this module is first imported
and can be rebuilt with :func:`configure_logging` (the CLI does so for
``--verbose``).

Environment Variables:
    SINKTRACE_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
    SINKTRACE_LOG_JSON: 0|1, emit Pino-compatible NDJSON instead of
        human-readable lines (both go to stderr; stdout belongs to reports)
    SINKTRACE_LOG_FILE: append NDJSON records (all levels) to this file
    SINKTRACE_REQUEST_ID: correlation id stamped on every record and report
"""

import json
import os
import sys
import uuid

from loguru import logger

from .constants import ENV_LOG_FILE, ENV_LOG_JSON, ENV_LOG_LEVEL, ENV_REQUEST_ID

# Pino numeric levels
PINO_LEVELS = {
    "TRACE": 10,
    "DEBUG": 20,
    "INFO": 30,
    "SUCCESS": 30,
    "WARNING": 40,
    "ERROR": 50,
    "CRITICAL": 60,
}

HUMAN_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> - "
    "<level>{message}</level>"
)

_request_id = os.environ.get(ENV_REQUEST_ID) or str(uuid.uuid4())


def to_pino(record: dict) -> dict:
    """Map a loguru record onto Pino's field names.

    {"level":30,"time":1715629847123,"msg":"...","pid":12345,
     "name":"sinktrace.taint.core","request_id":"..."}
    """
    entry = {
        "level": PINO_LEVELS.get(record["level"].name, 30),
        "time": int(record["time"].timestamp() * 1000),
        "msg": record["message"],
        "pid": record["process"].id,
        "name": record["name"],
        "request_id": record["extra"].get("request_id", _request_id),
    }
    entry.update((k, v) for k, v in record["extra"].items() if k != "request_id")

    exc = record["exception"]
    if exc:
        entry["err"] = {
            "type": exc.type.__name__ if exc.type else "Error",
            "message": str(exc.value) if exc.value else "",
        }
    return entry


def _ndjson(message) -> str:
    return json.dumps(to_pino(message.record), default=str) + "\n"


def _stderr_sink(message) -> None:
    # Never log from inside a sink
    sys.stderr.write(_ndjson(message))
    sys.stderr.flush()


def configure_logging(
    level: str | None = None,
    json_mode: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Replace all handlers. Arguments left as None fall back to the environment."""
    level = (level or os.environ.get(ENV_LOG_LEVEL, "INFO")).upper()
    if json_mode is None:
        json_mode = os.environ.get(ENV_LOG_JSON, "0") == "1"
    log_file = log_file or os.environ.get(ENV_LOG_FILE)

    logger.remove()
    if json_mode:
        logger.add(_stderr_sink, level=level, colorize=False)
    else:
        # colorize=None: colors on a TTY, plain when piped
        logger.add(sys.stderr, level=level, format=HUMAN_FORMAT, colorize=None)

    if log_file:
        path = log_file

        def _file_sink(message) -> None:
            with open(path, "a", encoding="utf-8") as f:
                f.write(_ndjson(message))

        logger.add(_file_sink, level="DEBUG")


def get_request_id() -> str:
    """Correlation id of this process."""
    return _request_id


logger.level("DEBUG", color="<blue>")
logger.level("WARNING", color="<yellow>")
logger.level("ERROR", color="<red>")
configure_logging()


__all__ = [
    "logger",
    "configure_logging",
    "get_request_id",
]
