"""Logging configuration.

Configures loguru to write diagnostics to stderr, keeping stdout free for
command output. Interactive use gets a compact coloured format; ``--log-json``
switches to one JSON object per line for scripts and CI logs.
"""

import json
import logging
import sys
from typing import Any

from loguru import logger


def _serialize(record: dict[str, Any]) -> str:
    """Serialize a log record to a single JSON line.

    Fields passed via ``extra={...}`` are lifted to the top level.
    """
    entry: dict[str, Any] = {
        "level": record["level"].name,
        "message": record["message"],
        "time": record["time"].isoformat(),
        "logger": record["name"],
    }

    if record["exception"] is not None:
        exc_info = record["exception"]
        entry["exception"] = {
            "type": exc_info.type.__name__ if exc_info.type else None,
            "value": str(exc_info.value) if exc_info.value else None,
        }

    for key, value in record.get("extra", {}).items():
        if key == "extra" and isinstance(value, dict):
            entry.update(value)
        elif not key.startswith("_"):
            entry[key] = value

    return json.dumps(entry, default=str)


def _json_sink(message: Any) -> None:
    sys.stderr.write(_serialize(message.record) + "\n")
    sys.stderr.flush()


def _format_extra(record: dict[str, Any]) -> str:
    extra = record["extra"].get("extra")
    if not extra:
        return ""
    return " " + " ".join(f"{k}={v}" for k, v in extra.items())


def _human_format(record: dict[str, Any]) -> str:
    record["extra"]["_fields"] = _format_extra(record)
    return (
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan> | "
        "<level>{message}</level>"
        "<dim>{extra[_fields]}</dim>\n"
        "{exception}"
    )


def configure_logging(log_level: str = "WARNING", *, json_output: bool = False) -> None:
    """Configure loguru for the CLI.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Emit JSON lines instead of human-readable output.
    """
    # Remove default handler
    logger.remove()

    if json_output:
        logger.add(
            _json_sink,
            level=log_level,
            format="{message}",
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=log_level,
            format=_human_format,
            colorize=None,
            backtrace=False,
            # never render local variables; they may hold tokens
            diagnose=False,
        )

    _intercept_standard_logging(log_level)


def _intercept_standard_logging(log_level: str) -> None:
    """Route standard library logging (httpx, httpcore) to loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                level: str | int = logger.level(record.levelname).name
            except ValueError:
                level = record.levelno

            # Find caller from where the logged message originated
            frame, depth = logging.currentframe(), 2
            while frame and frame.f_code.co_filename == logging.__file__:
                frame = frame.f_back
                depth += 1

            logger.opt(depth=depth, exception=record.exc_info).log(
                level, record.getMessage()
            )

    logging.basicConfig(handlers=[InterceptHandler()], level=log_level, force=True)

    for name in ["httpx", "httpcore"]:
        logging.getLogger(name).setLevel(log_level)
        logging.getLogger(name).handlers = [InterceptHandler()]
