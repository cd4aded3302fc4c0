"""
Process-wide logging for the wallet runner.

Console output is either a coloured one-liner per record or one JSON
object per line; an optional log file always gets JSON.  Every handler
scrubs key material and recovery phrases before a record is written,
so a careless ``logger.info(secret)`` anywhere in the process stays out
of the terminal and the log file.

    from keystone_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="data/keystone.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

# 256-bit keys in hex, and runs of 12+ lowercase words (recovery phrases).
_HEX_KEY_RE = re.compile(r"\b[0-9a-fA-F]{64,}\b")
_PHRASE_RE = re.compile(r"\b(?:[a-z]{3,8} ){11,}[a-z]{3,8}\b")

_QUIET_LOGGERS = ("aiohttp", "asyncio")

_LEVEL_COLOURS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}
_RESET = "\033[0m"


class _RedactSecretsFilter(logging.Filter):
    """Replace hex keys and phrase-shaped text in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        scrubbed = _HEX_KEY_RE.sub("[redacted key]", msg)
        scrubbed = _PHRASE_RE.sub("[redacted phrase]", scrubbed)
        if scrubbed != msg:
            # Freeze the scrubbed text; args were already interpolated.
            record.msg = scrubbed
            record.args = None
        return True


class _JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _HumanFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL  ] logger: message``, level coloured."""

    def format(self, record: logging.LogRecord) -> str:
        colour = _LEVEL_COLOURS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        text = f"{colour}{stamp} [{record.levelname:<7}]{_RESET} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def _handler(handler: logging.Handler, formatter: logging.Formatter,
             redact: logging.Filter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(redact)
    return handler


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
    quiet: Iterable[str] = _QUIET_LOGGERS,
) -> None:
    """
    Install the wallet's handlers on the root logger, replacing any
    already there.

    *level* falls back to INFO when it is not a logging level name.
    *fmt* is ``"human"`` or ``"json"`` and applies to the console only.
    Loggers named in *quiet* are held at WARNING.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    redact = _RedactSecretsFilter()
    console_fmt = _JSONFormatter() if fmt == "json" else _HumanFormatter()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_fmt, redact))

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(str(path)), _JSONFormatter(), redact))

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
