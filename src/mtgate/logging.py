from __future__ import annotations

import errno
import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

API_HASH_RE = re.compile(r"\b[0-9a-fA-F]{32}\b")
API_HASH_KV_RE = re.compile(r"(api_hash\s*[=:]\s*)\S+", re.IGNORECASE)

# Keyword context that must never reach a log line verbatim.
SECRET_KEYS = frozenset({"api_hash", "session_string", "phone_code", "password"})

# Chatty third-party loggers kept at WARNING unless debugging.
QUIET_LOGGERS = ("telethon", "httpx", "httpcore")


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


def _redact_text(text: str) -> str:
    text = API_HASH_KV_RE.sub(r"\1[REDACTED]", text)
    return API_HASH_RE.sub("[REDACTED_HASH]", text)


def redact_secrets_processor(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask Telegram API hashes in the event text and secret keyword values."""
    message = event_dict.get("event")
    if isinstance(message, str):
        redacted = _redact_text(message)
        if redacted != message:
            event_dict["event"] = redacted
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "[REDACTED]"
    error = event_dict.get("error")
    if isinstance(error, str):
        event_dict["error"] = _redact_text(error)
    return event_dict


def _is_broken_pipe(exc: BaseException | None) -> bool:
    if isinstance(exc, BrokenPipeError):
        return True
    return isinstance(exc, OSError) and exc.errno == errno.EPIPE


class SafeStreamHandler(logging.StreamHandler):
    """Stream handler that goes quiet once its reader has gone away."""

    def handleError(self, record: logging.LogRecord) -> None:
        if not _is_broken_pipe(sys.exc_info()[1]):
            super().handleError(record)
            return
        try:
            self.stream.close()
        except OSError:
            pass


def setup_logging(*, debug: bool = False) -> None:
    """Route structlog through stdlib logging: JSON lines, or a console view with ``debug``."""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = SafeStreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )
    third_party_level = logging.INFO if debug else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)
