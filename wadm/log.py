"""
WADM - Logging
==============
Logging setup for the server and redaction of bearer tokens.

The terminal handshake carries the bearer token in the query string
(``/api/terminal/ws?token=...``), so any log line that echoes a request
path would leak it. uvicorn's access and error loggers both do. The
filter below rewrites ``token=<value>`` to ``token=[REDACTED]`` in the
message and in every string argument before a record is emitted.
"""

import re
import logging


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TOKEN_RE = re.compile(r"(\btoken=)[^&\s\"']+")

REDACTED_LOGGERS = ("uvicorn.access", "uvicorn.error")


def redact_tokens(text: str) -> str:
    """Replace the value of every ``token=`` query parameter."""
    return _TOKEN_RE.sub(r"\1[REDACTED]", text)


class TokenRedactingFilter(logging.Filter):
    """Strip bearer tokens from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_tokens(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_tokens(a) if isinstance(a, str) else a for a in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                k: redact_tokens(v) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        return True


def install_token_redaction() -> None:
    """Attach the redaction filter to the request-logging loggers (idempotent)."""
    for name in REDACTED_LOGGERS:
        target = logging.getLogger(name)
        if not any(isinstance(f, TokenRedactingFilter) for f in target.filters):
            target.addFilter(TokenRedactingFilter())


def setup_logging(level: str = "info") -> None:
    """Configure root logging for the server process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
