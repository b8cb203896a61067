"""
Logging utilities for safe log output.

Provides a custom LogRecord factory that sanitizes log arguments so that
upstream-controlled values (provider title names, M3U attributes, URLs)
cannot forge log entries with embedded newlines (CWE-117), plus helpers
to keep provider credentials out of log lines.

Install once at startup via install_safe_logging().
"""
import logging
import re

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"

# Xtream and AGTV both carry credentials in the URL
_CREDENTIAL_QUERY = re.compile(r"((?:username|password|api_key)=)[^&\s]+", re.IGNORECASE)
_AGTV_PATH = re.compile(r"(/api/list/)[^/]+/[^/]+(/)")
_STREAM_PATH = re.compile(r"(/(?:movie|series)/)[^/]+/[^/]+(/)")


def _sanitize_value(value):
    """Escape newlines and carriage returns in a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes the message and its args."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str) and not record.args:
        # f-string messages arrive fully formatted
        record.msg = _sanitize_value(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log arguments.

    Call once during application startup, before any logging occurs.
    """
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """Set up root logging format and level, then install the sanitizer."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    install_safe_logging()


def redact_url(url: str) -> str:
    """Mask credentials embedded in provider URLs."""
    if not url:
        return url
    url = _CREDENTIAL_QUERY.sub(r"\1***", url)
    url = _AGTV_PATH.sub(r"\1***/***\2", url)
    return _STREAM_PATH.sub(r"\1***/***\2", url)
