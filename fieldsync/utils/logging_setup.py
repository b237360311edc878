"""
Logging configuration with masking of sensitive values.
"""

import logging
import re
import sys
from typing import Any

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

_SENSITIVE_KEYS = ('password', 'token', 'secret')
_BEARER_PATTERN = re.compile(r"(Bearer\s+)([A-Za-z0-9\-_.=]{10})[A-Za-z0-9\-_.=]*")
_EMAIL_PATTERN = re.compile(r"\b([A-Za-z0-9._%+\-]{1,3})[A-Za-z0-9._%+\-]*@([A-Za-z0-9.\-]+\.[A-Za-z]{2,})\b")
_OPAQUE_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9\-_]{21,}$")


def mask_sensitive_data(data: Any) -> Any:
    """
    Mask e-mail addresses, tokens and credential-like keys.

    Strings keep a short recognizable prefix; dict values under keys that
    mention password, token or secret are replaced entirely.
    """
    if isinstance(data, str):
        if _OPAQUE_TOKEN_PATTERN.match(data):
            return f"{data[:10]}***"
        masked = _BEARER_PATTERN.sub(r"\1\2***", data)
        return _EMAIL_PATTERN.sub(r"\1***@\2", masked)
    if isinstance(data, dict):
        return {
            key: '***' if any(s in str(key).lower() for s in _SENSITIVE_KEYS)
            else mask_sensitive_data(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item) for item in data)
    return data


class SensitiveDataFilter(logging.Filter):
    """Rewrites log records so secrets never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_sensitive_data(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_sensitive_data(record.args)
            else:
                record.args = tuple(mask_sensitive_data(arg) for arg in record.args)
        return True


def configure_logging(debug: bool = False) -> logging.Logger:
    """
    Configure the root logger for the client.

    Args:
        debug: Log at DEBUG instead of INFO

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    # aiohttp logs every connection detail at DEBUG
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    return root
