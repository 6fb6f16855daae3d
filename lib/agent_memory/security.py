"""Secret scrubbing for log output and proposer-supplied text.

Proposed facts come from an untrusted generator, so anything derived from
them is sanitized before it reaches a log line.
"""
import logging
import re
from typing import List, Pattern

SENSITIVE_PATTERNS: List[Pattern] = [
    re.compile(r'(api[_-]?key|token|secret|password|passwd|pwd)\s*[:=]\s*[\'"]?[\w\-]+[\'"]?', re.IGNORECASE),
    re.compile(r'sk-ant-[A-Za-z0-9\-]{32,}'),
    re.compile(r'sk-[A-Za-z0-9]{32,}'),
    re.compile(r'AKIA[A-Z0-9]{16}'),
    re.compile(r'gh[pousr]_[A-Za-z0-9_]{36,}'),
    re.compile(r'xox[baprs]-[A-Za-z0-9\-]{10,}'),
    re.compile(r'bearer\s+[\w\-_.~+/]+=*', re.IGNORECASE),
    re.compile(r'(mongodb|postgres|mysql|redis|rediss)://[^:/\s]+:[^@\s]+@', re.IGNORECASE),
    re.compile(r'-----BEGIN [A-Z ]*PRIVATE KEY-----'),
]

REDACTED = '[REDACTED]'

SENSITIVE_KEYS = (
    'password', 'passwd', 'pwd', 'secret', 'token', 'api_key', 'apikey',
    'authorization', 'credential', 'private_key', 'access_key',
)


def sanitize(message: str) -> str:
    """Replace every secret-looking span in ``message`` with REDACTED."""
    if not message:
        return message

    result = message
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


def sanitize_dict(data: dict) -> dict:
    """Recursively sanitize a metadata dict, redacting values under sensitive keys."""

    def _clean(key, value):
        key_lower = key.lower() if isinstance(key, str) else ''
        if any(sk in key_lower for sk in SENSITIVE_KEYS):
            return REDACTED
        if isinstance(value, dict):
            return {k: _clean(k, v) for k, v in value.items()}
        if isinstance(value, list):
            return [_clean(key, item) for item in value]
        if isinstance(value, str):
            return sanitize(value)
        return value

    return {k: _clean(k, v) for k, v in data.items()}


def is_sensitive(text: str) -> bool:
    """Check if text contains sensitive data."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in SENSITIVE_PATTERNS)


class SecureLogger:
    """Logger wrapper that sanitizes all output."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _sanitize_args(self, args):
        return tuple(sanitize(str(arg)) if isinstance(arg, (str, Exception)) else arg for arg in args)

    def debug(self, msg, *args, **kwargs):
        self._logger.debug(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def info(self, msg, *args, **kwargs):
        self._logger.info(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._logger.warning(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def error(self, msg, *args, **kwargs):
        self._logger.error(sanitize(msg), *self._sanitize_args(args), **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._logger.exception(sanitize(msg), *self._sanitize_args(args), **kwargs)


def get_logger(name: str) -> SecureLogger:
    """Return a sanitizing logger under the ``agent_memory`` hierarchy."""
    if not name.startswith('agent_memory'):
        name = f'agent_memory.{name}'
    return SecureLogger(logging.getLogger(name))
