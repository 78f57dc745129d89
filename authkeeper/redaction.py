"""
Secret redaction for log output.

Secrets held by the manager are registered here when a credential is
adopted or renewed, and forgotten once the record holding them is replaced
or cleared, so the registry only holds live secrets. ``SecretRedactingFilter``
scrubs registered values and common bearer/token patterns from log
records, including formatted exception traces.
"""

import logging
import re
import threading

REDACTED = "[REDACTED]"

_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(
        r"(?i)((?:access_token|refresh_token|id_token|device_code|code_verifier|"
        r"client_secret)[\"']?\s*[:=]\s*[\"']?)[^\s\"'&,}]+"
    ),
    re.compile(r"([?&](?:code|state)=)[^&\s]+"),
]

_secrets: set = set()
_lock = threading.Lock()


def register_secret(value) -> None:
    """Remember a secret value so it is scrubbed from log output."""
    if value and len(value) >= 4:
        with _lock:
            _secrets.add(value)


def forget_secret(value) -> None:
    """Stop scrubbing a secret that is no longer held."""
    if value:
        with _lock:
            _secrets.discard(value)


def scrub(text: str) -> str:
    """Remove registered secrets and token-like patterns from ``text``."""
    if not text:
        return text
    with _lock:
        known = sorted(_secrets, key=len, reverse=True)
    for secret in known:
        if secret in text:
            text = text.replace(secret, REDACTED)
    for pattern in _PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from messages and tracebacks."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        record.msg = scrub(message)
        record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = scrub(record.exc_text)
        return True


def install_redaction(logger: logging.Logger = None) -> SecretRedactingFilter:
    """
    Attach a redacting filter to every handler of ``logger`` (root by default).

    Filters on handlers see records propagated from child loggers, so
    this covers all ``authkeeper.*`` module loggers.
    """
    target = logger or logging.getLogger()
    redactor = SecretRedactingFilter()
    for handler in target.handlers:
        if not any(isinstance(f, SecretRedactingFilter) for f in handler.filters):
            handler.addFilter(redactor)
    return redactor
