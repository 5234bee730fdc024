from __future__ import annotations

import contextlib
import logging
import sys
import threading
from collections.abc import Iterable, Iterator

REDACTED = "***"
_MIN_REDACT_LEN = 4
GLOBAL_SCOPE = ""


class SecretRedactionFilter(logging.Filter):
    """Masks registered secret values in every record passing through a handler.

    Values are grouped by scope (normally a job id). Releasing a scope drops
    its plaintexts once no other scope still holds the same value.
    """

    def __init__(self) -> None:
        super().__init__()
        self._scopes: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def register(self, values: Iterable[str], scope: str = GLOBAL_SCOPE) -> None:
        with self._lock:
            bucket = self._scopes.setdefault(scope, set())
            for value in values:
                # Very short values would mask unrelated text.
                if isinstance(value, str) and len(value) >= _MIN_REDACT_LEN:
                    bucket.add(value)
            if not bucket:
                del self._scopes[scope]

    def release(self, scope: str) -> None:
        with self._lock:
            self._scopes.pop(scope, None)

    def clear(self) -> None:
        with self._lock:
            self._scopes.clear()

    def values(self) -> set[str]:
        with self._lock:
            return set().union(*self._scopes.values())

    def redact(self, text: str) -> str:
        for value in sorted(self.values(), key=len, reverse=True):
            if value in text:
                text = text.replace(value, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._scopes:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


redaction_filter = SecretRedactionFilter()


def register_secret_values(values: Iterable[str], scope: str = GLOBAL_SCOPE) -> None:
    redaction_filter.register(values, scope=scope)


def release_secret_values(scope: str) -> None:
    redaction_filter.release(scope)


@contextlib.contextmanager
def secret_scope(scope: str) -> Iterator[str]:
    """Release everything registered under ``scope`` when the block exits."""
    try:
        yield scope
    finally:
        release_secret_values(scope)

def setup_logging(level: str = "info", log_file: str | None = None) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.addFilter(redaction_filter)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=handlers,
        force=True,
    )
