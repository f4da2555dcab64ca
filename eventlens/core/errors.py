"""
Error taxonomy.

Every failure raised by the engine is an ``AnalyticsError`` tagged with an
``ErrorKind``. Callers dispatch on ``error.kind``; the HTTP layer maps kinds to
status codes in one place.
"""

from enum import Enum
from typing import Any

from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError, TimeoutError as PoolTimeoutError


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    STORE = "STORE_ERROR"
    CONFLICT = "CONFLICT"
    TIMEOUT = "TIMEOUT"


# postgres query_canceled, raised when statement_timeout fires
QUERY_CANCELED_SQLSTATE = "57014"


class AnalyticsError(Exception):
    """Tagged error carrying a kind discriminant and structured context"""

    def __init__(
            self,
            kind: ErrorKind,
            message: str,
            *,
            context: dict[str, Any] | None = None,
            systemic: bool = False,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context or {}
        self.systemic = systemic

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.kind.value, "message": self.message}
        body.update(self.context)
        return body

    def __repr__(self) -> str:
        return f"AnalyticsError({self.kind.name}, {self.message!r})"


def validation_error(message: str, **context) -> AnalyticsError:
    return AnalyticsError(ErrorKind.VALIDATION, message, context=context)


def not_found(message: str, **context) -> AnalyticsError:
    return AnalyticsError(ErrorKind.NOT_FOUND, message, context=context)


def store_error(message: str, *, systemic: bool = False, **context) -> AnalyticsError:
    return AnalyticsError(ErrorKind.STORE, message, context=context, systemic=systemic)


def timeout_error(message: str, **context) -> AnalyticsError:
    return AnalyticsError(ErrorKind.TIMEOUT, message, context=context)


def store_error_from(exc: Exception, operation: str) -> AnalyticsError:
    """Translate a persistence exception into an AnalyticsError"""
    if isinstance(exc, AnalyticsError):
        return exc

    if isinstance(exc, DBAPIError):
        if getattr(exc.orig, "sqlstate", None) == QUERY_CANCELED_SQLSTATE:
            return timeout_error(f"{operation} exceeded the statement timeout", operation=operation)
        if exc.connection_invalidated:
            return store_error(f"{operation} failed: store unreachable", systemic=True, operation=operation)

    if isinstance(exc, (DisconnectionError, PoolTimeoutError)):
        return store_error(f"{operation} failed: store unreachable", systemic=True, operation=operation)

    if isinstance(exc, SQLAlchemyError):
        return store_error(f"{operation} failed: {exc.__class__.__name__}", operation=operation)

    return store_error(f"{operation} failed: {exc}", operation=operation)
