"""In-memory error log for live operational visibility.

Keeps the most recent error records in a bounded ring buffer, oldest evicted
first, and mirrors every record to the ``logging`` module at a level chosen
by its kind. The store has no persistence: it exists so the error dashboard
can show what went wrong recently.
"""
import logging
import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytz

from devoverflow.services.error_handling import ErrorKind
from devoverflow.services.structured_logging import log_with_context

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100

ERROR_LEVEL_KINDS = frozenset({
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.CORS_ERROR,
    ErrorKind.API_ERROR,
    ErrorKind.UNKNOWN_ERROR,
})

WARNING_LEVEL_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.VALIDATION_ERROR,
    ErrorKind.EDITOR_QUOTA_EXCEEDED,
    ErrorKind.EDITOR_INIT_ERROR,
})


def level_for_kind(kind: ErrorKind) -> int:
    """Return the logging level used when mirroring a record of ``kind``."""
    if kind in ERROR_LEVEL_KINDS:
        return logging.ERROR
    if kind in WARNING_LEVEL_KINDS:
        return logging.WARNING
    return logging.INFO


def time_ago(value: datetime, now: Optional[datetime] = None) -> str:
    """Convert a datetime to a relative time string."""
    now = now or datetime.now(pytz.UTC)
    if value.tzinfo is None:
        value = value.replace(tzinfo=pytz.UTC)

    seconds = (now - value).total_seconds()

    if seconds < 60:
        return f"{int(seconds)} seconds ago"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


@dataclass
class ErrorLogRecord:
    """One logged error.

    Attributes:
        timestamp: When the record was created (timezone-aware UTC)
        kind: Error kind
        message: Description of what failed
        stack_trace: Formatted traceback of the underlying exception, if any
        context: Optional structured details
    """
    timestamp: datetime
    kind: ErrorKind
    message: str
    stack_trace: Optional[str] = None
    context: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to a JSON-friendly dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "age": time_ago(self.timestamp),
            "kind": self.kind.value,
            "message": self.message,
            "stack_trace": self.stack_trace,
            "context": self.context,
        }


def _format_stack(error: Optional[BaseException]) -> Optional[str]:
    if error is None:
        return None
    return ''.join(traceback.format_exception(type(error), error, error.__traceback__))


class ErrorLogStore:
    """Bounded ring buffer of :class:`ErrorLogRecord` entries.

    All mutation goes through a lock so the store can be shared between
    request threads.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the store.

        Args:
            capacity: Maximum records kept; oldest are evicted first
            clock: Optional callable returning the current aware datetime
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock or (lambda: datetime.now(pytz.UTC))
        self._records: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ErrorLogRecord], None]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def add_listener(self, listener: Callable[[ErrorLogRecord], None]) -> None:
        """Register a callable invoked with every new record."""
        self._listeners.append(listener)

    def log_error(
        self,
        kind,
        message: str,
        error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorLogRecord:
        """Append a record and mirror it to the logging module.

        Args:
            kind: ErrorKind (or its string value)
            message: Description of what failed
            error: Optional underlying exception
            context: Optional structured details

        Returns:
            The stored record
        """
        record = ErrorLogRecord(
            timestamp=self._clock(),
            kind=ErrorKind(kind),
            message=message,
            stack_trace=_format_stack(error),
            context=context,
        )
        with self._lock:
            self._records.append(record)

        log_with_context(
            logger,
            level_for_kind(record.kind),
            f"[{record.kind.value}] {message}",
            {"kind": record.kind.value, "error": str(error) if error else None, **(context or {})},
        )
        for listener in self._listeners:
            listener(record)
        return record

    def log_api_error(
        self,
        message: str,
        error: BaseException,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        request_data: Any = None,
        response_data: Any = None
    ) -> ErrorLogRecord:
        """Log a failed API request with its request/response details."""
        return self.log_error(ErrorKind.API_ERROR, message, error, {
            "api": {
                "endpoint": endpoint,
                "method": method,
                "statusCode": status_code,
                "requestData": request_data,
                "responseData": response_data,
            }
        })

    def log_cors_error(
        self,
        message: str,
        url: str,
        method: str,
        error: Optional[BaseException] = None
    ) -> ErrorLogRecord:
        """Log a request blocked by cross-origin restrictions."""
        return self.log_error(ErrorKind.CORS_ERROR, message, error, {
            "cors": {"url": url, "method": method}
        })

    def log_quota_error(
        self,
        message: str,
        storage_type: str,
        error: Optional[BaseException] = None
    ) -> ErrorLogRecord:
        """Log a storage quota failure for ``storage_type``."""
        return self.log_error(ErrorKind.QUOTA_EXCEEDED, message, error, {
            "storage": {"type": storage_type}
        })

    def log_editor_error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        editor_config: Optional[Dict[str, Any]] = None
    ) -> ErrorLogRecord:
        """Log a rich text editor failure."""
        return self.log_error(ErrorKind.EDITOR_INIT_ERROR, message, error, {
            "editor": {"config": editor_config}
        })

    def get_recent_logs(self, count: int = 10) -> List[ErrorLogRecord]:
        """Return up to ``count`` most recent records, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            records = list(self._records)
        return records[-count:]

    def get_logs_by_kind(self, kind) -> List[ErrorLogRecord]:
        """Return every stored record of ``kind``."""
        kind = ErrorKind(kind)
        with self._lock:
            return [r for r in self._records if r.kind == kind]

    def get_stats(self) -> Dict[ErrorKind, int]:
        """Return record counts for every kind (zero included)."""
        stats = {kind: 0 for kind in ErrorKind}
        with self._lock:
            for record in self._records:
                stats[record.kind] += 1
        return stats

    def clear_logs(self) -> None:
        """Remove all records."""
        with self._lock:
            self._records.clear()
