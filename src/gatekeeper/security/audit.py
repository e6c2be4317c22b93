"""
Security event recording and audit trail.

Every detector hit becomes an immutable ``SecurityEvent``. The ``EventSink``
redacts sensitive body fields, logs the event, keeps a bounded history,
hands it to a background JSONL audit writer and forwards it to the alert
dispatcher.
"""

import json
import logging
import queue
import sys
import threading
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from ..util.errors import OperationalError
from ..util.log import JSONFormatter, get_logger
from .window import WindowCounter

logger = get_logger(__name__)

REDACTED = "[REDACTED]"
MAX_BODY_SNAPSHOT = 4096

DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "passwd",
    "token",
    "access_token",
    "refresh_token",
    "accessToken",
    "refreshToken",
    "secret",
    "api_key",
    "apiKey",
    "authorization",
    "credit_card",
    "idcard",
)


class SecurityEventType(Enum):
    """Detector categories recorded in the audit trail."""

    SQL_INJECTION = "sql_injection"
    XSS_ATTEMPT = "xss_attempt"
    PATH_TRAVERSAL = "path_traversal"
    BRUTE_FORCE = "brute_force"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    ENDPOINT_SCANNING = "endpoint_scanning"
    HIGH_FREQUENCY_REQUESTS = "high_frequency_requests"


class ThreatSeverity(Enum):
    """Security event severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


EVENT_SEVERITY: dict[SecurityEventType, ThreatSeverity] = {
    SecurityEventType.BRUTE_FORCE: ThreatSeverity.CRITICAL,
    SecurityEventType.SQL_INJECTION: ThreatSeverity.HIGH,
    SecurityEventType.XSS_ATTEMPT: ThreatSeverity.HIGH,
    SecurityEventType.PATH_TRAVERSAL: ThreatSeverity.HIGH,
    SecurityEventType.SUSPICIOUS_USER_AGENT: ThreatSeverity.LOW,
    SecurityEventType.ENDPOINT_SCANNING: ThreatSeverity.LOW,
    SecurityEventType.HIGH_FREQUENCY_REQUESTS: ThreatSeverity.LOW,
}


def redact_value(value: Any, fields: Iterable[str]) -> Any:
    """Return a copy of ``value`` with sensitive keys replaced.

    Key matching is case-insensitive and recurses through nested dicts and
    lists. Non-container values are returned as is, long strings truncated.
    """
    lowered = {f.lower() for f in fields}

    def _walk(node: Any) -> Any:
        if isinstance(node, Mapping):
            return {
                key: REDACTED if str(key).lower() in lowered else _walk(item)
                for key, item in node.items()
            }
        if isinstance(node, (list, tuple)):
            return [_walk(item) for item in node]
        if isinstance(node, str) and len(node) > MAX_BODY_SNAPSHOT:
            return node[:MAX_BODY_SNAPSHOT] + "...[truncated]"
        return node

    return _walk(value)


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable record of one detector hit."""

    event_type: SecurityEventType
    client_id: str
    method: str = ""
    path: str = ""
    user_agent: str = ""
    body: Any = None
    details: Mapping[str, Any] = field(default_factory=dict)
    severity: ThreatSeverity | None = None
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))
        if self.severity is None:
            object.__setattr__(
                self, "severity", EVENT_SEVERITY.get(self.event_type, ThreatSeverity.MEDIUM)
            )

    def redacted(self, fields: Iterable[str]) -> "SecurityEvent":
        """Copy with sensitive body fields replaced; ``self`` is unchanged."""
        return replace(self, body=redact_value(self.body, fields), details=dict(self.details))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "timestamp_iso": datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat(),
            "ip": self.client_id,
            "method": self.method,
            "url": self.path,
            "userAgent": self.user_agent,
            "body": self.body,
            "details": dict(self.details),
        }


EventListener = Callable[[SecurityEvent], None]
ErrorCallback = Callable[[BaseException], None]

AUDIT_LOGGER_NAME = "gatekeeper.audit"


class AuditLineFormatter(JSONFormatter):
    """Writes the event dictionary itself rather than the log envelope."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "audit_event", None)
        if event is None:
            return super().format(record)
        return json.dumps(event, default=str, ensure_ascii=False)


class _AuditFileHandler(logging.FileHandler):
    def __init__(self, path: Path, on_error: ErrorCallback):
        super().__init__(path, encoding="utf-8", delay=True)
        self.on_error = on_error

    def emit(self, record: logging.LogRecord) -> None:
        # FileHandler opens the file lazily outside its own error handling.
        try:
            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:
        error = sys.exc_info()[1]
        if error is not None:
            self.on_error(error)


class AuditFileWriter:
    """
    JSONL audit trail written from a background thread.

    ``write`` only enqueues a log record; a ``QueueListener`` drains the
    queue into a ``FileHandler``. ``close`` flushes pending lines.
    """

    def __init__(self, path: Path, on_error: ErrorCallback):
        self.path = path
        self.queue: queue.SimpleQueue = queue.SimpleQueue()
        self.handler = _AuditFileHandler(path, on_error)
        self.handler.setFormatter(AuditLineFormatter())
        self._queue_handler = QueueHandler(self.queue)
        self.listener = QueueListener(self.queue, self.handler)
        self.listener.start()
        self.closed = False

    def write(self, event: SecurityEvent) -> None:
        record = logging.LogRecord(
            AUDIT_LOGGER_NAME, logging.WARNING, __file__, 0, "Security event", None, None
        )
        record.audit_event = event.to_dict()
        self._queue_handler.handle(record)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.listener.stop()
        self.handler.close()


class EventSink:
    """Consumes security events and keeps aggregate statistics."""

    def __init__(
        self,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
        log_file: Path | None = None,
        history_size: int = 1000,
        alerter: Any = None,
        alerting_enabled: bool = True,
        error_history: int = 100,
    ):
        """Initialize event sink.

        Args:
            sensitive_fields: Body keys replaced with ``[REDACTED]``
            log_file: Optional JSONL audit file
            history_size: Number of recent events kept in memory
            alerter: Object with a ``dispatch(event)`` method
            alerting_enabled: Whether events are forwarded to ``alerter``
            error_history: Number of recent operational errors kept
        """
        self.sensitive_fields = tuple(sensitive_fields)
        self.log_file = log_file
        self.alerter = alerter
        self.alerting_enabled = alerting_enabled

        self._history: deque[SecurityEvent] = deque(maxlen=history_size)
        self._attacks = WindowCounter()
        self._type_counts: Counter[str] = Counter()
        self._listeners: list[EventListener] = []
        self._lock = threading.RLock()
        self._audit_writer: AuditFileWriter | None = None

        self.events_logged = 0
        self.operational_errors: deque[OperationalError] = deque(maxlen=error_history)
        self.operational_error_count = 0

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an in-process listener. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def log_event(self, event: SecurityEvent) -> SecurityEvent:
        """Record a security event.

        Returns:
            The redacted event that was stored and forwarded
        """
        stored = event.redacted(self.sensitive_fields)

        with self._lock:
            self._history.append(stored)
            self._attacks.record(stored.client_id, stored.timestamp)
            self._type_counts[stored.event_type.value] += 1
            self.events_logged += 1
            listeners = list(self._listeners)

        logger.warning(
            "Security event detected",
            extra={
                "event_id": stored.event_id,
                "event_type": stored.event_type.value,
                "severity": stored.severity.value,
                "client_id": stored.client_id,
                "path": stored.path,
            },
        )

        writer = self._writer()
        if writer is not None:
            writer.write(stored)

        for listener in listeners:
            try:
                listener(stored)
            except Exception as e:
                self._record_operational_error(OperationalError("event_sink", "listener", cause=e))

        if self.alerting_enabled and self.alerter is not None:
            try:
                self.alerter.dispatch(stored)
            except Exception as e:
                self._record_operational_error(OperationalError("event_sink", "dispatch", cause=e))

        return stored

    def _writer(self) -> AuditFileWriter | None:
        if not self.log_file:
            return None
        with self._lock:
            if self._audit_writer is None:
                try:
                    self.log_file.parent.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    self._audit_file_failed(e)
                    return None
                self._audit_writer = AuditFileWriter(self.log_file, self._audit_file_failed)
            return self._audit_writer

    def _audit_file_failed(self, error: BaseException) -> None:
        self._record_operational_error(OperationalError("event_sink", "audit_file", cause=error))

    def close(self) -> None:
        """Flush and close the audit file. A later event reopens it."""
        with self._lock:
            writer, self._audit_writer = self._audit_writer, None
        if writer is not None:
            writer.close()

    def _record_operational_error(self, error: OperationalError) -> None:
        with self._lock:
            self.operational_errors.append(error)
            self.operational_error_count += 1
        logger.error(str(error), exc_info=error.cause, extra={"error": error.to_dict()})

    def recent_events(self, limit: int = 100) -> list[SecurityEvent]:
        """Most recent events, newest last."""
        with self._lock:
            events = list(self._history)
        return events[-limit:] if limit > 0 else []

    def attack_counts(self) -> dict[str, int]:
        with self._lock:
            return self._attacks.snapshot()

    def get_stats(self, top_n: int = 10, blocked_identifier_count: int = 0) -> dict[str, Any]:
        """Aggregate counts for administrative consumption.

        Args:
            top_n: Number of identifiers in the attacker ranking
            blocked_identifier_count: Active block count supplied by the caller

        Returns:
            Dictionary with totals and the top attackers
        """
        with self._lock:
            counts = Counter(self._attacks.snapshot())
            total = sum(counts.values())
            suspicious = len(counts)
            top = counts.most_common(top_n) if top_n > 0 else []
            by_type = dict(self._type_counts)

        return {
            "totalAttacks": total,
            "blockedIdentifierCount": blocked_identifier_count,
            "suspiciousIdentifierCount": suspicious,
            "topAttackers": [
                {"identifier": identifier, "attackCount": count} for identifier, count in top
            ],
            "eventsByType": by_type,
        }

    def forget(self, max_age: float, now: float | None = None) -> int:
        """Drop attack records and history older than ``max_age`` seconds.

        Returns:
            Number of identifiers whose attack records expired entirely
        """
        now = time.time() if now is None else now
        cutoff = now - max_age
        with self._lock:
            kept = [event for event in self._history if event.timestamp > cutoff]
            if len(kept) != len(self._history):
                self._history.clear()
                self._history.extend(kept)
            return self._attacks.prune_all(max_age, now)
