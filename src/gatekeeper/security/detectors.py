"""
Pattern-based threat detection over a ``RequestView``.

Content detectors are driven by a declarative list of ``ThreatPattern``
entries, so adding a signature is a data change. Stateful signals (brute
force on authentication routes, endpoint scanning, request bursts) keep
their per-client history in ``WindowCounter`` instances.
"""

import re
import threading
import time
from dataclasses import dataclass, field
from re import Pattern
from typing import Any, Iterable, Mapping

from ..util.log import get_logger
from .audit import SecurityEventType
from .request import RequestView
from .window import WindowCounter, make_key

logger = get_logger(__name__)

MAX_DETAIL_LENGTH = 100


class ThreatPattern:
    """A compiled signature belonging to one detector category."""

    def __init__(
        self,
        category: SecurityEventType,
        pattern: str,
        name: str = "",
        description: str = "",
    ):
        """Initialize threat pattern.

        Args:
            category: Event type reported when the pattern matches
            pattern: Regular expression, matched case-insensitively
            name: Short identifier used in event details
            description: Human-readable description
        """
        self.category = category
        self.pattern_string = pattern
        self.pattern: Pattern[str] = re.compile(pattern, re.IGNORECASE)
        self.name = name or pattern
        self.description = description

    def search(self, text: str) -> str | None:
        match = self.pattern.search(text)
        return match.group(0) if match else None

    def __repr__(self) -> str:
        return f"ThreatPattern({self.category.value!r}, {self.pattern_string!r})"


DEFAULT_PATTERNS: tuple[ThreatPattern, ...] = (
    # SQL injection
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\bunion\b(?:\s+all)?\s+select\b", "union_select"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\bselect\s+[\w\s,.*`\"]{1,100}?\s+from\s+[\w.`\"]+\s+where\b", "select_from_where"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\b(?:drop|truncate|alter)\s+table\b", "ddl_table"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\binsert\s+into\s+[\w.`\"]+\s*(?:\(|values\b)", "insert_into"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\bupdate\s+[\w.`\"]+\s+set\s+[\w`\"]+\s*=", "update_set"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\bdelete\s+from\s+[\w.`\"]+\s+where\b", "delete_from"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\b(?:or|and)\s+(\d+)\s*=\s*\1\b", "numeric_tautology"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"'\s*(?:or|and)\s+'?[^'\s]*'?\s*=\s*'", "quoted_tautology"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"'\s*(?:;|--|/\*)", "quote_terminator"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r";\s*(?:drop|delete|truncate|update|insert|alter|exec)\b", "stacked_query"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\b(?:exec|execute)\s*\(|\bxp_cmdshell\b", "exec_call"),
    ThreatPattern(SecurityEventType.SQL_INJECTION, r"\b(?:sleep|benchmark|pg_sleep)\s*\(\s*\d+", "time_based"),
    # Script injection
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r"<\s*script\b[^>]*>", "script_tag"),
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r"\b(?:javascript|vbscript)\s*:(?!\s)", "script_uri"),
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r"<[^>]*\bon[a-z]+\s*=", "event_handler"),
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r"<\s*(?:iframe|object|embed)\b", "embedded_frame"),
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r"\beval\s*\(", "eval_call"),
    ThreatPattern(SecurityEventType.XSS_ATTEMPT, r":\s*expression\s*\(", "css_expression"),
    # Path traversal
    ThreatPattern(SecurityEventType.PATH_TRAVERSAL, r"\.\./", "dot_dot_slash"),
    ThreatPattern(SecurityEventType.PATH_TRAVERSAL, r"\.\.\\", "dot_dot_backslash"),
    ThreatPattern(SecurityEventType.PATH_TRAVERSAL, r"%2e%2e(?:%2f|%5c|/|\\)", "encoded_dot_dot"),
    ThreatPattern(SecurityEventType.PATH_TRAVERSAL, r"\.\.(?:%2f|%5c)", "encoded_separator"),
    ThreatPattern(SecurityEventType.PATH_TRAVERSAL, r"%252e%252e", "double_encoded_dot_dot"),
)

DEFAULT_SUSPICIOUS_USER_AGENTS: tuple[str, ...] = (
    "sqlmap",
    "nikto",
    "nmap",
    "masscan",
    "w3af",
    "dirbuster",
    "gobuster",
    "burp",
    "owasp",
)

DEFAULT_AUTH_ROUTE_MARKERS: tuple[str, ...] = ("/api/auth/", "/login")


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detector. Falsy when nothing matched."""

    matched: bool
    category: SecurityEventType | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.matched


NO_MATCH = DetectionResult(matched=False)


def build_patterns(
    overrides: Mapping[str, Iterable[str]] | None = None,
    base: Iterable[ThreatPattern] = DEFAULT_PATTERNS,
) -> list[ThreatPattern]:
    """Merge configured pattern lists into the defaults.

    Each key of ``overrides`` is an event type value (e.g. ``sql_injection``)
    whose list replaces the default patterns of that category.
    """
    patterns = list(base)
    if not overrides:
        return patterns

    for category_name, expressions in overrides.items():
        category = SecurityEventType(category_name)
        patterns = [p for p in patterns if p.category is not category]
        patterns.extend(ThreatPattern(category, expression) for expression in expressions)

    return patterns


class ThreatDetector:
    """Stateless content detectors evaluated against a request view."""

    def __init__(
        self,
        patterns: Iterable[ThreatPattern] | None = None,
        suspicious_user_agents: Iterable[str] = DEFAULT_SUSPICIOUS_USER_AGENTS,
    ):
        self.patterns: dict[SecurityEventType, list[ThreatPattern]] = {}
        for pattern in DEFAULT_PATTERNS if patterns is None else patterns:
            self.patterns.setdefault(pattern.category, []).append(pattern)
        self.suspicious_user_agents = tuple(ua.lower() for ua in suspicious_user_agents)

    def _match(self, category: SecurityEventType, text: str) -> DetectionResult:
        for pattern in self.patterns.get(category, ()):
            matched = pattern.search(text)
            if matched is not None:
                return DetectionResult(
                    matched=True,
                    category=category,
                    detail={"pattern": pattern.name, "match": matched[:MAX_DETAIL_LENGTH]},
                )
        return NO_MATCH

    def detect_injection_attempt(self, view: RequestView) -> DetectionResult:
        return self._match(SecurityEventType.SQL_INJECTION, view.inspection_text())

    def detect_script_injection(self, view: RequestView) -> DetectionResult:
        return self._match(SecurityEventType.XSS_ATTEMPT, view.inspection_text())

    def detect_path_traversal(self, view: RequestView) -> DetectionResult:
        return self._match(SecurityEventType.PATH_TRAVERSAL, view.traversal_text())

    def detect_suspicious_user_agent(self, view: RequestView) -> DetectionResult:
        user_agent = view.user_agent.lower()
        if not user_agent:
            return NO_MATCH
        for marker in self.suspicious_user_agents:
            if marker in user_agent:
                return DetectionResult(
                    matched=True,
                    category=SecurityEventType.SUSPICIOUS_USER_AGENT,
                    detail={"pattern": marker, "user_agent": view.user_agent[:MAX_DETAIL_LENGTH]},
                )
        return NO_MATCH


class BruteForceDetector:
    """Counts attempts per (client, endpoint) on authentication routes.

    Fires once more than ``threshold`` attempts fall within ``window``
    seconds, i.e. on attempt ``threshold + 1``.
    """

    def __init__(
        self,
        threshold: int = 10,
        window: float = 900.0,
        auth_route_markers: Iterable[str] = DEFAULT_AUTH_ROUTE_MARKERS,
        counter: WindowCounter | None = None,
    ):
        self.threshold = threshold
        self.window = window
        self.auth_route_markers = tuple(auth_route_markers)
        self.counter = counter if counter is not None else WindowCounter()

    def applies_to(self, view: RequestView) -> bool:
        return any(marker in view.path for marker in self.auth_route_markers)

    def observe(self, view: RequestView, now: float | None = None) -> DetectionResult:
        if not self.applies_to(view):
            return NO_MATCH

        now = time.time() if now is None else now
        key = make_key(view.client_id, view.path)
        self.counter.record(key, now)
        attempts = self.counter.count(key, self.window, now)

        if attempts > self.threshold:
            return DetectionResult(
                matched=True,
                category=SecurityEventType.BRUTE_FORCE,
                detail={"attempts": attempts, "window": self.window, "endpoint": view.path},
            )
        return NO_MATCH

    def forget(self, client_id: str) -> int:
        """Drop the attempt history of every endpoint for a client."""
        return self.counter.discard(client_id)

    def sweep(self, now: float | None = None) -> int:
        return self.counter.sweep(self.window, now)


class ActivityTracker:
    """Rolling per-client activity used for scanning and burst detection."""

    def __init__(
        self,
        scan_endpoint_threshold: int = 50,
        scan_request_threshold: int = 100,
        activity_window: float = 3600.0,
        high_frequency_threshold: int = 100,
        high_frequency_window: float = 60.0,
    ):
        self.scan_endpoint_threshold = scan_endpoint_threshold
        self.scan_request_threshold = scan_request_threshold
        self.activity_window = activity_window
        self.high_frequency_threshold = high_frequency_threshold
        self.high_frequency_window = high_frequency_window

        self._requests = WindowCounter()
        self._bursts = WindowCounter()
        self._endpoints: dict[str, dict[str, float]] = {}
        self._lock = threading.RLock()

    def observe(self, view: RequestView, now: float | None = None) -> DetectionResult:
        """Record the request and report scanning or burst behaviour."""
        now = time.time() if now is None else now
        client = view.client_id

        self._requests.record(client, now)
        self._bursts.record(client, now)
        request_count = self._requests.count(client, self.activity_window, now)
        burst_count = self._bursts.count(client, self.high_frequency_window, now)

        with self._lock:
            endpoints = self._endpoints.setdefault(client, {})
            endpoints[view.path] = now
            cutoff = now - self.activity_window
            for path in [p for p, seen in endpoints.items() if seen <= cutoff]:
                del endpoints[path]
            endpoint_count = len(endpoints)

        if (
            endpoint_count > self.scan_endpoint_threshold
            and request_count > self.scan_request_threshold
        ):
            return DetectionResult(
                matched=True,
                category=SecurityEventType.ENDPOINT_SCANNING,
                detail={"endpoints": endpoint_count, "requests": request_count},
            )

        if burst_count > self.high_frequency_threshold:
            return DetectionResult(
                matched=True,
                category=SecurityEventType.HIGH_FREQUENCY_REQUESTS,
                detail={"requests": burst_count, "window": self.high_frequency_window},
            )

        return NO_MATCH

    def forget(self, client_id: str) -> None:
        """Drop all activity for a client, e.g. after it has been blocked."""
        with self._lock:
            self._endpoints.pop(client_id, None)
        self._requests.discard(client_id)
        self._bursts.discard(client_id)

    def sweep(self, now: float | None = None) -> int:
        """Drop clients with no activity inside the observation window."""
        now = time.time() if now is None else now
        evicted = self._requests.sweep(self.activity_window, now)
        self._bursts.sweep(self.high_frequency_window, now)

        cutoff = now - self.activity_window
        with self._lock:
            for client in list(self._endpoints.keys()):
                if all(seen <= cutoff for seen in self._endpoints[client].values()):
                    del self._endpoints[client]

        return evicted

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._endpoints)
