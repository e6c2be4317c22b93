"""
Per-request security evaluation.

``SecurityMonitor`` owns the block list, the window counters, the detectors,
the rate limiter and the event sink, and runs them in a fixed,
short-circuiting order for every request:

    blocked? -> allow-list / payload size -> detectors -> API key -> CSRF
             -> rate limit -> allowed

A detector that raises is recorded as an operational error and treated as a
non-match; block and rate-limit checks still apply.
"""

import hmac
import ipaddress
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field

from ..util.errors import (
    InvalidAPIKey,
    InvalidCSRFToken,
    IPBlocked,
    IPNotAllowed,
    OperationalError,
    PayloadTooLarge,
    RateLimitExceeded,
    RejectionError,
    SecurityViolation,
)
from ..util.log import get_logger
from .audit import EventSink, SecurityEvent
from .blocklist import BlockRegistry
from .config import SecurityConfig
from .detectors import (
    NO_MATCH,
    ActivityTracker,
    BruteForceDetector,
    DetectionResult,
    ThreatDetector,
    build_patterns,
)
from .maintenance import MaintenanceTask
from .ratelimit import RateLimiter, RateLimitTier
from .request import RequestView

logger = get_logger(__name__)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def api_key_matches(candidate: str | None, keys: Iterable[str]) -> bool:
    """Constant-time check of ``candidate`` against every configured key."""
    if not candidate:
        return False
    supplied = candidate.encode()
    matched = False
    for key in keys:
        matched |= hmac.compare_digest(supplied, key.encode())
    return matched


class RequestState(str, Enum):
    """Terminal states of one evaluation pass."""

    UNCHECKED = "unchecked"
    BLOCKED_REJECT = "blocked_reject"
    NOT_ALLOWED_REJECT = "not_allowed_reject"
    PAYLOAD_TOO_LARGE_REJECT = "payload_too_large_reject"
    DETECTED_REJECT = "detected_reject"
    API_KEY_REJECT = "api_key_reject"
    CSRF_REJECT = "csrf_reject"
    RATE_LIMITED_REJECT = "rate_limited_reject"
    ALLOWED = "allowed"


REJECTION_ERRORS: dict[RequestState, type[RejectionError]] = {
    RequestState.BLOCKED_REJECT: IPBlocked,
    RequestState.NOT_ALLOWED_REJECT: IPNotAllowed,
    RequestState.PAYLOAD_TOO_LARGE_REJECT: PayloadTooLarge,
    RequestState.DETECTED_REJECT: SecurityViolation,
    RequestState.API_KEY_REJECT: InvalidAPIKey,
    RequestState.CSRF_REJECT: InvalidCSRFToken,
    RequestState.RATE_LIMITED_REJECT: RateLimitExceeded,
}


@dataclass(frozen=True)
class SecurityDecision:
    """Outcome of ``SecurityMonitor.evaluate``."""

    state: RequestState
    status_code: int = 200
    code: str | None = None
    message: str | None = None
    retry_after: int | None = None
    tier: RateLimitTier | None = None
    event: SecurityEvent | None = None

    @property
    def allowed(self) -> bool:
        return self.state is RequestState.ALLOWED

    @classmethod
    def reject(
        cls,
        state: RequestState,
        retry_after: int | None = None,
        tier: RateLimitTier | None = None,
        event: SecurityEvent | None = None,
    ) -> "SecurityDecision":
        error_cls = REJECTION_ERRORS[state]
        return cls(
            state=state,
            status_code=error_cls.status_code,
            code=error_cls.code,
            message=error_cls.public_message,
            retry_after=retry_after,
            tier=tier,
            event=event,
        )

    def to_error(self) -> RejectionError | None:
        error_cls = REJECTION_ERRORS.get(self.state)
        if error_cls is None:
            return None
        return error_cls(retry_after=self.retry_after)

    def to_response_body(self) -> dict[str, Any]:
        """Client-facing JSON body for a rejection."""
        error = self.to_error()
        if error is None:
            return {"success": True}
        return error.to_response_body()


class AttackerCount(BaseModel):
    identifier: str
    attack_count: int = Field(alias="attackCount")

    model_config = ConfigDict(populate_by_name=True)


class SecurityStats(BaseModel):
    """Read-only aggregate for administrative tooling."""

    total_attacks: int = Field(alias="totalAttacks")
    blocked_identifier_count: int = Field(alias="blockedIdentifierCount")
    suspicious_identifier_count: int = Field(alias="suspiciousIdentifierCount")
    top_attackers: list[AttackerCount] = Field(default_factory=list, alias="topAttackers")
    events_by_type: dict[str, int] = Field(default_factory=dict, alias="eventsByType")
    tracked_client_count: int = Field(default=0, alias="trackedClientCount")

    model_config = ConfigDict(populate_by_name=True)


class SecurityMonitor:
    """Orchestrates detection, blocking and rate limiting for each request."""

    def __init__(
        self,
        config: SecurityConfig | None = None,
        *,
        detector: ThreatDetector | None = None,
        brute_force: BruteForceDetector | None = None,
        activity: ActivityTracker | None = None,
        blocklist: BlockRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        event_sink: EventSink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize security monitor.

        Components default to instances built from ``config``; any of them
        can be injected for testing or sharing.
        """
        self.config = config or SecurityConfig()
        self.clock = clock

        self.detector = detector or ThreatDetector(
            patterns=build_patterns(self.config.detector_patterns),
            suspicious_user_agents=self.config.suspicious_user_agents,
        )
        self.brute_force = brute_force or BruteForceDetector(
            threshold=self.config.brute_force_threshold,
            window=self.config.brute_force_window,
            auth_route_markers=self.config.auth_route_markers,
        )
        self.activity = activity or ActivityTracker(
            scan_endpoint_threshold=self.config.scan_endpoint_threshold,
            scan_request_threshold=self.config.scan_request_threshold,
            activity_window=self.config.activity_window,
            high_frequency_threshold=self.config.high_frequency_threshold,
            high_frequency_window=self.config.high_frequency_window,
        )
        self.blocklist = blocklist or BlockRegistry()
        self.rate_limiter = rate_limiter or RateLimiter(
            policies=self.config.tier_policies(),
            route_tiers=self.config.route_tier_pairs(),
        )
        self.event_sink = event_sink or EventSink(
            sensitive_fields=self.config.sensitive_fields,
            log_file=self.config.audit_log_file,
            history_size=self.config.event_history_size,
            alerting_enabled=self.config.enable_alerts,
            error_history=self.config.operational_error_history,
        )

        self.maintenance = MaintenanceTask(self.run_maintenance, self.config.maintenance_interval, clock=clock)
        self.operational_errors: deque[OperationalError] = deque(maxlen=self.config.operational_error_history)
        self.operational_error_count = 0
        self._errors_lock = threading.Lock()
        self._allow_networks = self._parse_allow_list(self.config.ip_whitelist)

    @classmethod
    def from_config(cls, config: SecurityConfig) -> "SecurityMonitor":
        """Build a monitor with alert dispatch wired from ``config``."""
        from ..monitoring.alerts import AlertDispatcher

        errors = config.validate()
        if errors:
            logger.warning("Security configuration validation errors", extra={"errors": errors})

        alerter = AlertDispatcher.from_config(config) if config.enable_alerts else None
        event_sink = EventSink(
            sensitive_fields=config.sensitive_fields,
            log_file=config.audit_log_file,
            history_size=config.event_history_size,
            alerter=alerter,
            alerting_enabled=config.enable_alerts,
            error_history=config.operational_error_history,
        )
        return cls(config, event_sink=event_sink)

    @staticmethod
    def _parse_allow_list(entries: list[str]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        networks = []
        for entry in entries:
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                logger.warning("Ignoring invalid allow-list entry", extra={"entry": entry})
        return networks

    def is_allowed_client(self, client_id: str) -> bool:
        """Whether ``client_id`` passes the allow list (always true when disabled)."""
        if not self.config.enable_ip_whitelist:
            return True
        if client_id in self.config.ip_whitelist:
            return True
        try:
            address = ipaddress.ip_address(client_id)
        except ValueError:
            return False
        return any(address in network for network in self._allow_networks)

    def requires_api_key(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.config.api_key_protected_prefixes)

    def csrf_token_valid(self, view: RequestView) -> bool:
        """Double-submit check: the header or ``_csrf`` body field must equal the cookie.

        Safe methods and exempt prefixes always pass.
        """
        if view.method not in STATE_CHANGING_METHODS:
            return True
        if any(view.path.startswith(prefix) for prefix in self.config.csrf_exempt_prefixes):
            return True

        expected = view.cookies.get(self.config.csrf_cookie_name)
        supplied = view.header(self.config.csrf_header_name)
        if not supplied and isinstance(view.body, dict):
            token = view.body.get("_csrf")
            supplied = token if isinstance(token, str) else None

        if not expected or not supplied:
            return False
        return hmac.compare_digest(supplied.encode(), expected.encode())

    # Evaluation

    def evaluate(self, view: RequestView, now: float | None = None) -> SecurityDecision:
        """Run the request through every check and return the decision."""
        now = self.clock() if now is None else now
        client = view.client_id

        if self.blocklist.is_blocked(client, now):
            logger.info("Rejected blocked client", extra={"client_id": client, "path": view.path})
            return SecurityDecision.reject(RequestState.BLOCKED_REJECT)

        if not self.is_allowed_client(client):
            logger.info("Rejected client outside allow list", extra={"client_id": client})
            return SecurityDecision.reject(RequestState.NOT_ALLOWED_REJECT)

        if view.content_length is not None and view.content_length > self.config.max_content_length:
            logger.info(
                "Rejected oversized payload",
                extra={"client_id": client, "content_length": view.content_length},
            )
            return SecurityDecision.reject(RequestState.PAYLOAD_TOO_LARGE_REJECT)

        if self.config.enable_threat_detection:
            for name, check in self._detectors(now):
                result = self._run_detector(name, check, view)
                if result:
                    return self._escalate(view, result, now)

        if self.config.enable_api_key_auth and self.requires_api_key(view.path):
            if not api_key_matches(view.header("x-api-key"), self.config.admin_api_keys):
                logger.info(
                    "Rejected sensitive route without valid API key",
                    extra={"client_id": client, "path": view.path},
                )
                return SecurityDecision.reject(RequestState.API_KEY_REJECT)

        if self.config.enable_csrf_protection and not self.csrf_token_valid(view):
            logger.info(
                "Rejected request with invalid CSRF token",
                extra={"client_id": client, "path": view.path},
            )
            return SecurityDecision.reject(RequestState.CSRF_REJECT)

        if self.config.enable_rate_limiting:
            tier = self.rate_limiter.resolve_tier(view.path)
            if tier is not None:
                decision = self.rate_limiter.check(client, tier, now)
                if not decision.allowed:
                    logger.info(
                        "Rate limit exceeded",
                        extra={"client_id": client, "tier": tier.value, "retry_after": decision.retry_after},
                    )
                    return SecurityDecision.reject(
                        RequestState.RATE_LIMITED_REJECT,
                        retry_after=decision.retry_after,
                        tier=tier,
                    )
                return SecurityDecision(state=RequestState.ALLOWED, tier=tier)

        return SecurityDecision(state=RequestState.ALLOWED)

    def enforce(self, view: RequestView, now: float | None = None) -> SecurityDecision:
        """Like ``evaluate`` but raises the matching ``RejectionError``."""
        decision = self.evaluate(view, now)
        error = decision.to_error()
        if error is not None:
            raise error
        return decision

    def _detectors(self, now: float) -> list[tuple[str, Callable[[RequestView], DetectionResult]]]:
        return [
            ("injection", self.detector.detect_injection_attempt),
            ("script", self.detector.detect_script_injection),
            ("traversal", self.detector.detect_path_traversal),
            ("brute_force", lambda view: self.brute_force.observe(view, now)),
            ("user_agent", self.detector.detect_suspicious_user_agent),
            ("activity", lambda view: self.activity.observe(view, now)),
        ]

    def _run_detector(
        self,
        name: str,
        check: Callable[[RequestView], DetectionResult],
        view: RequestView,
    ) -> DetectionResult:
        try:
            return check(view)
        except Exception as e:
            self._record_operational_error(OperationalError("detector", name, cause=e))
            return NO_MATCH

    def _record_operational_error(self, error: OperationalError) -> None:
        with self._errors_lock:
            self.operational_errors.append(error)
            self.operational_error_count += 1
        logger.error(str(error), exc_info=error.cause, extra={"error": error.to_dict()})

    def _escalate(self, view: RequestView, result: DetectionResult, now: float) -> SecurityDecision:
        event = SecurityEvent(
            event_type=result.category,
            client_id=view.client_id,
            method=view.method,
            path=view.url,
            user_agent=view.user_agent,
            body=view.body,
            details=result.detail,
            timestamp=now,
        )

        try:
            event = self.event_sink.log_event(event)
        except Exception as e:
            self._record_operational_error(OperationalError("event_sink", "log_event", cause=e))

        duration = self.config.block_duration_for(event.severity)
        self.blocklist.block(view.client_id, duration, event.event_type.value, now)

        return SecurityDecision.reject(RequestState.DETECTED_REJECT, event=event)

    # Administration

    def get_stats(self, top_n: int = 10, now: float | None = None) -> SecurityStats:
        now = self.clock() if now is None else now
        stats = self.event_sink.get_stats(
            top_n=top_n,
            blocked_identifier_count=self.blocklist.active_count(now),
        )
        stats["trackedClientCount"] = self.activity.tracked_clients()
        return SecurityStats.model_validate(stats)

    def unblock(self, identifier: str) -> bool:
        """Lift a block and clear the detector history that would re-trigger it."""
        self.activity.forget(identifier)
        self.brute_force.forget(identifier)
        return self.blocklist.unblock(identifier)

    # Lifecycle

    def run_maintenance(self, now: float | None = None) -> dict[str, int]:
        """Sweep expired blocks and stale counters once."""
        now = self.clock() if now is None else now
        result = {
            "expired_blocks": self.blocklist.sweep(now),
            "rate_limit_keys": self.rate_limiter.sweep(now),
            "brute_force_keys": self.brute_force.sweep(now),
            "activity_clients": self.activity.sweep(now),
            "attack_records": self.event_sink.forget(self.config.activity_window, now),
        }
        logger.info("Security maintenance completed", extra={"sweep": result})
        return result

    def start(self) -> None:
        """Start periodic maintenance on the running event loop."""
        self.maintenance.start()

    async def stop(self) -> None:
        await self.maintenance.stop()
        self.event_sink.close()
        alerter = self.event_sink.alerter
        if alerter is not None:
            await alerter.drain()
