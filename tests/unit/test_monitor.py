"""
Tests for the request evaluation pipeline.

Covers check ordering, admission rules, rate limiting, statistics,
maintenance and lifecycle of ``SecurityMonitor``.
"""

from unittest.mock import Mock

import pytest

from gatekeeper.security.audit import EventSink, SecurityEventType
from gatekeeper.security.config import SecurityConfig
from gatekeeper.security.monitor import RequestState, SecurityMonitor, SecurityStats, api_key_matches
from gatekeeper.security.ratelimit import RateLimitTier
from gatekeeper.util.errors import (
    InvalidAPIKey,
    InvalidCSRFToken,
    IPBlocked,
    RateLimitExceeded,
    SecurityViolation,
)


class TestEvaluationOrder:
    """Test the fixed check order."""

    def test_clean_request_allowed(self, monitor, make_view):
        decision = monitor.evaluate(make_view())

        assert decision.allowed
        assert decision.state is RequestState.ALLOWED
        assert decision.tier is RateLimitTier.GENERAL

    def test_unlimited_route_has_no_tier(self, monitor, make_view):
        decision = monitor.evaluate(make_view(path="/health"))
        assert decision.allowed
        assert decision.tier is None

    def test_blocked_client_rejected_before_detection(self, monitor, make_view):
        monitor.blocklist.block("203.0.113.7", 60, "manual", now=monitor.clock())
        detect = Mock(wraps=monitor.detector.detect_injection_attempt)
        monitor.detector.detect_injection_attempt = detect

        decision = monitor.evaluate(make_view(body="1 UNION SELECT x"))

        assert decision.state is RequestState.BLOCKED_REJECT
        assert decision.status_code == 403
        assert decision.code == "IP_BLOCKED"
        detect.assert_not_called()
        assert monitor.event_sink.events_logged == 0

    def test_detection_precedes_rate_limit(self, security_config, clock, make_view):
        security_config.rate_limit_policies["general"] = {"window": 900, "max_requests": 1}
        monitor = SecurityMonitor(security_config, clock=clock)

        assert monitor.evaluate(make_view()).allowed
        decision = monitor.evaluate(make_view(client_id="203.0.113.7", body="<script>alert(1)</script>"))

        assert decision.state is RequestState.DETECTED_REJECT
        assert decision.event.event_type is SecurityEventType.XSS_ATTEMPT

    def test_injection_checked_before_script(self, monitor, make_view):
        decision = monitor.evaluate(make_view(body="<script>1 UNION SELECT x</script>"))
        assert decision.event.event_type is SecurityEventType.SQL_INJECTION

    def test_detection_can_be_disabled(self, security_config, clock, make_view):
        security_config.enable_threat_detection = False
        monitor = SecurityMonitor(security_config, clock=clock)

        assert monitor.evaluate(make_view(body="1 UNION SELECT x")).allowed


class TestAdmission:
    """Test allow list and payload size checks."""

    def test_allow_list_with_cidr(self, security_config, clock, make_view):
        security_config.enable_ip_whitelist = True
        security_config.ip_whitelist = ["192.0.2.10", "10.1.0.0/16"]
        monitor = SecurityMonitor(security_config, clock=clock)

        assert monitor.evaluate(make_view(client_id="192.0.2.10")).allowed
        assert monitor.evaluate(make_view(client_id="10.1.44.3")).allowed
        rejected = monitor.evaluate(make_view(client_id="198.51.100.1"))
        assert rejected.state is RequestState.NOT_ALLOWED_REJECT
        assert rejected.code == "IP_NOT_ALLOWED"

    def test_allow_list_rejects_unknown_identifier(self, security_config, clock, make_view):
        security_config.enable_ip_whitelist = True
        security_config.ip_whitelist = ["10.0.0.0/8"]
        monitor = SecurityMonitor(security_config, clock=clock)

        assert not monitor.evaluate(make_view(client_id="unknown")).allowed

    def test_payload_too_large(self, security_config, clock, make_view):
        security_config.max_content_length = 1024
        monitor = SecurityMonitor(security_config, clock=clock)

        decision = monitor.evaluate(make_view(method="POST", content_length=2048))

        assert decision.state is RequestState.PAYLOAD_TOO_LARGE_REJECT
        assert decision.status_code == 413
        assert monitor.evaluate(make_view(method="POST", content_length=1024)).allowed


class TestRouteProtection:
    """Test the API key gate and CSRF check."""

    @pytest.fixture
    def guarded(self, security_config, clock):
        security_config.admin_api_keys = ["k-primary", "k-rotated"]
        security_config.enable_api_key_auth = True
        security_config.enable_csrf_protection = True
        return SecurityMonitor(security_config, clock=clock)

    def test_api_key_matches(self):
        assert api_key_matches("k-rotated", ["k-primary", "k-rotated"])
        assert not api_key_matches("k-primar", ["k-primary"])
        assert not api_key_matches(None, ["k-primary"])
        assert not api_key_matches("anything", [])

    def test_sensitive_prefix_requires_key(self, guarded, make_view):
        decision = guarded.evaluate(make_view(path="/api/system/status"))

        assert decision.state is RequestState.API_KEY_REJECT
        assert decision.status_code == 401
        assert decision.to_response_body()["code"] == "INVALID_API_KEY"
        assert isinstance(decision.to_error(), InvalidAPIKey)
        assert not guarded.blocklist.is_blocked("203.0.113.7")

    def test_sensitive_prefix_with_key(self, guarded, make_view):
        view = make_view(path="/api/wechat-admin/menu", headers={"X-API-Key": "k-primary"})
        assert guarded.evaluate(view).allowed

    def test_other_routes_need_no_key(self, guarded, make_view):
        assert guarded.evaluate(make_view(path="/api/items")).allowed

    def test_detection_runs_before_key_check(self, guarded, make_view):
        decision = guarded.evaluate(make_view(path="/api/admin/x", body="1 UNION SELECT x"))
        assert decision.state is RequestState.DETECTED_REJECT

    def test_state_change_without_token_rejected(self, guarded, make_view):
        decision = guarded.evaluate(make_view(method="POST", body={"title": "x"}))

        assert decision.state is RequestState.CSRF_REJECT
        assert decision.status_code == 403
        assert isinstance(decision.to_error(), InvalidCSRFToken)

    def test_header_token_matching_cookie(self, guarded, make_view):
        view = make_view(
            method="DELETE",
            headers={"Cookie": "csrf_token=abc123", "X-CSRF-Token": "abc123"},
        )
        assert guarded.evaluate(view).allowed

    def test_body_token_matching_cookie(self, guarded, make_view):
        view = make_view(method="PUT", headers={"Cookie": "csrf_token=abc123"}, body={"_csrf": "abc123"})
        assert guarded.evaluate(view).allowed

    def test_mismatched_token_rejected(self, guarded, make_view):
        view = make_view(
            method="PATCH",
            headers={"Cookie": "csrf_token=abc123", "X-CSRF-Token": "abc124"},
        )
        assert guarded.evaluate(view).state is RequestState.CSRF_REJECT

    def test_safe_methods_and_auth_routes_exempt(self, guarded, make_view):
        assert guarded.csrf_token_valid(make_view(method="GET"))
        assert guarded.csrf_token_valid(make_view(method="POST", path="/api/auth/login"))
        assert not guarded.csrf_token_valid(make_view(method="POST"))

    def test_checks_disabled_by_default(self, monitor, make_view):
        assert monitor.evaluate(make_view(path="/api/system/status")).allowed
        assert monitor.evaluate(make_view(method="POST", body={"title": "x"})).allowed


class TestRateLimiting:
    """Test tier enforcement inside the pipeline."""

    def test_strict_tier(self, monitor, make_view, clock):
        view = make_view(path="/api/admin/users")

        for _ in range(5):
            assert monitor.evaluate(view).allowed
            clock.advance(1)

        decision = monitor.evaluate(view)

        assert decision.state is RequestState.RATE_LIMITED_REJECT
        assert decision.status_code == 429
        assert decision.retry_after == 895
        assert decision.to_response_body()["retryAfter"] == 895
        assert not monitor.blocklist.is_blocked("203.0.113.7", clock())

    def test_rate_limiting_can_be_disabled(self, security_config, clock, make_view):
        security_config.enable_rate_limiting = False
        monitor = SecurityMonitor(security_config, clock=clock)

        for _ in range(10):
            assert monitor.evaluate(make_view(path="/api/admin/users")).allowed


class TestEnforce:
    """Test exception-raising evaluation."""

    def test_enforce_raises_rejection(self, monitor, make_view):
        with pytest.raises(SecurityViolation):
            monitor.enforce(make_view(body="../../etc/passwd", path="/files/../../etc/passwd"))

        with pytest.raises(IPBlocked):
            monitor.enforce(make_view())

    def test_enforce_rate_limit(self, monitor, make_view):
        view = make_view(path="/api/admin/users")
        for _ in range(5):
            monitor.enforce(view)

        with pytest.raises(RateLimitExceeded) as exc_info:
            monitor.enforce(view)
        assert exc_info.value.retry_after == 900

    def test_enforce_returns_allowed_decision(self, monitor, make_view):
        assert monitor.enforce(make_view()).allowed


class TestEscalation:
    """Test event emission and severity-scaled blocking."""

    def test_suspicious_user_agent_short_block(self, monitor, make_view, clock):
        decision = monitor.evaluate(make_view(headers={"User-Agent": "sqlmap/1.7"}))

        assert decision.event.event_type is SecurityEventType.SUSPICIOUS_USER_AGENT
        assert monitor.blocklist.remaining("203.0.113.7", clock()) == 900
        assert monitor.blocklist.get("203.0.113.7", clock()).reason == "suspicious_user_agent"

    def test_custom_block_duration(self, security_config, clock, make_view):
        security_config.block_durations["high"] = 120
        monitor = SecurityMonitor(security_config, clock=clock)

        monitor.evaluate(make_view(body="<script>x</script>"))

        assert monitor.blocklist.remaining("203.0.113.7", clock()) == 120
        clock.advance(121)
        assert monitor.evaluate(make_view()).allowed

    def test_event_body_is_redacted(self, monitor, make_view):
        decision = monitor.evaluate(
            make_view(method="POST", body={"password": "hunter2", "q": "1 UNION SELECT x"})
        )
        assert decision.event.body["password"] == "[REDACTED]"

    def test_event_sink_failure_still_blocks(self, security_config, clock, make_view):
        sink = Mock(spec=EventSink)
        sink.log_event.side_effect = RuntimeError("disk full")
        monitor = SecurityMonitor(security_config, event_sink=sink, clock=clock)

        decision = monitor.evaluate(make_view(body="1 UNION SELECT x"))

        assert decision.state is RequestState.DETECTED_REJECT
        assert monitor.blocklist.is_blocked("203.0.113.7", clock())
        assert len(monitor.operational_errors) == 1

    def test_operational_errors_are_bounded(self, security_config, clock, make_view):
        security_config.operational_error_history = 3
        monitor = SecurityMonitor(security_config, clock=clock)
        monitor.detector.detect_path_traversal = Mock(side_effect=RuntimeError("boom"))

        for _ in range(10):
            assert monitor.evaluate(make_view()).allowed

        assert len(monitor.operational_errors) == 3
        assert monitor.operational_error_count == 10
        assert all(error.operation == "traversal" for error in monitor.operational_errors)


class TestAdministration:
    """Test stats, unblock and maintenance."""

    def test_stats(self, monitor, make_view):
        monitor.evaluate(make_view(client_id="a", body="1 UNION SELECT x"))
        monitor.evaluate(make_view(client_id="b", body="<script>"))
        monitor.evaluate(make_view(client_id="c"))

        stats = monitor.get_stats()

        assert isinstance(stats, SecurityStats)
        assert stats.total_attacks == 2
        assert stats.blocked_identifier_count == 2
        assert stats.suspicious_identifier_count == 2
        dumped = stats.model_dump(by_alias=True)
        assert set(dumped) == {
            "totalAttacks",
            "blockedIdentifierCount",
            "suspiciousIdentifierCount",
            "topAttackers",
            "eventsByType",
            "trackedClientCount",
        }
        assert dumped["topAttackers"][0]["attackCount"] == 1

    def test_tracked_clients_differ_from_attackers(self, monitor, make_view):
        monitor.evaluate(make_view(client_id="a", body="1 UNION SELECT x"))
        for client in ("b", "c", "d"):
            monitor.evaluate(make_view(client_id=client))

        stats = monitor.get_stats()

        assert stats.suspicious_identifier_count == 1
        assert stats.tracked_client_count == 3

    def test_unblock(self, monitor, make_view):
        monitor.evaluate(make_view(body="1 UNION SELECT x"))

        assert monitor.unblock("203.0.113.7") is True
        assert monitor.evaluate(make_view()).allowed
        assert monitor.unblock("203.0.113.7") is False

    def test_unblock_clears_brute_force_history(self, security_config, clock, make_view):
        security_config.enable_rate_limiting = False
        monitor = SecurityMonitor(security_config, clock=clock)
        login = make_view(path="/api/auth/login", method="POST")

        for _ in range(10):
            assert monitor.evaluate(login).allowed
            clock.advance(1)
        assert monitor.evaluate(login).state is RequestState.DETECTED_REJECT

        assert monitor.unblock("203.0.113.7") is True
        clock.advance(1)

        assert monitor.evaluate(login).allowed
        assert not monitor.blocklist.is_blocked("203.0.113.7", clock())

    def test_run_maintenance(self, monitor, make_view, clock):
        monitor.evaluate(make_view(path="/api/auth/login", headers={"User-Agent": "nikto"}))
        monitor.evaluate(make_view(client_id="other", path="/api/auth/login"))

        clock.advance(90_000)
        result = monitor.run_maintenance()

        assert result == {
            "expired_blocks": 1,
            "rate_limit_keys": 1,
            "brute_force_keys": 2,
            "activity_clients": 1,
            "attack_records": 1,
        }
        assert monitor.get_stats().total_attacks == 0

    def test_maintenance_tick_uses_monitor_sweep(self, monitor, clock):
        result = monitor.maintenance.tick(clock())
        assert monitor.maintenance.ticks == 1
        assert set(result) >= {"expired_blocks", "attack_records"}

    def test_from_config_wires_alerts(self):
        config = SecurityConfig(enable_alerts=True, alert_webhook_url="https://hooks.example.com/x")
        monitor = SecurityMonitor.from_config(config)

        assert [c.name for c in monitor.event_sink.alerter.channels] == ["log", "webhook"]

    def test_from_config_without_alerts(self):
        assert SecurityMonitor.from_config(SecurityConfig()).event_sink.alerter is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor):
        monitor.start()
        assert monitor.maintenance.running
        await monitor.stop()
        assert not monitor.maintenance.running
