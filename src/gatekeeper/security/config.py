"""
Security configuration management for Gatekeeper.

Provides centralized security configuration with environment variable
support and secure defaults.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from ..util.log import get_logger
from .audit import DEFAULT_SENSITIVE_FIELDS, SecurityEventType, ThreatSeverity
from .detectors import DEFAULT_AUTH_ROUTE_MARKERS, DEFAULT_SUSPICIOUS_USER_AGENTS
from .ratelimit import DEFAULT_POLICIES, DEFAULT_ROUTE_TIERS, RateLimitPolicy, RateLimitTier

logger = get_logger(__name__)


DEFAULT_API_KEY_PREFIXES: tuple[str, ...] = ("/api/admin", "/api/wechat-admin", "/api/system")

DEFAULT_CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
        "font-src 'self' https://fonts.gstatic.com",
        "img-src 'self' data: https:",
        "script-src 'self'",
        "connect-src 'self'",
        "frame-src 'none'",
        "object-src 'none'",
        "upgrade-insecure-requests",
    ]
)


def _default_policies() -> Dict[str, Dict[str, float]]:
    return {
        tier.value: {"window": policy.window, "max_requests": policy.max_requests}
        for tier, policy in DEFAULT_POLICIES.items()
    }


def _default_route_tiers() -> List[List[str]]:
    return [[pattern, tier.value] for pattern, tier in DEFAULT_ROUTE_TIERS]


@dataclass
class SecurityConfig:
    """Security configuration for the request protection layer."""

    # Threat detection
    enable_threat_detection: bool = True
    detector_patterns: Dict[str, List[str]] = field(default_factory=dict)
    suspicious_user_agents: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUSPICIOUS_USER_AGENTS)
    )

    # Brute force on authentication routes
    auth_route_markers: List[str] = field(default_factory=lambda: list(DEFAULT_AUTH_ROUTE_MARKERS))
    brute_force_threshold: int = 10
    brute_force_window: float = 900.0  # 15 minutes

    # Anomaly signals
    scan_endpoint_threshold: int = 50
    scan_request_threshold: int = 100
    activity_window: float = 3600.0
    high_frequency_threshold: int = 100
    high_frequency_window: float = 60.0

    # Block durations per severity, seconds
    block_durations: Dict[str, float] = field(default_factory=lambda: {
        ThreatSeverity.CRITICAL.value: 86400.0,
        ThreatSeverity.HIGH.value: 3600.0,
        ThreatSeverity.MEDIUM.value: 3600.0,
        ThreatSeverity.LOW.value: 900.0,
    })

    # Rate limiting
    enable_rate_limiting: bool = True
    rate_limit_policies: Dict[str, Dict[str, float]] = field(default_factory=_default_policies)
    route_tiers: List[List[str]] = field(default_factory=_default_route_tiers)

    # Admission
    enable_ip_whitelist: bool = False
    ip_whitelist: List[str] = field(default_factory=list)
    max_content_length: int = 10 * 1024 * 1024  # 10MB
    trust_proxy: bool = False

    # Administrative access
    admin_api_keys: List[str] = field(default_factory=list)
    enable_api_key_auth: bool = False
    api_key_protected_prefixes: List[str] = field(
        default_factory=lambda: list(DEFAULT_API_KEY_PREFIXES)
    )

    # CSRF double-submit check for state-changing methods
    enable_csrf_protection: bool = False
    csrf_cookie_name: str = "csrf_token"
    csrf_header_name: str = "X-CSRF-Token"
    csrf_exempt_prefixes: List[str] = field(default_factory=lambda: ["/api/auth/"])

    # Response headers
    enable_security_headers: bool = True
    content_security_policy: Optional[str] = DEFAULT_CONTENT_SECURITY_POLICY
    hsts_max_age: int = 31536000  # 1 year
    frame_options: str = "DENY"
    referrer_policy: str = "same-origin"

    # Event sink and alerting
    sensitive_fields: List[str] = field(default_factory=lambda: list(DEFAULT_SENSITIVE_FIELDS))
    audit_log_file: Optional[Path] = None
    event_history_size: int = 1000
    operational_error_history: int = 100
    enable_alerts: bool = False
    alert_webhook_url: Optional[str] = None
    alert_email_to: Optional[str] = None
    alert_email_from: str = "gatekeeper@localhost"
    alert_smtp_server: Optional[str] = None
    alert_smtp_port: int = 587
    alert_smtp_username: Optional[str] = None
    alert_smtp_password: Optional[str] = None
    alert_smtp_tls: bool = True
    alert_timeout: float = 5.0

    # Maintenance
    maintenance_interval: float = 3600.0  # 1 hour

    # Crypto
    master_key_env_var: str = "GATEKEEPER_MASTER_KEY"
    signing_key_env_var: str = "GATEKEEPER_SIGNING_KEY"
    mask_two_char_names: bool = False

    @classmethod
    def from_environment(cls) -> "SecurityConfig":
        """Create security config from environment variables.

        Returns:
            Security configuration loaded from environment
        """
        config = cls()

        config.enable_threat_detection = _get_env_bool("GATEKEEPER_ENABLE_THREAT_DETECTION", config.enable_threat_detection)
        config.brute_force_threshold = _get_env_int("GATEKEEPER_BRUTE_FORCE_THRESHOLD", config.brute_force_threshold)
        config.brute_force_window = _get_env_float("GATEKEEPER_BRUTE_FORCE_WINDOW", config.brute_force_window)
        config.scan_endpoint_threshold = _get_env_int("GATEKEEPER_SCAN_ENDPOINT_THRESHOLD", config.scan_endpoint_threshold)
        config.scan_request_threshold = _get_env_int("GATEKEEPER_SCAN_REQUEST_THRESHOLD", config.scan_request_threshold)
        config.high_frequency_threshold = _get_env_int("GATEKEEPER_HIGH_FREQUENCY_THRESHOLD", config.high_frequency_threshold)

        config.enable_rate_limiting = _get_env_bool("GATEKEEPER_ENABLE_RATE_LIMITING", config.enable_rate_limiting)

        # Admission
        config.enable_ip_whitelist = _get_env_bool("GATEKEEPER_ENABLE_IP_WHITELIST", config.enable_ip_whitelist)
        config.ip_whitelist = _get_env_list("GATEKEEPER_IP_WHITELIST", config.ip_whitelist)
        config.max_content_length = _get_env_int("GATEKEEPER_MAX_CONTENT_LENGTH", config.max_content_length)
        config.trust_proxy = _get_env_bool("GATEKEEPER_TRUST_PROXY", config.trust_proxy)

        config.admin_api_keys = _get_env_list("GATEKEEPER_ADMIN_API_KEYS", config.admin_api_keys)
        config.sensitive_fields = _get_env_list("GATEKEEPER_SENSITIVE_FIELDS", config.sensitive_fields)

        audit_log_file = os.environ.get("GATEKEEPER_AUDIT_LOG_FILE")
        if audit_log_file:
            config.audit_log_file = Path(audit_log_file)

        # Alerting
        config.enable_alerts = _get_env_bool("GATEKEEPER_ENABLE_ALERTS", config.enable_alerts)
        config.alert_webhook_url = os.environ.get("GATEKEEPER_ALERT_WEBHOOK_URL", config.alert_webhook_url)
        config.alert_email_to = os.environ.get("GATEKEEPER_ALERT_EMAIL_TO", config.alert_email_to)
        config.alert_email_from = os.environ.get("GATEKEEPER_ALERT_EMAIL_FROM", config.alert_email_from)
        config.alert_smtp_server = os.environ.get("GATEKEEPER_ALERT_SMTP_SERVER", config.alert_smtp_server)
        config.alert_smtp_port = _get_env_int("GATEKEEPER_ALERT_SMTP_PORT", config.alert_smtp_port)
        config.alert_smtp_username = os.environ.get("GATEKEEPER_ALERT_SMTP_USERNAME", config.alert_smtp_username)
        config.alert_smtp_password = os.environ.get("GATEKEEPER_ALERT_SMTP_PASSWORD", config.alert_smtp_password)
        config.alert_smtp_tls = _get_env_bool("GATEKEEPER_ALERT_SMTP_TLS", config.alert_smtp_tls)
        config.alert_timeout = _get_env_float("GATEKEEPER_ALERT_TIMEOUT", config.alert_timeout)

        config.maintenance_interval = _get_env_float("GATEKEEPER_MAINTENANCE_INTERVAL", config.maintenance_interval)
        config.mask_two_char_names = _get_env_bool("GATEKEEPER_MASK_TWO_CHAR_NAMES", config.mask_two_char_names)

        config.enable_api_key_auth = _get_env_bool("GATEKEEPER_ENABLE_API_KEY_AUTH", config.enable_api_key_auth)
        config.api_key_protected_prefixes = _get_env_list(
            "GATEKEEPER_API_KEY_PROTECTED_PREFIXES", config.api_key_protected_prefixes
        )
        config.enable_csrf_protection = _get_env_bool("GATEKEEPER_ENABLE_CSRF_PROTECTION", config.enable_csrf_protection)
        config.enable_security_headers = _get_env_bool(
            "GATEKEEPER_ENABLE_SECURITY_HEADERS", config.enable_security_headers
        )
        config.hsts_max_age = _get_env_int("GATEKEEPER_HSTS_MAX_AGE", config.hsts_max_age)

        logger.info("Security configuration loaded from environment")
        return config

    @classmethod
    def from_file(cls, config_file: Path) -> "SecurityConfig":
        """Load security config from a JSON file.

        Args:
            config_file: Path to configuration file

        Returns:
            Security configuration
        """
        try:
            with open(config_file) as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(
                "Failed to load security config from file",
                extra={"config_file": str(config_file), "error": str(e)},
            )
            raise

        config = cls()
        for key, value in config_data.items():
            if not hasattr(config, key):
                logger.warning("Unknown security config key ignored", extra={"key": key})
                continue
            if key == "audit_log_file" and value:
                value = Path(value)
            setattr(config, key, value)

        logger.info("Security configuration loaded from file", extra={"config_file": str(config_file)})
        return config

    def to_file(self, config_file: Path) -> None:
        """Save security config to a JSON file.

        Args:
            config_file: Path to save configuration
        """
        config_data = {}
        for key, value in self.__dict__.items():
            config_data[key] = str(value) if isinstance(value, Path) else value

        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w") as f:
            json.dump(config_data, f, indent=2)

        logger.info("Security configuration saved to file", extra={"config_file": str(config_file)})

    def validate(self) -> List[str]:
        """Validate security configuration.

        Returns:
            List of validation errors
        """
        errors = []

        for name in (
            "brute_force_threshold",
            "scan_endpoint_threshold",
            "scan_request_threshold",
            "high_frequency_threshold",
            "max_content_length",
            "event_history_size",
            "operational_error_history",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        for name in (
            "brute_force_window",
            "activity_window",
            "high_frequency_window",
            "alert_timeout",
            "maintenance_interval",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        for severity in ThreatSeverity:
            duration = self.block_durations.get(severity.value)
            if duration is None:
                errors.append(f"block_durations missing severity: {severity.value}")
            elif duration <= 0:
                errors.append(f"block duration for {severity.value} must be positive")

        for tier_name, policy in self.rate_limit_policies.items():
            try:
                RateLimitTier(tier_name)
            except ValueError:
                errors.append(f"Unknown rate limit tier: {tier_name}")
                continue
            if policy.get("window", 0) <= 0 or policy.get("max_requests", 0) <= 0:
                errors.append(f"Rate limit policy for {tier_name} must have positive window and max_requests")

        for entry in self.route_tiers:
            if len(entry) != 2:
                errors.append(f"Route tier entry must be [pattern, tier]: {entry}")
                continue
            pattern, tier_name = entry
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"Invalid route pattern {pattern!r}: {e}")
            try:
                RateLimitTier(tier_name)
            except ValueError:
                errors.append(f"Unknown rate limit tier in route_tiers: {tier_name}")

        for category_name, expressions in self.detector_patterns.items():
            try:
                SecurityEventType(category_name)
            except ValueError:
                errors.append(f"Unknown detector category: {category_name}")
                continue
            for expression in expressions:
                try:
                    re.compile(expression)
                except re.error as e:
                    errors.append(f"Invalid detector pattern {expression!r}: {e}")

        if self.enable_ip_whitelist and not self.ip_whitelist:
            errors.append("IP whitelist enabled but empty; every client would be rejected")

        if self.enable_api_key_auth and not self.admin_api_keys:
            errors.append("API key auth enabled but no admin API keys configured")

        if self.hsts_max_age < 0:
            errors.append("hsts_max_age must not be negative")

        if self.enable_alerts and not (self.alert_webhook_url or self.alert_email_to):
            errors.append("Alerts enabled but no webhook URL or email recipient configured")

        if self.alert_email_to and not self.alert_smtp_server:
            errors.append("Alert email recipient configured without an SMTP server")

        if self.audit_log_file:
            try:
                self.audit_log_file.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create audit log directory: {e}")

        return errors

    def tier_policies(self) -> Dict[RateLimitTier, RateLimitPolicy]:
        """Configured policies keyed by tier."""
        return {
            RateLimitTier(name): RateLimitPolicy(
                window=float(policy["window"]),
                max_requests=int(policy["max_requests"]),
            )
            for name, policy in self.rate_limit_policies.items()
        }

    def route_tier_pairs(self) -> List[tuple]:
        return [(pattern, RateLimitTier(tier)) for pattern, tier in self.route_tiers]

    def block_duration_for(self, severity: ThreatSeverity) -> float:
        return float(self.block_durations.get(severity.value, self.block_durations[ThreatSeverity.HIGH.value]))


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean value from environment variable.

    Args:
        key: Environment variable key
        default: Default value

    Returns:
        Boolean value
    """
    value = os.environ.get(key)
    if value is None:
        return default

    return value.lower() in ("true", "1", "yes", "on", "enabled")


def _get_env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default

    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer value for environment variable", extra={"key": key, "value": value})
        return default


def _get_env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None:
        return default

    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid numeric value for environment variable", extra={"key": key, "value": value})
        return default


def _get_env_list(key: str, default: List[str]) -> List[str]:
    """Comma-separated environment variable as a list."""
    value = os.environ.get(key)
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]
