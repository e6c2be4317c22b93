"""
Security module for Gatekeeper.

Provides threat detection, time-bounded blocking, tiered rate limiting,
security event auditing and cryptographic primitives.
"""

from .audit import EventSink, SecurityEvent, SecurityEventType, ThreatSeverity
from .blocklist import BlockEntry, BlockRegistry
from .config import SecurityConfig
from .crypto import CryptoManager, EncryptedPayload, SignedMessage
from .detectors import ActivityTracker, BruteForceDetector, DetectionResult, ThreatDetector, ThreatPattern
from .masking import MaskingPolicy, mask_sensitive_data
from .monitor import RequestState, SecurityDecision, SecurityMonitor, SecurityStats
from .ratelimit import RateLimitDecision, RateLimiter, RateLimitPolicy, RateLimitTier
from .request import RequestView
from .window import WindowCounter

__all__ = [
    "ActivityTracker",
    "BlockEntry",
    "BlockRegistry",
    "BruteForceDetector",
    "CryptoManager",
    "DetectionResult",
    "EncryptedPayload",
    "EventSink",
    "MaskingPolicy",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitTier",
    "RateLimiter",
    "RequestState",
    "RequestView",
    "SecurityConfig",
    "SecurityDecision",
    "SecurityEvent",
    "SecurityEventType",
    "SecurityMonitor",
    "SecurityStats",
    "SignedMessage",
    "ThreatDetector",
    "ThreatPattern",
    "ThreatSeverity",
    "WindowCounter",
    "mask_sensitive_data",
]
