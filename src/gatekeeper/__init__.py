"""
Gatekeeper API Boundary Protection

Request-level threat detection, IP blocking and tiered rate limiting for
HTTP services, plus the cryptographic utilities used behind that boundary.
"""

__version__ = "0.1.0"
__author__ = "Gatekeeper Team"
__description__ = "API boundary protection - threat detection, blocking, rate limiting and crypto"

from .security.crypto import CryptoManager
from .security.monitor import SecurityMonitor

__all__ = ["CryptoManager", "SecurityMonitor"]
