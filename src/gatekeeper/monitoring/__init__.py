"""
Monitoring module for Gatekeeper.

Provides fire-and-forget alert delivery for security events.
"""

from .alerts import AlertDispatcher, EmailChannel, LogChannel, WebhookChannel

__all__ = ["AlertDispatcher", "EmailChannel", "LogChannel", "WebhookChannel"]
