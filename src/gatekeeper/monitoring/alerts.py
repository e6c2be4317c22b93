"""
Alert dispatch for security events.

Delivery is fire and forget: ``AlertDispatcher.dispatch`` never blocks the
caller, each channel delivery runs under a short timeout, and failures are
logged and counted instead of propagated.
"""

import asyncio
import json
import smtplib
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Iterable, Protocol

import aiohttp

from ..security.audit import SecurityEvent, ThreatSeverity
from ..util.log import get_logger

logger = get_logger(__name__)

SEVERITY_COLORS = {
    ThreatSeverity.CRITICAL: "danger",
    ThreatSeverity.HIGH: "danger",
    ThreatSeverity.MEDIUM: "warning",
    ThreatSeverity.LOW: "warning",
}


class AlertChannel(Protocol):
    """A destination for security alerts."""

    name: str

    async def send(self, event: SecurityEvent) -> None: ...


def build_webhook_payload(event: SecurityEvent) -> dict[str, Any]:
    """Chat-style webhook body with one attachment per event."""
    data = event.to_dict()
    return {
        "text": f"Security alert: {event.event_type.value}",
        "attachments": [
            {
                "color": SEVERITY_COLORS.get(event.severity, "danger"),
                "fields": [
                    {"title": "Type", "value": data["type"], "short": True},
                    {"title": "Severity", "value": data["severity"], "short": True},
                    {"title": "IP", "value": data["ip"], "short": True},
                    {"title": "Time", "value": data["timestamp_iso"], "short": True},
                    {"title": "URL", "value": f"{data['method']} {data['url']}", "short": False},
                    {"title": "User-Agent", "value": data["userAgent"] or "-", "short": False},
                    {
                        "title": "Details",
                        "value": json.dumps(data["details"], default=str, ensure_ascii=False) if data["details"] else "-",
                        "short": False,
                    },
                ],
            }
        ],
    }


class LogChannel:
    """Writes alerts to the application log."""

    name = "log"

    async def send(self, event: SecurityEvent) -> None:
        logger.warning(
            f"SECURITY ALERT: {event.event_type.value}",
            extra={"event_id": event.event_id, "client_id": event.client_id, "path": event.path},
        )


class WebhookChannel:
    """Posts alerts to a webhook with aiohttp."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def send(self, event: SecurityEvent) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                self.url,
                json=build_webhook_payload(event),
                headers={"Content-Type": "application/json"},
            ) as response:
                response.raise_for_status()


class EmailChannel:
    """Sends alerts over SMTP from a worker thread."""

    name = "email"

    def __init__(
        self,
        smtp_server: str,
        smtp_port: int,
        sender: str,
        recipient: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 5.0,
    ):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.sender = sender
        self.recipient = recipient
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, event: SecurityEvent) -> MIMEMultipart:
        data = event.to_dict()
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = self.recipient
        msg["Subject"] = f"[SECURITY] {data['type']} from {data['ip']} - {data['severity'].upper()}"
        body = f"""
Event: {data['type']}
Severity: {data['severity']}
Client: {data['ip']}
Request: {data['method']} {data['url']}
User-Agent: {data['userAgent']}
Time: {data['timestamp_iso']}
Details: {data['details']}
"""
        msg.attach(MIMEText(body, "plain"))
        return msg

    def _send_sync(self, event: SecurityEvent) -> None:
        msg = self.build_message(event)
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.send_message(msg)

    async def send(self, event: SecurityEvent) -> None:
        await asyncio.to_thread(self._send_sync, event)


class AlertDispatcher:
    """Fans security events out to alert channels without blocking callers."""

    def __init__(
        self,
        channels: Iterable[AlertChannel] = (),
        timeout: float = 5.0,
        max_workers: int = 2,
    ):
        """Initialize alert dispatcher.

        Args:
            channels: Delivery channels
            timeout: Per-channel delivery timeout in seconds
            max_workers: Threads used when no event loop is running
        """
        self.channels = list(channels)
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert")
        self._tasks: set[asyncio.Task] = set()
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

        self.delivered = 0
        self.failed = 0

    @classmethod
    def from_config(cls, config) -> "AlertDispatcher":
        """Build channels from a ``SecurityConfig``."""
        channels: list[AlertChannel] = [LogChannel()]
        if config.alert_webhook_url:
            channels.append(WebhookChannel(config.alert_webhook_url, timeout=config.alert_timeout))
        if config.alert_email_to and config.alert_smtp_server:
            channels.append(
                EmailChannel(
                    smtp_server=config.alert_smtp_server,
                    smtp_port=config.alert_smtp_port,
                    sender=config.alert_email_from,
                    recipient=config.alert_email_to,
                    username=config.alert_smtp_username,
                    password=config.alert_smtp_password,
                    use_tls=config.alert_smtp_tls,
                    timeout=config.alert_timeout,
                )
            )
        return cls(channels, timeout=config.alert_timeout)

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels.append(channel)

    def dispatch(self, event: SecurityEvent) -> None:
        """Schedule delivery of ``event`` and return immediately."""
        if not self.channels:
            return
        if self._closed:
            logger.warning("Alert dispatcher closed; dropping alert", extra={"event_id": event.event_id})
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self._deliver(event))
            with self._lock:
                self._tasks.add(task)
            task.add_done_callback(self._task_done)
            return

        try:
            future = self._executor.submit(asyncio.run, self._deliver(event))
        except RuntimeError as e:
            logger.error("Failed to schedule alert delivery", extra={"event_id": event.event_id, "error": str(e)})
            return
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._future_done)

    def _task_done(self, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.discard(task)

    def _future_done(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    async def _deliver(self, event: SecurityEvent) -> None:
        for channel in self.channels:
            try:
                await asyncio.wait_for(channel.send(event), timeout=self.timeout)
                self.delivered += 1
            except asyncio.TimeoutError:
                self.failed += 1
                logger.error(
                    "Alert delivery timed out",
                    extra={"channel": channel.name, "event_id": event.event_id, "timeout": self.timeout},
                )
            except Exception as e:
                self.failed += 1
                logger.error(
                    "Alert delivery failed",
                    extra={"channel": channel.name, "event_id": event.event_id, "error": str(e)},
                )

    def pending(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._futures)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        with self._lock:
            tasks = list(self._tasks)
            futures = list(self._futures)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if futures:
            await asyncio.gather(*(asyncio.wrap_future(f) for f in futures), return_exceptions=True)

    def close(self) -> None:
        """Stop accepting alerts and wait for threaded deliveries."""
        self._closed = True
        self._executor.shutdown(wait=True)
