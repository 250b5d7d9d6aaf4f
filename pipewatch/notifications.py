# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - NOTIFICATION DISPATCHER
# =============================================================================
"""
Notification Dispatcher

Fans alerts out to notification channels. Every channel implements one
contract, ``send(alert) -> NotificationResult``; the dispatcher checks
enabled state, filters and rate limits, then sends to every eligible
channel concurrently and joins the results. A failing channel produces a
failed result and never stops the others.

Channels:
    - ConsoleChannel: structlog line per alert
    - LogFileChannel: JSONL file with rotation
    - WebhookChannel: JSON POST via requests
    - ChatWebhookChannel: chat-style {"text": ...} POST
    - EmailChannel: smtplib

Usage:
    dispatcher = NotificationDispatcher(clock=clock)
    dispatcher.register(ConsoleChannel("console"))
    dispatcher.register(create_channel("ops-hook", {"type": "webhook", "url": "https://..."}))
    results = dispatcher.dispatch(alert, ["console", "ops-hook"])
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import smtplib
import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

import requests
from prometheus_client import CollectorRegistry, Counter

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, SystemClock
from pipewatch.exceptions import TransientIOError, ValidationError
from pipewatch.logger import get_logger, mask_dict
from pipewatch.transport import create_session

if TYPE_CHECKING:
    from pipewatch.alerts import Alert
    from pipewatch.event_log import StructuredEventLog


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class NotificationResult:
    channel: str
    success: bool
    timestamp: datetime
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@dataclass
class ChannelFilter:
    """Only alerts matching every configured criterion reach the channel."""
    severities: Optional[Set[str]] = None
    tags: Optional[Set[str]] = None

    def matches(self, alert: "Alert", rule_tags: Iterable[str] = ()) -> bool:
        if self.severities and alert.severity.value not in self.severities:
            return False
        if self.tags and not self.tags.intersection(rule_tags):
            return False
        return True


class RateLimiter:
    """Sliding-window limit of max_alerts per window_seconds."""

    def __init__(self, max_alerts: int, window_seconds: float, clock: Optional[Clock] = None):
        if max_alerts <= 0 or window_seconds <= 0:
            raise ValidationError("Rate limit needs positive max_alerts and time window")
        self.max_alerts = max_alerts
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock or SystemClock()
        self._sent: Deque[datetime] = deque()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Consume a slot if one is free."""
        now = self.clock.now()
        with self._lock:
            while self._sent and now - self._sent[0] >= self.window:
                self._sent.popleft()
            if len(self._sent) >= self.max_alerts:
                return False
            self._sent.append(now)
            return True

    def remaining(self) -> int:
        now = self.clock.now()
        with self._lock:
            active = sum(1 for ts in self._sent if now - ts < self.window)
        return max(self.max_alerts - active, 0)


def format_alert_text(alert: "Alert") -> str:
    lines = [
        f"[{alert.severity.value.upper()}] {alert.message}",
        f"Value: {alert.value} | Threshold: {alert.threshold}",
        f"Time: {alert.created_at.isoformat()}",
    ]
    if alert.description:
        lines.insert(1, alert.description)
    return "\n".join(lines)


def alert_payload(alert: "Alert") -> Dict[str, Any]:
    return {
        "alert": {
            "id": alert.id,
            "rule_id": alert.rule_id,
            "severity": alert.severity.value,
            "status": alert.status.value,
            "message": alert.message,
            "description": alert.description,
            "value": alert.value,
            "threshold": alert.threshold,
            "timestamp": alert.created_at.isoformat(),
            "escalation_level": alert.escalation_level,
        }
    }


# =============================================================================
# CHANNELS
# =============================================================================

class NotificationChannel(ABC):
    """A destination for alert notifications."""

    channel_type = "base"

    def __init__(
        self,
        name: str,
        enabled: bool = True,
        filters: Optional[ChannelFilter] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.name = name
        self.enabled = enabled
        self.filters = filters
        self.rate_limiter = rate_limiter
        self.clock: Clock = SystemClock()

    @abstractmethod
    def send(self, alert: "Alert") -> NotificationResult:
        """Deliver one alert. May raise TransientIOError."""
        pass

    def _ok(self, alert: "Alert", **metadata: Any) -> NotificationResult:
        return NotificationResult(self.name, True, self.clock.now(),
                                  metadata={"alert_id": alert.id, **metadata})

    def close(self) -> None:
        pass


class ConsoleChannel(NotificationChannel):
    channel_type = "console"

    def __init__(self, name: str = "console", **kwargs: Any):
        super().__init__(name, **kwargs)
        self._log = get_logger("pipewatch.alerts.console")

    def send(self, alert: "Alert") -> NotificationResult:
        self._log.warning(
            f"ALERT [{alert.severity.value.upper()}] {alert.message}",
            alert_id=alert.id,
            value=alert.value,
            threshold=alert.threshold,
            escalation_level=alert.escalation_level,
        )
        return self._ok(alert)


class LogFileChannel(NotificationChannel):
    """Durable JSONL record of every alert notification."""

    channel_type = "log"

    def __init__(
        self,
        name: str = "log",
        path: str = "./logs/alerts.jsonl",
        max_bytes: int = 50 * 1024 * 1024,
        backup_count: int = 10,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.path = path
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._logger = logging.getLogger(f"pipewatch.alerts.file.{name}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler: Optional[logging.Handler] = None
        self._handler_lock = threading.Lock()

    def _ensure_handler(self) -> None:
        with self._handler_lock:
            if self._handler is not None:
                return
            try:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                handler = logging.handlers.RotatingFileHandler(
                    self.path,
                    maxBytes=self.max_bytes,
                    backupCount=self.backup_count,
                    encoding="utf-8",
                )
            except OSError as e:
                raise TransientIOError(f"Cannot open alert log {self.path}: {e}", target=self.path) from e
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)
            self._handler = handler

    def send(self, alert: "Alert") -> NotificationResult:
        self._ensure_handler()
        record = {"logged_at": self.clock.now().isoformat(), **alert_payload(alert)["alert"]}
        self._logger.info(json.dumps(record, default=str))
        self._handler.flush()
        return self._ok(alert, path=self.path)

    def close(self) -> None:
        with self._handler_lock:
            if self._handler is not None:
                self._logger.removeHandler(self._handler)
                self._handler.close()
                self._handler = None


class WebhookChannel(NotificationChannel):
    channel_type = "webhook"

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        if not url:
            raise ValidationError(f"Webhook channel {name} requires a url")
        self.url = url
        self.timeout = timeout
        self._session = session or create_session(headers=headers)

    def payload(self, alert: "Alert") -> Dict[str, Any]:
        return alert_payload(alert)

    def send(self, alert: "Alert") -> NotificationResult:
        try:
            response = self._session.post(self.url, json=self.payload(alert), timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientIOError(f"Webhook {self.name} failed: {e}", target=self.name) from e
        if response.status_code >= 300:
            raise TransientIOError(
                f"Webhook {self.name} returned {response.status_code}", target=self.name
            )
        return self._ok(alert, status_code=response.status_code)

    def close(self) -> None:
        self._session.close()


class ChatWebhookChannel(WebhookChannel):
    """Incoming-webhook style chat integration."""

    channel_type = "chat"

    def payload(self, alert: "Alert") -> Dict[str, Any]:
        return {"text": format_alert_text(alert)}


class EmailChannel(NotificationChannel):
    channel_type = "email"

    def __init__(
        self,
        name: str,
        smtp_server: str,
        smtp_port: int,
        from_address: str,
        to_addresses: List[str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        if not to_addresses:
            raise ValidationError(f"Email channel {name} requires at least one recipient")
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.from_address = from_address
        self.to_addresses = list(to_addresses)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, alert: "Alert") -> MIMEText:
        msg = MIMEText(format_alert_text(alert) + f"\n\nAlert ID: {alert.id}\nRule: {alert.rule_id}\n", "plain")
        msg["From"] = self.from_address
        msg["To"] = ", ".join(self.to_addresses)
        msg["Subject"] = f"[{alert.severity.value.upper()}] {alert.message}"
        return msg

    def send(self, alert: "Alert") -> NotificationResult:
        msg = self.build_message(alert)
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise TransientIOError(f"Email channel {self.name} failed: {e}", target=self.name) from e
        return self._ok(alert, recipients=len(self.to_addresses))


CHANNEL_TYPES = {
    "console": ConsoleChannel,
    "log": LogFileChannel,
    "webhook": WebhookChannel,
    "chat": ChatWebhookChannel,
    "email": EmailChannel,
}


def create_channel(name: str, config: Dict[str, Any], clock: Optional[Clock] = None) -> NotificationChannel:
    """
    Build a channel from a config mapping.

    Common keys: ``type``, ``enabled``, ``rate_limit`` {max_alerts,
    time_window}, ``filters`` {severities, tags}. Remaining keys are
    passed to the channel constructor.
    """
    options = dict(config or {})
    channel_type = options.pop("type", name)
    cls = CHANNEL_TYPES.get(channel_type)
    if cls is None:
        raise ValidationError(f"Unknown channel type for {name}: {channel_type}")

    filters = None
    raw_filters = options.pop("filters", None)
    if raw_filters:
        filters = ChannelFilter(
            severities=set(raw_filters["severities"]) if raw_filters.get("severities") else None,
            tags=set(raw_filters["tags"]) if raw_filters.get("tags") else None,
        )

    rate_limiter = None
    raw_limit = options.pop("rate_limit", None)
    if raw_limit:
        rate_limiter = RateLimiter(int(raw_limit["max_alerts"]), float(raw_limit["time_window"]), clock)

    try:
        channel = cls(name=name, filters=filters, rate_limiter=rate_limiter, **options)
    except TypeError as e:
        raise ValidationError(f"Invalid options for channel {name}: {mask_dict(options)}") from e
    if clock is not None:
        channel.clock = clock
    return channel


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """Concurrent, isolated fan-out of alerts to channels."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        max_workers: int = 4,
        event_log: Optional["StructuredEventLog"] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.clock = clock or SystemClock()
        self.event_log = event_log
        self.bus = bus
        self._channels: Dict[str, NotificationChannel] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="pipewatch-notify")
        self._notifications_total = Counter(
            "pipewatch_notifications", "Notification attempts", ["channel", "result"],
            registry=registry or CollectorRegistry(),
        )

    def register(self, channel: NotificationChannel) -> None:
        channel.clock = self.clock
        if channel.rate_limiter is not None:
            channel.rate_limiter.clock = self.clock
        with self._lock:
            self._channels[channel.name] = channel
        logger.info(f"Notification channel registered: {channel.name} ({channel.channel_type})")

    def unregister(self, name: str) -> Optional[NotificationChannel]:
        with self._lock:
            return self._channels.pop(name, None)

    def get(self, name: str) -> Optional[NotificationChannel]:
        with self._lock:
            return self._channels.get(name)

    def channels(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def dispatch(
        self,
        alert: "Alert",
        channel_names: Iterable[str],
        rule_tags: Iterable[str] = (),
    ) -> List[NotificationResult]:
        """
        Send to every eligible channel and wait for all of them.
        Ineligible channels (unknown, disabled, filtered out, rate limited)
        are skipped without a result.
        """
        rule_tags = list(rule_tags)
        eligible: List[NotificationChannel] = []
        seen: Set[str] = set()
        for name in channel_names:
            if name in seen:
                continue
            seen.add(name)
            channel = self.get(name)
            if channel is None:
                logger.debug(f"Skipping unknown channel {name}")
                continue
            if not channel.enabled:
                continue
            if channel.filters is not None and not channel.filters.matches(alert, rule_tags):
                continue
            if channel.rate_limiter is not None and not channel.rate_limiter.allow():
                logger.info(f"Channel {name} rate limited, skipping alert {alert.id}")
                continue
            eligible.append(channel)

        futures = [self._executor.submit(self._send_one, channel, alert) for channel in eligible]
        results = [future.result() for future in futures]

        if self.bus and results:
            self.bus.publish(DomainEventType.NOTIFICATIONS_SENT, alert_id=alert.id,
                             results=[r.to_dict() for r in results])
        return results

    def _send_one(self, channel: NotificationChannel, alert: "Alert") -> NotificationResult:
        try:
            result = channel.send(alert)
            if not isinstance(result, NotificationResult):
                result = NotificationResult(channel.name, True, self.clock.now(),
                                            metadata={"alert_id": alert.id})
        except Exception as e:
            result = NotificationResult(channel.name, False, self.clock.now(), error=str(e),
                                        metadata={"alert_id": alert.id})

        self._notifications_total.labels(
            channel=channel.name, result="success" if result.success else "failure"
        ).inc()
        if result.success:
            logger.info(f"Notification sent via {channel.name} for alert {alert.id}")
        else:
            logger.warning(f"Notification via {channel.name} failed for alert {alert.id}: {result.error}")
            if self.event_log:
                self.event_log.warn(
                    f"Notification failed on channel {channel.name}",
                    operation="notify",
                    tags=["notification-failure"],
                    metadata={"alert_id": alert.id, "channel": channel.name, "error": result.error},
                )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        with self._lock:
            channels = list(self._channels.values())
        for channel in channels:
            channel.close()


__all__ = [
    "NotificationResult",
    "ChannelFilter",
    "RateLimiter",
    "format_alert_text",
    "alert_payload",
    "NotificationChannel",
    "ConsoleChannel",
    "LogFileChannel",
    "WebhookChannel",
    "ChatWebhookChannel",
    "EmailChannel",
    "CHANNEL_TYPES",
    "create_channel",
    "NotificationDispatcher",
]
