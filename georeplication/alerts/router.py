"""Event bus + alert router — replication events fanned out to Telegram, MC API and logs."""
from __future__ import annotations

import enum
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiohttp

from ..topology.config import ReplicationConfig

logger = logging.getLogger("georepl.alerts")

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"
RATE_LIMIT_S = 600  # 10 min

REPLICATION_LAG_ALERT = "replication_lag_alert"
FAILOVER_REQUIRED = "failover_required"
FAILOVER_COMPLETED = "failover_completed"
FAILOVER_FAILED = "failover_failed"
FAILOVER_ROLLED_BACK = "failover_rolled_back"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ReplicationEvent:
    name: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=_now_iso)


EventHandler = Callable[[ReplicationEvent], Awaitable[None]]


class EventBus:
    """In-process event sink. Keeps the last *history_size* events."""

    def __init__(self, history_size: int = 500) -> None:
        self._handlers: list[EventHandler] = []
        self._recent: deque[ReplicationEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    @property
    def recent(self) -> list[ReplicationEvent]:
        return list(self._recent)

    def named(self, name: str) -> list[ReplicationEvent]:
        return [e for e in self._recent if e.name == name]

    async def emit(self, name: str, payload: dict[str, Any]) -> ReplicationEvent:
        event = ReplicationEvent(name=name, payload=dict(payload))
        self._recent.append(event)
        logger.info("Event %s: %s", name, event.payload)
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", name)
        return event


# ---------------------------------------------------------------------------
# Alert routing
# ---------------------------------------------------------------------------

class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


EVENT_SEVERITY: dict[str, Severity] = {
    REPLICATION_LAG_ALERT: Severity.MEDIUM,
    FAILOVER_COMPLETED: Severity.HIGH,
    FAILOVER_REQUIRED: Severity.CRITICAL,
    FAILOVER_FAILED: Severity.CRITICAL,
    FAILOVER_ROLLED_BACK: Severity.CRITICAL,
}


@dataclass
class Alert:
    severity: Severity
    source_agent: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=_now_iso)


def _describe(event: ReplicationEvent) -> tuple[str, str]:
    p = event.payload
    if event.name == REPLICATION_LAG_ALERT:
        return "High Replication Lag", f"{p.get('stream_id')}: {p.get('lag_ms')}ms > {p.get('threshold')}ms"
    if event.name == FAILOVER_REQUIRED:
        target = p.get("recommended_target") or "none available"
        return "Failover Required", (
            f"Primary {p.get('primary_site')} is down ({p.get('reason')}). Recommended target: {target}"
        )
    if event.name == FAILOVER_COMPLETED:
        return "Failover Completed", (
            f"{p.get('old_primary')} → {p.get('new_primary')} in {p.get('duration_ms')}ms"
        )
    if event.name == FAILOVER_FAILED:
        return "Failover Failed", f"{p.get('failover_group')} at {p.get('stage')}: {p.get('error')}"
    if event.name == FAILOVER_ROLLED_BACK:
        return "Failover Rolled Back", (
            f"{p.get('old_primary')} restored as primary; manual verification of replication state required"
        )
    return event.name, str(p)


class AlertRouter:
    """Severity-based routing; subscribe an instance to an ``EventBus``."""

    def __init__(self, config: ReplicationConfig) -> None:
        self._config = config
        self._rate_cache: dict[tuple[str, str], float] = {}

    async def __call__(self, event: ReplicationEvent) -> None:
        await self.route(self.alert_from_event(event))

    def alert_from_event(self, event: ReplicationEvent) -> Alert:
        title, message = _describe(event)
        return Alert(
            severity=EVENT_SEVERITY.get(event.name, Severity.LOW),
            source_agent=self._config.agent_id,
            title=title,
            message=message,
            metadata={"event": event.name, "event_id": event.id, **event.payload},
        )

    # --- Rate limiting ---

    def _is_rate_limited(self, alert: Alert) -> bool:
        key = (alert.title, str(alert.metadata.get("stream_id") or alert.metadata.get("failover_group") or ""))
        last = self._rate_cache.get(key, 0.0)
        now = time.time()
        if now - last < RATE_LIMIT_S:
            return True
        self._rate_cache[key] = now
        return False

    # --- Routing ---

    async def route(self, alert: Alert) -> None:
        logger.info("Alert [%s] %s: %s — %s", alert.severity.value, alert.source_agent, alert.title, alert.message)

        if alert.severity == Severity.CRITICAL:
            # Critical: immediate, bypass rate limit
            await self._send_telegram(alert)
            await self._send_mc_api(alert)
            return

        if alert.severity == Severity.LOW:
            return

        if self._is_rate_limited(alert):
            logger.info("Rate-limited: %s", alert.title)
            return

        if alert.severity == Severity.HIGH:
            await self._send_telegram(alert)
        await self._send_mc_api(alert)

    # --- Telegram ---

    async def _send_telegram(self, alert: Alert) -> None:
        if not self._config.telegram_bot_token or not self._config.telegram_chat_id:
            logger.warning("Telegram not configured — skipping alert %s", alert.title)
            return
        prefix = "🔴 CRITICAL" if alert.severity == Severity.CRITICAL else "⚠️"
        text = f"{prefix} [{alert.source_agent}] {alert.title}\n{alert.message}"
        url = TELEGRAM_API.format(token=self._config.telegram_bot_token)
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    url,
                    json={"chat_id": self._config.telegram_chat_id, "text": text},
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            logger.exception("Failed to send Telegram alert")

    # --- MC API ---

    async def _send_mc_api(self, alert: Alert) -> None:
        if not self._config.mc_api_url:
            return
        url = f"{self._config.mc_api_url.rstrip('/')}/alerts"
        payload = {
            "agent_id": self._config.agent_id,
            "level": alert.severity.value,
            "message": f"[{alert.source_agent}] {alert.title}: {alert.message}",
            "metadata": alert.metadata,
        }
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._config.mc_api_token}"},
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            logger.exception("Failed to send MC API alert")
