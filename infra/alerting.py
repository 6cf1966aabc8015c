"""Alerting helpers for webhook notifications (circuit breaker halts, position divergences)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        normalized = (value or "").strip().upper()
        if normalized in cls.__members__:
            return cls[normalized]
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


@dataclass
class AlertRecord:
    """Last delivery of one alert fingerprint."""
    title: str
    first_sent: float  # time.monotonic()
    suppressed: int = 0


class AlertService:
    """
    Send notifications for critical trading events.

    Identical alerts (same severity, title and message) are suppressed for
    dedupe_seconds after the first delivery. In dry_run mode alerts are only
    logged, which also makes an enabled service usable without a webhook.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._history: Dict[str, AlertRecord] = {}

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        config = AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "warning")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Deliver an alert unless filtered or deduplicated.

        Returns:
            True if the alert was sent (or logged in dry_run)
        """
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        fingerprint = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = self._clock()
        record = self._history.get(fingerprint)
        if record is not None and now - record.first_sent < self._config.dedupe_seconds:
            record.suppressed += 1
            logger.debug(f"Alert deduped: {title} ({record.suppressed} suppressed)")
            return False

        self._history[fingerprint] = AlertRecord(title=title, first_sent=now)
        self._prune(now)
        self._send(severity, title, message, context)
        return True

    def _prune(self, now: float) -> None:
        expired = [
            fp for fp, record in self._history.items()
            if now - record.first_sent > self._config.dedupe_seconds
        ]
        for fp in expired:
            del self._history[fp]

    def _send(self, severity: AlertSeverity, title: str, message: str,
              context: Optional[Dict[str, Any]]) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}", message]
        if context:
            parts.append(f"context={json.dumps(context, sort_keys=True, default=str)}")
        return {"text": " | ".join(filter(None, parts))}


__all__ = ["AlertService", "AlertSeverity"]
