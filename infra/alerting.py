"""Webhook alerts for session-halting and degraded-tick events."""

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
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class AlertService:
    """
    Post tick alerts to a webhook.

    Identical alerts (same severity/title/message) are suppressed for
    dedupe_seconds after the first delivery, so a session that keeps failing
    the same way does not page on every tick.
    """

    def __init__(self, config: AlertConfig, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._monotonic = monotonic
        self._enabled = bool(config.enabled and config.webhook_url)
        if config.enabled and not config.webhook_url:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
            self._enabled = False
        self._first_seen: Dict[str, float] = {}
        self.suppressed = 0

    @classmethod
    def from_env(cls, raw_config: Optional[Dict[str, Any]] = None) -> "AlertService":
        raw_config = raw_config or {}
        webhook_url = raw_config.get("webhook_url") or os.getenv(
            raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), ""
        )
        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", True)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "warning")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
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
        """Send an alert. Returns True when a delivery was attempted."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._monotonic()
        first = self._first_seen.get(fingerprint)
        if first is not None and now - first <= self._config.dedupe_seconds:
            self.suppressed += 1
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._first_seen[fingerprint] = now

        self._send(self._build_payload(severity, title, message, context), title)
        return True

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _send(self, payload: Dict[str, Any], title: str) -> None:
        if self._config.dry_run:
            logger.info("[ALERT] %s", payload["text"])
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned %s for '%s'", response.status, title)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
