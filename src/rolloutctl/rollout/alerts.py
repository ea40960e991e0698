"""Escalation alerts for conditions that need an operator."""

from typing import Any

import httpx

from rolloutctl.core.logging import StructuredLogger

logger = StructuredLogger(__name__)


class Alerter:
    """Send escalation messages to the log and, optionally, a Slack webhook."""

    def __init__(
        self,
        webhook_url: str | None = None,
        channel: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._webhook_url = webhook_url
        self._channel = channel
        self._timeout = timeout
        self._transport = transport
        self.sent: list[dict[str, Any]] = []

    def alert(self, subject: str, message: str, **context: Any) -> None:
        """Raise an alert. Delivery failures are logged, never raised."""
        logger.error(f"ALERT: {subject} - {message}", **context)
        entry = {"subject": subject, "message": message, "context": context}
        self.sent.append(entry)
        if len(self.sent) > 100:
            self.sent = self.sent[-100:]

        if not self._webhook_url:
            return

        lines = [f"*{subject}*", message]
        lines.extend(f"• {k}: {v}" for k, v in context.items())
        payload: dict[str, Any] = {"text": "\n".join(lines)}
        if self._channel:
            payload["channel"] = self._channel

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Alert delivery failed: {e}", subject=subject)
