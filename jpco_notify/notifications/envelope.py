"""Construction of the push envelope shared by every recipient of a dispatch."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

from jpco_notify.notifications.contracts import NotificationMessage, PushEnvelope

# Keys synthesized into the envelope; caller data cannot override them.
_RESERVED_KEYS = frozenset({"title", "body", "icon", "badge", "url", "type", "taskId", "notificationId", "timestamp"})


@dataclass(frozen=True)
class EnvelopeDefaults:
  """Branding and routing defaults applied to every envelope."""

  icon: str = "/images/logo/logo-icon.svg"
  badge: str = "/images/logo/logo-icon.svg"
  url: str = "/notifications"
  type: str = "general"
  ttl_seconds: int = 86400


def build_envelope(message: NotificationMessage, *, defaults: EnvelopeDefaults, now_ms: int | None = None, notification_id: str | None = None) -> PushEnvelope:
  """Build the envelope for one dispatch from the message and configured defaults."""
  data = message.data
  # Use one timestamp for the whole dispatch so every device sees the same envelope.
  timestamp_ms = int(time.time() * 1000) if now_ms is None else now_ms
  # Pass through caller data that does not collide with synthesized keys.
  extra = {key: value for key, value in data.items() if key not in _RESERVED_KEYS}
  return PushEnvelope(
    title=message.title,
    body=message.body,
    icon=defaults.icon,
    badge=defaults.badge,
    url=data.get("url") or defaults.url,
    type=data.get("type") or defaults.type,
    task_id=data.get("taskId") or "",
    notification_id=notification_id or f"jpco-{uuid.uuid4().hex}",
    timestamp=str(timestamp_ms),
    ttl_seconds=defaults.ttl_seconds,
    extra=extra,
  )
