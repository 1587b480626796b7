"""Contracts for push notification fan-out delivery."""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

NO_TOKEN_ERROR = "No FCM token"
TIMEOUT_ERROR = "Timeout"

# Provider codes that mean the device token will never work again, without the `messaging/` namespace.
INVALID_TOKEN_CODES = frozenset({"registration-token-not-registered", "invalid-registration-token"})


def normalize_provider_code(code: object) -> str | None:
  """Strip the `messaging/` namespace so bare and namespaced codes compare equal."""
  if not code:
    return None
  return str(code).strip().lower().removeprefix("messaging/")


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


class DeliveryOutcome(StrEnum):
  """Terminal state recorded for one recipient in a dispatch call."""

  SENT = "sent"
  SKIPPED = "skipped"
  FAILED = "failed"


class FailureKind(StrEnum):
  """Classification attached to each entry of `DispatchResult.errors`."""

  TOKEN_MISSING = "token_missing"
  PROVIDER_REJECTED = "provider_rejected"
  STORE_FAILURE = "store_failure"
  TIMEOUT = "timeout"
  INTERNAL = "internal"


@dataclass(frozen=True)
class NotificationMessage:
  """Title/body/data triple fanned out unchanged to every resolved token."""

  title: str
  body: str
  data: Mapping[str, str] = field(default_factory=dict)

  def __post_init__(self) -> None:
    # Push data payloads only accept string values.
    object.__setattr__(self, "data", {str(key): "" if value is None else str(value) for key, value in dict(self.data or {}).items()})


@dataclass(frozen=True)
class PushEnvelope:
  """Platform-neutral push payload submitted to a provider."""

  title: str
  body: str
  icon: str
  badge: str
  url: str
  type: str
  task_id: str
  notification_id: str
  timestamp: str
  ttl_seconds: int
  extra: Mapping[str, str] = field(default_factory=dict)

  def as_data(self) -> dict[str, str]:
    """Flatten the envelope into the string map carried as the data payload."""
    data = dict(self.extra)
    data.update(
      {"title": self.title, "body": self.body, "icon": self.icon, "badge": self.badge, "url": self.url, "type": self.type, "taskId": self.task_id, "notificationId": self.notification_id, "timestamp": self.timestamp}
    )
    return data


@dataclass(frozen=True)
class DeviceTokenRecord:
  """The single active device token registered for a recipient."""

  recipient_id: str
  token: str
  updated_at: datetime.datetime | None
  platform: str = "web"


@dataclass(frozen=True)
class DeliveryAttempt:
  """Append-only history entry for one recipient in one dispatch call."""

  recipient_id: str
  title: str
  body: str
  data: Mapping[str, str]
  outcome: DeliveryOutcome
  token: str | None = None
  provider_message_id: str | None = None
  error_detail: str | None = None
  created_at: datetime.datetime = field(default_factory=utcnow)

  def to_document(self) -> dict[str, Any]:
    """Serialize into the document layout read back by the inbox."""
    document: dict[str, Any] = {
      "userId": self.recipient_id,
      "title": self.title,
      "body": self.body,
      "data": dict(self.data),
      "read": False,
      "sent": self.outcome == DeliveryOutcome.SENT,
      "outcome": self.outcome.value,
      "createdAt": self.created_at,
    }
    # Only attempts that reached the provider carry token and send fields.
    if self.token is not None:
      document["fcmToken"] = self.token
      document["sentAt"] = self.created_at
      document["sentDirect"] = True
    if self.provider_message_id is not None:
      document["providerMessageId"] = self.provider_message_id
    if self.error_detail is not None:
      document["error"] = self.error_detail
    return document


@dataclass(frozen=True)
class SentDelivery:
  recipient_id: str
  message_id: str
  elapsed_ms: int


@dataclass(frozen=True)
class FailedDelivery:
  recipient_id: str
  error: str
  kind: FailureKind


@dataclass
class DispatchResult:
  """Aggregate outcome of one dispatch call, built fresh per call."""

  sent: list[SentDelivery] = field(default_factory=list)
  errors: list[FailedDelivery] = field(default_factory=list)
  total_elapsed_ms: int = 0

  @property
  def accounted(self) -> int:
    # Equals the number of recipients for every validated call.
    return len(self.sent) + len(self.errors)


class NotificationError(Exception):
  """Base class for all notification delivery failures."""


class InvalidRequest(NotificationError):
  """Raised when a dispatch call is malformed; nothing has been attempted."""


class NotificationProviderError(NotificationError):
  """Exception raised when the push provider rejects a delivery."""

  def __init__(self, message: str, *, code: str | None = None) -> None:
    super().__init__(message)
    self.code = code


class InvalidDeviceTokenError(NotificationProviderError):
  """Exception raised when the provider reports a token as invalid or unregistered."""


class TokenStoreError(NotificationError):
  """Exception raised when the token store cannot be read or written."""


class HistoryStoreError(NotificationError):
  """Exception raised when a history record cannot be appended."""


class TokenStore(Protocol):
  """Lookup and lifecycle contract for recipient device tokens."""

  async def get(self, recipient_id: str) -> str | None:
    """Return the recipient's current token, or None when absent."""

  async def set(self, recipient_id: str, token: str) -> None:
    """Register or overwrite the recipient's token."""

  async def delete(self, recipient_id: str) -> None:
    """Remove the recipient's token; absent records are not an error."""


class PushProvider(Protocol):
  """Delivery contract for submitting a push envelope to one device token."""

  async def send(self, envelope: PushEnvelope, token: str) -> str:
    """Deliver the envelope and return the provider message id."""


class HistoryStore(Protocol):
  """Append-only audit log of delivery attempts."""

  async def append(self, record: DeliveryAttempt) -> None:
    """Persist a single delivery attempt."""
