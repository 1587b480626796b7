"""Push notification delivery implementations."""

from __future__ import annotations

import logging
import uuid

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging
from starlette.concurrency import run_in_threadpool

from jpco_notify.notifications.contracts import InvalidDeviceTokenError, NotificationProviderError, PushEnvelope, PushProvider

logger = logging.getLogger(__name__)

UNREGISTERED_TOKEN_CODE = "messaging/registration-token-not-registered"
INVALID_TOKEN_CODE = "messaging/invalid-registration-token"


class FcmPushSender(PushProvider):
  """`firebase_admin.messaging` backed sender with invalid-token classification."""

  def __init__(self, *, app: object | None = None, dry_run: bool = False) -> None:
    self._app = app
    self._dry_run = dry_run

  async def send(self, envelope: PushEnvelope, token: str) -> str:
    """Submit a data-only message to FCM and return the provider message id."""
    message = build_fcm_message(envelope, token)
    try:
      # The Admin SDK is blocking, so run it off the event loop.
      return await run_in_threadpool(messaging.send, message, dry_run=self._dry_run, app=self._app)
    # Translate SDK errors so the dispatcher can decide whether to prune the token.
    except firebase_exceptions.FirebaseError as exc:
      raise classify_firebase_error(exc) from exc


class NullPushSender(PushProvider):
  """No-op push sender used when push notifications are disabled or unconfigured."""

  async def send(self, envelope: PushEnvelope, token: str) -> str:
    """Drop the notification while recording a debug log."""
    logger.debug("Push notifications disabled; dropping notification_id=%s", envelope.notification_id)
    return f"dropped-{uuid.uuid4().hex}"


def build_fcm_message(envelope: PushEnvelope, token: str) -> messaging.Message:
  """Map the envelope onto FCM's web push, Android and APNs configurations."""
  # Web and Android clients render from the data payload in the service worker.
  data = envelope.as_data()
  # High urgency with a TTL so browsers deliver promptly but drop stale pushes.
  webpush = messaging.WebpushConfig(headers={"Urgency": "high", "TTL": str(envelope.ttl_seconds)}, fcm_options=messaging.WebpushFCMOptions(link=envelope.url))
  # Android receives a click_action so tapping opens the target page.
  android = messaging.AndroidConfig(priority="high", data={"title": envelope.title, "body": envelope.body, "icon": envelope.icon, "click_action": envelope.url})
  # iOS requires a visible alert block.
  aps = messaging.Aps(alert=messaging.ApsAlert(title=envelope.title, body=envelope.body), sound="default", badge=1, mutable_content=True)
  apns = messaging.APNSConfig(headers={"apns-priority": "10", "apns-push-type": "alert"}, payload=messaging.APNSPayload(aps=aps, url=envelope.url, type=envelope.type, taskId=envelope.task_id))
  return messaging.Message(data=data, token=token, webpush=webpush, android=android, apns=apns)


def classify_firebase_error(exc: firebase_exceptions.FirebaseError) -> NotificationProviderError:
  """Translate an Admin SDK error into the provider error taxonomy."""
  message = str(exc) or type(exc).__name__

  if isinstance(exc, messaging.UnregisteredError):
    return InvalidDeviceTokenError(message, code=UNREGISTERED_TOKEN_CODE)

  # FCM reports malformed tokens as a generic INVALID_ARGUMENT.
  if isinstance(exc, firebase_exceptions.InvalidArgumentError) and "registration token" in message.lower():
    return InvalidDeviceTokenError(message, code=INVALID_TOKEN_CODE)

  # Everything else is a transient or account-level failure; keep the token.
  code = getattr(exc, "code", None)
  return NotificationProviderError(message, code=f"messaging/{str(code).lower().replace('_', '-')}" if code else None)
