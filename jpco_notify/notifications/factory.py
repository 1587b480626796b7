"""Factory helpers for the notification dispatcher."""

from __future__ import annotations

import logging

from jpco_notify.config import Settings
from jpco_notify.core.firebase import is_firebase_configured
from jpco_notify.notifications.contracts import PushProvider
from jpco_notify.notifications.dispatcher import NotificationDispatcher
from jpco_notify.notifications.envelope import EnvelopeDefaults
from jpco_notify.notifications.history_repo import FirestoreHistoryStore, InMemoryHistoryStore
from jpco_notify.notifications.push_sender import FcmPushSender, NullPushSender
from jpco_notify.notifications.token_repo import FirestoreTokenStore, InMemoryTokenStore

logger = logging.getLogger(__name__)


def build_notification_dispatcher(settings: Settings) -> NotificationDispatcher:
  """Construct a dispatcher based on environment configuration."""
  firebase_ready = is_firebase_configured()

  # Persist tokens and history in Firestore only when Firebase is configured.
  if firebase_ready:
    token_store: FirestoreTokenStore | InMemoryTokenStore = FirestoreTokenStore(collection=settings.token_collection)
    history_store: FirestoreHistoryStore | InMemoryHistoryStore = FirestoreHistoryStore(collection=settings.history_collection)
  else:
    logger.warning("Firebase not configured; using in-memory token and history stores.")
    token_store = InMemoryTokenStore()
    history_store = InMemoryHistoryStore()

  if settings.push_notifications_enabled and firebase_ready:
    push_provider: PushProvider = FcmPushSender()
  else:
    push_provider = NullPushSender()

  # Branding and routing defaults come from settings.
  defaults = EnvelopeDefaults(icon=settings.push_icon, badge=settings.push_badge, url=settings.push_default_url, ttl_seconds=settings.push_ttl_seconds)
  return NotificationDispatcher(
    token_store=token_store,
    push_provider=push_provider,
    history_store=history_store,
    envelope_defaults=defaults,
    provider_timeout_seconds=settings.provider_timeout_seconds,
    store_timeout_seconds=settings.store_timeout_seconds,
    batch_timeout_seconds=settings.batch_timeout_seconds,
  )
