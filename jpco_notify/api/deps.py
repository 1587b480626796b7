"""Shared FastAPI dependencies for the notification routes."""

from __future__ import annotations

from functools import lru_cache

from jpco_notify.config import get_settings
from jpco_notify.notifications.dispatcher import NotificationDispatcher
from jpco_notify.notifications.factory import build_notification_dispatcher
from jpco_notify.notifications.history_repo import FirestoreHistoryStore, InMemoryHistoryStore
from jpco_notify.notifications.token_repo import FirestoreTokenStore, InMemoryTokenStore


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
  """Build the process-wide dispatcher once."""
  return build_notification_dispatcher(get_settings())


def get_token_store() -> FirestoreTokenStore | InMemoryTokenStore:
  """Return the token store shared with the dispatcher."""
  return get_dispatcher().token_store  # type: ignore[return-value]


def get_history_store() -> FirestoreHistoryStore | InMemoryHistoryStore:
  """Return the history store shared with the dispatcher."""
  return get_dispatcher().history_store  # type: ignore[return-value]
