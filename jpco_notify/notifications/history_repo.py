"""Repository helpers for notification history and the user inbox."""

from __future__ import annotations

import datetime
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore import Client as FirestoreClient
from google.cloud.firestore_v1.base_query import FieldFilter
from starlette.concurrency import run_in_threadpool

from jpco_notify.core.firebase import get_firestore_client
from jpco_notify.notifications.contracts import DeliveryAttempt, HistoryStore, HistoryStoreError, utcnow

logger = logging.getLogger(__name__)

INBOX_LIMIT = 50
MEMORY_HISTORY_LIMIT = 1000


@dataclass(frozen=True)
class InboxNotification:
  """A history record shaped for the notification inbox."""

  id: str
  user_id: str
  title: str
  body: str
  read: bool
  created_at: datetime.datetime | None
  data: dict[str, Any] = field(default_factory=dict)

  @property
  def type(self) -> str:
    return str(self.data.get("type") or "general")

  @property
  def action_url(self) -> str:
    return str(self.data.get("url") or "/notifications")


def _inbox_from_document(document_id: str, payload: dict[str, Any]) -> InboxNotification:
  data = payload.get("data") or {}
  return InboxNotification(
    id=document_id,
    user_id=str(payload.get("userId") or ""),
    title=str(payload.get("title") or "Notification"),
    body=str(payload.get("body") or payload.get("message") or ""),
    read=bool(payload.get("read", False)),
    created_at=payload.get("createdAt"),
    data=dict(data) if isinstance(data, dict) else {},
  )


def _sort_newest_first(items: list[InboxNotification]) -> list[InboxNotification]:
  floor = datetime.datetime.min.replace(tzinfo=datetime.UTC)
  return sorted(items, key=lambda item: item.created_at or floor, reverse=True)


class FirestoreHistoryStore(HistoryStore):
  """Append delivery attempts to a Firestore collection and serve the inbox from it."""

  def __init__(self, *, collection: str = "notifications", client_factory: Callable[[], FirestoreClient | None] = get_firestore_client) -> None:
    self._collection = collection
    self._client_factory = client_factory

  def _client(self) -> FirestoreClient:
    client = self._client_factory()
    if client is None:
      raise HistoryStoreError("Firestore client is unavailable")
    return client

  def _collection_ref(self) -> Any:
    return self._client().collection(self._collection)

  async def append(self, record: DeliveryAttempt) -> None:
    """Insert an auto-id document for the attempt."""
    document = record.to_document()
    try:
      await run_in_threadpool(lambda: self._collection_ref().add(document))
    except HistoryStoreError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise HistoryStoreError(f"History append failed: {exc}") from exc

  async def list_for_user(self, user_id: str, *, limit: int = INBOX_LIMIT) -> list[InboxNotification]:
    """List the newest notifications for a user."""
    try:
      return await run_in_threadpool(self._list_ordered, user_id, limit)
    except google_exceptions.FailedPrecondition as exc:
      # The composite index may be missing; query unordered and sort locally.
      logger.warning("Ordered inbox query failed user_id=%s error=%s; falling back to unordered query", user_id, exc)
      return await run_in_threadpool(self._list_unordered, user_id, limit)

  def _list_ordered(self, user_id: str, limit: int) -> list[InboxNotification]:
    # Needs the composite (userId, createdAt) index.
    query = self._collection_ref().where(filter=FieldFilter("userId", "==", user_id)).order_by("createdAt", direction=firestore.Query.DESCENDING).limit(limit)
    return [_inbox_from_document(snapshot.id, snapshot.to_dict() or {}) for snapshot in query.stream()]

  def _list_unordered(self, user_id: str, limit: int) -> list[InboxNotification]:
    query = self._collection_ref().where(filter=FieldFilter("userId", "==", user_id)).limit(limit)
    return _sort_newest_first([_inbox_from_document(snapshot.id, snapshot.to_dict() or {}) for snapshot in query.stream()])

  async def get(self, notification_id: str) -> InboxNotification | None:
    """Load one notification, or None when it does not exist."""
    snapshot = await run_in_threadpool(lambda: self._collection_ref().document(notification_id).get())
    # Missing documents come back as snapshots with exists=False.
    if not snapshot.exists:
      return None
    return _inbox_from_document(snapshot.id, snapshot.to_dict() or {})

  async def mark_read(self, notification_id: str) -> None:
    """Flag a single notification as read."""
    try:
      await run_in_threadpool(lambda: self._collection_ref().document(notification_id).update({"read": True, "readAt": utcnow()}))
    # Firestore update() fails on missing documents; surface that as a store error.
    except google_exceptions.NotFound as exc:
      raise HistoryStoreError(f"Notification {notification_id} not found") from exc

  async def mark_all_read(self, user_id: str) -> int:
    """Flag every unread notification for a user as read and return the count."""
    return await run_in_threadpool(self._mark_all_read, user_id)

  def _mark_all_read(self, user_id: str) -> int:
    client = self._client()
    snapshots = list(client.collection(self._collection).where(filter=FieldFilter("userId", "==", user_id)).where(filter=FieldFilter("read", "==", False)).stream())
    if not snapshots:
      return 0

    # Commit all updates together.
    batch = client.batch()
    read_at = utcnow()
    for snapshot in snapshots:
      batch.update(snapshot.reference, {"read": True, "readAt": read_at})
    batch.commit()
    return len(snapshots)

  async def delete(self, notification_id: str) -> None:
    """Delete a notification from the inbox."""
    await run_in_threadpool(lambda: self._collection_ref().document(notification_id).delete())


class InMemoryHistoryStore(HistoryStore):
  """Process-local history used when Firestore is not configured.

  Intended for development and tests only. Both the inbox records and the raw
  attempt log are capped at `max_records`, dropping the oldest entries first.
  """

  def __init__(self, *, max_records: int = MEMORY_HISTORY_LIMIT) -> None:
    if max_records <= 0:
      raise ValueError("max_records must be positive")
    self._max_records = max_records
    self.records: dict[str, InboxNotification] = {}
    self.attempts: deque[DeliveryAttempt] = deque(maxlen=max_records)

  async def append(self, record: DeliveryAttempt) -> None:
    # Keep the raw attempt for inspection alongside the inbox-shaped record.
    self.attempts.append(record)
    document_id = uuid.uuid4().hex
    self.records[document_id] = _inbox_from_document(document_id, record.to_document())
    # Dicts keep insertion order, so the first keys are the oldest records.
    while len(self.records) > self._max_records:
      del self.records[next(iter(self.records))]

  async def get(self, notification_id: str) -> InboxNotification | None:
    return self.records.get(notification_id)

  async def list_for_user(self, user_id: str, *, limit: int = INBOX_LIMIT) -> list[InboxNotification]:
    return _sort_newest_first([item for item in self.records.values() if item.user_id == user_id])[:limit]

  async def mark_read(self, notification_id: str) -> None:
    item = self.records.get(notification_id)
    if item is None:
      raise HistoryStoreError(f"Notification {notification_id} not found")
    self.records[notification_id] = replace(item, read=True)

  async def mark_all_read(self, user_id: str) -> int:
    unread = [key for key, item in self.records.items() if item.user_id == user_id and not item.read]
    for key in unread:
      self.records[key] = replace(self.records[key], read=True)
    return len(unread)

  async def delete(self, notification_id: str) -> None:
    self.records.pop(notification_id, None)
