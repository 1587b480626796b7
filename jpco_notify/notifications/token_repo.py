"""Repository helpers for FCM device token persistence."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from google.cloud.firestore import Client as FirestoreClient
from starlette.concurrency import run_in_threadpool

from jpco_notify.core.firebase import get_firestore_client
from jpco_notify.notifications.contracts import DeviceTokenRecord, TokenStore, TokenStoreError, utcnow

logger = logging.getLogger(__name__)


def token_preview(token: str) -> str:
  """Shorten a token for logs and diagnostics."""
  if len(token) <= 30:
    return f"{token[:6]}..."
  return f"{token[:20]}...{token[-10:]}"


class FirestoreTokenStore(TokenStore):
  """Persist one device token per recipient in a Firestore collection."""

  def __init__(self, *, collection: str = "fcmTokens", client_factory: Callable[[], FirestoreClient | None] = get_firestore_client) -> None:
    self._collection = collection
    self._client_factory = client_factory

  def _document(self, recipient_id: str) -> Any:
    # Fail as a store error when Firebase is not configured.
    client = self._client_factory()
    if client is None:
      raise TokenStoreError("Firestore client is unavailable")
    return client.collection(self._collection).document(recipient_id)

  async def get(self, recipient_id: str) -> str | None:
    """Return the recipient's current token, or None when absent."""
    record = await self.get_record(recipient_id)
    return record.token if record is not None else None

  async def get_record(self, recipient_id: str) -> DeviceTokenRecord | None:
    """Return the full token record for diagnostics."""
    try:
      snapshot = await run_in_threadpool(lambda: self._document(recipient_id).get())
    except TokenStoreError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise TokenStoreError(f"Token lookup failed: {exc}") from exc

    if not snapshot.exists:
      return None

    payload = snapshot.to_dict() or {}
    token = payload.get("token")
    # Treat empty token fields the same as a missing document.
    if not token:
      return None

    return DeviceTokenRecord(recipient_id=recipient_id, token=str(token), updated_at=payload.get("updatedAt"), platform=str(payload.get("platform") or "unknown"))

  async def set(self, recipient_id: str, token: str, *, platform: str = "web") -> None:
    """Upsert the token so the latest registration wins."""
    payload = {"token": token, "updatedAt": utcnow(), "platform": platform}
    # Merge so unrelated fields on the document survive re-registration.
    try:
      await run_in_threadpool(lambda: self._document(recipient_id).set(payload, merge=True))
    except TokenStoreError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise TokenStoreError(f"Token save failed: {exc}") from exc

  async def delete(self, recipient_id: str) -> None:
    """Delete the token document; Firestore deletes of missing documents succeed."""
    try:
      await run_in_threadpool(lambda: self._document(recipient_id).delete())
    except TokenStoreError:
      raise
    except Exception as exc:  # noqa: BLE001
      raise TokenStoreError(f"Token delete failed: {exc}") from exc


class InMemoryTokenStore(TokenStore):
  """Process-local token store used when Firestore is not configured."""

  def __init__(self, records: dict[str, DeviceTokenRecord] | None = None) -> None:
    self._records: dict[str, DeviceTokenRecord] = dict(records or {})

  async def get(self, recipient_id: str) -> str | None:
    record = await self.get_record(recipient_id)
    return record.token if record is not None else None

  async def get_record(self, recipient_id: str) -> DeviceTokenRecord | None:
    return self._records.get(recipient_id)

  async def set(self, recipient_id: str, token: str, *, platform: str = "web") -> None:
    # Last write wins, as with the Firestore store.
    self._records[recipient_id] = DeviceTokenRecord(recipient_id=recipient_id, token=token, updated_at=utcnow(), platform=platform)

  async def delete(self, recipient_id: str) -> None:
    self._records.pop(recipient_id, None)
