"""Routes for push dispatch, device token registration and the notification inbox."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from jpco_notify.api.deps import get_dispatcher, get_history_store, get_token_store
from jpco_notify.core.security import AuthenticatedUser, UserRole, require_any_role, require_dispatcher_role
from jpco_notify.notifications.contracts import DispatchResult, HistoryStoreError, NotificationError
from jpco_notify.notifications.dispatcher import NotificationDispatcher
from jpco_notify.notifications.history_repo import FirestoreHistoryStore, InboxNotification, InMemoryHistoryStore
from jpco_notify.notifications.token_repo import FirestoreTokenStore, InMemoryTokenStore, token_preview

logger = logging.getLogger(__name__)

router = APIRouter()

HistoryStoreDep = FirestoreHistoryStore | InMemoryHistoryStore
TokenStoreDep = FirestoreTokenStore | InMemoryTokenStore


class DispatchRequest(BaseModel):
  """Payload for fanning a notification out to a list of users."""

  # Presence and emptiness are validated by the dispatcher so they surface as 400s.
  user_ids: list[Any] | None = Field(default=None, alias="userIds")
  title: Any = None
  body: Any = None
  data: dict[str, Any] | None = None
  model_config = ConfigDict(populate_by_name=True)


class TokenRegistrationRequest(BaseModel):
  user_id: str | None = Field(default=None, alias="userId", max_length=256)
  token: str | None = Field(default=None, max_length=4096)
  platform: str = Field(default="web", max_length=32)
  model_config = ConfigDict(populate_by_name=True)


class TokenRemovalRequest(BaseModel):
  user_id: str | None = Field(default=None, alias="userId", max_length=256)
  model_config = ConfigDict(populate_by_name=True)


class InboxActionRequest(BaseModel):
  action: str | None = None
  notification_id: str | None = Field(default=None, alias="notificationId")
  user_id: str | None = Field(default=None, alias="userId")
  model_config = ConfigDict(populate_by_name=True)


def _ensure_can_access(current_user: AuthenticatedUser, user_id: str) -> None:
  """Employees may only act on their own tokens and inbox."""
  if current_user.role == UserRole.EMPLOYEE and current_user.uid != user_id:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")


def serialize_dispatch_result(result: DispatchResult) -> dict[str, Any]:
  """Render a dispatch result in the dashboard's response shape."""
  payload: dict[str, Any] = {
    "message": "Notifications processed",
    "totalTime": f"{result.total_elapsed_ms}ms",
    "sent": [{"userId": item.recipient_id, "messageId": item.message_id, "deliveryTime": f"{item.elapsed_ms}ms"} for item in result.sent],
  }
  if result.errors:
    payload["errors"] = [{"userId": item.recipient_id, "error": item.error} for item in result.errors]
  return payload


def serialize_inbox_item(item: InboxNotification) -> dict[str, Any]:
  created_at = item.created_at.isoformat() if item.created_at is not None else None
  return {"id": item.id, "userId": item.user_id, "title": item.title, "body": item.body, "read": item.read, "createdAt": created_at, "data": item.data, "type": item.type, "actionUrl": item.action_url}


@router.post("/send")
async def send_notifications(payload: DispatchRequest, current_user: AuthenticatedUser = Depends(require_dispatcher_role), dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> dict[str, Any]:  # noqa: B008
  """Push a notification to each user and report per-user outcomes.

  Partial failure is reported inside `errors` with a 200 status; only malformed
  requests produce a 400.
  """
  logger.info("Dispatch requested by uid=%s role=%s recipients=%s", current_user.uid, current_user.role.value, len(payload.user_ids or []))
  result = await dispatcher.dispatch(payload.user_ids or [], payload.title, payload.body, payload.data)
  return serialize_dispatch_result(result)


@router.post("/fcm-token")
async def save_fcm_token(payload: TokenRegistrationRequest, current_user: AuthenticatedUser = Depends(require_any_role), token_store: TokenStoreDep = Depends(get_token_store)) -> dict[str, str]:  # noqa: B008
  """Register or replace the caller's device token."""
  if not payload.user_id or not payload.token:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="userId and token are required")

  _ensure_can_access(current_user, payload.user_id)
  try:
    await token_store.set(payload.user_id, payload.token, platform=payload.platform)
  except NotificationError as exc:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save FCM token") from exc

  logger.info("FCM token saved for user_id=%s token=%s", payload.user_id, token_preview(payload.token))
  return {"message": "FCM token saved successfully"}


@router.delete("/fcm-token")
async def delete_fcm_token(payload: TokenRemovalRequest, current_user: AuthenticatedUser = Depends(require_any_role), token_store: TokenStoreDep = Depends(get_token_store)) -> dict[str, str]:  # noqa: B008
  """Remove a user's device token; removing an absent token succeeds."""
  if not payload.user_id:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="userId is required")

  _ensure_can_access(current_user, payload.user_id)
  try:
    await token_store.delete(payload.user_id)
  except NotificationError as exc:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete FCM token") from exc

  logger.info("FCM token deleted for user_id=%s", payload.user_id)
  return {"message": "FCM token deleted successfully"}


@router.get("/check-token", response_model=None)
async def check_fcm_token(user_id: str = Query(..., alias="userId", min_length=1), current_user: AuthenticatedUser = Depends(require_any_role), token_store: TokenStoreDep = Depends(get_token_store)) -> dict[str, Any] | JSONResponse:  # noqa: B008
  """Report whether a user has a device token registered."""
  _ensure_can_access(current_user, user_id)
  try:
    record = await token_store.get_record(user_id)
  except NotificationError as exc:
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to check FCM token") from exc

  if record is None:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"exists": False, "userId": user_id, "message": "No FCM token found for this user", "action": "User needs to enable notifications at /notifications page"})

  updated_at = record.updated_at.isoformat() if record.updated_at is not None else None
  return {
    "exists": True,
    "userId": user_id,
    "hasToken": True,
    "tokenLength": len(record.token),
    "tokenPreview": token_preview(record.token),
    "platform": record.platform,
    "updatedAt": updated_at,
    "message": "FCM token found - notifications should work",
    "status": "ready",
  }


@router.get("")
async def list_notifications(user_id: str = Query(..., alias="userId", min_length=1), current_user: AuthenticatedUser = Depends(require_any_role), history_store: HistoryStoreDep = Depends(get_history_store)) -> dict[str, Any]:  # noqa: B008
  """Return a user's newest notifications."""
  _ensure_can_access(current_user, user_id)
  items = await history_store.list_for_user(user_id)
  return {"notifications": [serialize_inbox_item(item) for item in items]}


@router.post("")
async def update_notifications(payload: InboxActionRequest, current_user: AuthenticatedUser = Depends(require_any_role), history_store: HistoryStoreDep = Depends(get_history_store)) -> dict[str, str]:  # noqa: B008
  """Mark one or all notifications as read, or delete one."""
  if payload.action == "markAsRead" and payload.notification_id:
    # Resolve the owner first so employees cannot touch another user's inbox.
    item = await history_store.get(payload.notification_id)
    if item is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    _ensure_can_access(current_user, item.user_id)
    try:
      await history_store.mark_read(payload.notification_id)
    except HistoryStoreError as exc:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found") from exc
    return {"message": "Marked as read"}

  if payload.action == "markAllAsRead" and payload.user_id:
    _ensure_can_access(current_user, payload.user_id)
    count = await history_store.mark_all_read(payload.user_id)
    return {"message": f"Marked {count} notifications as read"}

  if payload.action == "delete" and payload.notification_id:
    item = await history_store.get(payload.notification_id)
    # Deleting an absent notification is a no-op.
    if item is not None:
      _ensure_can_access(current_user, item.user_id)
      await history_store.delete(payload.notification_id)
    logger.info("Notification delete requested by uid=%s notification_id=%s existed=%s", current_user.uid, payload.notification_id, item is not None)
    return {"message": "Deleted"}

  raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")
