"""Parallel, best-effort push fan-out to a set of recipients."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from jpco_notify.notifications.contracts import (
  INVALID_TOKEN_CODES,
  NO_TOKEN_ERROR,
  TIMEOUT_ERROR,
  DeliveryAttempt,
  DeliveryOutcome,
  DispatchResult,
  FailedDelivery,
  FailureKind,
  HistoryStore,
  InvalidDeviceTokenError,
  InvalidRequest,
  NotificationMessage,
  PushEnvelope,
  PushProvider,
  SentDelivery,
  TokenStore,
  normalize_provider_code,
)
from jpco_notify.notifications.envelope import EnvelopeDefaults, build_envelope
from jpco_notify.notifications.token_repo import token_preview

logger = logging.getLogger(__name__)

RecipientOutcome = SentDelivery | FailedDelivery


def _validate_recipients(recipient_ids: Any) -> list[str]:
  # A bare string is iterable but is never a list of recipients.
  if isinstance(recipient_ids, str | bytes) or not isinstance(recipient_ids, Iterable):
    raise InvalidRequest("recipientIds required")

  recipients = list(recipient_ids)
  # Every id must be a non-empty string; duplicates are kept as given.
  if not recipients or not all(isinstance(recipient_id, str) and recipient_id for recipient_id in recipients):
    raise InvalidRequest("recipientIds required")

  return recipients


def _validate_message(title: Any, body: Any, data: Any) -> NotificationMessage:
  if not isinstance(title, str) or not isinstance(body, str) or not title or not body:
    raise InvalidRequest("title and body required")

  # Data is optional, but when present it must be a key/value mapping.
  if data is not None and not isinstance(data, Mapping):
    raise InvalidRequest("data must be an object")

  return NotificationMessage(title=title, body=body, data=data or {})


def _is_invalid_token(exc: BaseException) -> bool:
  if isinstance(exc, InvalidDeviceTokenError):
    return True
  # Providers may report the code bare or under the `messaging/` namespace.
  return normalize_provider_code(getattr(exc, "code", None)) in INVALID_TOKEN_CODES


def _error_text(exc: BaseException) -> str:
  return str(exc) or type(exc).__name__


class NotificationDispatcher:
  """Resolves device tokens, pushes to each concurrently and records one history entry per recipient.

  Recipients run as independent asyncio tasks. A failure in one task is folded
  into the result and never cancels its siblings. The only exception that
  escapes `dispatch` is `InvalidRequest`, raised before any I/O happens.
  """

  def __init__(
    self,
    *,
    token_store: TokenStore,
    push_provider: PushProvider,
    history_store: HistoryStore,
    envelope_defaults: EnvelopeDefaults | None = None,
    provider_timeout_seconds: float = 10.0,
    store_timeout_seconds: float = 5.0,
    batch_timeout_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._token_store = token_store
    self._push_provider = push_provider
    self._history_store = history_store
    self._envelope_defaults = envelope_defaults or EnvelopeDefaults()
    self._provider_timeout_seconds = provider_timeout_seconds
    self._store_timeout_seconds = store_timeout_seconds
    self._batch_timeout_seconds = batch_timeout_seconds
    self._clock = clock

  @property
  def token_store(self) -> TokenStore:
    return self._token_store

  @property
  def history_store(self) -> HistoryStore:
    return self._history_store

  async def dispatch(self, recipient_ids: Iterable[str], title: str, body: str, data: Mapping[str, Any] | None = None) -> DispatchResult:
    """Fan a message out to every recipient and return the aggregate outcome."""
    recipients = _validate_recipients(recipient_ids)
    message = _validate_message(title, body, data)

    # Build one envelope so every recipient shares the same notification id.
    started = self._clock()
    envelope = build_envelope(message, defaults=self._envelope_defaults)
    logger.info("Dispatch started notification_id=%s recipients=%d data_keys=%s", envelope.notification_id, len(recipients), sorted(message.data))

    # Recipient tasks whose history write has started; those writes outlive cancellation.
    history_started: set[asyncio.Task[RecipientOutcome]] = set()
    tasks = [asyncio.create_task(self._deliver_isolated(recipient_id, message, envelope, started, history_started)) for recipient_id in recipients]
    # Join with isolation; a failing task never cancels its siblings.
    try:
      _done, pending = await asyncio.wait(tasks, timeout=self._batch_timeout_seconds)
    # Propagate caller cancellation to every recipient task.
    except asyncio.CancelledError:
      for task in tasks:
        task.cancel()
      raise

    if pending:
      logger.warning("Batch timeout reached notification_id=%s unresolved=%d", envelope.notification_id, len(pending))
      for task in pending:
        task.cancel()
      await asyncio.gather(*pending, return_exceptions=True)

      # Cancelled recipients still get exactly one history record.
      timed_out = [recipient_id for recipient_id, task in zip(recipients, tasks, strict=True) if task in pending and task not in history_started]
      await asyncio.gather(*(self._append_history(self._attempt(recipient_id, message, DeliveryOutcome.FAILED, error_detail=TIMEOUT_ERROR)) for recipient_id in timed_out))

    # Collect in input order so results line up with the request.
    result = DispatchResult()
    for recipient_id, task in zip(recipients, tasks, strict=True):
      outcome = self._collect(recipient_id, task)
      if isinstance(outcome, SentDelivery):
        result.sent.append(outcome)
      else:
        result.errors.append(outcome)

    result.total_elapsed_ms = self._elapsed_ms(started)
    logger.info("Dispatch completed notification_id=%s in %dms (%d sent, %d errors)", envelope.notification_id, result.total_elapsed_ms, len(result.sent), len(result.errors))
    return result

  @staticmethod
  def _collect(recipient_id: str, task: asyncio.Task[RecipientOutcome]) -> RecipientOutcome:
    if task.cancelled():
      return FailedDelivery(recipient_id=recipient_id, error=TIMEOUT_ERROR, kind=FailureKind.TIMEOUT)

    exc = task.exception()
    if exc is not None:
      return FailedDelivery(recipient_id=recipient_id, error=_error_text(exc), kind=FailureKind.INTERNAL)

    return task.result()

  async def _deliver_isolated(self, recipient_id: str, message: NotificationMessage, envelope: PushEnvelope, started: float, history_started: set[asyncio.Task[RecipientOutcome]]) -> RecipientOutcome:
    try:
      return await self._deliver(recipient_id, message, envelope, started, history_started)
    except Exception as exc:  # noqa: BLE001
      logger.error("Unexpected failure delivering to recipient_id=%s: %s", recipient_id, exc, exc_info=True)
      return FailedDelivery(recipient_id=recipient_id, error=_error_text(exc), kind=FailureKind.INTERNAL)

  async def _deliver(self, recipient_id: str, message: NotificationMessage, envelope: PushEnvelope, started: float, history_started: set[asyncio.Task[RecipientOutcome]]) -> RecipientOutcome:
    # Pending -> token lookup must finish before anything is submitted.
    try:
      token = await asyncio.wait_for(self._token_store.get(recipient_id), timeout=self._store_timeout_seconds)
    except TimeoutError:
      history_started.add(asyncio.current_task())  # type: ignore[arg-type]
      return await self._fail_before_send(recipient_id, message, "Token lookup timed out", FailureKind.TIMEOUT)
    except Exception as exc:  # noqa: BLE001
      history_started.add(asyncio.current_task())  # type: ignore[arg-type]
      logger.error("Token lookup failed recipient_id=%s error=%s", recipient_id, exc)
      return await self._fail_before_send(recipient_id, message, _error_text(exc), FailureKind.STORE_FAILURE)

    # Every path below writes exactly one history record.
    history_started.add(asyncio.current_task())  # type: ignore[arg-type]
    if not token:
      logger.info("No FCM token for recipient_id=%s; recording skipped notification", recipient_id)
      await self._append_history(self._attempt(recipient_id, message, DeliveryOutcome.SKIPPED, error_detail=NO_TOKEN_ERROR))
      return FailedDelivery(recipient_id=recipient_id, error=NO_TOKEN_ERROR, kind=FailureKind.TOKEN_MISSING)

    # The history record is written alongside the send and is not rolled back if the send fails.
    attempt = self._attempt(recipient_id, message, DeliveryOutcome.SENT, token=token)
    send_result, _ = await asyncio.gather(self._submit(envelope, token), self._append_history(attempt), return_exceptions=True)

    if isinstance(send_result, BaseException):
      if not isinstance(send_result, Exception):
        raise send_result
      return await self._handle_send_failure(recipient_id, token, send_result)

    elapsed_ms = self._elapsed_ms(started)
    logger.info("FCM sent to recipient_id=%s in %dms message_id=%s", recipient_id, elapsed_ms, send_result)
    return SentDelivery(recipient_id=recipient_id, message_id=str(send_result), elapsed_ms=elapsed_ms)

  async def _submit(self, envelope: PushEnvelope, token: str) -> str:
    return await asyncio.wait_for(self._push_provider.send(envelope, token), timeout=self._provider_timeout_seconds)

  async def _handle_send_failure(self, recipient_id: str, token: str, exc: Exception) -> FailedDelivery:
    if isinstance(exc, TimeoutError):
      logger.warning("FCM send timed out recipient_id=%s token=%s", recipient_id, token_preview(token))
      return FailedDelivery(recipient_id=recipient_id, error="Push provider timed out", kind=FailureKind.TIMEOUT)

    logger.warning("FCM failed for recipient_id=%s code=%s error=%s", recipient_id, getattr(exc, "code", None), exc)
    # Permanently invalid tokens are removed so later lookups return absent.
    if _is_invalid_token(exc):
      await self._prune_token(recipient_id, token)

    return FailedDelivery(recipient_id=recipient_id, error=_error_text(exc), kind=FailureKind.PROVIDER_REJECTED)

  async def _prune_token(self, recipient_id: str, token: str) -> None:
    """Delete a token the provider reported as permanently invalid."""
    try:
      await asyncio.wait_for(self._token_store.delete(recipient_id), timeout=self._store_timeout_seconds)
      logger.info("Cleaned up expired token for recipient_id=%s token=%s", recipient_id, token_preview(token))
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed deleting invalid token recipient_id=%s error=%s", recipient_id, exc, exc_info=True)

  async def _fail_before_send(self, recipient_id: str, message: NotificationMessage, error: str, kind: FailureKind) -> FailedDelivery:
    await self._append_history(self._attempt(recipient_id, message, DeliveryOutcome.FAILED, error_detail=error))
    return FailedDelivery(recipient_id=recipient_id, error=error, kind=kind)

  @staticmethod
  def _attempt(recipient_id: str, message: NotificationMessage, outcome: DeliveryOutcome, *, token: str | None = None, error_detail: str | None = None) -> DeliveryAttempt:
    return DeliveryAttempt(recipient_id=recipient_id, title=message.title, body=message.body, data=message.data, outcome=outcome, token=token, error_detail=error_detail)

  def _append_history(self, attempt: DeliveryAttempt) -> asyncio.Future[None]:
    """Start a history write that keeps running if the recipient task is cancelled."""
    return asyncio.shield(self._write_history(attempt))

  async def _write_history(self, attempt: DeliveryAttempt) -> None:
    # Failures are logged and never change the delivery outcome.
    try:
      await asyncio.wait_for(self._history_store.append(attempt), timeout=self._store_timeout_seconds)
    except Exception as exc:  # noqa: BLE001
      logger.error("History write failed recipient_id=%s outcome=%s error=%s", attempt.recipient_id, attempt.outcome.value, exc)

  def _elapsed_ms(self, started: float) -> int:
    return int((self._clock() - started) * 1000)
