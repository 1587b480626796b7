from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from jpco_notify.notifications.contracts import (
  NO_TOKEN_ERROR,
  DeliveryOutcome,
  FailedDelivery,
  FailureKind,
  InvalidDeviceTokenError,
  InvalidRequest,
  NotificationProviderError,
  PushEnvelope,
  SentDelivery,
)
from jpco_notify.notifications.dispatcher import NotificationDispatcher
from jpco_notify.notifications.history_repo import InMemoryHistoryStore
from jpco_notify.notifications.token_repo import InMemoryTokenStore


class _FakePushProvider:
  """Returns a message id or raises, keyed by token."""

  def __init__(self, responses: dict[str, object] | None = None) -> None:
    self.responses = dict(responses or {})
    self.calls: list[tuple[PushEnvelope, str]] = []

  async def send(self, envelope: PushEnvelope, token: str) -> str:
    self.calls.append((envelope, token))
    outcome = self.responses.get(token, f"msg-{token}")
    if isinstance(outcome, BaseException):
      raise outcome
    return str(outcome)


class _CodedError(Exception):
  def __init__(self, message: str, code: str) -> None:
    super().__init__(message)
    self.code = code


@pytest.fixture
def token_store():
  return InMemoryTokenStore()


@pytest.fixture
def history_store():
  return InMemoryHistoryStore()


@pytest.fixture
def push_provider():
  return _FakePushProvider()


@pytest.fixture
def dispatcher(token_store, history_store, push_provider):
  return NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store, provider_timeout_seconds=1.0, store_timeout_seconds=1.0)


@pytest.mark.anyio
async def test_dispatch_mixes_sent_and_missing_token(dispatcher, token_store, history_store, push_provider):
  await token_store.set("u1", "tok-1")
  push_provider.responses["tok-1"] = "m-1"

  result = await dispatcher.dispatch(["u1", "u2"], "Hi", "Test")

  assert [(item.recipient_id, item.message_id) for item in result.sent] == [("u1", "m-1")]
  assert result.errors == [FailedDelivery(recipient_id="u2", error=NO_TOKEN_ERROR, kind=FailureKind.TOKEN_MISSING)]
  assert result.accounted == 2

  outcomes = {attempt.recipient_id: attempt for attempt in history_store.attempts}
  assert outcomes["u1"].outcome == DeliveryOutcome.SENT
  assert outcomes["u1"].token == "tok-1"
  assert outcomes["u2"].outcome == DeliveryOutcome.SKIPPED
  assert outcomes["u2"].error_detail == NO_TOKEN_ERROR
  assert outcomes["u2"].token is None


@pytest.mark.anyio
async def test_dispatch_prunes_unregistered_token(dispatcher, token_store, push_provider):
  await token_store.set("u3", "expired-tok")
  push_provider.responses["expired-tok"] = InvalidDeviceTokenError("Requested entity was not found.", code="messaging/registration-token-not-registered")

  result = await dispatcher.dispatch(["u3"], "Hi", "Test")

  assert result.sent == []
  assert [item.recipient_id for item in result.errors] == ["u3"]
  assert result.errors[0].kind == FailureKind.PROVIDER_REJECTED
  assert result.errors[0].error == "Requested entity was not found."
  assert await token_store.get("u3") is None


@pytest.mark.anyio
async def test_dispatch_prunes_token_for_coded_provider_error(dispatcher, token_store, push_provider):
  await token_store.set("u4", "bad-tok")
  push_provider.responses["bad-tok"] = _CodedError("not a valid FCM registration token", code="messaging/invalid-registration-token")

  result = await dispatcher.dispatch(["u4"], "Hi", "Test")

  assert len(result.errors) == 1
  assert await token_store.get("u4") is None


@pytest.mark.anyio
@pytest.mark.parametrize("code", ["registration-token-not-registered", "invalid-registration-token", "messaging/registration-token-not-registered"])
async def test_dispatch_prunes_token_for_bare_or_namespaced_code(dispatcher, token_store, push_provider, code):
  await token_store.set("u3", "expired-tok")
  push_provider.responses["expired-tok"] = NotificationProviderError("gone", code=code)

  result = await dispatcher.dispatch(["u3"], "Hi", "Test")

  assert result.errors == [FailedDelivery(recipient_id="u3", error="gone", kind=FailureKind.PROVIDER_REJECTED)]
  assert await token_store.get("u3") is None


@pytest.mark.anyio
async def test_dispatch_keeps_token_on_transient_provider_error(dispatcher, token_store, history_store, push_provider):
  await token_store.set("u5", "tok-5")
  push_provider.responses["tok-5"] = NotificationProviderError("quota exceeded", code="messaging/quota-exceeded")

  result = await dispatcher.dispatch(["u5"], "Hi", "Test")

  assert result.errors == [FailedDelivery(recipient_id="u5", error="quota exceeded", kind=FailureKind.PROVIDER_REJECTED)]
  assert await token_store.get("u5") == "tok-5"
  # The history record written at submission time is not rolled back.
  assert [attempt.outcome for attempt in history_store.attempts] == [DeliveryOutcome.SENT]


@pytest.mark.anyio
async def test_dispatch_rejects_empty_recipients_before_any_io(mock_collaborators):
  token_store, push_provider, history_store = mock_collaborators
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store)

  with pytest.raises(InvalidRequest, match="recipientIds required"):
    await dispatcher.dispatch([], "Hi", "Test")

  assert token_store.get.await_count == 0
  assert push_provider.send.await_count == 0
  assert history_store.append.await_count == 0


@pytest.mark.anyio
@pytest.mark.parametrize(("title", "body"), [("", "Test"), ("Hi", ""), (None, "Test")])
async def test_dispatch_rejects_missing_title_or_body(mock_collaborators, title, body):
  token_store, push_provider, history_store = mock_collaborators
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store)

  with pytest.raises(InvalidRequest, match="title and body required"):
    await dispatcher.dispatch(["u1"], title, body)

  assert token_store.get.await_count == 0


@pytest.mark.anyio
async def test_dispatch_rejects_non_string_recipients(dispatcher):
  with pytest.raises(InvalidRequest):
    await dispatcher.dispatch(["u1", 42], "Hi", "Test")

  with pytest.raises(InvalidRequest):
    await dispatcher.dispatch("u1", "Hi", "Test")


@pytest.mark.anyio
async def test_history_failure_does_not_change_outcome(token_store, push_provider):
  await token_store.set("u1", "tok-1")
  history_store = AsyncMock()
  history_store.append.side_effect = RuntimeError("firestore unavailable")
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store)

  result = await dispatcher.dispatch(["u1", "u2"], "Hi", "Test")

  assert [item.recipient_id for item in result.sent] == ["u1"]
  assert [item.recipient_id for item in result.errors] == ["u2"]
  assert history_store.append.await_count == 2


@pytest.mark.anyio
async def test_token_lookup_failure_is_isolated(history_store, push_provider):
  token_store = InMemoryTokenStore()
  await token_store.set("ok", "tok-ok")
  original_get = token_store.get

  async def _flaky_get(recipient_id: str) -> str | None:
    if recipient_id == "broken":
      raise RuntimeError("lookup exploded")
    return await original_get(recipient_id)

  token_store.get = _flaky_get  # type: ignore[method-assign]
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store)

  result = await dispatcher.dispatch(["broken", "ok"], "Hi", "Test")

  assert [item.recipient_id for item in result.sent] == ["ok"]
  assert result.errors == [FailedDelivery(recipient_id="broken", error="lookup exploded", kind=FailureKind.STORE_FAILURE)]
  failed = [attempt for attempt in history_store.attempts if attempt.recipient_id == "broken"]
  assert failed[0].outcome == DeliveryOutcome.FAILED


@pytest.mark.anyio
async def test_failed_token_cleanup_is_folded_into_errors(history_store):
  token_store = AsyncMock()
  token_store.get.return_value = "expired"
  token_store.delete.side_effect = RuntimeError("delete failed")
  provider = _FakePushProvider({"expired": InvalidDeviceTokenError("gone", code="messaging/registration-token-not-registered")})
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=provider, history_store=history_store)

  result = await dispatcher.dispatch(["u1"], "Hi", "Test")

  assert result.errors[0].error == "gone"
  token_store.delete.assert_awaited_once_with("u1")


@pytest.mark.anyio
async def test_provider_timeout_does_not_block_siblings(token_store, history_store):
  await token_store.set("slow", "tok-slow")
  await token_store.set("fast", "tok-fast")

  class _SlowProvider:
    async def send(self, envelope, token):
      if token == "tok-slow":
        await asyncio.sleep(10)
      return f"msg-{token}"

  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=_SlowProvider(), history_store=history_store, provider_timeout_seconds=0.05)

  result = await dispatcher.dispatch(["slow", "fast"], "Hi", "Test")

  assert [item.recipient_id for item in result.sent] == ["fast"]
  assert result.errors == [FailedDelivery(recipient_id="slow", error="Push provider timed out", kind=FailureKind.TIMEOUT)]


@pytest.mark.anyio
async def test_batch_timeout_accounts_for_unresolved_recipients(history_store, push_provider):
  token_store = InMemoryTokenStore()
  await token_store.set("ready", "tok-ready")
  hang = asyncio.Event()
  original_get = token_store.get

  async def _hanging_get(recipient_id: str) -> str | None:
    if recipient_id == "stuck":
      await hang.wait()
    return await original_get(recipient_id)

  token_store.get = _hanging_get  # type: ignore[method-assign]
  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=push_provider, history_store=history_store, store_timeout_seconds=30, batch_timeout_seconds=0.1)

  result = await dispatcher.dispatch(["ready", "stuck"], "Hi", "Test")

  assert result.accounted == 2
  assert [item.recipient_id for item in result.sent] == ["ready"]
  assert result.errors == [FailedDelivery(recipient_id="stuck", error="Timeout", kind=FailureKind.TIMEOUT)]
  timed_out = [attempt for attempt in history_store.attempts if attempt.recipient_id == "stuck"]
  assert [(attempt.outcome, attempt.error_detail) for attempt in timed_out] == [(DeliveryOutcome.FAILED, "Timeout")]
  assert len(history_store.attempts) == 2


@pytest.mark.anyio
async def test_batch_timeout_during_send_keeps_single_history_record(token_store, history_store):
  await token_store.set("slow", "tok-slow")

  class _HangingProvider:
    async def send(self, envelope: PushEnvelope, token: str) -> str:
      await asyncio.Event().wait()
      return "never"

  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=_HangingProvider(), history_store=history_store, provider_timeout_seconds=30, batch_timeout_seconds=0.1)

  result = await dispatcher.dispatch(["slow"], "Hi", "Test")

  assert result.errors == [FailedDelivery(recipient_id="slow", error="Timeout", kind=FailureKind.TIMEOUT)]
  # The record written at submission time stands in for the timed-out recipient.
  assert [(attempt.outcome, attempt.token) for attempt in history_store.attempts] == [(DeliveryOutcome.SENT, "tok-slow")]


@pytest.mark.anyio
async def test_recipients_are_delivered_concurrently(token_store, history_store):
  await token_store.set("a", "tok-a")
  await token_store.set("b", "tok-b")
  both_in_flight = asyncio.Event()
  in_flight = {"count": 0}

  class _RendezvousProvider:
    async def send(self, envelope, token):
      in_flight["count"] += 1
      if in_flight["count"] == 2:
        both_in_flight.set()
      await both_in_flight.wait()
      return f"msg-{token}"

  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=_RendezvousProvider(), history_store=history_store, provider_timeout_seconds=1.0)

  result = await dispatcher.dispatch(["a", "b"], "Hi", "Test")

  assert len(result.sent) == 2


@pytest.mark.anyio
async def test_send_and_history_write_run_side_by_side(token_store):
  await token_store.set("u1", "tok-1")
  send_started = asyncio.Event()
  history_started = asyncio.Event()

  class _Provider:
    async def send(self, envelope, token):
      send_started.set()
      await history_started.wait()
      return "m-1"

  class _History:
    async def append(self, record):
      history_started.set()
      await send_started.wait()

  dispatcher = NotificationDispatcher(token_store=token_store, push_provider=_Provider(), history_store=_History(), provider_timeout_seconds=1.0, store_timeout_seconds=1.0)

  result = await dispatcher.dispatch(["u1"], "Hi", "Test")

  assert result.sent[0].message_id == "m-1"


@pytest.mark.anyio
async def test_elapsed_is_measured_from_dispatch_start(dispatcher, token_store):
  await token_store.set("u1", "tok-1")
  await token_store.set("u2", "tok-2")

  result = await dispatcher.dispatch(["u1", "u2"], "Hi", "Test")

  assert all(isinstance(item, SentDelivery) for item in result.sent)
  assert all(0 <= item.elapsed_ms <= result.total_elapsed_ms for item in result.sent)


@pytest.mark.anyio
async def test_same_envelope_is_fanned_out_to_every_token(dispatcher, token_store, push_provider):
  await token_store.set("u1", "tok-1")
  await token_store.set("u2", "tok-2")

  await dispatcher.dispatch(["u1", "u2"], "Shift updated", "Your roster changed", {"url": "/roster", "taskId": 17})

  first, second = (envelope for envelope, _token in push_provider.calls)
  assert first is second
  envelope = first
  assert envelope.url == "/roster"
  assert envelope.task_id == "17"
  assert sorted(token for _envelope, token in push_provider.calls) == ["tok-1", "tok-2"]


@pytest.mark.anyio
async def test_duplicate_recipients_are_each_accounted(dispatcher):
  result = await dispatcher.dispatch(["u1", "u1"], "Hi", "Test")

  assert result.accounted == 2
  assert [item.error for item in result.errors] == [NO_TOKEN_ERROR, NO_TOKEN_ERROR]


@pytest.fixture
def mock_collaborators():
  return AsyncMock(), AsyncMock(), AsyncMock()
