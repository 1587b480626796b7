from __future__ import annotations

from jpco_notify.notifications.contracts import NotificationMessage
from jpco_notify.notifications.envelope import EnvelopeDefaults, build_envelope


def test_build_envelope_applies_defaults():
  message = NotificationMessage(title="Leave approved", body="Enjoy your time off")

  envelope = build_envelope(message, defaults=EnvelopeDefaults(), now_ms=1700000000000, notification_id="jpco-fixed")

  assert envelope.url == "/notifications"
  assert envelope.type == "general"
  assert envelope.task_id == ""
  assert envelope.icon == "/images/logo/logo-icon.svg"
  assert envelope.timestamp == "1700000000000"
  assert envelope.as_data() == {
    "title": "Leave approved",
    "body": "Enjoy your time off",
    "icon": "/images/logo/logo-icon.svg",
    "badge": "/images/logo/logo-icon.svg",
    "url": "/notifications",
    "type": "general",
    "taskId": "",
    "notificationId": "jpco-fixed",
    "timestamp": "1700000000000",
  }


def test_build_envelope_keeps_caller_metadata_without_overriding_synthesized_fields():
  message = NotificationMessage(title="Task assigned", body="GST filing", data={"url": "/tasks/9", "type": "task", "taskId": "9", "title": "spoofed", "clientId": "c-1"})

  envelope = build_envelope(message, defaults=EnvelopeDefaults(icon="/icon.png", badge="/badge.png"))
  data = envelope.as_data()

  assert data["title"] == "Task assigned"
  assert data["url"] == "/tasks/9"
  assert data["type"] == "task"
  assert data["taskId"] == "9"
  assert data["clientId"] == "c-1"
  assert data["badge"] == "/badge.png"
  assert envelope.notification_id.startswith("jpco-")


def test_notification_message_coerces_data_values_to_strings():
  message = NotificationMessage(title="t", body="b", data={"count": 3, "flag": True, "missing": None})

  assert message.data == {"count": "3", "flag": "True", "missing": ""}
