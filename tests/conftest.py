"""Test configuration for importing the application package."""

from __future__ import annotations

import os

# Settings are loaded at import time by `jpco_notify.main`.
os.environ.setdefault("JPCO_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ.setdefault("JPCO_ENV", "test")
os.environ.pop("FIREBASE_PROJECT_ID", None)

import pytest  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"
