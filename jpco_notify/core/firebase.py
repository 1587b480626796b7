import logging
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials, firestore
from google.cloud.firestore import Client as FirestoreClient

from jpco_notify.config import Settings, get_settings

logger = logging.getLogger(__name__)


def is_firebase_configured() -> bool:
  """Report whether enough configuration exists to talk to Firebase."""
  return bool(get_settings().firebase_project_id)


def _build_credentials(settings: Settings) -> credentials.Base:
  # Fall back to Application Default Credentials when no service account file is given.
  if settings.firebase_service_account_json_path:
    return credentials.Certificate(settings.firebase_service_account_json_path)
  return credentials.ApplicationDefault()


def get_firebase_app() -> firebase_admin.App | None:
  """Return the default Firebase app, or None when it has not been initialized."""
  try:
    return firebase_admin.get_app()
  except ValueError:
    return None


def initialize_firebase(settings: Settings | None = None) -> firebase_admin.App | None:
  """Initialize the Firebase Admin SDK once per process and return the default app."""
  app = get_firebase_app()
  if app is not None:
    return app

  settings = settings or get_settings()
  if not settings.firebase_project_id:
    logger.warning("Firebase project id not set; push delivery and Firestore persistence are disabled.")
    return None

  try:
    app = firebase_admin.initialize_app(_build_credentials(settings), {"projectId": settings.firebase_project_id})
  except (ValueError, OSError) as e:
    logger.error("Failed to initialize Firebase Admin SDK project_id=%s: %s", settings.firebase_project_id, e)
    return None

  logger.info("Firebase Admin SDK initialized project_id=%s", settings.firebase_project_id)
  return app


def get_firestore_client() -> FirestoreClient | None:
  """Return a Firestore client bound to the default app, initializing it lazily."""
  app = initialize_firebase()
  if app is None:
    return None

  try:
    return firestore.client(app)
  except Exception as e:  # noqa: BLE001
    logger.error("Failed to get Firestore client: %s", e)
    return None


def verify_id_token(id_token: str) -> dict[str, Any] | None:
  """Verify a Firebase ID token and return its decoded claims, or None if it is not acceptable."""
  app = initialize_firebase()
  if app is None:
    logger.error("Cannot verify ID token: Firebase is not configured.")
    return None

  try:
    return auth.verify_id_token(id_token, app=app)
  except (auth.ExpiredIdTokenError, auth.RevokedIdTokenError) as e:
    logger.info("Rejected stale ID token: %s", e)
    return None
  except (auth.InvalidIdTokenError, ValueError) as e:
    logger.warning("Rejected invalid ID token: %s", e)
    return None
  except Exception as e:  # noqa: BLE001
    logger.error("Token verification failed: %s", e)
    return None
