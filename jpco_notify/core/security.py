from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from jpco_notify.core.firebase import verify_id_token

security_scheme = HTTPBearer(auto_error=False)


class UserRole(StrEnum):
  ADMIN = "admin"
  MANAGER = "manager"
  EMPLOYEE = "employee"


@dataclass(frozen=True)
class AuthenticatedUser:
  """Identity resolved from a verified Firebase ID token."""

  uid: str
  email: str | None
  role: UserRole
  claims: dict[str, Any]


def _resolve_role(raw: Any) -> UserRole:
  """Map the `role` custom claim onto a known role; anything else is forbidden."""
  try:
    return UserRole(str(raw).strip().lower())
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions") from exc


async def get_current_user(token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)]) -> AuthenticatedUser:
  """Verify the Firebase ID token and resolve the caller's role."""
  if token is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})

  decoded_claims = await run_in_threadpool(verify_id_token, token.credentials)
  if not decoded_claims:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})

  uid = decoded_claims.get("uid")
  if not uid:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

  role = _resolve_role(decoded_claims.get("role"))
  return AuthenticatedUser(uid=str(uid), email=decoded_claims.get("email"), role=role, claims=decoded_claims)


def require_roles(*roles: UserRole):  # noqa: ANN201
  """Build a dependency that only admits callers holding one of `roles`."""
  allowed = frozenset(roles)

  async def _dependency(current_user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:  # noqa: B008
    if current_user.role not in allowed:
      raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only managers and admins can access this resource" if UserRole.EMPLOYEE not in allowed else "Insufficient permissions")
    return current_user

  return _dependency


require_dispatcher_role = require_roles(UserRole.ADMIN, UserRole.MANAGER)
require_any_role = require_roles(UserRole.ADMIN, UserRole.MANAGER, UserRole.EMPLOYEE)
