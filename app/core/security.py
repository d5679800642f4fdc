from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.core.firebase import verify_id_token
from app.notifications.contracts import SubscriberRole

security_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
  """Identity resolved from a verified Firebase ID token."""

  uid: str
  role: SubscriberRole
  group_id: str | None
  email: str | None = None

  @property
  def is_admin(self) -> bool:
    return self.role == SubscriberRole.ADMIN


def caller_from_claims(claims: dict[str, Any]) -> Caller | None:
  """Map token claims to a caller; ``groupId`` wins over the legacy ``shopId`` claim."""
  uid = claims.get("uid") or claims.get("sub")
  if not uid:
    return None

  raw_role = str(claims.get("role") or "").lower()
  role = SubscriberRole(raw_role) if raw_role in {item.value for item in SubscriberRole} else SubscriberRole.OTHER
  group_id = claims.get("groupId") or claims.get("shopId")
  email = claims.get("email")
  return Caller(uid=str(uid), role=role, group_id=str(group_id) if group_id else None, email=str(email) if email else None)


async def get_optional_caller(token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)]) -> Caller | None:
  """Resolve the caller when a valid bearer token is present, otherwise None."""
  if token is None:
    return None

  # firebase-admin verification is blocking (certificate fetch).
  decoded_claims = await run_in_threadpool(verify_id_token, token.credentials)
  if not decoded_claims:
    return None

  return caller_from_claims(decoded_claims)


async def get_current_caller(caller: Annotated[Caller | None, Depends(get_optional_caller)]) -> Caller:
  if caller is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})
  return caller


async def require_admin(caller: Annotated[Caller, Depends(get_current_caller)]) -> Caller:
  """Allow only admins that belong to a group."""
  if not caller.is_admin or not caller.group_id:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")
  return caller
