from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

bearer_scheme = HTTPBearer(auto_error=False)

JOB_SEEKER = "job-seeker"
RECRUITER = "recruiter"
ADMIN = "admin"
# internal callers such as schedulers and other backends
SERVICE = "service"

KNOWN_ROLES = frozenset({JOB_SEEKER, RECRUITER, ADMIN, SERVICE})

DEV_USER_ID = "dev-local"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_any(self, *roles: str) -> bool:
        return not self.roles.isdisjoint(roles)

    @property
    def is_privileged(self) -> bool:
        return self.has_any(ADMIN, SERVICE)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def context_from_claims(claims: dict) -> AuthContext:
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    raw_roles = claims.get("roles", [])
    if not isinstance(raw_roles, list):
        raise _unauthorized("token roles must be a list")
    # unknown roles are ignored rather than trusted
    roles = frozenset(str(role).strip() for role in raw_roles) & KNOWN_ROLES
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no known roles",
        )
    return AuthContext(user_id=subject.strip(), roles=roles)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthContext(user_id=DEV_USER_ID, roles=KNOWN_ROLES)

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("auth token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc
    return context_from_claims(claims)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = frozenset(required_roles)

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and not context.has_any(*required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
