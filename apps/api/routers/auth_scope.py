"""Authentication dependencies for tenant scoping."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
PRIVILEGED_ROLES = ("admin", "service")


@dataclass
class AuthContext:
    user_id: str
    tenant_id: Optional[str] = None
    role: str = "member"
    email: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


def ensure_tenant_scope(auth: AuthContext, supplied_tenant_id: Optional[str]) -> str:
    """Return the tenant to act on and reject cross-tenant attempts by members."""
    if auth.is_privileged:
        tenant_id = supplied_tenant_id or auth.tenant_id
        if not tenant_id:
            raise HTTPException(status_code=422, detail="tenant_id is required.")
        return tenant_id
    if supplied_tenant_id and supplied_tenant_id != auth.tenant_id:
        raise HTTPException(status_code=403, detail="tenant_id does not match authenticated session.")
    return str(auth.tenant_id)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated caller from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        tenant_id=str(payload.get("tenant_id", "")) or None,
        role=str(payload.get("role", "member")),
        email=str(payload.get("email", "")) or None,
    )


def require_role(*roles: str) -> Callable:
    """Return a dependency that only admits callers holding one of ``roles``."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(roles)}.")
        return auth

    return _dependency
