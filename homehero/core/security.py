from typing import Any

from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt

from homehero.core.auth import Principal, Role, parse_role
from homehero.core.config import Settings, get_settings


async def get_optional_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal | None:
    """Resolve the caller from an upstream-issued bearer token, if one is present.

    Token issuance lives in the auth service; this side only verifies the
    signature and reads the subject and role claims. An invalid token is
    rejected outright rather than downgraded to anonymous.
    """
    cached = getattr(request.state, "principal", None)
    if isinstance(cached, Principal):
        return cached

    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.auth_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="token verification is not configured",
        )

    claims = _decode_bearer_token(token, settings=settings)
    principal = _principal_from_claims(claims)
    request.state.principal = principal
    return principal


async def get_principal(principal: Principal | None = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return principal


async def get_provider_principal(principal: Principal = Depends(get_principal)) -> Principal:
    try:
        principal.require_role(Role.PROVIDER)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only providers can use this endpoint") from exc
    return principal


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    try:
        principal.require_role(Role.ADMIN)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required") from exc
    return principal


def _decode_bearer_token(token: str, *, settings: Settings) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.auth_jwt_secret, algorithms=[settings.auth_jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token") from exc


def _principal_from_claims(claims: dict[str, Any]) -> Principal:
    raw_user_id = claims.get("userId", claims.get("sub"))
    try:
        user_id = int(raw_user_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token") from None
    if user_id <= 0:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    return Principal(
        user_id=user_id,
        role=parse_role(claims.get("role")),
        email_verified=bool(claims.get("emailVerified", False)),
    )
