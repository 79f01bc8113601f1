"""Bearer token verification and role checks for the HTTP routes."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from .models import Identity, Role
from .ratelimit import AttemptLimiter

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a bearer token cannot be turned into an :class:`Identity`."""


class TokenVerifier:
    """Decode HMAC-signed JWTs issued by the sign-in service."""

    def __init__(self, secret: str, *, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str) -> Identity:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            raise TokenError(str(exc)) from exc
        return identity_from_claims(claims)

    def issue(self, identity: Identity, *, extra_claims: Mapping[str, Any] | None = None) -> str:
        """Sign a token for ``identity`` with the verifier's secret."""

        claims: dict[str, Any] = {
            "sub": identity.id,
            "email": identity.email,
            "name": identity.name,
            "role": identity.role.value,
        }
        claims.update(extra_claims or {})
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)


def identity_from_claims(claims: Mapping[str, Any]) -> Identity:
    user_id = claims.get("id") or claims.get("userId") or claims.get("sub")
    if not user_id:
        raise TokenError("token is missing a subject")
    try:
        role = Role.parse(claims.get("role") or Role.EMPLOYEE.value)
    except ValueError as exc:
        raise TokenError(f"unknown role {claims.get('role')!r}") from exc
    return Identity(
        id=str(user_id),
        email=str(claims.get("email") or ""),
        name=str(claims.get("name") or ""),
        role=role,
    )


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def build_identity_dependency(
    verifier: TokenVerifier,
    limiter: AttemptLimiter | None = None,
) -> Callable[..., Callable[[Request], Identity]]:
    """Return ``require_identity(*roles)``, a factory of FastAPI dependencies."""

    def require_identity(*roles: Role | str) -> Callable[[Request], Identity]:
        allowed = frozenset(Role.parse(role) for role in roles)

        def dependency(request: Request) -> Identity:
            client = _client_key(request)
            if limiter is not None:
                retry_after = limiter.retry_after(client)
                if retry_after > 0:
                    raise HTTPException(
                        status_code=429,
                        detail={
                            "error": "Too many failed attempts. Please try again later.",
                            "code": "TOO_MANY_ATTEMPTS",
                        },
                        headers={"Retry-After": str(int(retry_after) + 1)},
                    )
            token = _bearer_token(request)
            if token is None:
                raise HTTPException(
                    status_code=401,
                    detail={"error": "Access denied. No token provided.", "code": "NO_TOKEN"},
                )
            try:
                identity = verifier.verify(token)
            except TokenError as exc:
                logger.info("auth.token.invalid client=%s error=%s", client, exc)
                if limiter is not None:
                    limiter.register_failure(client)
                raise HTTPException(
                    status_code=401,
                    detail={"error": "Invalid or expired token.", "code": "INVALID_TOKEN"},
                ) from exc
            if limiter is not None:
                limiter.reset(client)
            if allowed and identity.role not in allowed:
                logger.info("auth.forbidden user=%s role=%s", identity.id, identity.role.value)
                raise HTTPException(
                    status_code=403,
                    detail={"error": "Access denied. Insufficient permissions.", "code": "FORBIDDEN"},
                )
            request.state.identity = identity
            return identity

        return dependency

    return require_identity
