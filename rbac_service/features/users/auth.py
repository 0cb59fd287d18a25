"""
Authentication utilities for bearer JWT verification.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import jwt
from fastapi import HTTPException, status

from rbac_service.core import config
from rbac_service.features.hierarchy.scopes import Actor, ScopeType


def verify_jwt_token(token: str) -> dict:
    """
    Verify a signed JWT and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload carrying the actor's id and scope claims

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def actor_from_payload(payload: dict) -> Actor:
    """
    Build the acting user from token claims.

    Required claims: sub, scopeType, scopeId.
    Optional claims: organizationId, clientId, companyId, departmentId.
    """
    try:
        return Actor(
            user_id=payload["sub"],
            scope_type=ScopeType(payload["scopeType"]),
            scope_id=payload["scopeId"],
            organization_id=payload.get("organizationId"),
            client_id=payload.get("clientId"),
            company_id=payload.get("companyId"),
            department_id=payload.get("departmentId"),
        )
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_access_token(
    user_id: str,
    scope_type: ScopeType,
    scope_id: str,
    expires_in: Optional[timedelta] = timedelta(hours=1),
    **context: Optional[str],
) -> str:
    """
    Issue a token for an actor. Used by tooling and tests.

    Usage:
        token = create_access_token("u-1", ScopeType.COMPANY, "co-1", organizationId="org-1")
    """
    payload = {
        "sub": user_id,
        "scopeType": ScopeType(scope_type).value,
        "scopeId": scope_id,
        **{key: value for key, value in context.items() if value is not None},
    }
    if expires_in is not None:
        payload["exp"] = datetime.now(timezone.utc) + expires_in
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
