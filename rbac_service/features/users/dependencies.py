"""
FastAPI dependencies for authentication.
"""
from typing import Annotated
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.engine import get_db
from rbac_service.features.hierarchy.scopes import Actor
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.features.users.auth import verify_jwt_token, actor_from_payload


security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Actor:
    """
    Get the acting user from the bearer token.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Verifies the signature and expiry
    3. Builds an Actor from the scope claims
    4. Fills hierarchy ids the token did not carry

    Usage:
        @router.get("/me/permissions")
        async def my_permissions(actor: Actor = Depends(get_current_actor)):
            ...
    """
    payload = verify_jwt_token(credentials.credentials)
    actor = actor_from_payload(payload)

    context = await HierarchyService(db).get_scope_context(actor.scope)
    return actor.with_context(context)


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
