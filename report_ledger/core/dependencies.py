"""
Request context for report routes.

A request is identified by a bearer token and scoped by the
X-Organization-ID header (falling back to the token's org claim). The
caller must be a member of that organization; admins may revoke
signatures and sign on behalf of other members.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import OrganizationMember, User
from ..services.storage import ObjectStorage, get_object_storage
from .database import get_session
from .security import TokenPayload, decode_token

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"owner", "admin"})

bearer_scheme = HTTPBearer(auto_error=False)

SessionDep = Annotated[AsyncSession, Depends(get_session)]


@dataclass(frozen=True)
class CurrentUser:
    """Authenticated caller and the organization the request acts in."""
    user: User
    organization_id: UUID | None = None
    org_role: str | None = None

    @property
    def id(self) -> UUID:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.org_role in ADMIN_ROLES


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _access_token(credentials: HTTPAuthorizationCredentials | None) -> TokenPayload:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")
    if payload.type != "access":
        raise _unauthorized("Invalid token type")
    return payload


def _requested_organization(header_value: str | None, token: TokenPayload) -> UUID | None:
    raw = header_value or token.org
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid organization ID format",
        )


async def _load_user(session: AsyncSession, subject: str) -> User:
    try:
        user_id = UUID(subject)
    except ValueError:
        raise _unauthorized("Invalid token subject")

    user = (
        await session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if user is None:
        raise _unauthorized("User not found")
    return user


async def _membership_role(session: AsyncSession, user: User, organization_id: UUID) -> str:
    role = (
        await session.execute(
            select(OrganizationMember.role).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.user_id == user.id,
            )
        )
    ).scalar_one_or_none()
    if role is None:
        logger.warning(f"User {user.id} is not a member of organization {organization_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a member of this organization",
        )
    return role


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    session: SessionDep,
    x_organization_id: Annotated[str | None, Header()] = None,
) -> CurrentUser:
    """Resolve the caller from an identity-provider token."""
    token = _access_token(credentials)
    user = await _load_user(session, token.sub)

    organization_id = _requested_organization(x_organization_id, token)
    if organization_id is None:
        return CurrentUser(user=user)

    role = await _membership_role(session, user, organization_id)
    return CurrentUser(user=user, organization_id=organization_id, org_role=role)


def require_org_context(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
) -> CurrentUser:
    if current_user.organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization context required. Set X-Organization-ID header.",
        )
    return current_user


def require_admin(
    current_user: Annotated[CurrentUser, Depends(require_org_context)],
) -> CurrentUser:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user


@lru_cache
def get_storage() -> ObjectStorage:
    """Artifact storage backend selected by settings."""
    return get_object_storage()


OrgContextDep = Annotated[CurrentUser, Depends(require_org_context)]
AdminDep = Annotated[CurrentUser, Depends(require_admin)]
StorageDep = Annotated[ObjectStorage, Depends(get_storage)]
