"""
Identity Service - Bearer token verification and trusted user records.

Tokens only identify the caller (the `sub` claim). Roles always come from
the stored User row, re-read at the point of use.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from token_ledger.config import settings
from token_ledger.db.models import User
from token_ledger.exceptions import AuthenticationError, AuthorizationError
from token_ledger.models.api import UserRole
from token_ledger.observability.logging import get_logger

logger = get_logger(__name__)


class IdentityService:
    """Verifies identity-provider tokens and resolves them to User records."""

    def __init__(
        self,
        jwt_secret: str | None = None,
        algorithm: str | None = None,
        expire_hours: int | None = None,
    ) -> None:
        self.jwt_secret = jwt_secret if jwt_secret is not None else settings.auth_jwt_secret
        self.algorithm = algorithm or settings.auth_jwt_algorithm
        self.expire_hours = expire_hours or settings.auth_token_expire_hours

    def create_token(self, subject: str, email: str | None = None, name: str | None = None) -> str:
        """Issue a token for a subject (local development and tests)."""
        now = datetime.now(UTC)
        payload: dict[str, str | datetime] = {
            "sub": subject,
            "iat": now,
            "exp": now + timedelta(hours=self.expire_hours),
        }
        if email:
            payload["email"] = email
        if name:
            payload["name"] = name
        return jwt.encode(payload, self.jwt_secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict[str, str | int] | None:
        """Verify JWT token and return payload."""
        if not self.jwt_secret:
            logger.error("auth_jwt_secret_not_configured")
            return None
        try:
            payload: dict[str, str | int] = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"]},
            )
            return payload
        except jwt.ExpiredSignatureError:
            logger.warning("jwt_token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("jwt_token_invalid", error=str(e))
            return None

    async def get_or_create_user(
        self,
        db: AsyncSession,
        subject: str,
        email: str | None = None,
        name: str | None = None,
    ) -> User:
        """
        Resolve a subject to its User row, provisioning it on first sight.

        New users always start with the plain `user` role.
        """
        user = await self._find_by_subject(db, subject)
        if user is not None:
            if email and user.email != email:
                user.email = email
                await db.commit()
            return user

        user = User(auth_subject=subject, email=email, name=name, roles=[UserRole.USER.value])
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Race condition - user provisioned by a concurrent request
            await db.rollback()
            user = await self._find_by_subject(db, subject)
            if user is None:
                raise AuthenticationError("User provisioning failed")
            return user

        logger.info("user_provisioned", user_id=str(user.id), subject=subject)
        return user

    async def _find_by_subject(self, db: AsyncSession, subject: str) -> User | None:
        stmt = select(User).where(User.auth_subject == subject)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


async def require_roles(db: AsyncSession, actor_id: UUID, *roles: UserRole) -> User:
    """
    Re-read the caller's record and check role membership.

    Raises:
        AuthenticationError: No user record for actor_id
        AuthorizationError: Record holds none of the roles
    """
    stmt = select(User).where(User.id == actor_id).execution_options(populate_existing=True)
    result = await db.execute(stmt)
    actor = result.scalar_one_or_none()
    if actor is None:
        raise AuthenticationError("Caller has no user record")

    if not actor.has_any_role(*(role.value for role in roles)):
        logger.warning(
            "role_check_failed",
            actor_id=str(actor_id),
            required=[role.value for role in roles],
        )
        raise AuthorizationError(" or ".join(role.value for role in roles))
    return actor
