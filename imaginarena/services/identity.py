"""Профили пользователей поверх внешнего провайдера идентификации и проверка прав админа."""

import asyncio
import logging
import re
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.core.config import settings
from imaginarena.core.errors import Conflict, NotFound, Unauthorized, ValidationError
from imaginarena.models.user import USERNAME_MAX_LENGTH, USERNAME_MIN_LENGTH, User

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass
class ProfileLookup:
    user: User | None
    needs_profile: bool


def validate_username(username: str) -> str:
    value = (username or "").strip()
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters long"
        )
    if not USERNAME_RE.match(value):
        raise ValidationError("Username may contain only letters, digits, underscores and hyphens")
    return value


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise NotFound("User not found")
    return user


async def create_profile(db: AsyncSession, user_id: int, username: str) -> User:
    """Одноразовое создание профиля после входа через провайдера."""
    normalized = validate_username(username)
    existing = await db.scalar(select(User).where(User.id == user_id))
    if existing:
        raise Conflict("Profile already exists")

    taken = await db.scalar(select(User.id).where(User.username == normalized))
    if taken:
        raise Conflict("Username is already taken")

    user = User(id=user_id, username=normalized, is_admin=False, is_bot=False)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("Username is already taken") from exc
    logger.info("Created profile %s for user %s", normalized, user_id)
    return user


async def load_profile(db: AsyncSession, user_id: int, timeout: float | None = None) -> ProfileLookup:
    # Не ждем профиль бесконечно: по таймауту считаем, что профиль нужно создать.
    timeout = settings.profile_lookup_timeout if timeout is None else timeout
    try:
        user = await asyncio.wait_for(db.scalar(select(User).where(User.id == user_id)), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Profile lookup for user %s timed out after %ss", user_id, timeout)
        return ProfileLookup(user=None, needs_profile=True)
    return ProfileLookup(user=user, needs_profile=user is None)


async def require_admin(db: AsyncSession, actor_id: int) -> User:
    actor = await db.scalar(select(User).where(User.id == actor_id))
    if not actor or not actor.is_admin:
        raise Unauthorized("Admin access required")
    return actor


async def list_users(db: AsyncSession, actor_id: int) -> list[User]:
    await require_admin(db, actor_id)
    return list((await db.scalars(select(User).order_by(User.created_at.desc(), User.id.desc()))).all())


async def set_admin_flag(db: AsyncSession, actor_id: int, user_id: int, is_admin: bool) -> User:
    await require_admin(db, actor_id)
    user = await get_user(db, user_id)
    user.is_admin = is_admin
    await db.commit()
    logger.info("Admin %s set is_admin=%s for user %s", actor_id, is_admin, user_id)
    return user


async def delete_user(db: AsyncSession, actor_id: int, user_id: int) -> None:
    await require_admin(db, actor_id)
    if actor_id == user_id:
        raise ValidationError("Cannot delete your own account")
    user = await get_user(db, user_id)
    if user.is_admin:
        raise ValidationError("Cannot delete admin users. Remove admin privileges first.")
    await db.execute(delete(User).where(User.id == user_id))
    await db.commit()
    logger.info("Admin %s deleted user %s", actor_id, user_id)
