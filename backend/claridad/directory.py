"""Authoritative directory: the relational system of record for membership.

Every user row carries the back-reference (``neighborhood``, ``chat_id``) to
the neighborhood chat it belongs to. Writing here never touches the realtime
store; callers propagate membership themselves.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from . import identity
from .errors import InvalidMembership, NotFound, StoreUnavailable
from .models import User

logger = logging.getLogger(__name__)

ParticipantsLookup = Callable[[str], Awaitable[set[str] | None]]

@dataclass(frozen=True)
class Membership:
    neighborhood: str
    chat_id: str

@dataclass(frozen=True)
class PendingMember:
    user_id: int
    neighborhood: str
    chat_id: str | None

    @property
    def expected_chat_id(self) -> str:
        return identity.resolve(self.neighborhood)

def normalize_email(email: str) -> str:
    return email.strip().lower()

class AuthoritativeDirectory:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._sessions() as session:
                yield session
        except DBAPIError as exc:
            raise StoreUnavailable("directory") from exc

    async def create_user(self, email: str, display_name: str, *, created_at: datetime | None = None, **fields) -> User:
        user = User(email=email, display_name=display_name, **fields)
        if created_at is not None:
            user.created_at = created_at
        async with self._session() as db:
            db.add(user)
            await db.commit()
            await db.refresh(user)
        return user

    async def get_user(self, user_id: int) -> User | None:
        async with self._session() as db:
            return await db.get(User, user_id)

    async def get_users(self, user_ids: Iterable[str]) -> list[User]:
        """Active users among ``user_ids``, by name. Non-numeric ids such as ``system`` are skipped."""
        ids = {int(u) for u in user_ids if str(u).isdigit()}
        if not ids:
            return []
        async with self._session() as db:
            res = await db.execute(
                select(User)
                .where(User.id.in_(ids), User.is_active.is_(True))
                .order_by(User.display_name, User.id)
            )
            return list(res.scalars())

    async def get_membership(self, user_id: int) -> Membership | None:
        user = await self.get_user(user_id)
        if not user or not user.neighborhood or not user.chat_id:
            return None
        return Membership(neighborhood=user.neighborhood, chat_id=user.chat_id)

    async def set_membership(self, user_id: int, neighborhood: str) -> str:
        chat_id = identity.resolve(neighborhood)
        async with self._session() as db:
            user = await db.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            user.neighborhood = neighborhood.strip()
            user.chat_id = chat_id
            user.onboarded = True
            await db.commit()
        logger.info("user %s assigned to %s", user_id, chat_id)
        return chat_id

    async def update_chat_id(self, user_id: int, chat_id: str) -> None:
        async with self._session() as db:
            user = await db.get(User, user_id)
            if not user:
                raise NotFound(f"user {user_id} not found")
            if user.chat_id != chat_id:
                user.chat_id = chat_id
                await db.commit()

    async def deactivate_user(self, user_id: int) -> None:
        async with self._session() as db:
            user = await db.get(User, user_id)
            if user and (user.is_active or user.onboarded):
                user.is_active = False
                user.onboarded = False
                await db.commit()

    async def list_onboarded(self) -> list[User]:
        async with self._session() as db:
            res = await db.execute(
                select(User)
                .where(User.onboarded.is_(True), User.is_active.is_(True), User.neighborhood.is_not(None))
                .order_by(User.id)
            )
            return list(res.scalars())

    async def list_legacy_members(self) -> list[User]:
        return [u for u in await self.list_onboarded() if identity.is_legacy_id(u.chat_id)]

    async def list_members_pending_sync(self, participants_of: ParticipantsLookup) -> list[PendingMember]:
        """Members whose directory record disagrees with the realtime copy.

        A member is pending when its stored chat id is missing, legacy, not the
        id its neighborhood resolves to, or when the realtime chat does not list
        it as a participant.
        """
        pending: list[PendingMember] = []
        cache: dict[str, set[str] | None] = {}
        for user in await self.list_onboarded():
            entry = PendingMember(user_id=user.id, neighborhood=user.neighborhood, chat_id=user.chat_id)
            try:
                expected = entry.expected_chat_id
            except InvalidMembership:
                logger.warning("user %s has an unusable neighborhood %r", user.id, user.neighborhood)
                continue
            if user.chat_id != expected:
                pending.append(entry)
                continue
            if expected not in cache:
                cache[expected] = await participants_of(expected)
            participants = cache[expected]
            if participants is None or str(user.id) not in participants:
                pending.append(entry)
        return pending

    async def list_by_normalized_email(self) -> dict[str, list[User]]:
        async with self._session() as db:
            res = await db.execute(select(User).where(User.is_active.is_(True)).order_by(User.id))
            users = list(res.scalars())
        groups: dict[str, list[User]] = {}
        for user in users:
            if user.email:
                groups.setdefault(normalize_email(user.email), []).append(user)
        return groups

    async def notification_recipients(self, user_ids: Iterable[str], exclude: str | int | None = None) -> list[int]:
        ids = {int(u) for u in user_ids if str(u).isdigit() and str(u) != str(exclude)}
        if not ids:
            return []
        async with self._session() as db:
            res = await db.execute(
                select(User.id).where(
                    User.id.in_(ids),
                    User.notifications_enabled.is_(True),
                    User.is_active.is_(True),
                )
            )
            return sorted(res.scalars())
