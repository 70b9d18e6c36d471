"""Repair drift between the authoritative directory and the realtime store.

Three passes, each safe to re-run at any point:

* ``migrate_legacy_ids`` moves members off ObjectId-style chat ids onto the
  neighborhood-derived ids, renaming or merging the realtime chats. The
  successor chat keeps the retired ids in ``legacyIds``, so a chat recreated
  later by a stray write to a retired id is folded forward on the next pass.
* ``resolve_duplicate_users`` keeps one record per normalized email.
* ``sync_memberships`` puts every onboarded member into the participant set
  of the chat its neighborhood resolves to.

The realtime side is always written first and the directory last, so an
interrupted pass is finished by the next one.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from starlette.concurrency import run_in_threadpool
from . import identity
from .directory import AuthoritativeDirectory
from .errors import ClaridadError
from .models import User
from .realtime import RealtimeStore, utcnow

logger = logging.getLogger(__name__)

ROLE_RANK = {"admin": 0}

@dataclass
class Report:
    changed: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

def canonical_user(users: list[User]) -> User:
    """Admins first, then the most recently created record."""
    def rank(user: User):
        created = user.created_at.timestamp() if user.created_at else float("-inf")
        return (ROLE_RANK.get(user.role, 1), -created, -user.id)
    return sorted(users, key=rank)[0]

async def join_neighborhood(directory: AuthoritativeDirectory, store: RealtimeStore, user_id: int, neighborhood: str) -> str:
    """Assign a user to a neighborhood and mirror it into the realtime store.

    A realtime failure after the directory write is left for
    ``sync_memberships`` to repair.
    """
    previous = await directory.get_membership(user_id)
    chat_id = await directory.set_membership(user_id, neighborhood)
    created = await run_in_threadpool(store.add_participants, chat_id, [str(user_id)], neighborhood.strip())
    if created:
        logger.info("first member %s opened %s", user_id, chat_id)
    if previous and previous.chat_id != chat_id:
        await run_in_threadpool(store.remove_participants, previous.chat_id, [str(user_id)])
    return chat_id

class ReconciliationCoordinator:
    def __init__(self, directory: AuthoritativeDirectory, store: RealtimeStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.directory = directory
        self.store = store
        self.clock = clock

    async def migrate_legacy_ids(self) -> Report:
        report = Report()
        for user in await self.directory.list_legacy_members():
            legacy_id = user.chat_id
            try:
                new_id = identity.resolve(user.neighborhood)
                action = await run_in_threadpool(self._move_chat, legacy_id, new_id, str(user.id), user.neighborhood)
                await self.directory.update_chat_id(user.id, new_id)
            except ClaridadError as exc:
                logger.warning("migration of user %s from %s failed: %s", user.id, legacy_id, exc.message)
                report.errors.append({"userId": user.id, "chatId": legacy_id, "error": exc.message})
                continue
            logger.info("user %s migrated %s -> %s (%s)", user.id, legacy_id, new_id, action)
            report.changed.append({"userId": user.id, "from": legacy_id, "to": new_id, "action": action})
        await self._fold_stray_chats(report)
        return report

    async def _fold_stray_chats(self, report: Report) -> None:
        """Merge chats recreated at an already migrated legacy id into their successor."""
        for chat_id in await run_in_threadpool(self.store.chat_ids):
            if not identity.is_legacy_id(chat_id):
                continue
            try:
                target = await run_in_threadpool(self.store.alias_target, chat_id)
                if target is None:
                    logger.warning("legacy chat %s has no members and no known successor", chat_id)
                    continue
                moved = await run_in_threadpool(self._fold_chat, chat_id, target)
            except ClaridadError as exc:
                logger.warning("stray legacy chat %s not folded: %s", chat_id, exc.message)
                report.errors.append({"chatId": chat_id, "error": exc.message})
                continue
            logger.info("stray legacy chat %s folded into %s (%d messages)", chat_id, target, moved)
            report.changed.append({"from": chat_id, "to": target, "action": "folded", "messages": moved})

    def _fold_chat(self, legacy_id: str, target_id: str) -> int:
        legacy = self.store.get_chat(legacy_id)
        if legacy is None:
            return 0
        self.store.merge_into(target_id, legacy, [], self.clock())
        moved = self.store.rehome(legacy_id, target_id)
        self.store.delete_chat(legacy_id)
        return moved

    def _move_chat(self, legacy_id: str, new_id: str, user_id: str, neighborhood: str) -> str:
        now = self.clock()
        legacy = self.store.get_chat(legacy_id)
        target_exists = self.store.chat_exists(new_id)
        if legacy is not None and not target_exists:
            doc = dict(legacy)
            doc["neighborhood"] = neighborhood
            doc["participants"] = sorted({str(p) for p in legacy.get("participants", [])} | {user_id})
            doc["legacyIds"] = sorted(set(legacy.get("legacyIds", [])) | {legacy_id})
            doc.setdefault("createdAt", now)
            doc["updatedAt"] = now
            self.store.put_chat(new_id, doc)
            self.store.rehome(legacy_id, new_id)
            self.store.delete_chat(legacy_id)
            return "renamed"
        if legacy is not None:
            self.store.merge_into(new_id, legacy, [user_id], now)
            self.store.record_alias(new_id, legacy_id)
            self.store.rehome(legacy_id, new_id)
            self.store.delete_chat(legacy_id)
            return "merged"
        # legacy chat already gone: this member only needs to be in the target
        created = self.store.add_participants(new_id, [user_id], neighborhood, now=now)
        self.store.record_alias(new_id, legacy_id)
        self.store.rehome(legacy_id, new_id)
        return "created" if created else "joined"

    async def resolve_duplicate_users(self) -> Report:
        report = Report()
        groups = await self.directory.list_by_normalized_email()
        for email, users in groups.items():
            if len(users) < 2:
                continue
            keep = canonical_user(users)
            for user in users:
                if user.id == keep.id:
                    continue
                try:
                    if user.chat_id:
                        await run_in_threadpool(self.store.remove_participants, user.chat_id, [str(user.id)])
                    await self.directory.deactivate_user(user.id)
                except ClaridadError as exc:
                    logger.warning("duplicate user %s (%s) not resolved: %s", user.id, email, exc.message)
                    report.errors.append({"userId": user.id, "email": email, "error": exc.message})
                    continue
                logger.info("duplicate user %s of %s removed, keeping %s", user.id, email, keep.id)
                report.changed.append({"userId": user.id, "email": email, "keptUserId": keep.id})
        return report

    async def _participants_of(self, chat_id: str) -> set[str] | None:
        return await run_in_threadpool(self.store.participants, chat_id)

    async def sync_memberships(self) -> Report:
        report = Report()
        for member in await self.directory.list_members_pending_sync(self._participants_of):
            if identity.is_legacy_id(member.chat_id):
                report.errors.append({"userId": member.user_id, "chatId": member.chat_id, "error": "legacy chat id, run migration"})
                continue
            expected = member.expected_chat_id
            try:
                await run_in_threadpool(self.store.add_participants, expected, [str(member.user_id)], member.neighborhood)
                if member.chat_id and member.chat_id != expected:
                    await run_in_threadpool(self.store.remove_participants, member.chat_id, [str(member.user_id)])
                await self.directory.update_chat_id(member.user_id, expected)
            except ClaridadError as exc:
                logger.warning("sync of user %s failed: %s", member.user_id, exc.message)
                report.errors.append({"userId": member.user_id, "chatId": expected, "error": exc.message})
                continue
            logger.info("user %s synced into %s", member.user_id, expected)
            report.changed.append({"userId": member.user_id, "from": member.chat_id, "to": expected})
        return report

    async def run_all(self) -> dict[str, Report]:
        return {
            "migrate": await self.migrate_legacy_ids(),
            "dedupe": await self.resolve_duplicate_users(),
            "sync": await self.sync_memberships(),
        }
