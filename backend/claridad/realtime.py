"""Realtime document store.

One root document per chat in ``chats`` plus flat collections standing in for
the per-chat sub-collections (``messages``, ``online_users``,
``typing_users``), each keyed by ``chatId``. The pymongo database handle is
injected; the process entry point owns the client.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError
from .config import Settings
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

def utcnow() -> datetime:
    # BSON dates carry millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)

def as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def connect_realtime(settings: Settings) -> tuple[MongoClient, Database]:
    client = MongoClient(settings.mongo_url, tz_aware=True, serverSelectionTimeoutMS=5000)
    return client, client[settings.mongo_db]

def record_key(chat_id: str, user_id: str) -> str:
    return f"{chat_id}:{user_id}"

class RealtimeStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    @property
    def chats(self):
        return self.db["chats"]

    @property
    def messages(self):
        return self.db["messages"]

    @property
    def online_users(self):
        return self.db["online_users"]

    @property
    def typing_users(self):
        return self.db["typing_users"]

    @property
    def incidents(self):
        return self.db["incidents"]

    @contextmanager
    def guard(self):
        try:
            yield
        except PyMongoError as exc:
            raise StoreUnavailable("realtime", str(exc)) from exc

    def ensure_indexes(self) -> None:
        with self.guard():
            self.messages.create_index([("chatId", ASCENDING), ("timestamp", DESCENDING), ("_id", DESCENDING)])
            self.messages.create_index(
                [("chatId", ASCENDING), ("clientToken", ASCENDING)],
                unique=True,
                partialFilterExpression={"clientToken": {"$type": "string"}},
            )
            self.chats.create_index([("legacyIds", ASCENDING)])
            self.online_users.create_index([("chatId", ASCENDING)])
            self.typing_users.create_index([("chatId", ASCENDING)])
            self.incidents.create_index([("chatId", ASCENDING), ("activeUntil", DESCENDING)])

    # ---------------------- chat root documents ----------------------
    def get_chat(self, chat_id: str) -> dict | None:
        with self.guard():
            return self.chats.find_one({"_id": chat_id})

    def chat_exists(self, chat_id: str) -> bool:
        with self.guard():
            return self.chats.count_documents({"_id": chat_id}, limit=1) > 0

    def participants(self, chat_id: str) -> set[str] | None:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        return {str(p) for p in chat.get("participants", [])}

    def ensure_chat(self, chat_id: str, neighborhood: str | None = None, now: datetime | None = None) -> bool:
        """Create the chat root document if missing. Returns True when created."""
        now = now or utcnow()
        with self.guard():
            res = self.chats.update_one(
                {"_id": chat_id},
                {"$setOnInsert": {
                    "neighborhood": neighborhood,
                    "participants": [],
                    "activeIncidents": [],
                    "lastMessage": None,
                    "lastMessageBy": None,
                    "lastMessageAt": None,
                    "createdAt": now,
                    "updatedAt": now,
                }},
                upsert=True,
            )
        if res.upserted_id is not None:
            logger.info("chat %s created", chat_id)
            return True
        return False

    def add_participants(self, chat_id: str, user_ids: Iterable[str], neighborhood: str | None = None, now: datetime | None = None) -> bool:
        """Add users to the participant set, creating the chat on first use.

        Set semantics make concurrent joins commutative. Returns True when the
        chat document was created by this call.
        """
        now = now or utcnow()
        ids = sorted({str(u) for u in user_ids})
        on_insert: dict[str, Any] = {
            "activeIncidents": [],
            "lastMessage": None,
            "lastMessageBy": None,
            "lastMessageAt": None,
            "createdAt": now,
            "neighborhood": neighborhood,
        }
        update: dict[str, Any] = {
            "$addToSet": {"participants": {"$each": ids}},
            "$set": {"updatedAt": now},
            "$setOnInsert": on_insert,
        }
        with self.guard():
            res = self.chats.update_one({"_id": chat_id}, update, upsert=True)
            if res.upserted_id is None and neighborhood is not None:
                # the first spelling names the room; only fill it in when missing
                self.chats.update_one({"_id": chat_id, "neighborhood": None}, {"$set": {"neighborhood": neighborhood}})
        return res.upserted_id is not None

    def remove_participants(self, chat_id: str, user_ids: Iterable[str], now: datetime | None = None) -> int:
        ids = [str(u) for u in user_ids]
        with self.guard():
            res = self.chats.update_one(
                {"_id": chat_id, "participants": {"$in": ids}},
                {"$pull": {"participants": {"$in": ids}}, "$set": {"updatedAt": now or utcnow()}},
            )
        return res.modified_count

    def put_chat(self, chat_id: str, doc: dict) -> None:
        body = {k: v for k, v in doc.items() if k != "_id"}
        with self.guard():
            self.chats.replace_one({"_id": chat_id}, body, upsert=True)

    def delete_chat(self, chat_id: str) -> bool:
        with self.guard():
            return self.chats.delete_one({"_id": chat_id}).deleted_count > 0

    def set_summary(self, chat_id: str, text: str, author: str, at: datetime) -> None:
        with self.guard():
            self.chats.update_one(
                {"_id": chat_id},
                {"$set": {"lastMessage": text, "lastMessageBy": author, "lastMessageAt": at, "updatedAt": at}},
            )

    def push_active_incident(self, chat_id: str, entry: dict, now: datetime) -> None:
        with self.guard():
            self.chats.update_one(
                {"_id": chat_id},
                {"$push": {"activeIncidents": entry}, "$set": {"updatedAt": now}},
            )

    def pull_expired_incidents(self, chat_id: str, now: datetime) -> int:
        with self.guard():
            res = self.chats.update_one(
                {"_id": chat_id, "activeIncidents.expiresAt": {"$lte": now}},
                {"$pull": {"activeIncidents": {"expiresAt": {"$lte": now}}}},
            )
        return res.modified_count

    def merge_into(self, target_id: str, legacy: dict, extra_participants: Iterable[str], now: datetime) -> None:
        """Fold a legacy chat document into an existing chat: set union of
        participants and active incidents, newest summary wins."""
        participants = {str(p) for p in legacy.get("participants", [])} | {str(p) for p in extra_participants}
        add: dict[str, Any] = {}
        if participants:
            add["participants"] = {"$each": sorted(participants)}
        if legacy.get("activeIncidents"):
            add["activeIncidents"] = {"$each": legacy["activeIncidents"]}
        update: dict[str, Any] = {"$set": {"updatedAt": now}}
        if add:
            update["$addToSet"] = add
        with self.guard():
            self.chats.update_one({"_id": target_id}, update)
        legacy_at = as_utc(legacy.get("lastMessageAt"))
        if legacy_at is None:
            return
        target = self.get_chat(target_id) or {}
        target_at = as_utc(target.get("lastMessageAt"))
        if target_at is None or legacy_at > target_at:
            self.set_summary(target_id, legacy.get("lastMessage"), legacy.get("lastMessageBy"), legacy_at)

    def rehome(self, from_chat: str, to_chat: str) -> int:
        """Point messages and incidents of ``from_chat`` at ``to_chat``."""
        with self.guard():
            moved = self.messages.update_many({"chatId": from_chat}, {"$set": {"chatId": to_chat}}).modified_count
            self.incidents.update_many({"chatId": from_chat}, {"$set": {"chatId": to_chat}})
        return moved

    def record_alias(self, chat_id: str, legacy_id: str) -> None:
        """Remember that ``legacy_id`` was folded into ``chat_id``."""
        with self.guard():
            self.chats.update_one({"_id": chat_id}, {"$addToSet": {"legacyIds": legacy_id}})

    def alias_target(self, legacy_id: str) -> str | None:
        with self.guard():
            doc = self.chats.find_one({"legacyIds": legacy_id}, {"_id": 1})
        return doc["_id"] if doc else None

    def chat_ids(self) -> list[str]:
        with self.guard():
            return [doc["_id"] for doc in self.chats.find({}, {"_id": 1})]
