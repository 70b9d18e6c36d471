"""Presence and typing state with time-based liveness.

Nothing is pushed on disconnect. Clients poll, and a record's state is
derived from ``now - lastSeen`` at read time:

    online   <  online_after
    away     <  offline_after
    offline  >= offline_after (never returned)
"""
import logging
from datetime import datetime, timedelta
from typing import Callable
from .realtime import RealtimeStore, as_utc, record_key, utcnow
from .schemas import ActivePresence, PresenceRecord, TypingRecord

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME = "User"

class PresenceTracker:
    def __init__(
        self,
        store: RealtimeStore,
        clock: Callable[[], datetime] = utcnow,
        online_seconds: int = 60,
        offline_seconds: int = 300,
        typing_ttl_seconds: int = 10,
        retention_hours: int = 24,
    ) -> None:
        self.store = store
        self.clock = clock
        self.online_after = timedelta(seconds=online_seconds)
        self.offline_after = timedelta(seconds=offline_seconds)
        self.typing_ttl = timedelta(seconds=typing_ttl_seconds)
        self.retention = timedelta(hours=retention_hours)

    def set_online(self, chat_id: str, user_id: str, user_name: str | None = None) -> None:
        self._upsert_presence(chat_id, user_id, user_name, self.clock())

    def set_offline(self, chat_id: str, user_id: str, user_name: str | None = None) -> None:
        # backdate past the offline threshold instead of deleting, so the
        # record keeps the same shape as any other expired one
        self._upsert_presence(chat_id, user_id, user_name, self.clock() - self.offline_after)

    def _upsert_presence(self, chat_id: str, user_id: str, user_name: str | None, last_seen: datetime) -> None:
        update: dict = {
            "$set": {"chatId": chat_id, "userId": str(user_id), "lastSeen": last_seen},
            "$setOnInsert": {},
        }
        if user_name:
            update["$set"]["userName"] = user_name
        else:
            update["$setOnInsert"]["userName"] = DEFAULT_USER_NAME
        if not update["$setOnInsert"]:
            del update["$setOnInsert"]
        with self.store.guard():
            self.store.online_users.update_one({"_id": record_key(chat_id, str(user_id))}, update, upsert=True)
        logger.debug("presence %s/%s lastSeen=%s", chat_id, user_id, last_seen.isoformat())

    def list_active(self, chat_id: str) -> ActivePresence:
        now = self.clock()
        with self.store.guard():
            docs = list(self.store.online_users.find({"chatId": chat_id}))
        active = ActivePresence()
        for doc in sorted(docs, key=lambda d: as_utc(d["lastSeen"]), reverse=True):
            last_seen = as_utc(doc["lastSeen"])
            age = now - last_seen
            if age >= self.offline_after:
                continue
            record = PresenceRecord(user_id=doc["userId"], user_name=doc.get("userName") or DEFAULT_USER_NAME, last_seen=last_seen)
            if age < self.online_after:
                active.online.append(record)
            else:
                active.away.append(record)
        return active

    # ---------------------- typing ----------------------
    def set_typing(self, chat_id: str, user_id: str, user_name: str | None = None) -> None:
        with self.store.guard():
            self.store.typing_users.replace_one(
                {"_id": record_key(chat_id, str(user_id))},
                {
                    "chatId": chat_id,
                    "userId": str(user_id),
                    "userName": user_name or DEFAULT_USER_NAME,
                    "timestamp": self.clock(),
                },
                upsert=True,
            )

    def clear_typing(self, chat_id: str, user_id: str) -> None:
        with self.store.guard():
            self.store.typing_users.delete_one({"_id": record_key(chat_id, str(user_id))})

    def list_typing(self, chat_id: str, exclude_user: str | None = None) -> list[TypingRecord]:
        now = self.clock()
        with self.store.guard():
            docs = list(self.store.typing_users.find({"chatId": chat_id}))
        records = []
        for doc in docs:
            ts = as_utc(doc["timestamp"])
            # ttl is a safety net for clients that never sent a stop
            if now - ts >= self.typing_ttl:
                continue
            if exclude_user is not None and doc["userId"] == str(exclude_user):
                continue
            records.append(TypingRecord(user_id=doc["userId"], user_name=doc.get("userName") or DEFAULT_USER_NAME, timestamp=ts))
        records.sort(key=lambda r: r.timestamp)
        return records

    def purge_stale(self, chat_id: str | None = None) -> tuple[int, int]:
        """Physically delete long-offline presence and expired typing records.

        Storage reclamation only; reads already ignore these records.
        """
        now = self.clock()
        scope = {"chatId": chat_id} if chat_id else {}
        with self.store.guard():
            presence = self.store.online_users.delete_many({**scope, "lastSeen": {"$lt": now - self.offline_after - self.retention}})
            typing = self.store.typing_users.delete_many({**scope, "timestamp": {"$lt": now - self.typing_ttl}})
        if presence.deleted_count or typing.deleted_count:
            logger.info("purged %d presence and %d typing records", presence.deleted_count, typing.deleted_count)
        return presence.deleted_count, typing.deleted_count
