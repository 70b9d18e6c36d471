"""Message bus: appends to a chat transcript and maintains its summary.

The transcript is the source of truth. The ``lastMessage*`` fields on the
chat root document are a derived cache, written best-effort after the append.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from .errors import NotFound, PartialBroadcastFailure, StoreUnavailable, ValidationError
from .realtime import RealtimeStore, as_utc, utcnow
from .schemas import METADATA_BY_KIND, CamelModel, ChatStats, DayActivity, Message, MessageKind

logger = logging.getLogger(__name__)

SYSTEM_USER_ID = "system"
SYSTEM_USER_NAME = "System"
MAX_PAGE = 200
STATS_WEEK_DAYS = 7

def summarize(body: str, kind: MessageKind, max_length: int = 100) -> str:
    text = " ".join(body.split())
    if len(text) > max_length:
        text = text[: max_length - 1].rstrip() + "…"
    if kind == MessageKind.panic:
        text = f"🚨 {text}"
    return text

def to_message(doc: dict) -> Message:
    return Message(
        id=str(doc["_id"]),
        chat_id=doc["chatId"],
        user_id=str(doc["userId"]),
        user_name=doc.get("userName") or "",
        message=doc["message"],
        type=doc.get("type", MessageKind.normal.value),
        timestamp=as_utc(doc["timestamp"]),
        metadata=doc.get("metadata") or {},
    )

class MessageBus:
    def __init__(self, store: RealtimeStore, clock: Callable[[], datetime] = utcnow, summary_max_length: int = 100) -> None:
        self.store = store
        self.clock = clock
        self.summary_max_length = summary_max_length

    def append(
        self,
        chat_id: str,
        author_id: str,
        author_name: str,
        body: str,
        kind: MessageKind = MessageKind.normal,
        metadata: CamelModel | None = None,
        client_token: str | None = None,
    ) -> str:
        """Append a message and return its id.

        Never rejects a missing chat: the root document is created on the fly.
        With ``client_token`` a retried append returns the first message's id
        instead of writing a duplicate.
        """
        kind = MessageKind(kind)
        if not body or not body.strip():
            raise ValidationError("message body is empty")
        if not chat_id:
            raise ValidationError("chatId is required")
        expected = METADATA_BY_KIND[kind]
        if metadata is None:
            metadata = expected() if kind == MessageKind.normal else None
        if not isinstance(metadata, expected):
            raise ValidationError(f"{kind.value} messages require {expected.__name__}")

        now = self.clock()
        self.store.ensure_chat(chat_id, now=now)
        doc = {
            "chatId": chat_id,
            "userId": str(author_id),
            "userName": author_name,
            "message": body.strip(),
            "type": kind.value,
            "metadata": metadata.model_dump(mode="python", by_alias=True, exclude_none=True),
            "timestamp": now,
        }
        with self.store.guard():
            if client_token:
                on_insert = {k: v for k, v in doc.items() if k != "chatId"}
                res = self.store.messages.update_one(
                    {"chatId": chat_id, "clientToken": client_token},
                    {"$setOnInsert": on_insert},
                    upsert=True,
                )
                if res.upserted_id is None:
                    existing = self.store.messages.find_one({"chatId": chat_id, "clientToken": client_token}, {"_id": 1})
                    logger.info("duplicate append for token %s in %s ignored", client_token, chat_id)
                    return str(existing["_id"])
                message_id = str(res.upserted_id)
            else:
                message_id = str(self.store.messages.insert_one(doc).inserted_id)

        try:
            self.store.set_summary(chat_id, summarize(doc["message"], kind, self.summary_max_length), author_name, now)
        except StoreUnavailable as exc:
            failure = PartialBroadcastFailure("summary update", exc)
            logger.warning("message %s appended to %s but %s", message_id, chat_id, failure.message)
        return message_id

    def list(self, chat_id: str, limit: int = 50, before: datetime | None = None, before_id: str | None = None) -> list[Message]:
        """Newest ``limit`` messages older than the cursor, oldest first.

        The cursor is ``(before, before_id)``: messages stamped exactly at
        ``before`` are still returned when their id sorts below ``before_id``.
        Passing only ``before_id`` takes ``before`` from that message.
        """
        limit = max(1, min(int(limit), MAX_PAGE))
        query: dict = {"chatId": chat_id}
        if before_id is not None:
            cursor_id = self._object_id(before_id)
            if before is None:
                before = self.get(before_id).timestamp
            query["$or"] = [
                {"timestamp": {"$lt": before}},
                {"timestamp": before, "_id": {"$lt": cursor_id}},
            ]
        elif before is not None:
            query["timestamp"] = {"$lt": before}
        with self.store.guard():
            docs = list(
                self.store.messages.find(query)
                .sort([("timestamp", DESCENDING), ("_id", DESCENDING)])
                .limit(limit)
            )
        docs.reverse()
        return [to_message(d) for d in docs]

    @staticmethod
    def _object_id(message_id: str) -> ObjectId:
        try:
            return ObjectId(message_id)
        except (InvalidId, TypeError):
            raise ValidationError(f"invalid message id {message_id!r}")

    def get(self, message_id: str) -> Message:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            raise NotFound(f"message {message_id} not found")
        with self.store.guard():
            doc = self.store.messages.find_one({"_id": oid})
        if not doc:
            raise NotFound(f"message {message_id} not found")
        return to_message(doc)

    def count(self, chat_id: str) -> int:
        with self.store.guard():
            return self.store.messages.count_documents({"chatId": chat_id})

    def stats(self, chat_id: str) -> ChatStats:
        """Activity summary for a chat: volumes, active authors and a safety level.

        Days are UTC days. Authors count as active when they posted within the
        last 24h; system messages are not authors.
        """
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = now - timedelta(days=STATS_WEEK_DAYS)
        chat = self.store.get_chat(chat_id)
        if chat is None:
            return ChatStats(chat_id=chat_id)

        scope = {"chatId": chat_id}
        with self.store.guard():
            messages = self.store.messages
            total = messages.count_documents(scope)
            today = messages.count_documents({**scope, "timestamp": {"$gte": start_of_day}})
            authors = messages.distinct("userId", {**scope, "timestamp": {"$gte": now - timedelta(hours=24)}})
            last = messages.find_one(scope, sort=[("timestamp", DESCENDING), ("_id", DESCENDING)])
            panics = messages.count_documents({**scope, "type": MessageKind.panic.value, "timestamp": {"$gte": week_ago}})
            incidents = self.store.incidents.count_documents({**scope, "createdAt": {"$gte": week_ago}})
            weekly = []
            for offset in range(STATS_WEEK_DAYS - 1, -1, -1):
                day = start_of_day - timedelta(days=offset)
                count = messages.count_documents({**scope, "timestamp": {"$gte": day, "$lt": day + timedelta(days=1)}})
                weekly.append(DayActivity(date=day.date().isoformat(), messages=count))

        safety, emergency = "high", "normal"
        if panics or incidents > 10:
            safety, emergency = "low", "high"
        elif incidents > 5:
            safety, emergency = "medium", "elevated"
        return ChatStats(
            chat_id=chat_id,
            neighborhood=chat.get("neighborhood"),
            participant_count=len(chat.get("participants") or []),
            total_messages=total,
            today_messages=today,
            active_users=len([a for a in authors if a != SYSTEM_USER_ID]),
            last_activity=as_utc(last["timestamp"]) if last else None,
            recent_incidents=incidents,
            panic_messages=panics,
            safety_level=safety,
            emergency_level=emergency,
            weekly_activity=weekly,
        )
