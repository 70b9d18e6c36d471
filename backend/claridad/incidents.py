"""Time-bounded incidents broadcast into their neighborhood chat.

Creating an incident writes, in order: the incident record, a system message
of kind ``incident`` carrying a snapshot of the record, and an entry in the
chat's ``activeIncidents`` index. Only the first write is required to
succeed; the other two are logged and reported as warnings when they fail.

Expiry is lazy. An incident is active while ``now < activeUntil`` and every
reader filters by that; ``sweep_expired`` only reclaims storage.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import uuid4
from .errors import NotFound, PartialBroadcastFailure, StoreUnavailable, ValidationError
from .incident_types import IncidentTypeCatalog
from .messages import SYSTEM_USER_ID, SYSTEM_USER_NAME, MessageBus
from .realtime import RealtimeStore, as_utc, utcnow
from .schemas import ActiveIncident, IncidentMetadata, IncidentOut, MessageKind

logger = logging.getLogger(__name__)

@dataclass
class IncidentCreated:
    incident_id: str
    expires_at: datetime
    warnings: list[str] = field(default_factory=list)

def validate_point(point: Sequence) -> tuple[float, float]:
    """Check a ``(lng, lat)`` pair and return it as floats."""
    if not isinstance(point, (list, tuple)) or len(point) != 2:
        raise ValidationError("location must be a [lng, lat] pair")
    for value in point:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ValidationError("coordinates must be numbers")
    lng, lat = float(point[0]), float(point[1])
    if not -180 <= lng <= 180 or not -90 <= lat <= 90:
        raise ValidationError("coordinates out of range")
    return lng, lat

class IncidentBroadcaster:
    def __init__(
        self,
        store: RealtimeStore,
        bus: MessageBus,
        catalog: IncidentTypeCatalog,
        clock: Callable[[], datetime] = utcnow,
        default_minutes: int = 60,
    ) -> None:
        self.store = store
        self.bus = bus
        self.catalog = catalog
        self.clock = clock
        self.default_minutes = default_minutes

    def create(
        self,
        type: str,
        description: str,
        neighborhood: str,
        chat_id: str,
        point: Sequence,
        tags: Sequence[str] | None = None,
        created_by: str | None = None,
        active_for_minutes: int | None = None,
    ) -> IncidentCreated:
        if type not in self.catalog:
            raise ValidationError(f"invalid incident type {type!r}, expected one of: {', '.join(self.catalog.ids())}")
        lng, lat = validate_point(point)
        if not description or not description.strip():
            raise ValidationError("description is required")
        if not neighborhood or not chat_id:
            raise ValidationError("neighborhood and chatId are required")
        minutes = self.default_minutes if active_for_minutes is None else active_for_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0:
            raise ValidationError("activeForMinutes must be a non-negative integer")

        now = self.clock()
        expires_at = now + timedelta(minutes=minutes)
        incident_id = uuid4().hex
        incident = {
            "id": incident_id,
            "type": type,
            "description": description.strip(),
            "neighborhood": neighborhood,
            "chatId": chat_id,
            "location": {"type": "Point", "coordinates": [lng, lat]},
            "status": "active",
            "activeUntil": expires_at,
            "createdAt": now,
            "updatedAt": now,
            "tags": [str(t) for t in tags or []],
            "createdBy": created_by,
        }
        with self.store.guard():
            self.store.incidents.insert_one({"_id": incident_id, **incident})
        logger.info("incident %s (%s) created in %s, active until %s", incident_id, type, chat_id, expires_at.isoformat())

        result = IncidentCreated(incident_id=incident_id, expires_at=expires_at)
        label = self.catalog.get(type).label
        try:
            self.bus.append(
                chat_id,
                SYSTEM_USER_ID,
                SYSTEM_USER_NAME,
                f"New incident: {label} - {incident['description']} (expires in {minutes} min)",
                MessageKind.incident,
                IncidentMetadata(incident_id=incident_id, active_until=expires_at, incident=dict(incident)),
            )
        except StoreUnavailable as exc:
            result.warnings.append(self._partial("system message", incident_id, exc))
        try:
            self.store.ensure_chat(chat_id, neighborhood, now=now)
            self.store.push_active_incident(
                chat_id,
                {
                    "incidentId": incident_id,
                    "type": type,
                    "description": incident["description"],
                    "expiresAt": expires_at,
                    "createdAt": now,
                },
                now,
            )
        except StoreUnavailable as exc:
            result.warnings.append(self._partial("active incident index", incident_id, exc))
        return result

    def _partial(self, step: str, incident_id: str, exc: Exception) -> str:
        failure = PartialBroadcastFailure(step, exc)
        logger.warning("incident %s stored but %s", incident_id, failure.message)
        return failure.message

    def get(self, incident_id: str) -> IncidentOut:
        with self.store.guard():
            doc = self.store.incidents.find_one({"_id": incident_id})
        if not doc:
            raise NotFound(f"incident {incident_id} not found")
        active_until = as_utc(doc["activeUntil"])
        status = "active" if doc.get("status") == "active" and self.clock() < active_until else "expired"
        return IncidentOut(
            id=doc["_id"],
            type=doc["type"],
            description=doc["description"],
            neighborhood=doc["neighborhood"],
            chat_id=doc["chatId"],
            location=doc["location"],
            status=status,
            active_until=active_until,
            created_at=as_utc(doc["createdAt"]),
            tags=doc.get("tags") or [],
            created_by=doc.get("createdBy"),
        )

    def list_active(self, chat_id: str) -> list[ActiveIncident]:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise NotFound(f"chat {chat_id} not found")
        now = self.clock()
        active = []
        for entry in chat.get("activeIncidents") or []:
            expires_at = as_utc(entry["expiresAt"])
            if expires_at > now:
                active.append(ActiveIncident(
                    incident_id=entry["incidentId"],
                    type=entry["type"],
                    description=entry["description"],
                    expires_at=expires_at,
                ))
        return active

    def sweep_expired(self, chat_id: str | None = None) -> int:
        """Drop expired index entries and mark stored incidents expired."""
        now = self.clock()
        chat_ids = [chat_id] if chat_id else self.store.chat_ids()
        pulled = sum(self.store.pull_expired_incidents(c, now) for c in chat_ids)
        scope = {"chatId": chat_id} if chat_id else {}
        with self.store.guard():
            self.store.incidents.update_many(
                {**scope, "status": "active", "activeUntil": {"$lte": now}},
                {"$set": {"status": "expired", "updatedAt": now}},
            )
        if pulled:
            logger.info("swept expired incidents from %d chats", pulled)
        return pulled
