"""Panic alerts: an urgent chat message plus an independent tracking row.

The message lands in the neighborhood transcript; the ``panic_alerts`` row
lets operational tooling ask for recent alerts without scanning transcripts.
Neither write rolls the other back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.concurrency import run_in_threadpool
from .directory import AuthoritativeDirectory
from .errors import NotAssigned, NotFound, PartialBroadcastFailure, StoreUnavailable
from .messages import MessageBus
from .models import PanicAlert, User
from .notifications import LoggingDispatcher, NotificationDispatcher, PushNotification
from .realtime import RealtimeStore, utcnow
from .schemas import GeoPoint, MessageKind, PanicMetadata

logger = logging.getLogger(__name__)

PANIC_TEMPLATE = (
    "🚨 PANIC ALERT! 🚨\n\n"
    "I need urgent help.\n"
    "📍 {location}\n\n"
    "⚠️ This is an emergency. Please contact the authorities if needed."
)

@dataclass
class PanicRaised:
    message_id: str | None
    chat_id: str
    alert_id: int | None
    warnings: list[str] = field(default_factory=list)

def describe_location(user: User, location: GeoPoint | None, address: str | None) -> str:
    if address and address.strip():
        return address.strip()
    if location is not None:
        return f"{location.lat:.6f}, {location.lng:.6f}"
    return f"Block {user.block_number or 'N/A'}, Lot {user.lot_number or 'N/A'}"

class PanicAlertService:
    def __init__(
        self,
        directory: AuthoritativeDirectory,
        bus: MessageBus,
        store: RealtimeStore,
        sessions: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = directory
        self.bus = bus
        self.store = store
        self.sessions = sessions
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.clock = clock

    async def raise_alert(self, user_id: int, location: GeoPoint | None = None, address: str | None = None) -> PanicRaised:
        membership = await self.directory.get_membership(user_id)
        if membership is None:
            raise NotAssigned("user is not assigned to a neighborhood chat")
        user = await self.directory.get_user(user_id)
        user_name = user.full_name or "Unknown user"

        metadata = PanicMetadata(
            location=location,
            gps_location=f"{location.lat},{location.lng}" if location else "unavailable",
            address=address,
            has_gps=location is not None,
            block_number=user.block_number,
            lot_number=user.lot_number,
            neighborhood=membership.neighborhood,
        )
        body = PANIC_TEMPLATE.format(location=describe_location(user, location, address))

        result = PanicRaised(message_id=None, chat_id=membership.chat_id, alert_id=None)
        message_error: StoreUnavailable | None = None
        try:
            result.message_id = await run_in_threadpool(
                self.bus.append, membership.chat_id, str(user_id), user_name, body, MessageKind.panic, metadata
            )
        except StoreUnavailable as exc:
            message_error = exc

        try:
            result.alert_id = await self._track(user, membership.neighborhood, membership.chat_id, result.message_id, location, address)
        except StoreUnavailable as exc:
            failure = PartialBroadcastFailure("panic tracking record", exc)
            logger.warning("panic from user %s: %s", user_id, failure.message)
            result.warnings.append(failure.message)

        if message_error is not None:
            logger.error("panic from user %s could not be posted to %s", user_id, membership.chat_id)
            raise message_error

        logger.info(
            "panic alert in %s by user %s (message %s, gps=%s)",
            membership.neighborhood, user_id, result.message_id, location is not None,
        )
        await self._notify(user_id, membership.neighborhood, membership.chat_id, result.message_id, address)
        return result

    async def _track(self, user: User, neighborhood: str, chat_id: str, message_id: str | None,
                     location: GeoPoint | None, address: str | None) -> int:
        alert = PanicAlert(
            user_id=user.id,
            user_name=user.full_name,
            neighborhood=neighborhood,
            chat_id=chat_id,
            message_id=message_id,
            latitude=location.lat if location else None,
            longitude=location.lng if location else None,
            address=address,
            block_number=user.block_number,
            lot_number=user.lot_number,
            status="active",
            created_at=self.clock(),
        )
        try:
            async with self.sessions() as db:
                db.add(alert)
                await db.commit()
                await db.refresh(alert)
        except DBAPIError as exc:
            raise StoreUnavailable("directory") from exc
        return alert.id

    async def _notify(self, user_id: int, neighborhood: str, chat_id: str, message_id: str | None, address: str | None) -> None:
        try:
            participants = await run_in_threadpool(self.store.participants, chat_id)
            targets = await self.directory.notification_recipients(participants or [], exclude=user_id)
            if targets:
                self.dispatcher.send(targets, PushNotification(
                    title=f"🚨 Panic in {neighborhood}",
                    body=address or "Panic alert triggered",
                    data={"type": "panic", "chatId": chat_id, "messageId": message_id},
                    priority="high",
                ))
        except Exception:
            logger.exception("push notifications for panic in %s were not sent", chat_id)

    async def recent_alerts(self, chat_id: str, hours: int = 24, limit: int = 10) -> list[PanicAlert]:
        """Active alerts raised in a chat within the last ``hours``, newest first."""
        since = self.clock() - timedelta(hours=hours)
        async with self.sessions() as db:
            res = await db.execute(
                select(PanicAlert)
                .where(PanicAlert.chat_id == chat_id, PanicAlert.status == "active", PanicAlert.created_at >= since)
                .order_by(PanicAlert.created_at.desc(), PanicAlert.id.desc())
                .limit(limit)
            )
            return list(res.scalars())

    async def resolve(self, alert_id: int, resolved_by: int, note: str | None = None) -> PanicAlert:
        async with self.sessions() as db:
            alert = await db.get(PanicAlert, alert_id)
            if not alert:
                raise NotFound(f"panic alert {alert_id} not found")
            if alert.status != "resolved":
                alert.status = "resolved"
                alert.resolved_at = self.clock()
                alert.resolved_by = resolved_by
                alert.resolution_note = note
                await db.commit()
                logger.info("panic alert %s resolved by user %s", alert_id, resolved_by)
            return alert
