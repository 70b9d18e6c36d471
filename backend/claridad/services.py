from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from pymongo.database import Database
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from .config import Settings
from .directory import AuthoritativeDirectory
from .incident_types import IncidentTypeCatalog
from .incidents import IncidentBroadcaster
from .messages import MessageBus
from .notifications import NotificationDispatcher
from .panic import PanicAlertService
from .presence import PresenceTracker
from .realtime import RealtimeStore, utcnow
from .reconcile import ReconciliationCoordinator

@dataclass
class Services:
    """Explicitly wired components; the entry point owns their lifecycle."""
    directory: AuthoritativeDirectory
    store: RealtimeStore
    bus: MessageBus
    presence: PresenceTracker
    incidents: IncidentBroadcaster
    panic: PanicAlertService
    reconciler: ReconciliationCoordinator

    @classmethod
    def build(
        cls,
        sessions: async_sessionmaker[AsyncSession],
        mongo_db: Database,
        settings: Settings,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "Services":
        directory = AuthoritativeDirectory(sessions)
        store = RealtimeStore(mongo_db)
        bus = MessageBus(store, clock=clock, summary_max_length=settings.summary_max_length)
        return cls(
            directory=directory,
            store=store,
            bus=bus,
            presence=PresenceTracker(
                store,
                clock=clock,
                online_seconds=settings.presence_online_seconds,
                offline_seconds=settings.presence_away_seconds,
                typing_ttl_seconds=settings.typing_ttl_seconds,
                retention_hours=settings.presence_retention_hours,
            ),
            incidents=IncidentBroadcaster(
                store,
                bus,
                IncidentTypeCatalog.for_region(settings.incident_region),
                clock=clock,
                default_minutes=settings.incident_default_minutes,
            ),
            panic=PanicAlertService(directory, bus, store, sessions, dispatcher=dispatcher, clock=clock),
            reconciler=ReconciliationCoordinator(directory, store, clock=clock),
        )
