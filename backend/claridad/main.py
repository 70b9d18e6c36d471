import logging
from datetime import datetime
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from .config import settings, configure_logging
from .db import SessionLocal, init_db
from .realtime import connect_realtime
from .services import Services
from .schemas import (
    ActiveIncident, ActivePresence, ChatStats, IncidentCreateIn, IncidentCreatedOut, IncidentOut, IncidentTypeOut, JoinIn,
    MembershipOut, MessageIdOut, MessageKind, MessagesOut, PanicAlertOut, PanicAlertsOut, PanicIn,
    PanicOut, ParticipantOut, ParticipantsOut, PresenceIn, ResolveIn, SendMessageIn, TypingIn, TypingRecord, UserOut, parse_metadata,
)
from .auth import Identity, get_identity
from .directory import Membership
from .errors import ClaridadError, Forbidden, NotAssigned, NotFound, StoreUnavailable, ValidationError
from .reconcile import join_neighborhood

logger = logging.getLogger(__name__)

app = FastAPI(title="Claridad neighborhood chat")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(ClaridadError)
async def claridad_error_handler(request: Request, exc: ClaridadError):
    headers = {"Retry-After": "5"} if isinstance(exc, StoreUnavailable) else None
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)

# Dependency
def get_services(request: Request) -> Services:
    return request.app.state.services

@app.on_event("startup")
async def on_startup():
    configure_logging()
    if getattr(app.state, "services", None) is not None:
        return
    await init_db()
    client, mongo_db = connect_realtime(settings)
    app.state.mongo_client = client
    app.state.services = Services.build(SessionLocal, mongo_db, settings)
    try:
        await run_in_threadpool(app.state.services.store.ensure_indexes)
    except StoreUnavailable as exc:
        logger.warning("realtime indexes not ensured at startup: %s", exc.message)

@app.on_event("shutdown")
async def on_shutdown():
    client = getattr(app.state, "mongo_client", None)
    if client is not None:
        client.close()

@app.get("/health")
async def health():
    return {"status": "ok"}

async def require_membership(services: Services, identity: Identity, chat_id: str | None = None) -> Membership:
    membership = await services.directory.get_membership(identity.user_id)
    if membership is None:
        raise NotAssigned("complete onboarding to join your neighborhood chat")
    if chat_id is not None and membership.chat_id != chat_id:
        raise Forbidden("not a member of this chat")
    return membership

@app.get("/me", response_model=UserOut)
async def me(identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    user = await services.directory.get_user(identity.user_id)
    if not user:
        raise NotFound("user not found")
    return UserOut.model_validate(user)

# ---------------------- CHAT ----------------------
@app.post("/chat/send", response_model=MessageIdOut)
async def send_message(body: SendMessageIn, identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    await require_membership(services, identity, body.chat_id)
    if body.kind == MessageKind.incident:
        raise ValidationError("incident messages are posted by the incident broadcaster")
    metadata = parse_metadata(body.kind, body.metadata)
    user = await services.directory.get_user(identity.user_id)
    message_id = await run_in_threadpool(
        services.bus.append,
        body.chat_id,
        str(identity.user_id),
        user.full_name,
        body.message,
        body.kind,
        metadata,
        body.client_token,
    )
    return MessageIdOut(message_id=message_id)

@app.get("/chat/messages", response_model=MessagesOut)
async def list_messages(
    chat_id: str = Query(..., alias="chatId"),
    limit: int = Query(50, ge=1, le=200),
    before: datetime | None = Query(None),
    before_id: str | None = Query(None, alias="beforeId"),
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    await require_membership(services, identity, chat_id)
    messages = await run_in_threadpool(services.bus.list, chat_id, limit, before, before_id)
    return MessagesOut(messages=messages)

@app.get("/chat/mine", response_model=MembershipOut)
async def my_chat(identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    membership = await require_membership(services, identity)
    participants = await run_in_threadpool(services.store.participants, membership.chat_id)
    return MembershipOut(chat_id=membership.chat_id, neighborhood=membership.neighborhood, participants=sorted(participants or []))

@app.get("/chat/participants", response_model=ParticipantsOut)
async def chat_participants(
    chat_id: str = Query(..., alias="chatId"),
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    await require_membership(services, identity, chat_id)
    participants = await run_in_threadpool(services.store.participants, chat_id)
    users = await services.directory.get_users(participants or [])
    return ParticipantsOut(
        chat_id=chat_id,
        participants_count=len(users),
        participants=[ParticipantOut.model_validate(u) for u in users],
    )

@app.get("/chat/stats", response_model=ChatStats)
async def chat_stats(identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    membership = await require_membership(services, identity)
    return await run_in_threadpool(services.bus.stats, membership.chat_id)

@app.post("/chat/join")
async def join_chat(body: JoinIn, identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    chat_id = await join_neighborhood(services.directory, services.store, identity.user_id, body.neighborhood)
    return {"chatId": chat_id}

@app.post("/chat/presence")
def update_presence(body: PresenceIn, services: Services = Depends(get_services)):
    if body.is_online:
        services.presence.set_online(body.chat_id, body.user_id, body.user_name)
    else:
        services.presence.set_offline(body.chat_id, body.user_id, body.user_name)
    return {"ok": True}

@app.get("/chat/presence", response_model=ActivePresence)
def get_presence(chat_id: str = Query(..., alias="chatId"), services: Services = Depends(get_services)):
    return services.presence.list_active(chat_id)

@app.post("/chat/typing")
def update_typing(body: TypingIn, services: Services = Depends(get_services)):
    if body.is_typing:
        services.presence.set_typing(body.chat_id, body.user_id, body.user_name)
    else:
        services.presence.clear_typing(body.chat_id, body.user_id)
    return {"ok": True}

@app.get("/chat/typing", response_model=list[TypingRecord])
def get_typing(
    chat_id: str = Query(..., alias="chatId"),
    exclude_user_id: str | None = Query(None, alias="excludeUserId"),
    services: Services = Depends(get_services),
):
    return services.presence.list_typing(chat_id, exclude_user_id)

# ---------------------- INCIDENTS ----------------------
@app.post("/incidents/create", response_model=IncidentCreatedOut)
def create_incident(body: IncidentCreateIn, services: Services = Depends(get_services)):
    if body.location.type != "Point":
        raise ValidationError("location must be a GeoJSON Point")
    created = services.incidents.create(
        body.type,
        body.description,
        body.neighborhood,
        body.chat_id,
        body.location.coordinates,
        tags=body.tags,
        created_by=body.created_by,
        active_for_minutes=body.active_for_minutes,
    )
    return IncidentCreatedOut(incident_id=created.incident_id, expires_at=created.expires_at)

@app.get("/incidents/types", response_model=list[IncidentTypeOut])
def incident_types(services: Services = Depends(get_services)):
    return [IncidentTypeOut(**vars(t)) for t in services.incidents.catalog]

@app.get("/incidents/active", response_model=list[ActiveIncident])
def active_incidents(chat_id: str = Query(..., alias="chatId"), services: Services = Depends(get_services)):
    return services.incidents.list_active(chat_id)

@app.get("/incidents/{incident_id}", response_model=IncidentOut)
def get_incident(incident_id: str, services: Services = Depends(get_services)):
    return services.incidents.get(incident_id)

# ---------------------- PANIC ----------------------
@app.post("/panic", response_model=PanicOut)
async def panic(body: PanicIn, identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    raised = await services.panic.raise_alert(identity.user_id, body.location, body.address)
    return PanicOut(message_id=raised.message_id, chat_id=raised.chat_id, warnings=raised.warnings)

@app.get("/panic/recent", response_model=PanicAlertsOut)
async def recent_panics(
    hours: int = Query(settings.panic_recent_hours, ge=1, le=24 * 7),
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    membership = await services.directory.get_membership(identity.user_id)
    if membership is None:
        return PanicAlertsOut(alerts=[])
    alerts = await services.panic.recent_alerts(membership.chat_id, hours=hours)
    return PanicAlertsOut(alerts=[PanicAlertOut.model_validate(a) for a in alerts])

@app.post("/panic/{alert_id}/resolve")
async def resolve_panic(alert_id: int, body: ResolveIn, identity: Identity = Depends(get_identity), services: Services = Depends(get_services)):
    user = await services.directory.get_user(identity.user_id)
    if not user or user.role != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    alert = await services.panic.resolve(alert_id, identity.user_id, body.note)
    return {"id": alert.id, "status": alert.status}
