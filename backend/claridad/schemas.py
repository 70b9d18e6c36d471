from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from .errors import ValidationError

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

# ---------------------- MESSAGES ----------------------
class MessageKind(str, Enum):
    normal = "normal"
    panic = "panic"
    incident = "incident"

class GeoPoint(BaseModel):
    lat: float
    lng: float

class NormalMetadata(CamelModel):
    kind: Literal["normal"] = "normal"
    reply_to: str | None = None
    media_url: str | None = None

class PanicMetadata(CamelModel):
    kind: Literal["panic"] = "panic"
    alert_type: str = "panic"
    priority: str = "high"
    location: GeoPoint | None = None
    gps_location: str = "unavailable"
    address: str | None = None
    has_gps: bool = False
    block_number: str | None = None
    lot_number: str | None = None
    neighborhood: str | None = None

class IncidentMetadata(CamelModel):
    kind: Literal["incident"] = "incident"
    incident_id: str
    event: str = "created"
    active_until: datetime
    # full incident snapshot so the transcript stays self-describing
    incident: dict[str, Any]

MessageMetadata = Annotated[Union[NormalMetadata, PanicMetadata, IncidentMetadata], Field(discriminator="kind")]

METADATA_BY_KIND: dict[MessageKind, type[CamelModel]] = {
    MessageKind.normal: NormalMetadata,
    MessageKind.panic: PanicMetadata,
    MessageKind.incident: IncidentMetadata,
}

_metadata_adapter = TypeAdapter(MessageMetadata)

def parse_metadata(kind: MessageKind, raw: dict | None) -> CamelModel:
    """Validate a client-supplied metadata blob against the schema of ``kind``."""
    data = dict(raw or {})
    data["kind"] = kind.value
    try:
        return _metadata_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid {kind.value} metadata: {exc.errors()[0]['msg']}") from exc

class Message(CamelModel):
    id: str
    chat_id: str
    user_id: str
    user_name: str
    message: str
    type: MessageKind
    timestamp: datetime
    metadata: dict[str, Any] = {}

class SendMessageIn(CamelModel):
    message: str
    kind: MessageKind = MessageKind.normal
    chat_id: str
    metadata: dict[str, Any] | None = None
    client_token: str | None = None

class MessageIdOut(CamelModel):
    message_id: str

class MessagesOut(CamelModel):
    messages: list[Message]

class DayActivity(CamelModel):
    date: str  # YYYY-MM-DD, UTC
    messages: int

class ChatStats(CamelModel):
    chat_id: str
    neighborhood: str | None = None
    participant_count: int = 0
    total_messages: int = 0
    today_messages: int = 0
    active_users: int = 0
    last_activity: datetime | None = None
    recent_incidents: int = 0
    panic_messages: int = 0
    safety_level: Literal["high", "medium", "low"] = "high"
    emergency_level: Literal["normal", "elevated", "high"] = "normal"
    weekly_activity: list[DayActivity] = []

# ---------------------- PRESENCE ----------------------
class PresenceIn(CamelModel):
    chat_id: str
    user_id: str
    user_name: str | None = None
    is_online: bool = True

class TypingIn(CamelModel):
    chat_id: str
    user_id: str
    user_name: str | None = None
    is_typing: bool = True

class PresenceRecord(CamelModel):
    user_id: str
    user_name: str
    last_seen: datetime

class ActivePresence(CamelModel):
    online: list[PresenceRecord] = []
    away: list[PresenceRecord] = []

class TypingRecord(CamelModel):
    user_id: str
    user_name: str
    timestamp: datetime

# ---------------------- MEMBERSHIP ----------------------
class JoinIn(CamelModel):
    neighborhood: str

class ParticipantOut(CamelModel):
    id: int
    display_name: str
    surname: str | None = None
    email: str
    block_number: str | None = None
    lot_number: str | None = None
    neighborhood: str | None = None

class ParticipantsOut(CamelModel):
    chat_id: str
    participants_count: int
    participants: list[ParticipantOut]

class MembershipOut(CamelModel):
    chat_id: str
    neighborhood: str
    participants: list[str] = []

class UserOut(CamelModel):
    id: int
    email: EmailStr
    display_name: str
    neighborhood: str | None = None
    chat_id: str | None = None
    role: str

# ---------------------- INCIDENTS ----------------------
class LocationIn(BaseModel):
    type: str = "Point"
    coordinates: list[Any]

class IncidentCreateIn(CamelModel):
    type: str
    description: str
    neighborhood: str
    chat_id: str
    location: LocationIn
    tags: list[str] | None = None
    created_by: str | None = None
    active_for_minutes: int | None = None

class IncidentCreatedOut(CamelModel):
    incident_id: str
    expires_at: datetime

class IncidentTypeOut(CamelModel):
    id: str
    label: str
    priority: int
    urgent: bool
    category: str
    description: str | None = None

class ActiveIncident(CamelModel):
    incident_id: str
    type: str
    description: str
    expires_at: datetime

class IncidentOut(CamelModel):
    id: str
    type: str
    description: str
    neighborhood: str
    chat_id: str
    location: dict[str, Any]
    status: Literal["active", "expired"]
    active_until: datetime
    created_at: datetime
    tags: list[str] = []
    created_by: str | None = None

# ---------------------- PANIC ----------------------
class PanicIn(CamelModel):
    location: GeoPoint | None = None
    address: str | None = None

class PanicOut(CamelModel):
    message_id: str | None
    chat_id: str
    warnings: list[str] = []

class PanicAlertOut(CamelModel):
    id: int
    user_name: str
    neighborhood: str
    chat_id: str
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    block_number: str | None = None
    lot_number: str | None = None
    status: str
    created_at: datetime

class PanicAlertsOut(CamelModel):
    alerts: list[PanicAlertOut]

class ResolveIn(CamelModel):
    note: str | None = None
