import re
from .errors import InvalidMembership

CHAT_PREFIX = "chat_"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
# chat ids of the previous scheme were 24-char ObjectId hex strings
_LEGACY_ID = re.compile(r"^[0-9a-f]{24}$", re.IGNORECASE)

def resolve(neighborhood: str) -> str:
    """Derive the chat id for a neighborhood name.

    "Bosque Peralta Ramos" -> "chat_bosque_peralta_ramos". Names that differ
    only in case or punctuation map to the same id.
    """
    slug = _NON_ALNUM.sub("_", (neighborhood or "").lower()).strip("_")
    if not slug:
        raise InvalidMembership(f"cannot derive a chat id from neighborhood {neighborhood!r}")
    return CHAT_PREFIX + slug

def is_legacy_id(chat_id: str | None) -> bool:
    return bool(chat_id) and bool(_LEGACY_ID.match(chat_id))
