"""WatchSync shareable room links."""
from __future__ import annotations
import re
import uuid
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

ROOM_PARAM = "room"
LEGACY_ROOM_PARAM = "party"

_BARE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


def create_room_link(base_url: str) -> tuple[str, str]:
    """Create a new room id and return (room_id, base_url?room=<id>)."""
    room_id = str(uuid.uuid4())
    parts = urlsplit(base_url)
    query = parse_qs(parts.query)
    query[ROOM_PARAM] = [room_id]
    query.pop(LEGACY_ROOM_PARAM, None)
    url = urlunsplit(parts._replace(query=urlencode(query, doseq=True)))
    return room_id, url


def room_id_from_url(text: str) -> Optional[str]:
    """
    Extract the room id from a shared link (`?room=` or `?party=`).
    A bare id is returned as-is; anything else yields None.
    """
    text = (text or "").strip()
    if not text:
        return None
    if _BARE_ID.match(text):
        return text
    query = parse_qs(urlsplit(text).query)
    for param in (ROOM_PARAM, LEGACY_ROOM_PARAM):
        values = query.get(param)
        if values and values[0]:
            return values[0]
    return None
