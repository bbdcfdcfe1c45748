from __future__ import annotations

from ..models import ChannelRef

CHANNEL_ID_SEPARATOR = "_"


def parse_channel_id(channel_id: str | None) -> ChannelRef:
    """Split `userId_characterId_timestampMillis`; anything else is not a character channel."""
    if not channel_id:
        return ChannelRef()
    parts = channel_id.split(CHANNEL_ID_SEPARATOR)
    if len(parts) != 3:
        return ChannelRef()
    user_id, character_id, raw_timestamp = parts
    if not user_id or not character_id or not raw_timestamp.isdigit():
        return ChannelRef()
    return ChannelRef(user_id=user_id, character_id=character_id, timestamp=int(raw_timestamp))


def build_channel_id(user_id: str, character_id: str, timestamp: int) -> str:
    for label, value in (("user_id", user_id), ("character_id", character_id)):
        if not value or CHANNEL_ID_SEPARATOR in value:
            raise ValueError(f"{label} must be non-empty and must not contain '{CHANNEL_ID_SEPARATOR}': {value!r}")
    return CHANNEL_ID_SEPARATOR.join((user_id, character_id, str(int(timestamp))))
