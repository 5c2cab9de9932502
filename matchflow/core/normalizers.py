import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    value = ensure_aware(value)
    return value.isoformat() if value else None


def normalize_error_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, (dict, list, tuple)):
        if not value:
            return None
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def normalize_detected_players(players: Any) -> List[Dict[str, Any]]:
    """Detection results arrive either as bare image URLs or as objects.

    Bare URLs get sequential player ids (``a``, ``b``, ...) so downstream
    assignment payloads can reference them.
    """
    if not isinstance(players, list):
        return []
    normalized: List[Dict[str, Any]] = []
    for index, player in enumerate(players):
        if isinstance(player, str):
            normalized.append({"image_url": player, "player_id": chr(97 + index)})
        elif isinstance(player, dict) and player:
            normalized.append(dict(player))
    return normalized
