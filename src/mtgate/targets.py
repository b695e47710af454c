from __future__ import annotations

import re

from .allowlist import CHANNEL_PREFIX_RE, NUMERIC_ID_RE, USER_PREFIX_RE
from .config import CHANNEL_ID

USERNAME_TARGET_RE = re.compile(r"^@?[a-z0-9_]{5,}$", re.IGNORECASE)

TARGET_HINT = "<userId or @username>"


class TargetError(ValueError):
    pass


def normalize_target(raw: str) -> str:
    trimmed = (raw or "").strip()
    if not trimmed:
        raise TargetError("Recipient is required for Telegram User sends")
    value = CHANNEL_PREFIX_RE.sub("", trimmed)
    value = USER_PREFIX_RE.sub("", value).strip()
    if not value:
        raise TargetError(f"Recipient {raw!r} has no address after its prefix")
    return value


def looks_like_target_id(raw: str) -> bool:
    """Heuristic for UI hints only; never use it for access decisions."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return False
    return bool(NUMERIC_ID_RE.match(trimmed) or USERNAME_TARGET_RE.match(trimmed))


def resolve_peer(target: str) -> int | str:
    if NUMERIC_ID_RE.match(target):
        return int(target)
    return target


def format_target(sender_id: str | int) -> str:
    return f"{CHANNEL_ID}:{sender_id}"
