from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

CHANNEL_PREFIX_RE = re.compile(r"^(telegram-user|telegram|tg):", re.IGNORECASE)
USER_PREFIX_RE = re.compile(r"^user:", re.IGNORECASE)
NUMERIC_ID_RE = re.compile(r"^-?\d+$")

WILDCARD = "*"


@dataclass(frozen=True, slots=True)
class ParsedAllowlist:
    has_wildcard: bool
    ids: frozenset[str]
    usernames: frozenset[str]


def normalize_allow_entry(raw: str | int) -> str:
    value = str(raw).strip().lower()
    value = CHANNEL_PREFIX_RE.sub("", value)
    value = USER_PREFIX_RE.sub("", value)
    return value.strip()


def parse_allowlist(entries: Iterable[str | int] | None) -> ParsedAllowlist:
    normalized = [normalize_allow_entry(entry) for entry in entries or ()]
    has_wildcard = WILDCARD in normalized
    ids: set[str] = set()
    usernames: set[str] = set()
    for entry in normalized:
        if not entry or entry == WILDCARD:
            continue
        if NUMERIC_ID_RE.match(entry):
            ids.add(entry)
            continue
        username = entry.removeprefix("@")
        if username:
            usernames.add(username)
    return ParsedAllowlist(
        has_wildcard=has_wildcard,
        ids=frozenset(ids),
        usernames=frozenset(usernames),
    )


def is_sender_allowed(
    allow_from: Iterable[str | int] | None,
    sender_id: str | int,
    sender_username: str | None = None,
) -> bool:
    parsed = parse_allowlist(allow_from)
    if parsed.has_wildcard:
        return True
    if str(sender_id).strip() in parsed.ids:
        return True
    username = (sender_username or "").strip().lower()
    if not username:
        return False
    return username.removeprefix("@") in parsed.usernames


def format_allow_from(entries: Iterable[str | int]) -> list[str]:
    formatted: list[str] = []
    for entry in entries:
        value = str(entry).strip()
        if not value:
            continue
        formatted.append(CHANNEL_PREFIX_RE.sub("", value).lower())
    return formatted
