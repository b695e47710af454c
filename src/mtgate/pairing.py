"""DM admission: allowlist policy plus the pairing-code flow for unknown senders.

States per sender: unknown -> pending (code issued) -> approved. Approval and
storage belong to the pairing store; this module only reads approvals and
writes new requests.
"""

from __future__ import annotations

import enum
import os
import secrets
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import anyio
import msgspec

from .allowlist import is_sender_allowed, normalize_allow_entry
from .config import CHANNEL_ID
from .logging import get_logger
from .settings import DmPolicy
from .types import SenderInfo

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "pairing.json"
PAIRING_CODE_LENGTH = 8
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_TTL_S = 60 * 60


class AccessDecision(enum.Enum):
    ALLOW = "allow"
    DROP = "drop"
    PAIRING = "pairing"


@dataclass(frozen=True, slots=True)
class PairingRequest:
    channel: str
    sender_id: str
    code: str
    created: bool
    created_at: float
    expires_at: float
    meta: dict[str, str] = field(default_factory=dict)


class PairingStore(Protocol):
    async def upsert_pairing_request(
        self, *, channel: str, sender_id: str, meta: dict[str, str]
    ) -> PairingRequest: ...

    async def read_allow_from(self, channel: str) -> list[str]: ...


def evaluate_dm_access(
    policy: DmPolicy,
    allow_from: Iterable[str | int] | None,
    sender_id: str | int,
    sender_username: str | None = None,
) -> AccessDecision:
    if policy == "disabled":
        return AccessDecision.DROP
    if policy == "open":
        return AccessDecision.ALLOW
    if is_sender_allowed(allow_from, sender_id, sender_username):
        return AccessDecision.ALLOW
    if policy == "pairing":
        return AccessDecision.PAIRING
    return AccessDecision.DROP


def format_pairing_approve_hint(channel: str = CHANNEL_ID) -> str:
    return f"Approve via: mtgate pairing approve {channel} <code>"


def build_pairing_reply(*, channel: str, id_line: str, code: str) -> str:
    return "\n".join(
        [
            "This assistant only talks to approved contacts.",
            "",
            id_line,
            "",
            f"Pairing code: {code}",
            "",
            "Ask the owner to approve with:",
            f"mtgate pairing approve {channel} {code}",
        ]
    )


class DmAccessGate:
    """Decides whether a direct message reaches the agent."""

    def __init__(
        self,
        *,
        store: PairingStore,
        policy: DmPolicy,
        allow_from: Iterable[str | int] | None,
        account_id: str,
        build_reply: Callable[..., str] = build_pairing_reply,
    ) -> None:
        self._store = store
        self._policy = policy
        self._allow_from = list(allow_from or [])
        self._account_id = account_id
        self._build_reply = build_reply

    async def _combined_allow_from(self) -> list[str | int]:
        try:
            stored = await self._store.read_allow_from(CHANNEL_ID)
        except Exception as exc:
            logger.warning(
                "telegram_user.pairing.store_read_failed",
                account_id=self._account_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            stored = []
        return [*self._allow_from, *stored]

    async def check(
        self,
        sender: SenderInfo,
        *,
        reply: Callable[[str], Awaitable[object]],
    ) -> AccessDecision:
        sender_id = str(sender.id)
        if self._policy == "disabled":
            decision = AccessDecision.DROP
        elif self._policy == "open":
            decision = AccessDecision.ALLOW
        else:
            decision = evaluate_dm_access(
                self._policy,
                await self._combined_allow_from(),
                sender_id,
                sender.username,
            )
        if decision is AccessDecision.PAIRING:
            await self._offer_pairing(sender, reply=reply)
        elif decision is AccessDecision.DROP:
            logger.debug(
                "telegram_user.dm.dropped",
                account_id=self._account_id,
                sender_id=sender_id,
                policy=self._policy,
            )
        return decision

    async def _offer_pairing(
        self,
        sender: SenderInfo,
        *,
        reply: Callable[[str], Awaitable[object]],
    ) -> None:
        sender_id = str(sender.id)
        meta: dict[str, str] = {"name": sender.display_name or sender_id}
        if sender.username:
            meta["username"] = sender.username
        request = await self._store.upsert_pairing_request(
            channel=CHANNEL_ID, sender_id=sender_id, meta=meta
        )
        logger.info(
            "telegram_user.pairing.requested",
            account_id=self._account_id,
            sender_id=sender_id,
            created=request.created,
        )
        text = self._build_reply(
            channel=CHANNEL_ID,
            id_line=f"Telegram user id: {sender_id}",
            code=request.code,
        )
        await reply(text)


class _RequestState(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    code: str
    created_at: float
    last_seen_at: float
    meta: dict[str, str] = msgspec.field(default_factory=dict)


class _ChannelState(msgspec.Struct, forbid_unknown_fields=False):
    requests: list[_RequestState] = msgspec.field(default_factory=list)
    allow_from: list[str] = msgspec.field(default_factory=list)


class _PairingState(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    channels: dict[str, _ChannelState] = msgspec.field(default_factory=dict)


def resolve_pairing_path(state_dir: Path) -> Path:
    return state_dir / STATE_FILENAME


class JsonPairingStore:
    """File-backed pairing store; one JSON document for every channel."""

    def __init__(
        self,
        path: Path,
        *,
        ttl_s: float = PAIRING_TTL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._ttl_s = ttl_s
        self._clock = clock
        self._lock = anyio.Lock()

    def _load(self) -> _PairingState:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return _PairingState(version=STATE_VERSION)
        try:
            return msgspec.json.decode(raw, type=_PairingState)
        except msgspec.DecodeError as exc:
            logger.warning(
                "pairing.state.malformed",
                path=str(self._path),
                error=str(exc),
            )
            return _PairingState(version=STATE_VERSION)

    def _save(self, state: _PairingState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_bytes(msgspec.json.format(msgspec.json.encode(state), indent=2))
        os.replace(tmp_path, self._path)

    def _prune(self, channel: _ChannelState, now: float) -> None:
        channel.requests = [
            request
            for request in channel.requests
            if now - request.created_at < self._ttl_s
        ]

    def _new_code(self, channel: _ChannelState) -> str:
        taken = {request.code for request in channel.requests}
        while True:
            code = "".join(
                secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH)
            )
            if code not in taken:
                return code

    def _to_request(
        self, channel_id: str, request: _RequestState, *, created: bool
    ) -> PairingRequest:
        return PairingRequest(
            channel=channel_id,
            sender_id=request.id,
            code=request.code,
            created=created,
            created_at=request.created_at,
            expires_at=request.created_at + self._ttl_s,
            meta=dict(request.meta),
        )

    async def upsert_pairing_request(
        self, *, channel: str, sender_id: str, meta: dict[str, str]
    ) -> PairingRequest:
        async with self._lock:
            state = self._load()
            channel_state = state.channels.setdefault(channel, _ChannelState())
            now = self._clock()
            self._prune(channel_state, now)
            for request in channel_state.requests:
                if request.id == sender_id:
                    request.last_seen_at = now
                    request.meta = {**request.meta, **meta}
                    self._save(state)
                    return self._to_request(channel, request, created=False)
            request = _RequestState(
                id=sender_id,
                code=self._new_code(channel_state),
                created_at=now,
                last_seen_at=now,
                meta=dict(meta),
            )
            channel_state.requests.append(request)
            self._save(state)
            return self._to_request(channel, request, created=True)

    async def read_allow_from(self, channel: str) -> list[str]:
        async with self._lock:
            state = self._load()
        channel_state = state.channels.get(channel)
        return list(channel_state.allow_from) if channel_state else []

    async def list_requests(self, channel: str) -> list[PairingRequest]:
        async with self._lock:
            state = self._load()
        channel_state = state.channels.get(channel)
        if channel_state is None:
            return []
        self._prune(channel_state, self._clock())
        return [
            self._to_request(channel, request, created=False)
            for request in channel_state.requests
        ]

    async def approve(self, channel: str, code: str) -> str | None:
        """Approve a pending code; returns the sender id or None."""
        wanted = code.strip().upper()
        async with self._lock:
            state = self._load()
            channel_state = state.channels.get(channel)
            if channel_state is None:
                return None
            self._prune(channel_state, self._clock())
            match = next(
                (r for r in channel_state.requests if r.code == wanted), None
            )
            if match is None:
                return None
            channel_state.requests.remove(match)
            entry = normalize_allow_entry(match.id)
            if entry not in channel_state.allow_from:
                channel_state.allow_from.append(entry)
            self._save(state)
            return match.id
