"""Host collaborator contracts, bundled into one injected ``HostRuntime``."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .chunking import chunk_markdown_text
from .config import resolve_state_dir, toml_config_loader
from .media import LocalMediaStore, MediaStore
from .pairing import (
    JsonPairingStore,
    PairingStore,
    build_pairing_reply,
    resolve_pairing_path,
)
from .payloads import ReplyPayload
from .types import ActivityDirection, AgentRoute, InboundContext, RoutePeer

Chunker = Callable[[str, int], list[str]]
Deliver = Callable[[ReplyPayload], Awaitable[None]]


class AgentRouter(Protocol):
    def resolve_agent_route(
        self,
        *,
        config: dict,
        channel: str,
        account_id: str,
        peer: RoutePeer,
        parent_peer: RoutePeer | None = None,
    ) -> AgentRoute: ...


class SessionStore(Protocol):
    def read_session_updated_at(self, *, session_key: str) -> int | None: ...

    async def record_inbound_meta(
        self, *, session_key: str, ctx: InboundContext
    ) -> None: ...

    async def update_last_route(
        self,
        *,
        session_key: str,
        channel: str,
        to: str,
        account_id: str,
        ctx: InboundContext,
    ) -> None: ...


class AgentReplier(Protocol):
    async def dispatch_reply(self, ctx: InboundContext, *, deliver: Deliver) -> None: ...


class ActivityRecorder(Protocol):
    def record(
        self, *, channel: str, account_id: str, direction: ActivityDirection
    ) -> None: ...


class EnvelopeFormatter(Protocol):
    def __call__(
        self,
        *,
        channel: str,
        from_: str,
        timestamp_ms: int | None,
        previous_timestamp_ms: int | None,
        body: str,
    ) -> str: ...


def format_elapsed(elapsed_s: float) -> str:
    total = max(0, int(elapsed_s))
    minutes, seconds = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours:02d}h"
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def format_agent_envelope(
    *,
    channel: str,
    from_: str,
    timestamp_ms: int | None,
    previous_timestamp_ms: int | None,
    body: str,
) -> str:
    parts = [channel, from_]
    if timestamp_ms is not None and previous_timestamp_ms is not None:
        parts.append(f"+{format_elapsed((timestamp_ms - previous_timestamp_ms) / 1000)}")
    if timestamp_ms is not None:
        when = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        parts.append(when.strftime("%Y-%m-%d %H:%M UTC"))
    return f"[{' '.join(parts)}] {body}"


class StatusActivityRecorder:
    """Keeps the last inbound/outbound time per account for status snapshots."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last: dict[tuple[str, str, ActivityDirection], int] = {}

    def record(
        self, *, channel: str, account_id: str, direction: ActivityDirection
    ) -> None:
        self._last[(channel, account_id, direction)] = int(self._clock() * 1000)

    def last_at(
        self, *, channel: str, account_id: str, direction: ActivityDirection
    ) -> int | None:
        return self._last.get((channel, account_id, direction))


@dataclass(slots=True)
class HostRuntime:
    load_config: Callable[[], dict]
    router: AgentRouter
    sessions: SessionStore
    pairing: PairingStore
    media: MediaStore
    agent: AgentReplier
    activity: ActivityRecorder = field(default_factory=StatusActivityRecorder)
    state_dir: Path | None = None
    chunker: Chunker = chunk_markdown_text
    format_envelope: EnvelopeFormatter = format_agent_envelope
    build_pairing_reply: Callable[..., str] = build_pairing_reply

    def resolved_state_dir(self) -> Path:
        return resolve_state_dir(self.state_dir)

    @classmethod
    def from_config_file(
        cls,
        *,
        router: AgentRouter,
        sessions: SessionStore,
        agent: AgentReplier,
        config_path: str | Path | None = None,
        state_dir: str | Path | None = None,
        pairing: PairingStore | None = None,
        media: MediaStore | None = None,
    ) -> HostRuntime:
        """Runtime backed by the TOML config file, with pairing and media kept
        under the state directory unless the host supplies its own stores.
        """
        root = resolve_state_dir(state_dir)
        return cls(
            load_config=toml_config_loader(config_path),
            router=router,
            sessions=sessions,
            pairing=pairing or JsonPairingStore(resolve_pairing_path(root)),
            media=media or LocalMediaStore(root / "media"),
            agent=agent,
            state_dir=root,
        )
