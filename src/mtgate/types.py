from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, TypeAlias

ChatKind: TypeAlias = Literal["direct", "group", "channel"]
PeerKind: TypeAlias = Literal["dm", "group", "channel"]
ActivityDirection: TypeAlias = Literal["inbound", "outbound"]


@dataclass(frozen=True, slots=True)
class SenderInfo:
    id: int
    username: str | None = None
    display_name: str | None = None
    is_user: bool = True
    is_self: bool = False
    is_bot: bool = False


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    file_size: int | None = None
    mime_type: str | None = None
    file_name: str | None = None
    handle: Any = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    message_id: int
    chat_id: int
    chat_kind: ChatKind
    sender: SenderInfo | None
    text: str = ""
    date: datetime | int | float | None = None
    media: MediaDescriptor | None = None
    thread_id: int | None = None
    is_outgoing: bool = False
    is_service: bool = False
    raw: Any = None


@dataclass(frozen=True, slots=True)
class RoutePeer:
    kind: PeerKind
    id: str


@dataclass(frozen=True, slots=True)
class AgentRoute:
    agent_id: str
    session_key: str
    main_session_key: str
    account_id: str


@dataclass(frozen=True, slots=True)
class SavedMedia:
    path: str
    content_type: str | None


@dataclass(frozen=True, slots=True)
class LoadedMedia:
    buffer: bytes
    content_type: str | None
    file_name: str | None


@dataclass(frozen=True, slots=True)
class InboundContext:
    body: str
    raw_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    sender_id: str
    sender_name: str
    message_sid: str
    reply_to_id: str
    chat_type: ChatKind = "direct"
    conversation_label: str | None = None
    sender_username: str | None = None
    timestamp_ms: int | None = None
    media_path: str | None = None
    media_type: str | None = None
    provider: str = "telegram-user"
    command_authorized: bool = True
    extra: dict[str, Any] = field(default_factory=dict)
