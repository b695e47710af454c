"""Transport client seam.

The core only talks to ``UserClient``; ``TelethonUserClient`` adapts a
Telethon ``TelegramClient`` to it. Session files are owned by Telethon and are
opaque to the rest of the package.
"""

from __future__ import annotations

import io
import mimetypes
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

from telethon import TelegramClient, events, functions, types, utils

from .logging import get_logger
from .media import MediaError, OutboundMedia
from .types import ChatKind, InboundMessage, MediaDescriptor, SenderInfo

logger = get_logger(__name__)

MessageCallback = Callable[[InboundMessage], Awaitable[None]]


class UserClient(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def is_authorized(self) -> bool: ...

    async def get_me(self) -> SenderInfo | None: ...

    async def send_text(
        self, peer: int | str, text: str, *, reply_to: int | None = None
    ) -> int: ...

    async def send_media(
        self, peer: int | str, media: OutboundMedia, *, reply_to: int | None = None
    ) -> int: ...

    async def send_typing(self, peer: int | str) -> None: ...

    async def send_reaction(
        self, peer: int | str, message_id: int, emoji: str | None
    ) -> None: ...

    async def download_media(self, media: MediaDescriptor) -> bytes: ...

    def on_message(self, callback: MessageCallback) -> None: ...

    async def run_until_disconnected(self) -> None: ...


ClientFactory = Callable[[int, str, Path], UserClient]


def _sender_info(entity: Any) -> SenderInfo | None:
    if entity is None:
        return None
    if isinstance(entity, types.User):
        return SenderInfo(
            id=entity.id,
            username=entity.username,
            display_name=utils.get_display_name(entity) or str(entity.id),
            is_user=True,
            is_self=bool(entity.is_self),
            is_bot=bool(entity.bot),
        )
    return SenderInfo(
        id=utils.get_peer_id(entity),
        display_name=utils.get_display_name(entity) or None,
        is_user=False,
    )


def _chat_kind(event: Any) -> ChatKind:
    if event.is_private:
        return "direct"
    if event.is_group:
        return "group"
    return "channel"


def _thread_id(message: Any) -> int | None:
    reply_to = getattr(message, "reply_to", None)
    if reply_to is None or not getattr(reply_to, "forum_topic", False):
        return None
    return getattr(reply_to, "reply_to_top_id", None) or getattr(
        reply_to, "reply_to_msg_id", None
    )


def _media_descriptor(message: Any) -> MediaDescriptor | None:
    if message.media is None or message.file is None:
        return None
    file = message.file
    return MediaDescriptor(
        file_size=file.size,
        mime_type=file.mime_type,
        file_name=file.name,
        handle=message,
    )


def _upload_name(media: OutboundMedia) -> str:
    if media.file_name:
        return media.file_name
    extension = mimetypes.guess_extension(media.mime_type or "") or ".bin"
    return f"{'voice' if media.voice else 'file'}{extension}"


class TelethonUserClient:
    def __init__(self, client: TelegramClient) -> None:
        self._client = client

    @property
    def raw(self) -> TelegramClient:
        return self._client

    async def connect(self) -> None:
        await self._client.connect()

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def is_authorized(self) -> bool:
        return bool(await self._client.is_user_authorized())

    async def get_me(self) -> SenderInfo | None:
        return _sender_info(await self._client.get_me())

    async def send_text(
        self, peer: int | str, text: str, *, reply_to: int | None = None
    ) -> int:
        message = await self._client.send_message(peer, text, reply_to=reply_to)
        return message.id

    async def send_media(
        self, peer: int | str, media: OutboundMedia, *, reply_to: int | None = None
    ) -> int:
        file = io.BytesIO(media.data)
        file.name = _upload_name(media)
        message = await self._client.send_file(
            peer,
            file,
            caption=media.caption or None,
            voice_note=media.voice,
            reply_to=reply_to,
        )
        return message.id

    async def send_typing(self, peer: int | str) -> None:
        await self._client(
            functions.messages.SetTypingRequest(
                peer=peer, action=types.SendMessageTypingAction()
            )
        )

    async def send_reaction(
        self, peer: int | str, message_id: int, emoji: str | None
    ) -> None:
        reaction = [types.ReactionEmoji(emoticon=emoji)] if emoji else []
        await self._client(
            functions.messages.SendReactionRequest(
                peer=peer, msg_id=message_id, reaction=reaction
            )
        )

    async def download_media(self, media: MediaDescriptor) -> bytes:
        data = await self._client.download_media(media.handle, file=bytes)
        if data is None:
            raise MediaError("Telegram returned no media content")
        return data

    def on_message(self, callback: MessageCallback) -> None:
        async def handler(event: events.NewMessage.Event) -> None:
            message = event.message
            sender = await event.get_sender()
            inbound = InboundMessage(
                message_id=message.id,
                chat_id=event.chat_id,
                chat_kind=_chat_kind(event),
                sender=_sender_info(sender),
                text=message.message or "",
                date=message.date,
                media=_media_descriptor(message),
                thread_id=_thread_id(message),
                is_outgoing=bool(message.out),
                is_service=getattr(message, "action", None) is not None,
                raw=message,
            )
            await callback(inbound)

        self._client.add_event_handler(handler, events.NewMessage(incoming=True))

    async def run_until_disconnected(self) -> None:
        await self._client.run_until_disconnected()


def build_client(api_id: int, api_hash: str, session_path: Path) -> TelethonUserClient:
    logger.info("telegram_user.client.init", session=str(session_path))
    return TelethonUserClient(TelegramClient(str(session_path), api_id, api_hash))
