from __future__ import annotations

import math
from datetime import datetime

import anyio

from .accounts import ResolvedAccount
from .client import UserClient
from .config import CHANNEL_ID
from .dispatch import HumanDelay, ReplyDispatcher
from .logging import get_logger
from .media import MIB, resolve_inbound_media
from .pairing import AccessDecision, DmAccessGate
from .runtime import HostRuntime
from .send import send_message
from .settings import MessagesSettings, load_messages_settings
from .targets import format_target, resolve_peer
from .types import InboundContext, InboundMessage, RoutePeer, SavedMedia

logger = get_logger(__name__)

ENVELOPE_CHANNEL = "Telegram User"
ACK_SCOPES = frozenset({"all", "direct"})


def resolve_timestamp_ms(value: datetime | int | float | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        try:
            return int(value.timestamp() * 1000)
        except (OverflowError, OSError, ValueError):
            return None
    if not math.isfinite(value):
        return None
    if value < 1e12:
        return int(value * 1000)
    return int(value)


def build_parent_peer(
    *, is_group: bool, chat_id: int, thread_id: int | None = None
) -> RoutePeer | None:
    if not is_group or thread_id is None:
        return None
    return RoutePeer(kind="group", id=str(chat_id))


class TelegramUserMessageHandler:
    """Admission and dispatch for one inbound message per call."""

    def __init__(
        self,
        *,
        client: UserClient,
        runtime: HostRuntime,
        config: dict,
        account: ResolvedAccount,
        self_id: int | None = None,
    ) -> None:
        self._client = client
        self._runtime = runtime
        self._config = config
        self._account = account
        self._self_id = self_id
        self._messages: MessagesSettings = load_messages_settings(config)
        self._gate = DmAccessGate(
            store=runtime.pairing,
            policy=account.dm_policy,
            allow_from=account.allow_from,
            account_id=account.account_id,
            build_reply=runtime.build_pairing_reply,
        )

    async def __call__(self, msg: InboundMessage) -> None:
        try:
            await self.handle(msg)
        except Exception:
            logger.exception(
                "telegram_user.handler.failed",
                account_id=self._account.account_id,
                message_id=msg.message_id,
            )

    def _is_candidate(self, msg: InboundMessage) -> bool:
        if msg.is_outgoing or msg.is_service:
            return False
        if msg.chat_kind != "direct":
            return False
        sender = msg.sender
        if sender is None or not sender.is_user or sender.is_self or sender.is_bot:
            return False
        return self._self_id is None or sender.id != self._self_id

    async def _resolve_media(self, msg: InboundMessage) -> SavedMedia | None:
        try:
            return await resolve_inbound_media(
                client=self._client,
                media=msg.media,
                media_max_mb=self._account.media_max_mb,
                store=self._runtime.media,
                channel=CHANNEL_ID,
            )
        except Exception as exc:
            logger.error(
                "telegram_user.media.failed",
                account_id=self._account.account_id,
                message_id=msg.message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    async def _record_session_meta(self, session_key: str, ctx: InboundContext) -> None:
        try:
            await self._runtime.sessions.record_inbound_meta(
                session_key=session_key, ctx=ctx
            )
        except Exception as exc:
            logger.warning(
                "telegram_user.session_meta.failed",
                account_id=self._account.account_id,
                session_key=session_key,
                error=str(exc),
            )

    def _ack_emoji(self) -> str | None:
        emoji = (self._messages.ack_reaction or "").strip()
        if not emoji or self._messages.ack_reaction_scope not in ACK_SCOPES:
            return None
        return emoji

    async def handle(self, msg: InboundMessage) -> None:
        sender = msg.sender
        if sender is None or not self._is_candidate(msg):
            return
        account_id = self._account.account_id
        sender_id = str(sender.id)
        target = format_target(sender_id)
        peer = resolve_peer(sender_id)

        async def reply(text: str) -> None:
            await send_message(
                target,
                text,
                runtime=self._runtime,
                client=self._client,
                account_id=account_id,
            )

        decision = await self._gate.check(sender, reply=reply)
        if decision is not AccessDecision.ALLOW:
            return

        text = msg.text.strip()
        media = await self._resolve_media(msg)
        if not text and media is None:
            return

        self._runtime.activity.record(
            channel=CHANNEL_ID, account_id=account_id, direction="inbound"
        )
        route = self._runtime.router.resolve_agent_route(
            config=self._config,
            channel=CHANNEL_ID,
            account_id=account_id,
            peer=RoutePeer(kind="dm", id=sender_id),
            parent_peer=build_parent_peer(
                is_group=msg.chat_kind == "group",
                chat_id=msg.chat_id,
                thread_id=msg.thread_id,
            ),
        )
        sender_name = sender.display_name or sender_id
        timestamp_ms = resolve_timestamp_ms(msg.date)
        previous_ms = self._runtime.sessions.read_session_updated_at(
            session_key=route.session_key
        )
        body = self._runtime.format_envelope(
            channel=ENVELOPE_CHANNEL,
            from_=sender_name,
            timestamp_ms=timestamp_ms,
            previous_timestamp_ms=previous_ms,
            body=text or "(media)",
        )
        ctx = InboundContext(
            body=body,
            raw_body=text,
            from_=target,
            to=target,
            session_key=route.session_key,
            account_id=route.account_id,
            sender_id=sender_id,
            sender_name=sender_name,
            sender_username=sender.username,
            conversation_label=sender_name,
            message_sid=str(msg.message_id),
            reply_to_id=str(msg.message_id),
            timestamp_ms=timestamp_ms,
            media_path=media.path if media else None,
            media_type=media.content_type if media else None,
        )

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._record_session_meta, route.session_key, ctx)
            await self._runtime.sessions.update_last_route(
                session_key=route.main_session_key,
                channel=CHANNEL_ID,
                to=target,
                account_id=route.account_id,
                ctx=ctx,
            )
            dispatcher = ReplyDispatcher(
                client=self._client,
                runtime=self._runtime,
                task_group=tg,
                account_id=account_id,
                target=target,
                peer=peer,
                message_id=msg.message_id,
                text_limit=self._account.text_chunk_limit,
                media_max_bytes=int(self._account.media_max_mb * MIB),
                reply_to_mode=self._account.reply_to_mode,
                human_delay=HumanDelay.from_settings(self._messages.human_delay),
                response_prefix=self._messages.response_prefix,
            )
            emoji = self._ack_emoji()
            if emoji is not None:
                dispatcher.acknowledge(emoji)
            dispatcher.start_typing()
            await self._runtime.agent.dispatch_reply(ctx, deliver=dispatcher.deliver)
            await dispatcher.finish(
                remove_ack=self._messages.remove_ack_after_reply
            )
