"""Reply dispatch: turns agent payloads into ordered Telegram sends.

Only the first message of a dispatch threads as a reply to the triggering
message (``reply_to_mode="first"``). Typing indicators and acknowledgement
reactions run as detached tasks; their failures are logged and collected in
``ReplyDispatcher.failures`` but never fail the dispatch.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

import anyio
from anyio.abc import TaskGroup

from .client import UserClient
from .config import CHANNEL_ID
from .logging import get_logger
from .payloads import OutboundPayload, ReplyPayload, normalize_outbound_payload
from .runtime import HostRuntime
from .send import send_media, send_message
from .settings import HumanDelaySettings, ReplyToMode

logger = get_logger(__name__)

NATURAL_DELAY_MS = (800, 2500)


@dataclass(slots=True)
class DetachedResult:
    label: str
    done: anyio.Event = field(default_factory=anyio.Event)
    ok: bool = False
    error: Exception | None = None

    async def wait(self) -> bool:
        await self.done.wait()
        return self.ok


@dataclass(slots=True)
class DispatchSession:
    reply_to_id: int | None
    reply_to_mode: ReplyToMode = "first"
    has_replied: bool = False
    sent: int = 0

    def next_reply_to(self) -> int | None:
        if self.reply_to_id is None or self.reply_to_mode == "off":
            return None
        if self.reply_to_mode == "all":
            return self.reply_to_id
        return None if self.has_replied else self.reply_to_id

    def mark_sent(self) -> None:
        self.has_replied = True
        self.sent += 1


@dataclass(frozen=True, slots=True)
class HumanDelay:
    min_ms: int
    max_ms: int

    @classmethod
    def from_settings(cls, settings: HumanDelaySettings) -> "HumanDelay | None":
        if settings.mode == "off":
            return None
        if settings.mode == "natural":
            return cls(*NATURAL_DELAY_MS)
        return cls(settings.min_ms, settings.max_ms)


class ReplyDispatcher:
    def __init__(
        self,
        *,
        client: UserClient,
        runtime: HostRuntime,
        task_group: TaskGroup,
        account_id: str,
        target: str,
        peer: int | str,
        message_id: int | None,
        text_limit: int,
        media_max_bytes: int,
        reply_to_mode: ReplyToMode = "first",
        human_delay: HumanDelay | None = None,
        response_prefix: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._client = client
        self._runtime = runtime
        self._tg = task_group
        self._account_id = account_id
        self._target = target
        self._peer = peer
        self._message_id = message_id
        self._text_limit = text_limit
        self._media_max_bytes = media_max_bytes
        self._human_delay = human_delay
        self._response_prefix = response_prefix
        self._sleep = sleep
        self._prefixed = False
        self._typing: DetachedResult | None = None
        self._ack: DetachedResult | None = None
        self.session = DispatchSession(reply_to_id=message_id, reply_to_mode=reply_to_mode)
        self.failures: list[DetachedResult] = []

    def _spawn(
        self, label: str, fn: Callable[[], Awaitable[object]]
    ) -> DetachedResult:
        result = DetachedResult(label=label)

        async def run() -> None:
            try:
                await fn()
            except Exception as exc:
                result.error = exc
                self.failures.append(result)
                logger.warning(
                    f"telegram_user.{label}.failed",
                    account_id=self._account_id,
                    peer=str(self._peer),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
            else:
                result.ok = True
            finally:
                result.done.set()

        self._tg.start_soon(run)
        return result

    def start_typing(self) -> DetachedResult:
        if self._typing is None:
            self._typing = self._spawn(
                "typing", lambda: self._client.send_typing(self._peer)
            )
        return self._typing

    def acknowledge(self, emoji: str) -> DetachedResult | None:
        if self._message_id is None or self._ack is not None:
            return self._ack
        message_id = self._message_id
        self._ack = self._spawn(
            "ack_reaction",
            lambda: self._client.send_reaction(self._peer, message_id, emoji),
        )
        return self._ack

    async def dispatch(self, payloads: Iterable[ReplyPayload]) -> None:
        for payload in payloads:
            await self.deliver(payload)

    async def deliver(self, payload: ReplyPayload) -> None:
        normalized = normalize_outbound_payload(payload)
        if normalized is None:
            return
        self.start_typing()
        try:
            await self._deliver(normalized)
        except Exception as exc:
            logger.error(
                "telegram_user.reply.failed",
                account_id=self._account_id,
                target=self._target,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def finish(self, *, remove_ack: bool) -> None:
        if not remove_ack or self._ack is None or self._message_id is None:
            return
        if not await self._ack.wait():
            return
        try:
            await self._client.send_reaction(self._peer, self._message_id, None)
        except Exception as exc:
            logger.warning(
                "telegram_user.ack_reaction.cleanup_failed",
                account_id=self._account_id,
                peer=str(self._peer),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def _apply_prefix(self, text: str) -> str:
        if not text or self._prefixed or not self._response_prefix:
            return text
        self._prefixed = True
        if text.startswith(self._response_prefix):
            return text
        return f"{self._response_prefix} {text}"

    async def _pause(self) -> None:
        if self._human_delay is None or self.session.sent == 0:
            return
        delay_ms = random.uniform(self._human_delay.min_ms, self._human_delay.max_ms)
        await self._sleep(delay_ms / 1000)

    async def _deliver(self, payload: OutboundPayload) -> None:
        await self._pause()
        text = self._apply_prefix(payload.text)
        if payload.has_media:
            caption = text
            for url in payload.media_urls:
                try:
                    await self._send_media(
                        url, caption, audio_as_voice=bool(payload.audio_as_voice)
                    )
                except Exception as exc:
                    logger.error(
                        "telegram_user.reply.media_failed",
                        account_id=self._account_id,
                        target=self._target,
                        media_url=url,
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                    continue
                # the caption rides on the first media that actually went out
                caption = ""
            return
        for chunk in self._runtime.chunker(text, self._text_limit):
            trimmed = chunk.strip()
            if not trimmed:
                continue
            await self._send_text(trimmed)

    async def _send_text(self, text: str) -> None:
        await send_message(
            self._target,
            text,
            runtime=self._runtime,
            client=self._client,
            account_id=self._account_id,
            reply_to=self.session.next_reply_to(),
        )
        self._record_sent()

    async def _send_media(self, url: str, caption: str, *, audio_as_voice: bool) -> None:
        await send_media(
            self._target,
            caption,
            media_url=url,
            runtime=self._runtime,
            client=self._client,
            account_id=self._account_id,
            reply_to=self.session.next_reply_to(),
            max_bytes=self._media_max_bytes,
            audio_as_voice=audio_as_voice,
        )
        self._record_sent()

    def _record_sent(self) -> None:
        self.session.mark_sent()
        self._runtime.activity.record(
            channel=CHANNEL_ID, account_id=self._account_id, direction="outbound"
        )
