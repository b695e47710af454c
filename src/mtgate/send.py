from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from .accounts import resolve_account, resolve_session_path
from .client import ClientFactory, UserClient, build_client
from .config import ConfigError, MissingSessionError
from .logging import get_logger
from .media import OutboundMedia, build_outbound_media, is_voice_forbidden_error
from .registry import ClientRegistry
from .runtime import HostRuntime
from .targets import normalize_target, resolve_peer

logger = get_logger(__name__)

MISSING_CREDENTIALS = "Telegram user credentials missing (api_id/api_hash required)."
MISSING_SESSION = (
    "Telegram user session missing. Log in with the host's telegram-user login first."
)


@dataclass(frozen=True, slots=True)
class SendResult:
    message_id: str
    chat_id: str


@asynccontextmanager
async def resolve_client(
    *,
    runtime: HostRuntime,
    client: UserClient | None = None,
    account_id: str | None = None,
    registry: ClientRegistry[UserClient] | None = None,
    client_factory: ClientFactory = build_client,
) -> AsyncIterator[UserClient]:
    """Yield a connected client: explicit, then the active one, then one-shot."""
    if client is not None:
        yield client
        return
    if registry is not None:
        active = registry.get(account_id)
        if active is not None:
            yield active
            return

    account = resolve_account(runtime.load_config(), account_id)
    credentials = account.credentials
    if not credentials.api_id or not credentials.api_hash:
        raise ConfigError(MISSING_CREDENTIALS)
    session_path = resolve_session_path(
        account.account_id, runtime.resolved_state_dir()
    )
    if not session_path.is_file():
        raise MissingSessionError(MISSING_SESSION)

    one_shot = client_factory(credentials.api_id, credentials.api_hash, session_path)
    await one_shot.connect()
    try:
        if not await one_shot.is_authorized():
            raise MissingSessionError(MISSING_SESSION)
        yield one_shot
    finally:
        await one_shot.disconnect()


async def send_outbound_media(
    client: UserClient,
    peer: int | str,
    media: OutboundMedia,
    *,
    reply_to: int | None = None,
) -> int:
    try:
        return await client.send_media(peer, media, reply_to=reply_to)
    except Exception as exc:
        if not media.voice or not is_voice_forbidden_error(exc):
            raise
        logger.warning(
            "telegram_user.voice.forbidden",
            peer=str(peer),
            error=str(exc),
        )
    return await client.send_media(peer, media.as_generic(), reply_to=reply_to)


async def send_message(
    to: str,
    text: str,
    *,
    runtime: HostRuntime,
    client: UserClient | None = None,
    account_id: str | None = None,
    reply_to: int | None = None,
    registry: ClientRegistry[UserClient] | None = None,
    client_factory: ClientFactory = build_client,
) -> SendResult:
    peer = resolve_peer(normalize_target(to))
    async with resolve_client(
        runtime=runtime,
        client=client,
        account_id=account_id,
        registry=registry,
        client_factory=client_factory,
    ) as active:
        message_id = await active.send_text(peer, text, reply_to=reply_to)
    return SendResult(message_id=str(message_id), chat_id=str(peer))


async def send_media(
    to: str,
    text: str,
    *,
    media_url: str,
    runtime: HostRuntime,
    client: UserClient | None = None,
    account_id: str | None = None,
    reply_to: int | None = None,
    max_bytes: int | None = None,
    audio_as_voice: bool = False,
    registry: ClientRegistry[UserClient] | None = None,
    client_factory: ClientFactory = build_client,
) -> SendResult:
    peer = resolve_peer(normalize_target(to))
    async with resolve_client(
        runtime=runtime,
        client=client,
        account_id=account_id,
        registry=registry,
        client_factory=client_factory,
    ) as active:
        loaded = await runtime.media.load_web_media(media_url, max_bytes=max_bytes)
        media = build_outbound_media(loaded, caption=text, as_voice=audio_as_voice)
        message_id = await send_outbound_media(active, peer, media, reply_to=reply_to)
    return SendResult(message_id=str(message_id), chat_id=str(peer))
