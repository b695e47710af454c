"""The ``telegram-user`` channel as the host sees it."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

from .accounts import (
    DEFAULT_ACCOUNT_ID,
    ResolvedAccount,
    delete_account,
    ensure_session_dir,
    is_session_linked,
    list_account_ids,
    normalize_account_id,
    resolve_account,
    resolve_default_account_id,
    resolve_session_path,
    set_account_enabled,
)
from .allowlist import format_allow_from, normalize_allow_entry
from .client import ClientFactory, UserClient, build_client
from .config import CHANNEL_ID, DEFAULT_TEXT_CHUNK_LIMIT, channel_section
from .logging import get_logger
from .media import MIB
from .monitor import TelegramUserMonitor
from .pairing import format_pairing_approve_hint
from .registry import ClientRegistry
from .runtime import HostRuntime, StatusActivityRecorder
from .send import SendResult, send_media, send_message
from .settings import DmPolicy
from .targets import TARGET_HINT, looks_like_target_id, normalize_target

logger = get_logger(__name__)

APPROVED_MESSAGE = "mtgate: access approved."


@dataclass(frozen=True, slots=True)
class ChannelMeta:
    id: str
    label: str
    selection_label: str
    detail_label: str
    docs_path: str
    blurb: str
    order: int


@dataclass(frozen=True, slots=True)
class Capabilities:
    chat_types: tuple[str, ...] = ("direct",)
    media: bool = True
    reactions: bool = False
    threads: bool = False
    native_commands: bool = False
    block_streaming: bool = True


@dataclass(frozen=True, slots=True)
class DmPolicyInfo:
    policy: DmPolicy
    allow_from: list[str | int]
    policy_path: str
    allow_from_path: str
    approve_hint: str


@dataclass(slots=True)
class AccountStatus:
    account_id: str
    running: bool = False
    last_start_at: int | None = None
    last_stop_at: int | None = None
    last_error: str | None = None


META = ChannelMeta(
    id=CHANNEL_ID,
    label="Telegram User",
    selection_label="Telegram User (MTProto)",
    detail_label="Telegram User",
    docs_path="/channels/telegram-user",
    blurb="Talk to the agent through your own Telegram account; direct messages only.",
    order=12,
)


class TelegramUserChannel:
    id = CHANNEL_ID
    meta = META
    capabilities = Capabilities()
    text_chunk_limit = DEFAULT_TEXT_CHUNK_LIMIT
    target_hint = TARGET_HINT

    def __init__(
        self,
        runtime: HostRuntime,
        *,
        registry: ClientRegistry[UserClient] | None = None,
        client_factory: ClientFactory = build_client,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._runtime = runtime
        self._registry: ClientRegistry[UserClient] = registry or ClientRegistry()
        self._client_factory = client_factory
        self._clock = clock
        self._monitors: dict[str, TelegramUserMonitor] = {}
        self._status: dict[str, AccountStatus] = {}

    @property
    def registry(self) -> ClientRegistry[UserClient]:
        return self._registry

    def _config(self, config: dict | None) -> dict:
        return config if config is not None else self._runtime.load_config()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # config

    def list_account_ids(self, config: dict | None = None) -> list[str]:
        return list_account_ids(self._config(config))

    def resolve_account(
        self, config: dict | None = None, account_id: str | None = None
    ) -> ResolvedAccount:
        return resolve_account(self._config(config), account_id)

    def default_account_id(self, config: dict | None = None) -> str:
        return resolve_default_account_id(self._config(config))

    def set_account_enabled(
        self, config: dict, account_id: str | None, enabled: bool
    ) -> dict:
        return set_account_enabled(config, account_id, enabled)

    def delete_account(self, config: dict, account_id: str | None) -> dict:
        return delete_account(config, account_id)

    def is_configured(self, account: ResolvedAccount) -> bool:
        return account.configured

    def prepare_session_path(self, account_id: str | None = None) -> Path:
        """Where the host's login flow should write the session for ``account_id``."""
        session_path = resolve_session_path(
            account_id, self._runtime.resolved_state_dir()
        )
        ensure_session_dir(session_path)
        return session_path

    def describe_account(self, account: ResolvedAccount) -> dict[str, Any]:
        return {
            "accountId": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
        }

    def resolve_allow_from(
        self, config: dict | None = None, account_id: str | None = None
    ) -> list[str]:
        account = self.resolve_account(config, account_id)
        return [str(entry) for entry in account.allow_from]

    def format_allow_from(self, allow_from: list[str | int]) -> list[str]:
        return format_allow_from(allow_from)

    def normalize_allow_entry(self, raw: str | int) -> str:
        return normalize_allow_entry(raw)

    # security

    def resolve_dm_policy(
        self, config: dict | None = None, account_id: str | None = None
    ) -> DmPolicyInfo:
        cfg = self._config(config)
        account = resolve_account(cfg, account_id)
        accounts = channel_section(cfg).get("accounts")
        if isinstance(accounts, dict) and account.account_id in accounts:
            base_path = f"channels.{CHANNEL_ID}.accounts.{account.account_id}."
        else:
            base_path = f"channels.{CHANNEL_ID}."
        return DmPolicyInfo(
            policy=account.dm_policy,
            allow_from=account.allow_from,
            policy_path=f"{base_path}dm_policy",
            allow_from_path=base_path,
            approve_hint=format_pairing_approve_hint(CHANNEL_ID),
        )

    # messaging

    def normalize_target(self, raw: str) -> str:
        return normalize_target(raw)

    def looks_like_id(self, raw: str) -> bool:
        return looks_like_target_id(raw)

    # outbound

    def _send_result(self, result: SendResult) -> dict[str, str]:
        return {
            "channel": CHANNEL_ID,
            "message_id": result.message_id,
            "chat_id": result.chat_id,
        }

    async def send_text(
        self, to: str, text: str, *, account_id: str | None = None
    ) -> dict[str, str]:
        result = await send_message(
            to,
            text,
            runtime=self._runtime,
            account_id=account_id,
            registry=self._registry,
            client_factory=self._client_factory,
        )
        self._runtime.activity.record(
            channel=CHANNEL_ID,
            account_id=normalize_account_id(account_id),
            direction="outbound",
        )
        return self._send_result(result)

    async def send_media(
        self,
        to: str,
        text: str,
        *,
        media_url: str,
        account_id: str | None = None,
        audio_as_voice: bool = False,
    ) -> dict[str, str]:
        account = self.resolve_account(None, account_id)
        result = await send_media(
            to,
            text,
            media_url=media_url,
            runtime=self._runtime,
            account_id=account.account_id,
            max_bytes=int(account.media_max_mb * MIB),
            audio_as_voice=audio_as_voice,
            registry=self._registry,
            client_factory=self._client_factory,
        )
        self._runtime.activity.record(
            channel=CHANNEL_ID, account_id=account.account_id, direction="outbound"
        )
        return self._send_result(result)

    async def notify_approval(
        self, sender_id: str | int, *, account_id: str | None = None
    ) -> None:
        await self.send_text(str(sender_id), APPROVED_MESSAGE, account_id=account_id)

    # gateway

    def status(self, account_id: str | None = None) -> AccountStatus:
        key = normalize_account_id(account_id)
        status = self._status.get(key)
        if status is None:
            status = self._status[key] = AccountStatus(account_id=key)
        return status

    async def start_account(
        self, account_id: str | None = None, *, cancel: anyio.Event | None = None
    ) -> None:
        """Run the monitor loop for one account until it stops or fails."""
        key = normalize_account_id(account_id)
        status = self.status(key)
        status.running = True
        status.last_start_at = self._now_ms()
        status.last_error = None
        monitor = TelegramUserMonitor(
            runtime=self._runtime,
            account_id=key,
            registry=self._registry,
            client_factory=self._client_factory,
        )
        self._monitors[key] = monitor
        try:
            await monitor.run(cancel=cancel)
        except Exception as exc:
            status.last_error = str(exc)
            raise
        finally:
            status.running = False
            status.last_stop_at = self._now_ms()
            if self._monitors.get(key) is monitor:
                del self._monitors[key]

    async def stop_account(self, account_id: str | None = None) -> None:
        key = normalize_account_id(account_id)
        monitor = self._monitors.get(key)
        if monitor is not None:
            await monitor.stop()
        client = self._registry.pop(key)
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            logger.debug(
                "telegram_user.stop_account.disconnect_failed",
                account_id=key,
                error=str(exc),
            )

    # status

    def build_account_snapshot(
        self, account: ResolvedAccount | None = None
    ) -> dict[str, Any]:
        if account is None:
            account = self.resolve_account(None, DEFAULT_ACCOUNT_ID)
        status = self._status.get(account.account_id) or AccountStatus(
            account_id=account.account_id
        )
        activity = self._runtime.activity
        last_inbound = last_outbound = None
        if isinstance(activity, StatusActivityRecorder):
            last_inbound = activity.last_at(
                channel=CHANNEL_ID, account_id=account.account_id, direction="inbound"
            )
            last_outbound = activity.last_at(
                channel=CHANNEL_ID, account_id=account.account_id, direction="outbound"
            )
        return {
            "accountId": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
            "linked": is_session_linked(
                account.account_id, self._runtime.resolved_state_dir()
            ),
            "running": status.running,
            "lastStartAt": status.last_start_at,
            "lastStopAt": status.last_stop_at,
            "lastError": status.last_error,
            "lastInboundAt": last_inbound,
            "lastOutboundAt": last_outbound,
            "dmPolicy": account.dm_policy,
            "allowFrom": [str(entry) for entry in account.allow_from],
        }
