from pathlib import Path

import anyio
import pytest

from mtgate.config import MissingSessionError
from mtgate.monitor import MonitorState
from mtgate.plugin import APPROVED_MESSAGE, TelegramUserChannel
from mtgate.types import LoadedMedia
from tests.fakes import (
    FakeClient,
    FakeClientFactory,
    Host,
    link_session,
    make_config,
    make_host,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        self.now += 1
        return self.now


def _channel(host: Host, *clients: FakeClient) -> TelegramUserChannel:
    return TelegramUserChannel(
        host.runtime, client_factory=FakeClientFactory(*clients), clock=_Clock()
    )


def test_capabilities_and_meta(host: Host) -> None:
    channel = _channel(host)

    assert channel.id == "telegram-user"
    assert channel.meta.label == "Telegram User"
    assert channel.capabilities.chat_types == ("direct",)
    assert channel.capabilities.media is True
    assert channel.capabilities.reactions is False
    assert channel.capabilities.threads is False
    assert channel.capabilities.native_commands is False
    assert channel.capabilities.block_streaming is True
    assert channel.text_chunk_limit == 4000


def test_config_operations(host: Host) -> None:
    channel = _channel(host)
    config = make_config(accounts={"work": {"name": "Work", "allow_from": [5, "tg:Bob"]}})

    assert channel.list_account_ids(config) == ["default", "work"]
    assert channel.default_account_id(config) == "default"
    work = channel.resolve_account(config, "work")
    assert channel.is_configured(work) is True
    assert channel.describe_account(work) == {
        "accountId": "work",
        "name": "Work",
        "enabled": True,
        "configured": True,
    }
    assert channel.resolve_allow_from(config, "work") == ["5", "tg:Bob"]
    assert channel.format_allow_from(["tg:Bob", " "]) == ["bob"]
    disabled = channel.set_account_enabled(config, "work", False)
    assert channel.resolve_account(disabled, "work").enabled is False
    removed = channel.delete_account(config, "work")
    assert channel.list_account_ids(removed) == ["default"]


def test_resolve_dm_policy_paths(host: Host) -> None:
    channel = _channel(host)
    config = make_config(accounts={"work": {"dm_policy": "allowlist"}})

    base = channel.resolve_dm_policy(config)
    work = channel.resolve_dm_policy(config, "work")

    assert base.policy == "pairing"
    assert base.policy_path == "channels.telegram-user.dm_policy"
    assert work.policy == "allowlist"
    assert work.policy_path == "channels.telegram-user.accounts.work.dm_policy"
    assert "telegram-user" in work.approve_hint


def test_targets(host: Host) -> None:
    channel = _channel(host)

    assert channel.normalize_target("telegram-user:42") == "42"
    assert channel.looks_like_id("42") is True
    assert channel.looks_like_id("x") is False


@pytest.mark.anyio
async def test_send_text_uses_active_client(host: Host) -> None:
    channel = _channel(host)
    active = FakeClient()
    channel.registry.register("default", active)

    result = await channel.send_text("telegram-user:42", "hi")

    assert result == {"channel": "telegram-user", "message_id": "101", "chat_id": "42"}
    assert host.activity.last_at(
        channel="telegram-user", account_id="default", direction="outbound"
    ) is not None


@pytest.mark.anyio
async def test_send_media_caps_by_account_limit(state_dir: Path) -> None:
    host = make_host(state_dir, make_config(media_max_mb=2))
    host.media.web["https://x/a.png"] = LoadedMedia(
        buffer=b"\x89PNG\r\n\x1a\n", content_type="image/png", file_name="a.png"
    )
    channel = _channel(host)
    active = FakeClient()
    channel.registry.register("default", active)

    await channel.send_media("42", "caption", media_url="https://x/a.png")

    assert host.media.loads == [("https://x/a.png", 2 * 1024 * 1024)]
    assert active.media[0].media.caption == "caption"


@pytest.mark.anyio
async def test_notify_approval(host: Host) -> None:
    channel = _channel(host)
    active = FakeClient()
    channel.registry.register("default", active)

    await channel.notify_approval(42)

    assert [(sent.peer, sent.text) for sent in active.texts] == [(42, APPROVED_MESSAGE)]


@pytest.mark.anyio
async def test_start_and_stop_account_update_snapshot(
    host: Host, state_dir: Path
) -> None:
    link_session(state_dir)
    client = FakeClient()
    channel = _channel(host, client)

    async with anyio.create_task_group() as tg:
        tg.start_soon(channel.start_account)
        with anyio.fail_after(2):
            while channel.registry.get("default") is not client or not client.connected:
                await anyio.sleep(0.01)
        running = channel.build_account_snapshot()
        await channel.stop_account()

    stopped = channel.build_account_snapshot()
    assert running["running"] is True
    assert running["linked"] is True
    assert running["configured"] is True
    assert running["lastStartAt"] is not None
    assert stopped["running"] is False
    assert stopped["lastStopAt"] > stopped["lastStartAt"]
    assert stopped["lastError"] is None
    assert stopped["dmPolicy"] == "pairing"
    assert stopped["allowFrom"] == []
    assert channel.registry.get("default") is None


@pytest.mark.anyio
async def test_start_account_records_error(host: Host) -> None:
    channel = _channel(host)

    with pytest.raises(MissingSessionError):
        await channel.start_account()

    snapshot = channel.build_account_snapshot()
    assert snapshot["running"] is False
    assert snapshot["linked"] is False
    assert "session missing" in snapshot["lastError"]


@pytest.mark.anyio
async def test_network_failure_is_reported_as_last_error(
    host: Host, state_dir: Path
) -> None:
    link_session(state_dir)
    client = FakeClient()
    client.run_error = ConnectionResetError("Connection reset by peer")
    channel = _channel(host, client)

    with pytest.raises(ConnectionResetError):
        await channel.start_account()

    snapshot = channel.build_account_snapshot()
    assert snapshot["running"] is False
    assert snapshot["lastError"] == "Connection reset by peer"


@pytest.mark.anyio
async def test_stop_account_without_monitor_disconnects_active(host: Host) -> None:
    channel = _channel(host)
    stray = FakeClient()
    channel.registry.register("default", stray)

    await channel.stop_account()
    await channel.stop_account()

    assert stray.disconnects == 1
    assert channel.registry.get("default") is None


def test_snapshot_defaults(host: Host) -> None:
    snapshot = _channel(host).build_account_snapshot()

    assert snapshot == {
        "accountId": "default",
        "name": None,
        "enabled": True,
        "configured": True,
        "linked": False,
        "running": False,
        "lastStartAt": None,
        "lastStopAt": None,
        "lastError": None,
        "lastInboundAt": None,
        "lastOutboundAt": None,
        "dmPolicy": "pairing",
        "allowFrom": [],
    }


def test_monitor_state_values() -> None:
    assert [state.value for state in MonitorState] == [
        "idle",
        "connecting",
        "running",
        "stopping",
    ]


def test_prepare_session_path_creates_directory(host: Host, state_dir: Path) -> None:
    channel = _channel(host)

    path = channel.prepare_session_path("Work")

    assert path == state_dir / "telegram-user" / "session-work.session"
    assert path.parent.is_dir()
    assert not path.exists()
    assert channel.build_account_snapshot(channel.resolve_account(account_id="work"))[
        "linked"
    ] is False
