from datetime import datetime, timezone
from pathlib import Path

import anyio
import pytest

from mtgate.accounts import resolve_account
from mtgate.handler import (
    TelegramUserMessageHandler,
    build_parent_peer,
    resolve_timestamp_ms,
)
from mtgate.media import MIB
from mtgate.payloads import ReplyPayload
from mtgate.types import MediaDescriptor, RoutePeer, SenderInfo
from tests.fakes import FakeClient, Host, dm, make_config, make_host


def _handler(host: Host, client: FakeClient) -> TelegramUserMessageHandler:
    return TelegramUserMessageHandler(
        client=client,
        runtime=host.runtime,
        config=host.config,
        account=resolve_account(host.config),
        self_id=999,
    )


class TestResolveTimestampMs:
    def test_uses_datetime_values(self) -> None:
        value = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert resolve_timestamp_ms(value) == 1_704_067_200_000

    def test_converts_seconds(self) -> None:
        assert resolve_timestamp_ms(1_700_000_000) == 1_700_000_000_000

    def test_passes_through_milliseconds(self) -> None:
        assert resolve_timestamp_ms(1_700_000_000_123) == 1_700_000_000_123

    def test_rejects_invalid_values(self) -> None:
        assert resolve_timestamp_ms(None) is None
        assert resolve_timestamp_ms(float("nan")) is None
        assert resolve_timestamp_ms(True) is None


class TestBuildParentPeer:
    def test_forum_topic_message_has_group_parent(self) -> None:
        assert build_parent_peer(is_group=True, chat_id=-100, thread_id=5) == RoutePeer(
            kind="group", id="-100"
        )

    def test_missing_thread_id(self) -> None:
        assert build_parent_peer(is_group=True, chat_id=-100) is None

    def test_non_group_message(self) -> None:
        assert build_parent_peer(is_group=False, chat_id=42, thread_id=5) is None


@pytest.mark.anyio
async def test_allowed_dm_reaches_agent_and_reply_is_threaded(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(
        state_dir,
        make_config(dm_policy="allowlist", allow_from=["42"]),
        replies=[ReplyPayload(text="first"), ReplyPayload(text="second")],
    )
    host.sessions.updated_at["agent:main:telegram-user:dm:42"] = 1_699_999_700_000

    await _handler(host, client)(dm("  hello there  "))

    [ctx] = host.agent.contexts
    assert ctx.raw_body == "hello there"
    assert ctx.body.startswith("[Telegram User Alice +5m 00s 2023-11-14 22:13 UTC]")
    assert ctx.body.endswith("hello there")
    assert ctx.from_ == "telegram-user:42"
    assert ctx.session_key == "agent:main:telegram-user:dm:42"
    assert ctx.sender_username == "alice"
    assert ctx.message_sid == "7"
    assert ctx.timestamp_ms == 1_700_000_000_000
    assert [(sent.text, sent.reply_to) for sent in client.texts] == [
        ("first", 7),
        ("second", None),
    ]
    assert host.router.calls[0]["peer"] == RoutePeer(kind="dm", id="42")
    assert host.sessions.routes == [
        {
            "session_key": "agent:main:main",
            "channel": "telegram-user",
            "to": "telegram-user:42",
            "account_id": "default",
        }
    ]
    assert [key for key, _ in host.sessions.meta] == ["agent:main:telegram-user:dm:42"]
    assert client.typing == [42]
    assert host.activity.last_at(
        channel="telegram-user", account_id="default", direction="inbound"
    ) is not None
    assert host.activity.last_at(
        channel="telegram-user", account_id="default", direction="outbound"
    ) is not None


@pytest.mark.anyio
async def test_disabled_policy_never_replies(state_dir: Path, client: FakeClient) -> None:
    host = make_host(
        state_dir,
        make_config(dm_policy="disabled", allow_from=["*"]),
        allow_from=["42"],
    )

    await _handler(host, client)(dm())

    assert client.calls == []
    assert host.pairing.upserts == 0
    assert host.pairing.reads == 0
    assert host.agent.contexts == []


@pytest.mark.anyio
async def test_pairing_is_idempotent_and_replies_each_time(
    host: Host, client: FakeClient
) -> None:
    handler = _handler(host, client)

    await handler(dm("hi", message_id=1))
    await handler(dm("hello?", message_id=2))

    assert list(host.pairing.requests) == ["42"]
    assert host.pairing.upserts == 2
    code = host.pairing.requests["42"].code
    assert len(client.texts) == 2
    for sent in client.texts:
        assert sent.peer == 42
        assert "Telegram user id: 42" in sent.text
        assert code in sent.text
    assert host.agent.contexts == []


@pytest.mark.anyio
async def test_store_approval_augments_config(state_dir: Path, client: FakeClient) -> None:
    host = make_host(
        state_dir,
        make_config(dm_policy="pairing", allow_from=["7"]),
        replies=[ReplyPayload(text="welcome")],
        allow_from=["telegram-user:42"],
    )

    await _handler(host, client)(dm())

    assert host.pairing.upserts == 0
    assert [sent.text for sent in client.texts] == ["welcome"]


@pytest.mark.anyio
async def test_allowlist_policy_drops_unknown_sender_silently(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(state_dir, make_config(dm_policy="allowlist", allow_from=["7"]))

    await _handler(host, client)(dm())

    assert client.calls == []
    assert host.pairing.upserts == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"is_outgoing": True},
        {"is_service": True},
        {"chat_kind": "group"},
        {"sender": None},
        {"sender": SenderInfo(id=999, username="me")},
        {"sender": SenderInfo(id=5, is_bot=True)},
        {"sender": SenderInfo(id=-100, is_user=False)},
    ],
)
@pytest.mark.anyio
async def test_non_candidate_messages_are_ignored(
    state_dir: Path, client: FakeClient, overrides: dict
) -> None:
    host = make_host(state_dir, make_config(dm_policy="open", allow_from=["*"]))

    await _handler(host, client)(dm(**overrides))

    assert client.calls == []
    assert host.agent.contexts == []


@pytest.mark.anyio
async def test_empty_message_without_media_is_dropped(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(state_dir, make_config(dm_policy="open", allow_from=["*"]))

    await _handler(host, client)(dm("   "))

    assert host.agent.contexts == []
    assert host.router.calls == []


@pytest.mark.anyio
async def test_oversize_media_is_logged_and_text_continues(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(state_dir, make_config(dm_policy="open", allow_from=["*"]))
    media = MediaDescriptor(file_size=50 * MIB, mime_type="video/mp4")

    await _handler(host, client)(dm("see attached", media=media))

    [ctx] = host.agent.contexts
    assert ctx.media_path is None
    assert ctx.raw_body == "see attached"
    assert client.downloads == 0


@pytest.mark.anyio
async def test_media_only_message_is_dispatched(state_dir: Path, client: FakeClient) -> None:
    host = make_host(state_dir, make_config(dm_policy="open", allow_from=["*"]))
    media = MediaDescriptor(file_size=10, mime_type="image/jpeg")

    await _handler(host, client)(dm("", media=media))

    [ctx] = host.agent.contexts
    assert ctx.media_path == "/media/telegram-user/1"
    assert ctx.media_type == "image/jpeg"
    assert ctx.body.endswith("(media)")


@pytest.mark.anyio
async def test_session_meta_failure_does_not_block_reply(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(
        state_dir,
        make_config(dm_policy="open", allow_from=["*"]),
        replies=[ReplyPayload(text="ok")],
    )
    host.sessions.meta_error = OSError("read-only")

    await _handler(host, client)(dm())

    assert [sent.text for sent in client.texts] == ["ok"]


@pytest.mark.anyio
async def test_handler_errors_are_contained(state_dir: Path, client: FakeClient) -> None:
    host = make_host(state_dir, make_config(dm_policy="open", allow_from=["*"]))

    def broken_route(**kwargs):
        raise RuntimeError("router down")

    host.router.resolve_agent_route = broken_route  # type: ignore[method-assign]

    await _handler(host, client)(dm())

    assert host.agent.contexts == []


@pytest.mark.anyio
async def test_ack_reaction_added_and_removed(state_dir: Path, client: FakeClient) -> None:
    config = make_config(dm_policy="open", allow_from=["*"])
    config["messages"] = {
        "ack_reaction": "👀",
        "ack_reaction_scope": "direct",
        "remove_ack_after_reply": True,
    }
    host = make_host(state_dir, config, replies=[ReplyPayload(text="ok")])

    await _handler(host, client)(dm())

    assert client.reactions == [(42, 7, "👀"), (42, 7, None)]


@pytest.mark.anyio
async def test_ack_reaction_skipped_for_group_scope(
    state_dir: Path, client: FakeClient
) -> None:
    config = make_config(dm_policy="open", allow_from=["*"])
    config["messages"] = {"ack_reaction": "👀"}
    host = make_host(state_dir, config, replies=[ReplyPayload(text="ok")])

    await _handler(host, client)(dm())

    assert client.reactions == []


@pytest.mark.anyio
async def test_overlapping_messages_keep_separate_sessions(
    state_dir: Path, client: FakeClient
) -> None:
    host = make_host(
        state_dir,
        make_config(dm_policy="open", allow_from=["*"]),
        replies=[ReplyPayload(text="a"), ReplyPayload(text="b")],
    )
    handler = _handler(host, client)

    async with anyio.create_task_group() as tg:
        tg.start_soon(handler, dm("one", sender_id=1, message_id=11))
        tg.start_soon(handler, dm("two", sender_id=2, message_id=22))

    threaded = sorted(sent.reply_to for sent in client.texts if sent.reply_to)
    assert threaded == [11, 22]
    assert len(client.texts) == 4
