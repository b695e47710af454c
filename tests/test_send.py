from pathlib import Path

import pytest

from mtgate.config import ConfigError, MissingSessionError
from mtgate.registry import ClientRegistry
from mtgate.send import send_media, send_message
from mtgate.targets import TargetError
from mtgate.types import LoadedMedia
from tests.fakes import (
    FakeClient,
    FakeClientFactory,
    Host,
    link_session,
    make_host,
)

OGG = LoadedMedia(buffer=b"OggS voice", content_type="audio/ogg", file_name="note.ogg")


@pytest.mark.anyio
async def test_send_message_uses_explicit_client(host: Host, client: FakeClient) -> None:
    result = await send_message(
        "telegram-user:42", "hi", runtime=host.runtime, client=client, reply_to=7
    )

    assert result.chat_id == "42"
    assert result.message_id == "101"
    assert client.texts[0].peer == 42
    assert client.texts[0].reply_to == 7


@pytest.mark.anyio
async def test_send_message_prefers_active_client(host: Host) -> None:
    active = FakeClient()
    registry: ClientRegistry[FakeClient] = ClientRegistry()
    registry.register("default", active)
    factory = FakeClientFactory()

    await send_message(
        "@alice",
        "hi",
        runtime=host.runtime,
        registry=registry,
        client_factory=factory,
    )

    assert active.texts[0].peer == "@alice"
    assert factory.calls == []


@pytest.mark.anyio
async def test_send_message_one_shot_client(host: Host, state_dir: Path) -> None:
    session = link_session(state_dir)
    one_shot = FakeClient()
    factory = FakeClientFactory(one_shot)

    await send_message("42", "hi", runtime=host.runtime, client_factory=factory)

    assert factory.calls == [(12345, "0123456789abcdef0123456789abcdef", session)]
    assert one_shot.calls == ["connect", "send_text", "disconnect"]


@pytest.mark.anyio
async def test_one_shot_requires_credentials(state_dir: Path) -> None:
    host = make_host(state_dir, {"channels": {"telegram-user": {}}})
    link_session(state_dir)

    with pytest.raises(ConfigError, match="credentials missing"):
        await send_message("42", "hi", runtime=host.runtime, client_factory=FakeClientFactory())


@pytest.mark.anyio
async def test_one_shot_requires_session(host: Host) -> None:
    factory = FakeClientFactory()

    with pytest.raises(MissingSessionError):
        await send_message("42", "hi", runtime=host.runtime, client_factory=factory)

    assert factory.calls == []


@pytest.mark.anyio
async def test_one_shot_unauthorized_session_disconnects(
    host: Host, state_dir: Path
) -> None:
    link_session(state_dir)
    one_shot = FakeClient(authorized=False)

    with pytest.raises(MissingSessionError):
        await send_message(
            "42", "hi", runtime=host.runtime, client_factory=FakeClientFactory(one_shot)
        )

    assert one_shot.calls == ["connect", "disconnect"]


@pytest.mark.anyio
async def test_send_message_rejects_empty_target(host: Host, client: FakeClient) -> None:
    with pytest.raises(TargetError):
        await send_message("  ", "hi", runtime=host.runtime, client=client)

    assert client.calls == []


@pytest.mark.anyio
async def test_send_media_falls_back_once_when_voice_forbidden(
    host: Host, client: FakeClient
) -> None:
    host.media.web["https://x/note.ogg"] = OGG
    client.forbid_voice = True

    result = await send_media(
        "42",
        "listen",
        media_url="https://x/note.ogg",
        runtime=host.runtime,
        client=client,
        max_bytes=1024,
        audio_as_voice=True,
    )

    assert client.calls == ["send_voice", "send_media"]
    assert client.media[0].media.voice is False
    assert client.media[0].media.caption == "listen"
    assert result.message_id == "101"
    assert host.media.loads == [("https://x/note.ogg", 1024)]


@pytest.mark.anyio
async def test_send_media_other_errors_propagate(host: Host, client: FakeClient) -> None:
    host.media.web["https://x/note.ogg"] = OGG

    async def boom(*args, **kwargs) -> int:
        raise RuntimeError("FLOOD_WAIT_30")

    client.send_media = boom  # type: ignore[method-assign]

    with pytest.raises(RuntimeError, match="FLOOD_WAIT"):
        await send_media(
            "42",
            "",
            media_url="https://x/note.ogg",
            runtime=host.runtime,
            client=client,
            audio_as_voice=True,
        )


@pytest.mark.anyio
async def test_send_media_as_voice_when_allowed(host: Host, client: FakeClient) -> None:
    host.media.web["https://x/note.ogg"] = OGG

    await send_media(
        "42",
        "",
        media_url="https://x/note.ogg",
        runtime=host.runtime,
        client=client,
        audio_as_voice=True,
    )

    assert client.calls == ["send_voice"]
    assert client.media[0].media.voice is True
