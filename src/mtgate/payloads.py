from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class ReplyPayload:
    text: str | None = None
    media_url: str | None = None
    media_urls: tuple[str, ...] | None = None
    audio_as_voice: bool | None = None


@dataclass(frozen=True, slots=True)
class OutboundPayload:
    text: str
    media_urls: tuple[str, ...]
    audio_as_voice: bool | None = None

    @property
    def has_media(self) -> bool:
        return bool(self.media_urls)


def _media_urls(payload: ReplyPayload) -> tuple[str, ...]:
    if payload.media_urls is not None:
        return tuple(url for url in payload.media_urls if url)
    if payload.media_url:
        return (payload.media_url,)
    return ()


def normalize_outbound_payload(payload: ReplyPayload) -> OutboundPayload | None:
    normalized = OutboundPayload(
        text=payload.text or "",
        media_urls=_media_urls(payload),
        audio_as_voice=payload.audio_as_voice,
    )
    if not normalized.text and not normalized.media_urls:
        return None
    return normalized


def normalize_outbound_payloads(
    payloads: Iterable[ReplyPayload],
) -> list[OutboundPayload]:
    normalized = (normalize_outbound_payload(payload) for payload in payloads)
    return [payload for payload in normalized if payload is not None]


def normalize_outbound_payloads_for_json(
    payloads: Iterable[ReplyPayload],
) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for payload in payloads:
        urls = payload.media_urls
        if urls is None and payload.media_url:
            urls = (payload.media_url,)
        result.append(
            {
                "text": payload.text or "",
                "media_url": payload.media_url,
                "media_urls": list(urls) if urls is not None else None,
                "audio_as_voice": payload.audio_as_voice,
            }
        )
    return result


def format_outbound_payload_log(payload: OutboundPayload) -> str:
    lines: list[str] = []
    if payload.text:
        lines.append(payload.text.rstrip())
    lines.extend(f"MEDIA:{url}" for url in payload.media_urls)
    return "\n".join(lines)
