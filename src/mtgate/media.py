from __future__ import annotations

import hashlib
import mimetypes
import os
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote, urlparse

import anyio
import httpx

from .logging import get_logger
from .types import LoadedMedia, MediaDescriptor, SavedMedia

if TYPE_CHECKING:
    from .client import UserClient

logger = get_logger(__name__)

MIB = 1024 * 1024
DEFAULT_MIME = "application/octet-stream"

_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"OggS", "audio/ogg"),
    (b"ID3", "audio/mpeg"),
    (b"fLaC", "audio/flac"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1a\x45\xdf\xa3", "video/webm"),
)

VOICE_MIME_TYPES = frozenset(
    {
        "audio/ogg",
        "audio/opus",
        "audio/mpeg",
        "audio/mp3",
        "audio/mp4",
        "audio/m4a",
        "audio/x-m4a",
    }
)
VOICE_EXTENSIONS = frozenset({".ogg", ".oga", ".opus", ".mp3", ".m4a"})

VOICE_FORBIDDEN_MARKERS = ("VOICE_MESSAGES_FORBIDDEN", "VoiceMessagesForbidden")

_CONTENT_DISPOSITION_RE = re.compile(
    r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE
)


class MediaError(RuntimeError):
    pass


class MediaTooLargeError(MediaError):
    def __init__(self, *, size: int, max_bytes: int) -> None:
        self.size = size
        self.max_bytes = max_bytes
        super().__init__(f"Media exceeds {max_bytes / MIB:.0f}MB limit ({size} bytes)")


class MediaStore(Protocol):
    async def save_media_buffer(
        self,
        buffer: bytes,
        content_type: str | None,
        *,
        channel: str,
        max_bytes: int,
        file_name: str | None = None,
    ) -> SavedMedia: ...

    async def load_web_media(self, url: str, *, max_bytes: int | None) -> LoadedMedia: ...


@dataclass(frozen=True, slots=True)
class OutboundMedia:
    data: bytes
    file_name: str | None
    mime_type: str | None
    caption: str
    voice: bool = False

    def as_generic(self) -> "OutboundMedia":
        return OutboundMedia(
            data=self.data,
            file_name=self.file_name,
            mime_type=self.mime_type,
            caption=self.caption,
            voice=False,
        )


def media_max_bytes(media_max_mb: float) -> int:
    return int(max(1.0, media_max_mb) * MIB)


def _sniff(buffer: bytes) -> str | None:
    for signature, mime in _SIGNATURES:
        if buffer.startswith(signature):
            return mime
    if len(buffer) >= 12 and buffer[:4] == b"RIFF":
        kind = buffer[8:12]
        if kind == b"WEBP":
            return "image/webp"
        if kind == b"WAVE":
            return "audio/wav"
    if len(buffer) >= 12 and buffer[4:8] == b"ftyp":
        brand = buffer[8:12]
        if brand.startswith(b"M4A"):
            return "audio/mp4"
        return "video/mp4"
    return None


def detect_mime(buffer: bytes, file_name: str | None = None) -> str:
    sniffed = _sniff(buffer)
    if sniffed is not None:
        return sniffed
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    return DEFAULT_MIME


def is_voice_compatible(content_type: str | None, file_name: str | None = None) -> bool:
    if content_type:
        base = content_type.split(";", 1)[0].strip().lower()
        if base in VOICE_MIME_TYPES:
            return True
    if file_name:
        return PurePosixPath(file_name).suffix.lower() in VOICE_EXTENSIONS
    return False


def is_voice_forbidden_error(exc: BaseException) -> bool:
    candidates = (
        str(getattr(exc, "message", "") or ""),
        str(exc),
        exc.__class__.__name__,
    )
    return any(
        marker in candidate
        for candidate in candidates
        for marker in VOICE_FORBIDDEN_MARKERS
    )


def build_outbound_media(
    loaded: LoadedMedia, *, caption: str, as_voice: bool = False
) -> OutboundMedia:
    voice = as_voice and is_voice_compatible(loaded.content_type, loaded.file_name)
    return OutboundMedia(
        data=loaded.buffer,
        file_name=loaded.file_name,
        mime_type=loaded.content_type,
        caption=caption,
        voice=voice,
    )


async def resolve_inbound_media(
    *,
    client: "UserClient",
    media: MediaDescriptor | None,
    media_max_mb: float,
    store: MediaStore,
    channel: str,
) -> SavedMedia | None:
    if media is None:
        return None
    max_bytes = media_max_bytes(media_max_mb)
    if media.file_size is not None and media.file_size > max_bytes:
        raise MediaTooLargeError(size=media.file_size, max_bytes=max_bytes)
    buffer = await client.download_media(media)
    content_type = media.mime_type or detect_mime(buffer, media.file_name)
    saved = await store.save_media_buffer(
        buffer,
        content_type,
        channel=channel,
        max_bytes=max_bytes,
        file_name=media.file_name,
    )
    return SavedMedia(path=saved.path, content_type=saved.content_type or content_type)


def _file_name_from_response(url: str, resp: httpx.Response) -> str | None:
    disposition = resp.headers.get("content-disposition")
    if disposition:
        match = _CONTENT_DISPOSITION_RE.search(disposition)
        if match:
            return Path(unquote(match.group(1))).name or None
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or None


class HttpMediaLoader:
    def __init__(
        self,
        *,
        timeout_s: float = 60,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout_s, follow_redirects=True
        )
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def load(self, url: str, *, max_bytes: int | None) -> LoadedMedia:
        try:
            async with self._client.stream("GET", url) as resp:
                resp.raise_for_status()
                declared = resp.headers.get("content-length")
                if max_bytes is not None and declared and declared.isdigit():
                    if int(declared) > max_bytes:
                        raise MediaTooLargeError(size=int(declared), max_bytes=max_bytes)
                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    if max_bytes is not None and total > max_bytes:
                        raise MediaTooLargeError(size=total, max_bytes=max_bytes)
                    chunks.append(chunk)
                buffer = b"".join(chunks)
                file_name = _file_name_from_response(url, resp)
                header_type = resp.headers.get("content-type")
        except httpx.HTTPError as exc:
            logger.error(
                "media.fetch.failed",
                url=url,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise MediaError(f"Failed to fetch media {url}: {exc}") from exc
        content_type = header_type.split(";", 1)[0].strip() if header_type else None
        if not content_type or content_type == DEFAULT_MIME:
            content_type = detect_mime(buffer, file_name)
        return LoadedMedia(buffer=buffer, content_type=content_type, file_name=file_name)


class LocalMediaStore:
    """Content-addressed media store under ``<root>/<channel>/``."""

    def __init__(self, root: Path, *, loader: HttpMediaLoader | None = None) -> None:
        self._root = root
        self._loader = loader or HttpMediaLoader()

    async def save_media_buffer(
        self,
        buffer: bytes,
        content_type: str | None,
        *,
        channel: str,
        max_bytes: int,
        file_name: str | None = None,
    ) -> SavedMedia:
        if len(buffer) > max_bytes:
            raise MediaTooLargeError(size=len(buffer), max_bytes=max_bytes)
        resolved_type = content_type or detect_mime(buffer, file_name)
        extension = mimetypes.guess_extension(resolved_type) or (
            PurePosixPath(file_name).suffix if file_name else ""
        )
        digest = hashlib.sha256(buffer).hexdigest()
        path = self._root / channel / f"{digest}{extension}"
        await anyio.to_thread.run_sync(_write_once, path, buffer)
        return SavedMedia(path=str(path), content_type=resolved_type)

    async def load_web_media(self, url: str, *, max_bytes: int | None) -> LoadedMedia:
        return await self._loader.load(url, max_bytes=max_bytes)


def _write_once(path: Path, data: bytes) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)
