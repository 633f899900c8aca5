"""Fetch remote playlists for filtering."""
from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger("m3ufilter.downloader")

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_PLAYLIST_BYTES = 10 * 1024 * 1024
DEFAULT_USER_AGENT = "m3ufilter/1.0"
_CHUNK_SIZE = 64 * 1024

PASSTHROUGH_HEADERS = (
    "content-type",
    "content-description",
    "expires",
    "cache-control",
    "content-disposition",
)


class DownloadError(RuntimeError):
    """Raised when the remote playlist cannot be retrieved."""


class PlaylistTooLargeError(DownloadError):
    """Raised when the remote playlist exceeds the configured size ceiling."""


@dataclass
class DownloadResponse:
    data: str
    headers: Dict[str, str] = field(default_factory=dict)


def _copy_passthrough_headers(source: Any) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header_name in PASSTHROUGH_HEADERS:
        value = source.get(header_name) if source is not None else None
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value:
            headers[header_name] = str(value)
    return headers


def _charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    for part in content_type.split(";")[1:]:
        key, _, value = part.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip('"')
    return None


def _decode_body(content: bytes, content_type: Optional[str], url: str) -> str:
    """Decode with the declared charset, else UTF-8; a UTF-8 BOM is dropped."""

    encoding = _charset_from_content_type(content_type) or "utf-8"
    try:
        codec_name = codecs.lookup(encoding).name
    except LookupError:
        logger.warning(
            "Unknown charset '%s' announced by %s; decoding as UTF-8", encoding, url
        )
        codec_name = "utf-8"
    if codec_name == "utf-8":
        codec_name = "utf-8-sig"
    return content.decode(codec_name, errors="replace")


class PlaylistDownloader:
    """Download playlists over HTTP with a timeout and a byte ceiling."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_PLAYLIST_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
        http_client=requests,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self._http = http_client

    def download(self, url: str) -> DownloadResponse:
        """Return the decoded body of ``url`` and its passthrough headers."""

        logger.debug("Downloading playlist from %s", url)
        try:
            response = self._http.get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise DownloadError(f"Failed to download from {url}: {exc}") from exc

        try:
            response.raise_for_status()
            self._check_announced_length(response.headers, url)
            content = self._read_limited(response, url)
        except requests.RequestException as exc:
            raise DownloadError(f"Failed to download from {url}: {exc}") from exc
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()

        headers = _copy_passthrough_headers(response.headers)
        data = _decode_body(content, headers.get("content-type"), url)

        logger.debug("Downloaded %d bytes from %s", len(content), url)
        return DownloadResponse(data=data, headers=headers)

    def _check_announced_length(self, headers: Any, url: str) -> None:
        raw_length = headers.get("content-length") if headers is not None else None
        if raw_length is None:
            return
        try:
            announced = int(raw_length)
        except (TypeError, ValueError):
            return
        if announced > self.max_bytes:
            raise PlaylistTooLargeError(
                f"Playlist at {url} is {announced} bytes, limit is {self.max_bytes}"
            )

    def _read_limited(self, response: Any, url: str) -> bytes:
        chunks = []
        total = 0
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if not chunk:
                continue
            total += len(chunk)
            if total > self.max_bytes:
                raise PlaylistTooLargeError(
                    f"Playlist at {url} exceeds the {self.max_bytes} byte limit"
                )
            chunks.append(chunk)
        return b"".join(chunks)


__all__ = [
    "DownloadError",
    "DownloadResponse",
    "PASSTHROUGH_HEADERS",
    "PlaylistDownloader",
    "PlaylistTooLargeError",
]
