"""Translate ``/getm3u`` requests into filtered playlists."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from werkzeug.http import dump_options_header, parse_options_header

from downloader import DownloadError, DownloadResponse, PlaylistDownloader, PlaylistTooLargeError
from m3u_parser import RuleSet, filter_playlist
from profiles import ConfigStore, ProfileNotFoundError, parse_list_param

logger = logging.getLogger("m3ufilter.getm3u")

DEFAULT_CONTENT_TYPE = "application/vnd.apple.mpegurl"
DEFAULT_CACHE_CONTROL = "public, max-age=300"
PROFILE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

_RESPONSE_HEADER_NAMES = {
    "content-type": "Content-Type",
    "content-description": "Content-Description",
    "expires": "Expires",
    "cache-control": "Cache-Control",
    "content-disposition": "Content-Disposition",
}


class M3UFilterError(Exception):
    """Base class for request errors surfaced to the HTTP boundary."""


class ValidationError(M3UFilterError):
    """Raised when the request parameters are missing or malformed."""


class UpstreamError(M3UFilterError):
    """Raised when the remote playlist cannot be fetched or is too large."""


@dataclass(frozen=True)
class FilterRequest:
    url: str
    rules: RuleSet
    profile_key: Optional[str] = None


@dataclass
class FilteredPlaylist:
    body: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_length(self) -> int:
        return len(self.body.encode("utf-8"))


def _get_list_arg(args: Any, name: str) -> Optional[List[str]]:
    """Return the normalised list for ``name`` or ``None`` when absent or empty."""

    values = args.getlist(name) if hasattr(args, "getlist") else None
    if values is None:
        raw = args.get(name)
        values = [] if raw is None else [raw]
    if not values:
        return None
    parsed = parse_list_param(values[0] if len(values) == 1 else values)
    return parsed or None


def _validate_url(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise ValidationError("Invalid URL provided") from exc
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Invalid URL provided")
    return url


def parse_request_params(args: Any, config_store: ConfigStore) -> FilterRequest:
    """Resolve query parameters into a source URL and a rule set."""

    url_param = args.get("url") or None
    profile_param = args.get("profile") or None

    if url_param and profile_param:
        raise ValidationError(
            'Query params must include either "profile" or "url", not both'
        )

    groups = _get_list_arg(args, "groups")
    exclude = _get_list_arg(args, "exclude")

    if url_param:
        return FilterRequest(
            url=_validate_url(url_param),
            rules=RuleSet.from_iterables(groups, exclude),
        )

    if profile_param:
        if not PROFILE_KEY_PATTERN.match(profile_param):
            raise ValidationError("Invalid profile key format")
        profile = config_store.get_profile(profile_param)
        return FilterRequest(
            url=profile.url,
            rules=RuleSet.from_iterables(
                profile.groups if groups is None else groups,
                profile.exclude if exclude is None else exclude,
            ),
            profile_key=profile.key,
        )

    raise ValidationError('Query params must include either "profile" or "url"')


def _with_utf8_charset(content_type: str) -> str:
    """Rewrite a declared charset to UTF-8, the encoding of the response body."""

    mimetype, options = parse_options_header(content_type)
    if "charset" not in options:
        return content_type
    options = dict(options)
    options["charset"] = "utf-8"
    return dump_options_header(mimetype, options)


def build_response_headers(download: DownloadResponse, body: str) -> Dict[str, str]:
    headers = {
        "Content-Type": DEFAULT_CONTENT_TYPE,
        "Cache-Control": DEFAULT_CACHE_CONTROL,
    }
    for source_name, header_name in _RESPONSE_HEADER_NAMES.items():
        value = download.headers.get(source_name)
        if value:
            headers[header_name] = value
    headers["Content-Type"] = _with_utf8_charset(headers["Content-Type"])
    headers["Content-Length"] = str(len(body.encode("utf-8")))
    return headers


def handle_getm3u(
    args: Any,
    config_store: ConfigStore,
    downloader: PlaylistDownloader,
) -> FilteredPlaylist:
    """Download, filter and package the playlist described by ``args``."""

    request = parse_request_params(args, config_store)

    try:
        download = downloader.download(request.url)
    except PlaylistTooLargeError as exc:
        logger.warning("%s", exc)
        raise UpstreamError("Playlist too large to process") from exc
    except DownloadError as exc:
        logger.warning("%s", exc)
        raise UpstreamError(str(exc)) from exc

    body = filter_playlist(request.rules, download.data)
    result = FilteredPlaylist(body=body, headers=build_response_headers(download, body))

    logger.info(
        "M3U filtered: url=%s profile=%s groups=%d excludes=%d size=%d",
        request.url,
        request.profile_key or "-",
        len(request.rules.groups),
        len(request.rules.exclude),
        result.content_length,
    )
    return result


__all__ = [
    "FilterRequest",
    "FilteredPlaylist",
    "M3UFilterError",
    "ProfileNotFoundError",
    "UpstreamError",
    "ValidationError",
    "build_response_headers",
    "handle_getm3u",
    "parse_request_params",
]
