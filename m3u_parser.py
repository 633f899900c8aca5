"""Line-oriented filtering of M3U/M3U8 playlists."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger("m3ufilter.parser")

HEADER_MARKER = "#EXTM3U"
METADATA_MARKER = "#EXTINF"
UNKNOWN_GROUP = "Unknown"


def _attribute_patterns(name: str) -> Tuple[Pattern[str], ...]:
    escaped = re.escape(name)
    return (
        re.compile(escaped + r'="([^"]*)"'),
        re.compile(escaped + r"='([^']*)'"),
        re.compile(escaped + r"=([^,\s]+)"),
    )


GROUP_TITLE_PATTERNS = _attribute_patterns("group-title")
TVG_NAME_PATTERNS = _attribute_patterns("tvg-name")


@dataclass(frozen=True)
class RuleSet:
    """Inclusion groups and exclusion keywords applied to a playlist."""

    groups: FrozenSet[str] = field(default_factory=frozenset)
    exclude: Tuple[str, ...] = ()

    @classmethod
    def from_iterables(
        cls,
        groups: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> "RuleSet":
        return cls(
            groups=frozenset(groups or ()),
            exclude=tuple(exclude or ()),
        )

    @property
    def is_empty(self) -> bool:
        return not self.groups and not self.exclude


@dataclass(frozen=True)
class EntryAttributes:
    group_title: str
    channel_name: Optional[str]


def _first_match(line: str, patterns: Sequence[Pattern[str]]) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(line)
        if match:
            return match.group(1)
    return None


def extract_group_title(line: str) -> str:
    """Return the ``group-title`` of a metadata line, or ``"Unknown"``."""

    group_title = _first_match(line, GROUP_TITLE_PATTERNS)
    if group_title is None:
        logger.debug("No group-title found for line: %s", line)
        return UNKNOWN_GROUP
    return group_title


def extract_channel_name(line: str) -> Optional[str]:
    """Return the display name of a metadata line.

    ``tvg-name`` wins when it carries a value; otherwise the title after the
    last comma is used. Lines without a comma have no display name.
    """

    channel_name = _first_match(line, TVG_NAME_PATTERNS)
    if channel_name:
        return channel_name

    comma_index = line.rfind(",")
    if comma_index == -1:
        return None
    return line[comma_index + 1 :].strip()


def parse_entry_attributes(line: str) -> EntryAttributes:
    return EntryAttributes(
        group_title=extract_group_title(line),
        channel_name=extract_channel_name(line),
    )


def is_header_line(line: str) -> bool:
    return line.startswith(HEADER_MARKER)


def is_metadata_line(line: str) -> bool:
    return line.startswith(METADATA_MARKER)


def is_channel_excluded(channel_name: Optional[str], exclude: Sequence[str]) -> bool:
    if not exclude or not channel_name:
        return False
    lowered = channel_name.lower()
    return any(keyword.lower() in lowered for keyword in exclude)


def is_group_included(group_title: str, groups: FrozenSet[str]) -> bool:
    if not groups:
        return True
    if not group_title:
        return False
    return group_title in groups


def _entry_window(lines: Sequence[str], index: int) -> Tuple[str, Optional[str]]:
    """Return the metadata line at ``index`` and the URL line that belongs to it.

    The URL line is ``None`` only at the end of input; otherwise the next line
    is taken as-is, whatever it holds.
    """

    current = lines[index]
    if index + 1 >= len(lines):
        return current, None
    return current, lines[index + 1]


def _join_lines(lines: List[str]) -> str:
    text = "\n".join(lines)
    return text if text.endswith("\n") else text + "\n"


def filter_playlist(rules: RuleSet, text: str) -> str:
    """Return ``text`` with entries removed according to ``rules``.

    An empty rule set returns the input unchanged. Otherwise the output is the
    ``#EXTM3U`` header followed by the surviving entries in their original
    order, terminated by a single newline.
    """

    if rules.is_empty:
        return text

    if text.startswith("\ufeff"):
        text = text[1:]

    lines = [raw_line.strip() for raw_line in text.split("\n")]
    output: List[str] = [HEADER_MARKER]
    kept_entries = 0
    dropped_entries = 0

    index = 0
    while index < len(lines):
        line = lines[index]

        if not line or is_header_line(line):
            index += 1
            continue

        if not is_metadata_line(line):
            output.append(line)
            index += 1
            continue

        metadata_line, url_line = _entry_window(lines, index)
        index += 1 if url_line is None else 2

        attributes = parse_entry_attributes(metadata_line)
        if is_channel_excluded(attributes.channel_name, rules.exclude):
            dropped_entries += 1
            continue

        if not is_group_included(attributes.group_title, rules.groups):
            dropped_entries += 1
            continue

        output.append(metadata_line)
        if url_line is not None:
            output.append(url_line)
        kept_entries += 1

    logger.debug(
        "Playlist filtered: %d entries kept, %d dropped", kept_entries, dropped_entries
    )
    return _join_lines(output)


__all__ = [
    "EntryAttributes",
    "RuleSet",
    "extract_channel_name",
    "extract_group_title",
    "filter_playlist",
    "is_channel_excluded",
    "is_group_included",
    "is_header_line",
    "is_metadata_line",
    "parse_entry_attributes",
]
