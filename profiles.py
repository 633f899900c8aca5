"""Configuration file loading and profile lookup."""
from __future__ import annotations

import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

logger = logging.getLogger("m3ufilter.config")

CONTAINER_CONFIG_DIR = Path("/etc/m3ufilter")
CONFIG_FILE_NAMES = ("config.yml", "config.yaml", "config.json")
CONFIG_SEARCH_PATHS: List[Path] = []


class ProfileNotFoundError(LookupError):
    """Raised when a profile key is absent from the configuration."""


def parse_list_param(value: Any) -> List[str]:
    """Normalise a list-valued parameter into trimmed, non-empty strings.

    A single string is split on commas; each item of a list is taken whole.
    """

    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        logger.warning("Unexpected list parameter type %s: %r", type(value).__name__, value)
        items = [value]

    result: List[str] = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result


@dataclass(frozen=True)
class Profile:
    key: str
    url: str
    groups: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()


def _user_config_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", ""))
    home = Path(os.environ.get("HOME", "") or Path.home())
    if sys.platform == "darwin":
        return home / "Library/Preferences"
    return home / ".config"


def _default_config_dir() -> Path:
    if os.environ.get("CONTAINER_ENV") == "docker":
        return CONTAINER_CONFIG_DIR
    return _user_config_dir() / "m3ufilter"


def resolve_config_path() -> Path:
    """Return the config file to use for this process."""

    candidates: List[Path] = []

    env_override = os.environ.get("M3UFILTER_CONFIG_PATH")
    if env_override:
        candidates.append(Path(env_override).expanduser())

    config_dir = _default_config_dir()
    candidates.extend(config_dir / name for name in CONFIG_FILE_NAMES)

    CONFIG_SEARCH_PATHS[:] = candidates

    for candidate in candidates:
        if candidate.exists():
            return candidate

    return candidates[0]


def _first_present(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def _build_profile(key: Any, raw_profile: Any) -> Optional[Profile]:
    if not isinstance(key, str) or not key.strip():
        logger.warning("Skipping profile without a key: %r", raw_profile)
        return None
    if not isinstance(raw_profile, dict):
        logger.warning("Skipping profile '%s': expected a mapping", key)
        return None

    url = raw_profile.get("url")
    if not isinstance(url, str) or not url.strip():
        logger.warning("Skipping profile '%s': no url configured", key)
        return None

    groups = parse_list_param(_first_present(raw_profile, "groups", "groupsToInclude"))
    exclude = parse_list_param(_first_present(raw_profile, "exclude", "channelsToExclude"))
    return Profile(key=key.strip(), url=url.strip(), groups=tuple(groups), exclude=tuple(exclude))


def parse_profiles(raw_profiles: Any) -> Dict[str, Profile]:
    """Read profiles from either a ``[{key, value}]`` list or a ``{key: value}`` mapping."""

    profiles: Dict[str, Profile] = {}
    if raw_profiles is None:
        return profiles

    if isinstance(raw_profiles, list):
        pairs = []
        for item in raw_profiles:
            if isinstance(item, dict) and "value" in item:
                pairs.append((item.get("key"), item.get("value")))
            elif isinstance(item, dict):
                pairs.append((item.get("key"), item))
            else:
                logger.warning("Skipping malformed profile entry: %r", item)
    elif isinstance(raw_profiles, dict):
        pairs = list(raw_profiles.items())
    else:
        raise ValueError("Invalid config: 'profiles' must be a list or a mapping")

    for key, raw_profile in pairs:
        profile = _build_profile(key, raw_profile)
        if profile is None:
            continue
        if profile.key in profiles:
            logger.warning("Duplicate profile '%s'; keeping the first definition", profile.key)
            continue
        profiles[profile.key] = profile
    return profiles


class ConfigStore:
    """Reads the YAML config file, reloading it when its mtime changes."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._mtime: Optional[float] = None
        self._data: Dict[str, Any] = {}
        self._profiles: Dict[str, Profile] = {}
        self._missing = False

    def _load_locked(self) -> None:
        try:
            stat_result = self.path.stat()
        except FileNotFoundError:
            if not self._missing:
                logger.info(
                    "Config file does not exist: '%s'. Falling back to empty config.", self.path
                )
                if self.path in CONFIG_SEARCH_PATHS:
                    logger.info(
                        "Searched config locations: %s",
                        ", ".join(str(candidate) for candidate in CONFIG_SEARCH_PATHS),
                    )
            self._missing = True
            self._mtime = None
            self._data = {}
            self._profiles = {}
            return
        except OSError as exc:
            logger.error("Unable to stat config file '%s': %s", self.path, exc)
            self._mtime = None
            self._data = {}
            self._profiles = {}
            return

        self._missing = False
        mtime = getattr(stat_result, "st_mtime", None)
        if self._mtime is not None and mtime == self._mtime:
            return

        logger.info("Loading config file from: %s", self.path)
        try:
            with self.path.open("r", encoding="utf-8") as config_file:
                config_data = yaml.safe_load(config_file) or {}
            if not isinstance(config_data, dict):
                raise ValueError("Invalid config: top level must be a mapping")
            profiles = parse_profiles(config_data.get("profiles"))
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.error("Failed to load config from '%s': %s", self.path, exc)
            config_data = {}
            profiles = {}

        self._mtime = mtime
        self._data = config_data
        self._profiles = profiles

    @property
    def data(self) -> Dict[str, Any]:
        with self._lock:
            self._load_locked()
            return self._data

    def section(self, name: str) -> Dict[str, Any]:
        value = self.data.get(name)
        return value if isinstance(value, dict) else {}

    def profiles(self) -> Dict[str, Profile]:
        with self._lock:
            self._load_locked()
            return dict(self._profiles)

    def get_profile(self, key: str) -> Profile:
        profile = self.profiles().get(key)
        if profile is None:
            raise ProfileNotFoundError(f"No profile named {key} found in config")
        return profile


__all__ = [
    "CONFIG_SEARCH_PATHS",
    "ConfigStore",
    "Profile",
    "ProfileNotFoundError",
    "parse_list_param",
    "parse_profiles",
    "resolve_config_path",
]
