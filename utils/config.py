# Copyright (C) 2026 grodz
#
# This file is part of Lute.
#
# Lute is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Configuration management for Lute."""

import asyncio
import copy
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Library Settings:
#   audio_dir              - Root folder of playable tracks
#   noises_folder          - Top-level folder whose tracks are mixed over the current track
#   allowed_extensions     - File extensions accepted as track references
#   default_volume         - Initial volume for guilds without a saved volume (0-100)
#
# FFmpeg Settings (ffmpeg.*):
#   executable             - ffmpeg binary name or path
#   before_options         - Extra options placed before the inputs
#
# Voice Settings (voice.*):
#   connect_timeout        - Seconds to wait for a voice handshake (1-60)
#
# Watchdog Settings (watchdog.*):
#   interval               - Seconds between hung-stream sweeps (1-3600)
#   grace                  - Seconds a stream may run past its track length (0+)
#
# HTTP Settings (http.*):
#   host                   - Bind address of the control API
#   port                   - Bind port of the control API (1-65535)
#
# Logging Settings (logging.*):
#   level                  - DEBUG, INFO, WARNING, ERROR or CRITICAL
#   suppress_library_logs  - Keep disnake/aiohttp loggers at WARNING
# =============================================================================

DEFAULT_SETTINGS = {
    "audio_dir": "./audio",
    "noises_folder": "noises",
    "allowed_extensions": [".mp3", ".wav", ".ogg", ".m4a"],
    "default_volume": 50,
    "ffmpeg": {
        "executable": "ffmpeg",
        "before_options": "-hide_banner -nostdin",
    },
    "voice": {
        "connect_timeout": 10,
    },
    "watchdog": {
        "interval": 15,
        "grace": 5,
    },
    "http": {
        "host": "127.0.0.1",
        "port": 3000,
    },
    "logging": {
        "level": "INFO",
        "suppress_library_logs": True,
    },
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


SETTINGS_HEADER = (
    "# Lute settings\n"
    "# Environment variables take precedence over these values.\n\n"
)


def _split_list(value: str) -> list:
    return [part for part in value.split(",") if part.strip()]


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ENV_VAR -> (dotted setting path, converter)
ENV_OVERRIDES = {
    "AUDIO_DIR": ("audio_dir", str),
    "NOISES_FOLDER": ("noises_folder", str),
    "ALLOWED_EXTENSIONS": ("allowed_extensions", _split_list),
    "DEFAULT_VOLUME": ("default_volume", int),
    "FFMPEG_PATH": ("ffmpeg.executable", str),
    "FFMPEG_BEFORE_OPTIONS": ("ffmpeg.before_options", str),
    "VOICE_CONNECT_TIMEOUT": ("voice.connect_timeout", float),
    "WATCHDOG_INTERVAL": ("watchdog.interval", float),
    "WATCHDOG_GRACE": ("watchdog.grace", float),
    "HTTP_HOST": ("http.host", str),
    "HTTP_PORT": ("http.port", int),
    "LOG_LEVEL": ("logging.level", str.upper),
    "SUPPRESS_LIBRARY_LOGS": ("logging.suppress_library_logs", _truthy),
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Overlay `user` onto a copy of `defaults`, one section at a time.

    Keys that have no default are dropped with a warning.
    """
    merged = copy.deepcopy(defaults)
    for key, value in user.items():
        if key not in defaults:
            logger.warning(f"ignoring unknown setting: {key}")
            continue
        if isinstance(defaults[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(value, defaults[key])
        else:
            merged[key] = value
    return merged


def load_yaml(path: Path, defaults: dict) -> dict:
    """Read a settings file on top of `defaults`. Missing or broken files yield the defaults."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return copy.deepcopy(defaults)

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError:
        logger.opt(exception=True).error(f"{path.name} is not valid YAML, using defaults")
        return copy.deepcopy(defaults)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.warning(f"{path.name} must contain a mapping, using defaults")
        return copy.deepcopy(defaults)
    return deep_merge(data, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write `data` next to `path` under a temp name, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(header)
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def _clamp(value, min_val, max_val, cast: Callable = int):
    v = cast(value)
    if min_val is not None:
        v = max(min_val, v)
    if max_val is not None:
        v = min(max_val, v)
    return v


class ConfigManager:
    """Settings for one Lute process.

    Sources, lowest to highest precedence: DEFAULT_SETTINGS, settings.yaml in
    `config_path`, then the variables in ENV_OVERRIDES. The merged result is
    validated once; bad values fall back to defaults or are clamped, never
    fatal.

        config.get("http")["port"]
        config.audio_dir         # Path
        config.default_volume    # 0.0 - 1.0
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = Path(config_path)
        self.settings: dict = copy.deepcopy(DEFAULT_SETTINGS)

    async def load(self) -> None:
        path = self.config_path / "settings.yaml"
        if not path.exists():
            await asyncio.to_thread(save_yaml, path, DEFAULT_SETTINGS, SETTINGS_HEADER)
            logger.info(f"wrote default settings to {path}")

        self.settings = await asyncio.to_thread(load_yaml, path, DEFAULT_SETTINGS)
        self._apply_env_overrides()
        self._validate_settings()
        logger.debug(f"settings loaded from {path}")

    def _validate_settings(self) -> None:
        """Restore nulls, normalize extensions, clamp numbers, check the log level."""
        # "key:" with no value parses as None
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section in ("ffmpeg", "voice", "watchdog", "http", "logging"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = copy.deepcopy(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        extensions = self.settings.get("allowed_extensions")
        if isinstance(extensions, str):
            extensions = extensions.split(",")
        if not isinstance(extensions, list) or not extensions:
            extensions = DEFAULT_SETTINGS["allowed_extensions"]
        normalized = []
        for ext in extensions:
            ext = str(ext).strip().lower()
            if ext:
                normalized.append(ext if ext.startswith(".") else f".{ext}")
        self.settings["allowed_extensions"] = normalized or list(DEFAULT_SETTINGS["allowed_extensions"])

        # (section or None, key, min, max, cast)
        validations = [
            (None, "default_volume", 0, 100, int),
            ("voice", "connect_timeout", 1, 60, float),
            ("watchdog", "interval", 1, 3600, float),
            ("watchdog", "grace", 0, None, float),
            ("http", "port", 1, 65535, int),
        ]
        for section, key, min_val, max_val, cast in validations:
            target = self.settings if section is None else self.settings[section]
            defaults = DEFAULT_SETTINGS if section is None else DEFAULT_SETTINGS[section]
            name = key if section is None else f"{section}.{key}"
            value = target.get(key)
            try:
                clamped = _clamp(value, min_val, max_val, cast)
                if clamped != cast(value):
                    range_str = f"{min_val}-{max_val}" if max_val is not None else f"{min_val}+"
                    logger.warning(f"{name}={value} out of range, clamped to {clamped} (valid: {range_str})")
                target[key] = clamped
            except (ValueError, TypeError):
                logger.warning(f"{name}={value!r} invalid, using default")
                target[key] = defaults[key]

        level = str(self.settings["logging"].get("level", "")).upper()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={level!r} invalid, using INFO")
            level = "INFO"
        self.settings["logging"]["level"] = level

        if not self.settings.get("noises_folder"):
            self.settings["noises_folder"] = None

    def _apply_env_overrides(self) -> None:
        """Apply ENV_OVERRIDES. Unparseable values are logged and skipped."""
        for env_key, (setting, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_key)
            if not raw:
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                logger.warning(f"ignoring {env_key}={raw!r}: {e}")
                continue

            section, _, key = setting.rpartition(".")
            target = self.settings
            if section:
                if not isinstance(self.settings.get(section), dict):
                    self.settings[section] = copy.deepcopy(DEFAULT_SETTINGS[section])
                target = self.settings[section]
            target[key] = value
            logger.debug(f"{env_key} overrides {setting}")

    def get(self, key: str, default=None) -> Any:
        return self.settings.get(key, default)

    @property
    def audio_dir(self) -> Path:
        return Path(self.settings["audio_dir"]).expanduser()

    @property
    def default_volume(self) -> float:
        """Default volume as a 0.0 - 1.0 gain."""
        return self.settings["default_volume"] / 100


def _ensure_dir(path: Path, label: str, errors: list) -> None:
    if path.is_dir():
        return
    try:
        path.mkdir(parents=True)
        logger.warning(f"created missing {label} directory: {path}")
    except OSError as e:
        errors.append(f"cannot create {label} directory {path}: {e}")


async def validate_configuration(config: ConfigManager) -> None:
    """Pre-flight checks run by main() before connecting to Discord.

    Collects every problem (token missing or malformed, audio/data directory
    not creatable, ffmpeg not on PATH), logs them all and exits with status 1.
    """
    errors = []

    token = (os.getenv("DISCORD_TOKEN") or "").strip()
    if not token:
        errors.append("DISCORD_TOKEN is not set (add it to .env or the environment)")
    elif len(token.split(".")) != 3 or not all(token.split(".")):
        errors.append(
            "DISCORD_TOKEN does not look like a bot token (expected three non-empty "
            "dot-separated parts); copy it again from the developer portal"
        )

    _ensure_dir(config.audio_dir, "audio", errors)
    data_path = Path(os.getenv("DATA_PATH") or Path(__file__).resolve().parent.parent / "data")
    _ensure_dir(data_path, "data", errors)

    executable = config.get("ffmpeg", {}).get("executable", "ffmpeg")
    ffmpeg = await asyncio.to_thread(shutil.which, executable)
    if ffmpeg is None:
        errors.append(f"ffmpeg not found: {executable!r} (install it or set FFMPEG_PATH)")
    else:
        logger.debug(f"using ffmpeg at {ffmpeg}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
