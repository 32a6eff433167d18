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

"""Persistent state management."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from loguru import logger


class StateManager:
    """Runtime values that outlive the process, kept in `<data_path>/state.json`.

    Only per-guild volumes (0.0 - 1.0, keyed by guild id string) are stored.
    Callers update in memory and then `await save()`.

    Attributes:
        data_path: Directory containing state.json
        state_file: Full path to state.json
        state: In-memory state dict
    """

    DEFAULT_STATE = {
        "volumes": {},
    }

    def __init__(self, data_path: Path) -> None:
        self.data_path = Path(data_path)
        self.state_file = self.data_path / "state.json"
        self.state: dict = self._defaults()
        self._save_lock = asyncio.Lock()

    @classmethod
    def _defaults(cls) -> dict:
        return {key: (value.copy() if isinstance(value, dict) else value)
                for key, value in cls.DEFAULT_STATE.items()}

    async def load(self) -> dict:
        """Read state.json over the defaults.

        An unreadable file is renamed to state.json.bak and the defaults are
        used instead.
        """
        self.state = self._defaults()
        if not self.state_file.exists():
            logger.info("no state file yet, starting fresh")
            return self.state

        try:
            raw = await asyncio.to_thread(self.state_file.read_text, encoding='utf-8')
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("top level of state.json must be an object")
        except (OSError, ValueError) as e:
            self._quarantine(e)
            return self.state

        extra = sorted(set(loaded) - set(self.DEFAULT_STATE))
        if extra:
            logger.warning(f"dropping unknown state keys: {', '.join(extra)}")
        for key in self.DEFAULT_STATE:
            if key in loaded:
                self.state[key] = loaded[key]

        if not isinstance(self.state["volumes"], dict):
            logger.warning("saved volumes are not a mapping, discarding them")
            self.state["volumes"] = {}
        logger.info(f"loaded saved volumes for {len(self.state['volumes'])} guild(s)")
        return self.state

    def _quarantine(self, error: Exception) -> None:
        backup = self.state_file.with_suffix('.json.bak')
        try:
            self.state_file.replace(backup)
        except OSError:
            logger.warning(f"state file unreadable ({error}), using defaults")
            return
        logger.warning(f"state file unreadable ({error}), moved to {backup.name}")

    async def save(self) -> None:
        """Write state.json atomically. Failures are logged, not raised."""
        payload = {key: self.state[key] for key in self.DEFAULT_STATE if key in self.state}
        async with self._save_lock:
            try:
                await asyncio.to_thread(self._dump, payload)
            except (OSError, TypeError, ValueError):
                logger.opt(exception=True).warning("could not write state.json")
                return
        logger.debug("state saved")

    def _dump(self, payload: dict) -> None:
        self.data_path.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state.", suffix=".tmp", dir=self.data_path)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
            tmp.replace(self.state_file)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def get(self, key: str, default=None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value) -> None:
        """Update a state value in memory. Call save() to persist to disk."""
        self.state[key] = value

    def get_volume(self, guild_id: int, default: Optional[float] = None) -> Optional[float]:
        """Saved volume for a guild, or `default` when none (or a bad one) is stored."""
        value = self.state["volumes"].get(str(guild_id))
        try:
            volume = float(value)
        except (TypeError, ValueError):
            return default
        if not 0.0 <= volume <= 1.0:
            return default
        return volume

    def set_volume(self, guild_id: int, volume: float) -> None:
        """Remember a guild's volume in memory. Call save() to persist."""
        self.state["volumes"][str(guild_id)] = volume
