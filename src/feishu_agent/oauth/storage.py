"""Token storage for app credentials and user OAuth tokens.

Stores a single JSON object in .feishu-agent/config.json (working directory
first, then home) with restrictive file permissions. Writes are
read-modify-write with a shallow merge, so the last writer wins per key.

Note: Tokens are stored in plaintext and protected by file permissions (0o600).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from ..errors import TokenStoreError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FEISHU_AGENT_CONFIG"
CONFIG_DIR_NAME = ".feishu-agent"
CONFIG_FILE_NAME = "config.json"

# Keys read and written by the auth subsystem
APP_ID = "appId"
APP_SECRET = "appSecret"
BASE_URL = "baseUrl"
USER_ACCESS_TOKEN = "userAccessToken"
REFRESH_TOKEN = "refreshToken"


def default_paths() -> list[Path]:
    """Candidate config files, most preferred first."""
    paths: list[Path] = []
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        paths.append(Path(override).expanduser())
    paths.append(Path.cwd() / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
    paths.append(Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
    return paths


class TokenStore:
    """Durable key/value persistence of credentials and user tokens.

    Usage:
        store = TokenStore()

        # Persist a rotated token pair
        store.update(userAccessToken="u-...", refreshToken="r-...")

        # Read everything back
        data = store.load()
        app_id = data.get("appId")

    Writes go back to the file ``load`` reads from; the other candidates are
    tried in order only when that fails. ``TokenStoreError`` is raised only
    if none of them can be written.
    """

    def __init__(self, paths: list[Path | str] | Path | str | None = None):
        if paths is None:
            self.paths = default_paths()
        elif isinstance(paths, (str, Path)):
            self.paths = [Path(paths)]
        else:
            self.paths = [Path(p) for p in paths]

        if not self.paths:
            raise ValueError("TokenStore needs at least one candidate path")

    @property
    def path(self) -> Path:
        """The file ``load`` reads from (first existing candidate)."""
        for candidate in self.paths:
            if candidate.is_file():
                return candidate
        return self.paths[0]

    def _read(self, path: Path) -> dict[str, Any]:
        if not path.is_file():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: top level is not an object", path)
            return {}
        return data

    def load(self) -> dict[str, Any]:
        """Load the persisted object, or ``{}`` when nothing is stored."""
        for candidate in self.paths:
            if candidate.is_file():
                try:
                    return self._read(candidate)
                except OSError as e:
                    logger.warning("Could not read %s: %s", candidate, e)
        return {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def update(self, **values: Any) -> Path:
        """Merge ``values`` into the stored object and write it back.

        A value of ``None`` removes the key.

        Returns:
            The path that was written.

        Raises:
            TokenStoreError: If no candidate path could be written.
        """
        current = self.load()
        for key, value in values.items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value

        content = json.dumps(current, indent=2, ensure_ascii=False)
        failures: list[str] = []

        # Write back where load read from, then the remaining candidates in order
        target = self.path
        order = [target] + [p for p in self.paths if p != target]

        for candidate in order:
            try:
                candidate.parent.mkdir(parents=True, exist_ok=True)
                with open(candidate, "w", encoding="utf-8") as f:
                    f.write(content)
                os.chmod(candidate, 0o600)
            except OSError as e:
                logger.debug("Config target %s not writable: %s", candidate, e)
                failures.append(f"{candidate}: {e}")
                continue
            logger.debug("Saved %s to %s", ", ".join(sorted(values)), candidate)
            return candidate

        raise TokenStoreError(
            "Could not write config to any location",
            details={"attempts": failures},
        )

    def clear_user_tokens(self) -> Path:
        """Remove the persisted user token pair, keeping app credentials."""
        return self.update(**{USER_ACCESS_TOKEN: None, REFRESH_TOKEN: None})
