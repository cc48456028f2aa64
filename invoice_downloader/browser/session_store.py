"""Durable per-profile browser state (cookies + origin storage)."""

from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

__all__ = ["SessionLoadError", "SessionState", "SessionStore"]

_PROFILE_TOKEN = re.compile(r"[^A-Za-z0-9_.-]+")


class SessionLoadError(RuntimeError):
    """Raised when a persisted storage state exists but cannot be used."""


@dataclass(frozen=True)
class SessionState:
    """Snapshot of ``BrowserContext.storage_state()``.

    ``origins`` maps an origin URL to its localStorage entries
    (``[{"name": ..., "value": ...}]``). Build instances with
    :meth:`from_storage_state` from a live context or via
    :meth:`SessionStore.load`.
    """

    cookies: List[Dict[str, Any]] = field(default_factory=list)
    origins: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)

    @classmethod
    def from_storage_state(cls, raw: Mapping[str, Any]) -> "SessionState":
        if not isinstance(raw, Mapping):
            raise SessionLoadError("storage state must be a JSON object")

        cookies = raw.get("cookies") or []
        if not isinstance(cookies, list) or not all(isinstance(c, Mapping) for c in cookies):
            raise SessionLoadError("storage state cookies must be a list of objects")

        origins: Dict[str, List[Dict[str, str]]] = {}
        for entry in raw.get("origins") or []:
            if not isinstance(entry, Mapping) or not entry.get("origin"):
                raise SessionLoadError("storage state origin entries need an 'origin' key")
            local_storage = [
                {"name": str(item["name"]), "value": str(item["value"])}
                for item in entry.get("localStorage") or []
                if isinstance(item, Mapping) and "name" in item and "value" in item
            ]
            origins[str(entry["origin"])] = local_storage

        return cls(cookies=[dict(cookie) for cookie in cookies], origins=origins)

    def to_storage_state(self) -> Dict[str, Any]:
        return {
            "cookies": [dict(cookie) for cookie in self.cookies],
            "origins": [
                {"origin": origin, "localStorage": [dict(item) for item in entries]}
                for origin, entries in self.origins.items()
            ],
        }

    @property
    def is_empty(self) -> bool:
        return not self.cookies and not self.origins


class SessionStore:
    """Persist one storage state file per profile under ``profiles_dir``."""

    def __init__(self, profiles_dir: Path) -> None:
        self.profiles_dir = Path(profiles_dir)

    @staticmethod
    def token_for(profile_id: str) -> str:
        token = _PROFILE_TOKEN.sub("_", profile_id.strip()).strip("._")
        if not token:
            raise ValueError(f"invalid profile id: {profile_id!r}")
        return token

    def path_for(self, profile_id: str) -> Path:
        return self.profiles_dir / f"{self.token_for(profile_id)}_storage_state.json"

    def load(self, profile_id: str) -> SessionState | None:
        path = self.path_for(profile_id)
        try:
            raw_state = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SessionLoadError(f"unable to read storage state {path}: {exc}") from exc

        try:
            payload = json.loads(raw_state)
        except json.JSONDecodeError as exc:
            raise SessionLoadError(f"invalid storage state JSON in {path}: {exc}") from exc

        return SessionState.from_storage_state(payload)

    def save(self, profile_id: str, state: SessionState) -> Path:
        path = self.path_for(profile_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        encoded = json.dumps(state.to_storage_state(), indent=2, ensure_ascii=False)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(encoded)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path

    def delete(self, profile_id: str) -> bool:
        path = self.path_for(profile_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
