from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path, PurePath

from .ledger import StorageError

__all__ = ["ArtifactStore"]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_token(value: str) -> str:
    token = _UNSAFE_CHARS.sub("_", value.strip()).strip("._")
    if not token:
        raise StorageError(f"unusable artifact name component: {value!r}")
    return token


class ArtifactStore:
    """Invoice files under ``<root>/<vendor_id>/``.

    Paths handed out (and stored in the ledger) are relative to the root, so the
    whole tree can be moved without touching recorded metadata.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, vendor_id: str, file_name: str) -> Path:
        return self.root / _safe_token(vendor_id) / _safe_token(file_name)

    def relative(self, path: Path) -> str:
        return Path(path).relative_to(self.root).as_posix()

    def write(self, vendor_id: str, file_name: str, content: bytes) -> Path:
        """Write ``content`` atomically; an existing file is never replaced."""
        if not content:
            raise StorageError(f"refusing to store empty artifact {file_name}")
        destination = self.path_for(vendor_id, file_name)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
        except OSError as exc:
            raise StorageError(f"unable to prepare artifact directory for {destination}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.link(tmp_name, destination)
        except FileExistsError as exc:
            raise StorageError(f"artifact already exists: {self.relative(destination)}") from exc
        except OSError as exc:
            raise StorageError(f"unable to write artifact {destination}: {exc}") from exc
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        return destination

    def resolve(self, path: str | Path) -> Path:
        if ".." in PurePath(path).parts:
            raise StorageError(f"artifact path may not contain '..': {path}")
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        root = self.root.resolve()
        resolved = candidate.resolve()
        if resolved != root and root not in resolved.parents:
            raise StorageError(f"artifact path is outside the invoice storage root: {path}")
        return resolved

    def read(self, path: str | Path) -> bytes:
        resolved = self.resolve(path)
        try:
            return resolved.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"artifact not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"unable to read artifact {path}: {exc}") from exc

    def delete(self, path: str | Path) -> bool:
        resolved = self.resolve(path)
        try:
            resolved.unlink()
        except FileNotFoundError:
            return False
        return True
