"""
File-backed local key/value storage.

Plays the role browser local storage plays for the web client: a small,
durable, synchronous key/value store used only by the local fallback
cache. One file per key under a single directory.

Atomicity: writes target ``.tmp`` first and then ``os.replace`` into place.
"""

import contextlib
import os
import re
from pathlib import Path
from typing import Optional

import structlog

from balance_guard.services.storage.interface import (
    KeyValueStoreInterface,
    QuotaExceededError,
    StorageError,
)

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SUFFIX = ".json"

logger = structlog.get_logger(__name__)


class FileKeyValueStore(KeyValueStoreInterface):
    """
    Key/value store persisted as files in ``directory``.

    ``max_bytes`` optionally caps the total size of stored values; a write
    that would exceed it raises QuotaExceededError and leaves the store
    unchanged.
    """

    def __init__(self, directory: str | os.PathLike, max_bytes: Optional[int] = None):
        self._root = Path(directory).expanduser().resolve()
        self._max_bytes = max_bytes

    def _path(self, key: str) -> Path:
        # Keys become file names; reject anything that could escape the root
        if not _KEY_RE.fullmatch(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._root / f"{key}{_SUFFIX}"

    def _used_bytes(self, excluding: Path) -> int:
        if not self._root.exists():
            return 0
        return sum(
            p.stat().st_size
            for p in self._root.glob(f"*{_SUFFIX}")
            if p != excluding
        )

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Failed to read local key {key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        data = value.encode("utf-8")

        if self._max_bytes is not None:
            if self._used_bytes(excluding=path) + len(data) > self._max_bytes:
                raise QuotaExceededError(
                    f"Local storage quota of {self._max_bytes} bytes exceeded writing {key}"
                )

        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise StorageError(f"Failed to write local key {key}: {e}") from e

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove local key {key}: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        if not self._root.exists():
            return []
        names = (p.name[: -len(_SUFFIX)] for p in self._root.glob(f"*{_SUFFIX}"))
        return sorted(n for n in names if n.startswith(prefix))
