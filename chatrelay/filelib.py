"""Index of stored files, keyed by short numeric keys."""

from __future__ import annotations

import json
import random
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

INDEX_NAME = "keyAndinfo.json"
KEY_LIMIT = 100000
SPARE_KEYS = 50


@dataclass(frozen=True)
class FileInfo:
    """What the library records about one stored file."""

    suffix: str
    size: int
    time: str = ""

    def to_json(self) -> list[Any]:
        return [self.suffix, self.size, self.time]

    @classmethod
    def from_json(cls, data: Any) -> "FileInfo":
        if not isinstance(data, list) or len(data) < 2:
            raise ValueError(f"malformed file entry: {data!r}")
        suffix, size = data[0], data[1]
        if not isinstance(suffix, str) or not isinstance(size, (int, float)):
            raise ValueError(f"malformed file entry: {data!r}")
        time = data[2] if len(data) > 2 and isinstance(data[2], str) else ""
        return cls(suffix, int(size), time)


class FileLibrary:
    """Thread-safe key to file-info map persisted as a JSON object."""

    def __init__(self, directory: Path | str, spare_keys: int = SPARE_KEYS) -> None:
        self.directory = Path(directory)
        self.index_path = self.directory / INDEX_NAME
        self._lock = threading.Lock()
        self._entries: dict[str, FileInfo] = self._load()
        self._spare: list[str] = []
        while len(self._spare) < spare_keys:
            key = self._new_key()
            if key not in self._spare:
                self._spare.append(key)

    def _load(self) -> dict[str, FileInfo]:
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        if not isinstance(data, dict):
            return {}
        entries = {}
        for key, value in data.items():
            try:
                entries[key] = FileInfo.from_json(value)
            except ValueError:
                continue
        return entries

    def _new_key(self) -> str:
        while True:
            key = str(random.randrange(KEY_LIMIT))
            if key not in self._entries:
                return key

    def reserve_key(self) -> str:
        """Take one of the unused keys prepared when the library was opened."""
        with self._lock:
            if not self._spare:
                raise LookupError("no unused file keys left")
            return self._spare.pop()

    def add(self, key: str, info: FileInfo) -> None:
        with self._lock:
            self._entries[key] = info

    def get(self, key: str) -> FileInfo:
        with self._lock:
            try:
                return self._entries[key]
            except KeyError:
                raise KeyError(f"unknown file key: {key!r}") from None

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def save(self) -> None:
        """Write the index back to its JSON file."""
        with self._lock:
            data = {key: info.to_json() for key, info in self._entries.items()}
        self.index_path.write_text(json.dumps(data, indent=4), encoding="utf-8")

    def __enter__(self) -> "FileLibrary":
        return self

    def __exit__(self, *args) -> None:
        self.save()