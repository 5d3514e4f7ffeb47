from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> dict | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._values: dict[str, dict] = {}

    async def get(self, key: str) -> dict | None:
        value = self._values.get(key)
        return dict(value) if value is not None else None

    async def set(self, key: str, value: dict) -> None:
        self._values[key] = dict(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileKeyValueStore(KeyValueStore):
    """All keys live in one JSON object file, rewritten atomically on change."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict | None:
        async with self._lock:
            return self._read_all().get(key)

    async def set(self, key: str, value: dict) -> None:
        async with self._lock:
            all_values = self._read_all()
            all_values[key] = value
            self._write_all(all_values)

    async def delete(self, key: str) -> None:
        async with self._lock:
            all_values = self._read_all()
            if all_values.pop(key, None) is not None:
                self._write_all(all_values)

    def _read_all(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}

        raw = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise RuntimeError("Auth state file is invalid; expected top-level JSON object.")
        return raw

    def _write_all(self, payload: dict[str, dict]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
