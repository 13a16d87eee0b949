"""
Asynchronous key-value persistence.

The manager keeps all of its state (appliance records, settings, rule
cache, device secret) in a handful of top-level keys. Values must be
JSON-serializable. Writes are whole-value replacements; callers do
read-modify-write and assume they are the only writer.
"""

import asyncio
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Durable get/set/remove storage."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are deep-copied to mimic serialization."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self._data.keys())

    def snapshot(self) -> Dict[str, Any]:
        """Raw stored data, for inspection in tests and diagnostics."""
        return copy.deepcopy(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """Single JSON document on disk, rewritten atomically on every change.

    Stored at {state_dir}/storage.json with owner-only permissions.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    async def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}

        async with aiofiles.open(self._path, 'r') as f:
            raw = await f.read()

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Key-value store {self._path} is corrupt: {e}")
            raise

        if not isinstance(data, dict):
            raise ValueError(f"Key-value store {self._path} must hold a JSON object")
        return data

    async def _save(self, data: Dict[str, Any]) -> None:
        # Atomic write: write to temp file, then rename
        tmp_path = self._path.with_suffix('.tmp')
        async with aiofiles.open(tmp_path, 'w') as f:
            await f.write(json.dumps(data, indent=2, sort_keys=True))
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self._path)

    async def get(self, key: str, default: Any = None) -> Any:
        data = await self._load()
        return data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = value
            await self._save(data)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if key in data:
                del data[key]
                await self._save(data)

    async def keys(self) -> List[str]:
        data = await self._load()
        return list(data.keys())
