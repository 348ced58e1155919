"""Session-scoped key-value storage for conversation logs.

In-memory storage is the default; the JSON file backend keeps one document per
session and key under a directory so history survives restarts.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from agent.core.messages import StoredMessage
from config.settings import Settings


logger = logging.getLogger(__name__)

_HISTORY = TypeAdapter(List[StoredMessage])
_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class StoreError(RuntimeError):
    pass


class InvalidSessionId(ValueError):
    pass


def validate_name(value: str, what: str = "session id") -> str:
    if not isinstance(value, str) or not _SAFE_NAME.match(value):
        raise InvalidSessionId(f"Invalid {what}: {value!r}")
    return value


class ConversationStore(ABC):
    """Storage handle bound to one conversation session."""

    @abstractmethod
    async def get(self, key: str) -> Optional[List[StoredMessage]]:
        ...

    @abstractmethod
    async def put(self, key: str, messages: List[StoredMessage]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...


class InMemoryStore(ConversationStore):
    """Reads and writes one session inside a shared sessions map.

    A session entry exists only while it holds at least one key.
    """

    def __init__(
        self,
        sessions: Optional[Dict[str, Dict[str, List[StoredMessage]]]] = None,
        session_id: str = "default",
    ) -> None:
        self._sessions = sessions if sessions is not None else {}
        self.session_id = session_id

    async def get(self, key: str) -> Optional[List[StoredMessage]]:
        messages = self._sessions.get(self.session_id, {}).get(key)
        return list(messages) if messages is not None else None

    async def put(self, key: str, messages: List[StoredMessage]) -> None:
        self._sessions.setdefault(self.session_id, {})[key] = list(messages)

    async def delete(self, key: str) -> bool:
        data = self._sessions.get(self.session_id)
        if data is None or key not in data:
            return False
        del data[key]
        if not data:
            del self._sessions[self.session_id]
        return True


class JsonFileStore(ConversationStore):
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{validate_name(key, 'key')}.json"

    def _read(self, path: Path) -> Optional[List[StoredMessage]]:
        if not path.exists():
            return None
        try:
            return _HISTORY.validate_json(path.read_bytes())
        except ValidationError as exc:
            raise StoreError(f"Corrupt conversation document {path}: {exc}") from exc

    def _write(self, path: Path, messages: List[StoredMessage]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = _HISTORY.dump_json(messages, by_alias=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    async def get(self, key: str) -> Optional[List[StoredMessage]]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def put(self, key: str, messages: List[StoredMessage]) -> None:
        await asyncio.to_thread(self._write, self._path(key), list(messages))

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove, self._path(key))


class StoreRegistry:
    """Hands out the store for a session id."""

    def __init__(self, backend: str = "memory", root: Optional[Path] = None) -> None:
        if backend not in {"memory", "file"}:
            raise ValueError(f"Unknown store backend: {backend!r}")
        if backend == "file" and root is None:
            raise ValueError("File store backend needs a root directory")
        self.backend = backend
        self.root = Path(root) if root is not None else None
        self._memory: Dict[str, Dict[str, List[StoredMessage]]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreRegistry":
        return cls(backend=settings.store_backend, root=Path(settings.store_dir))

    def for_session(self, session_id: str) -> ConversationStore:
        validate_name(session_id)
        if self.backend == "file":
            return JsonFileStore(self.root / session_id)
        return InMemoryStore(self._memory, session_id)


async def load_history(store: ConversationStore, key: str) -> List[StoredMessage]:
    return await store.get(key) or []


async def clear_history(store: ConversationStore, key: str) -> int:
    existing = await load_history(store, key)
    await store.delete(key)
    logger.info("Deleted %d stored messages", len(existing))
    return len(existing)
