"""
groupcrypt - Durable local key storage.

String-keyed storage of exported identity material addressed by user id.
``FileKeyStorage`` keeps one JSON document per user and writes atomically
(temp file + rename); ``MemoryKeyStorage`` is the volatile equivalent used
for tests and ephemeral sessions.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import aiofiles

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class KeyStorage(Protocol):
    """Save/load/delete triple for per-user key records."""

    async def save(self, user_id: str, record: Dict[str, Any]) -> None: ...

    async def load(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, user_id: str) -> bool: ...


class MemoryKeyStorage:
    """In-process key storage. Contents vanish with the object."""

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}

    async def save(self, user_id: str, record: Dict[str, Any]) -> None:
        self._records[user_id] = json.dumps(record)

    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = self._records.get(user_id)
        return json.loads(raw) if raw is not None else None

    async def delete(self, user_id: str) -> bool:
        return self._records.pop(user_id, None) is not None


class FileKeyStorage:
    """Stores each user's key record as ``<dir>/identity_<user>.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, user_id: str) -> Path:
        return self.directory / f"identity_{_UNSAFE_CHARS.sub('_', user_id)}.json"

    async def save(self, user_id: str, record: Dict[str, Any]) -> None:
        path = self.path_for(user_id)
        temp_file = f"{path}.tmp"
        try:
            json_data = json.dumps(record, indent=2, ensure_ascii=False)
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)
            # Atomic on POSIX
            os.replace(temp_file, path)
            if os.name == "posix":
                os.chmod(path, 0o600)
            logger.debug(f"Saved key record for {user_id} to {path}")
        except OSError as e:
            logger.error(f"Failed to save key record for {user_id}: {e}")
            raise

    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(user_id)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
        return json.loads(raw)

    async def delete(self, user_id: str) -> bool:
        path = self.path_for(user_id)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        logger.info(f"Deleted key record for {user_id}")
        return True
