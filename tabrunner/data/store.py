import asyncio
import json
import logging
import os
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiofiles
import aiofiles.os

from tabrunner.agent.state import Session
from tabrunner.core.config import config
from tabrunner.core.errors import SessionNotFoundError

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Durable keyed storage for session state.

    Sessions live under one key as a mapping of session id to session. In
    memory ``completed_urls`` is a set; at rest it is a list in URL order.
    With no path the serialized document is kept in memory.
    """

    def __init__(self, path: Optional[str] = None, key: Optional[str] = None):
        self.path = path
        self.key = key or config.SESSIONS_KEY
        self._memory: str = "{}"
        self._io_lock = asyncio.Lock()
        self._session_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Raw document

    async def _read_document(self) -> Dict[str, Any]:
        if self.path is None:
            text = self._memory
        else:
            if not os.path.exists(self.path):
                return {}
            async with aiofiles.open(self.path, mode="r") as f:
                text = await f.read()
        return json.loads(text) if text.strip() else {}

    async def _write_document(self, document: Dict[str, Any]):
        text = json.dumps(document)
        if self.path is None:
            self._memory = text
            return
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        async with aiofiles.open(tmp_path, mode="w") as f:
            await f.write(text)
        await aiofiles.os.replace(tmp_path, self.path)

    # Collection contract

    async def get(self, key: str) -> Dict[str, Session]:
        """Read every session stored under ``key``, normalised for use."""
        try:
            document = await self._read_document()
        except Exception as e:
            logger.error(f"Error getting storage for {key}: {e}")
            return {}

        sessions = document.get(key) or {}
        return {sid: self._decode(data) for sid, data in sessions.items()}

    async def set(self, key: str, sessions: Dict[str, Session]):
        """Replace everything stored under ``key``."""
        try:
            document = await self._read_document()
        except Exception as e:
            logger.error(f"Storage unreadable, rewriting {key}: {e}")
            document = {}

        document[key] = {sid: self._encode(s) for sid, s in sessions.items()}
        try:
            await self._write_document(document)
            logger.debug(f"Storage set for {key}")
        except Exception as e:
            logger.error(f"Error setting storage for {key}: {e}")

    @staticmethod
    def _decode(data: Dict[str, Any]) -> Session:
        session = dict(data)
        completed = session.get("completed_urls")
        session["completed_urls"] = set(completed) if isinstance(completed, list) else set()
        # Older sessions may predate these fields
        session.setdefault("consecutive_errors", 0)
        session.setdefault("total_errors", 0)
        session.setdefault("is_stopping", False)
        session["active_extractions"] = list(session.get("active_extractions") or [])
        session.setdefault("current_index", 0)
        session.setdefault("last_processed_time", session.get("start_time"))
        return session  # type: ignore[return-value]

    @staticmethod
    def _encode(session: Session) -> Dict[str, Any]:
        data = dict(session)
        completed = data.get("completed_urls") or set()
        order = {url: i for i, url in enumerate(data.get("urls") or [])}
        data["completed_urls"] = sorted(completed, key=lambda u: order.get(u, len(order)))
        return data

    # Keyed interface

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks[session_id]

    async def load(self, session_id: str) -> Optional[Session]:
        sessions = await self.get(self.key)
        return sessions.get(session_id)

    async def require(self, session_id: str) -> Session:
        session = await self.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def save(self, session: Session):
        async with self._io_lock:
            sessions = await self.get(self.key)
            sessions[session["session_id"]] = session
            await self.set(self.key, sessions)

    async def delete(self, session_id: str) -> bool:
        async with self._io_lock:
            sessions = await self.get(self.key)
            if sessions.pop(session_id, None) is None:
                return False
            await self.set(self.key, sessions)
        self._session_locks.pop(session_id, None)
        return True

    async def session_ids(self) -> List[str]:
        return list((await self.get(self.key)).keys())

    async def reset(self):
        async with self._io_lock:
            await self.set(self.key, {})
        logger.info("Session store cleared")

    @asynccontextmanager
    async def edit(self, session_id: str) -> AsyncIterator[Optional[Session]]:
        """
        Read-modify-write one session under its lock.
        Yields None when the session is gone; nothing is written then.
        Use lock() with delete() to remove a session instead.
        """
        async with self.lock(session_id):
            session = await self.load(session_id)
            yield session
            if session is not None:
                await self.save(session)
