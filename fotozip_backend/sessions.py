"""In-memory registry of upload sessions.

A session is the ordered list of files uploaded under one caller-chosen key
that have not been archived yet. Nothing here is persisted: a restart forgets
every session (files already on disk stay until the retention sweep).
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import SessionBusy
from .workspace import UploadedFile


@dataclass
class Session:
    key: str
    created_at: float = field(default_factory=time.time)
    files: List[UploadedFile] = field(default_factory=list)
    building: bool = False
    # Uploads that arrived while an archive was being built from ``files``.
    pending: List[UploadedFile] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.files) + len(self.pending)


class SessionRegistry:
    """Maps a session key to its live Session.

    Owned by the application (``app.state.registry``) and handed to request
    handlers; every operation holds ``_lock`` so the registry is safe both on a
    single event loop and from worker threads.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sessions

    def get(self, key: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(key)

    def count(self, key: str) -> int:
        with self._lock:
            session = self._sessions.get(key)
            return session.count if session else 0

    def files(self, key: str) -> List[UploadedFile]:
        """Copy of the files that the next archive for ``key`` would contain."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return []
            return list(session.files) + list(session.pending)

    def reset(self, key: str) -> Session:
        """Start a fresh, empty generation for ``key``, discarding any previous one."""
        session = Session(key=key)
        with self._lock:
            self._sessions[key] = session
        return session

    def append(self, key: str, files: Iterable[UploadedFile]) -> int:
        """Add files to the session (created on demand); returns the new total."""
        files = list(files)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = self._sessions[key] = Session(key=key)
            if session.building:
                session.pending.extend(files)
            else:
                session.files.extend(files)
            return session.count

    def take_and_clear(self, key: str) -> List[UploadedFile]:
        """Return the session's files and drop the session if it had any."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None or session.building:
                return []
            files = list(session.files)
            if files:
                del self._sessions[key]
            return files

    def clear_all(self) -> None:
        with self._lock:
            self._sessions.clear()

    @contextmanager
    def building(self, key: str) -> Iterator[List[UploadedFile]]:
        """Hold the session in the BUILDING state while an archive is made.

        Yields a snapshot of the file list (empty when there is nothing to
        build; the session is then left untouched). Leaving the block normally
        consumes the snapshot; leaving it with an exception restores it so the
        client can retry. A second build for the same key raises SessionBusy.
        """
        with self._lock:
            session = self._sessions.get(key)
            if session is not None and session.building:
                raise SessionBusy("Ya hay una compresión en curso para este chatId.")
            if session is None or not session.files:
                snapshot: List[UploadedFile] = []
            else:
                snapshot = list(session.files)
                session.building = True

        if not snapshot:
            yield snapshot
            return

        try:
            yield snapshot
        except BaseException:
            self._finish(key, session, succeeded=False)
            raise
        else:
            self._finish(key, session, succeeded=True)

    def _finish(self, key: str, session: Session, succeeded: bool) -> None:
        with self._lock:
            session.building = False
            if succeeded:
                session.files = session.pending
            else:
                session.files = session.files + session.pending
            session.pending = []
            # A reset during the build replaced the session; leave the new one alone.
            if self._sessions.get(key) is not session:
                return
            if not session.files:
                del self._sessions[key]
