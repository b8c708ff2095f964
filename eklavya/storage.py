"""File-based session storage: one JSON file per session, owner-readable only."""

import json
import logging
import os
import re
from dataclasses import asdict
from pathlib import Path
from typing import Any

from eklavya.models import Message, MessageKind, Session, SessionMetadata, SessionStatus, Synthesis

logger = logging.getLogger(__name__)

PREFIX_LENGTH = 8
_FILE_MODE = 0o600
# ids and prefixes are used in file names and glob patterns
_SESSION_ID = re.compile(r"[A-Za-z0-9_-]{1,64}")


class SessionNotFoundError(Exception):
    """No stored session matches the given id or prefix."""


def session_to_dict(session: Session) -> dict[str, Any]:
    data = asdict(session)
    data["metadata"]["status"] = session.metadata.status.value
    for message in data["transcript"]:
        message["kind"] = MessageKind(message["kind"]).value
    return data


def session_from_dict(data: dict[str, Any]) -> Session:
    """Rebuild a Session from its stored JSON form."""
    transcript = [
        Message(**{**m, "kind": MessageKind(m.get("kind", MessageKind.TURN.value))})
        for m in data["transcript"]
    ]
    meta = dict(data["metadata"])
    meta["status"] = SessionStatus(meta["status"])
    return Session(
        id=data["id"],
        question=data["question"],
        council_id=data["council_id"],
        council_name=data["council_name"],
        transcript=transcript,
        synthesis=Synthesis(**data["synthesis"]),
        created_at=data["created_at"],
        metadata=SessionMetadata(**meta),
    )


class SessionStore:
    """Sessions stored as ``<sessions_dir>/<id>.json``."""

    def __init__(self, sessions_dir: Path) -> None:
        self._dir = Path(sessions_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.json"

    def save(self, session: Session) -> Path:
        """Write the session; the file is created with mode 0600."""
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._path(session.id)
        payload = json.dumps(session_to_dict(session), indent=2, ensure_ascii=False)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.chmod(path, _FILE_MODE)
        logger.info("Session saved to: %s", path)
        return path

    def _resolve(self, session_id: str) -> Path:
        if not _SESSION_ID.fullmatch(session_id):
            raise SessionNotFoundError(f"Invalid session id: {session_id!r}")
        path = self._path(session_id)
        if path.exists():
            return path
        if len(session_id) >= PREFIX_LENGTH and self._dir.exists():
            matches = sorted(self._dir.glob(f"{session_id}*.json"))
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise SessionNotFoundError(f"Session id '{session_id}' is ambiguous ({len(matches)} matches)")
        raise SessionNotFoundError(f"Session not found: {session_id}")

    def load(self, session_id: str) -> Session:
        """Load by full id or a unique prefix of at least 8 characters."""
        path = self._resolve(session_id)
        try:
            return session_from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise SessionNotFoundError(f"Session file is unreadable: {path} ({exc})") from exc

    def list(self, limit: int = 20) -> list[Session]:
        """Most recently written sessions first. Unreadable files are skipped."""
        if not self._dir.exists():
            return []
        files = sorted(self._dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        sessions: list[Session] = []
        for path in files[:limit]:
            try:
                sessions.append(session_from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
        return sessions

    def delete(self, session_id: str) -> bool:
        try:
            path = self._resolve(session_id)
        except SessionNotFoundError:
            return False
        path.unlink()
        return True
