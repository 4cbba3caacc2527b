from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import secrets
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, cast

LOGGER = logging.getLogger("tubebridge.sessions")

SESSION_ID_BYTES = 16
SALT_BYTES = 16
PBKDF2_ITERATIONS = 10_000
PBKDF2_KEY_LENGTH = 32
_SESSION_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    config: dict[str, Any]
    created_at: str
    last_accessed_at: str
    expires_at: str


@dataclass(frozen=True)
class SessionExpired:
    session_id: str
    expired_at: str


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    created_at: str
    last_accessed_at: str
    expires_at: str
    config_size: int


SessionLookup = SessionSnapshot | SessionExpired | None


def is_valid_session_id(value: str) -> bool:
    return _SESSION_ID_PATTERN.fullmatch(value) is not None


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SessionRepository:
    """Password-gated, expiring user configurations, one JSON file per session.

    Every successful read slides the expiry window forward. Expired records stay
    on disk (reads report them as expired) until `purge_expired` removes them.
    Read-modify-write cycles hold a per-session lock.
    """

    def __init__(
        self,
        sessions_dir: Path,
        *,
        expiry: timedelta,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._sessions_dir = sessions_dir
        self._expiry = expiry
        self._clock = clock
        # Entries live only while a caller holds or waits on the lock.
        self._locks: dict[str, threading.Lock] = {}
        self._lock_holders: dict[str, int] = {}
        self._locks_guard = threading.Lock()

    def create(self, config: dict[str, Any], password: str) -> SessionSnapshot:
        now = self._clock()
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        salt = secrets.token_hex(SALT_BYTES)
        record: dict[str, Any] = {
            "id": session_id,
            "config": config,
            "passwordHash": _hash_password(password, salt),
            "salt": salt,
            "createdAt": now.isoformat(),
            "lastAccessed": now.isoformat(),
            "expiresAt": (now + self._expiry).isoformat(),
        }
        with self._session_lock(session_id):
            self._write_record(session_id, record)
        LOGGER.info("session created session_id=%s expires_at=%s", session_id, record["expiresAt"])
        return _snapshot(record)

    def read(self, session_id: str, password: str | None = None) -> SessionLookup:
        return self._renew(session_id, password, new_config=None)

    def update(self, session_id: str, password: str, config: dict[str, Any]) -> SessionLookup:
        return self._renew(session_id, password, new_config=config)

    def delete(self, session_id: str, password: str) -> bool:
        if not is_valid_session_id(session_id):
            return False
        with self._session_lock(session_id):
            record = self._load_record(session_id)
            if record is None or not _verify_password(password, record):
                return False
            try:
                self._record_path(session_id).unlink()
            except FileNotFoundError:
                return False
        LOGGER.info("session deleted session_id=%s", session_id)
        return True

    def purge_expired(self) -> int:
        """Deletes every expired record; problems with one file never stop the sweep."""
        now = self._clock()
        purged = 0
        for path in self._record_paths():
            session_id = path.stem
            try:
                with self._session_lock(session_id):
                    record = _read_json(path)
                    if now > _parse_timestamp(record["expiresAt"]):
                        path.unlink()
                        purged += 1
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError):
                LOGGER.warning(
                    "session sweep skipped unreadable record path=%s",
                    path,
                    exc_info=True,
                )
        if purged:
            LOGGER.info("session sweep purged expired sessions count=%s", purged)
        return purged

    def list_sessions(self) -> list[SessionSummary]:
        summaries: list[SessionSummary] = []
        for path in self._record_paths():
            try:
                record = _read_json(path)
                summaries.append(
                    SessionSummary(
                        session_id=str(record["id"]),
                        created_at=str(record["createdAt"]),
                        last_accessed_at=str(record["lastAccessed"]),
                        expires_at=str(record["expiresAt"]),
                        config_size=len(json.dumps(record.get("config"))),
                    )
                )
            except (OSError, ValueError, KeyError, TypeError):
                LOGGER.debug("session listing skipped unreadable record path=%s", path)
        summaries.sort(key=lambda summary: summary.created_at)
        return summaries

    def _renew(
        self,
        session_id: str,
        password: str | None,
        *,
        new_config: dict[str, Any] | None,
    ) -> SessionLookup:
        if not is_valid_session_id(session_id):
            return None
        with self._session_lock(session_id):
            record = self._load_record(session_id)
            if record is None:
                return None

            now = self._clock()
            expires_at = _parse_timestamp(record["expiresAt"])
            if now > expires_at:
                LOGGER.info(
                    "expired session accessed session_id=%s expired_at=%s",
                    session_id,
                    record["expiresAt"],
                )
                return SessionExpired(session_id=session_id, expired_at=record["expiresAt"])

            if password is not None and not _verify_password(password, record):
                return None

            if new_config is not None:
                record["config"] = new_config
            record["lastAccessed"] = now.isoformat()
            record["expiresAt"] = (now + self._expiry).isoformat()
            self._write_record(session_id, record)
        return _snapshot(record)

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        key = session_id.lower()
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                remaining = self._lock_holders[key] - 1
                if remaining:
                    self._lock_holders[key] = remaining
                else:
                    del self._lock_holders[key]
                    del self._locks[key]

    def _record_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id.lower()}.json"

    def _record_paths(self) -> list[Path]:
        if not self._sessions_dir.is_dir():
            return []
        return sorted(
            path
            for path in self._sessions_dir.glob("*.json")
            if path.is_file() and is_valid_session_id(path.stem)
        )

    def _load_record(self, session_id: str) -> dict[str, Any] | None:
        path = self._record_path(session_id)
        try:
            record = _read_json(path)
            _parse_timestamp(record["expiresAt"])
            for field in ("id", "createdAt", "lastAccessed"):
                if not isinstance(record.get(field), str):
                    raise ValueError(f"session record field {field} is missing")
        except FileNotFoundError:
            return None
        except (ValueError, KeyError):
            LOGGER.warning("session record is corrupt session_id=%s", session_id, exc_info=True)
            return None
        return record

    def _write_record(self, session_id: str, record: dict[str, Any]) -> None:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(session_id)
        temp_path = path.parent / f"{path.name}.{secrets.token_hex(4)}.tmp"
        temp_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        os.replace(temp_path, path)


def _hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
        dklen=PBKDF2_KEY_LENGTH,
    ).hex()


def _verify_password(password: str, record: dict[str, Any]) -> bool:
    stored_hash = record.get("passwordHash")
    salt = record.get("salt")
    if not isinstance(stored_hash, str) or not isinstance(salt, str):
        return False
    return secrets.compare_digest(stored_hash, _hash_password(password, salt))


def _read_json(path: Path) -> dict[str, Any]:
    parsed = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"session record is not an object: {path}")
    return cast(dict[str, Any], parsed)


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError("session timestamp must be a string")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _snapshot(record: dict[str, Any]) -> SessionSnapshot:
    raw_config = record.get("config")
    config = cast(dict[str, Any], raw_config) if isinstance(raw_config, dict) else {}
    return SessionSnapshot(
        session_id=str(record["id"]),
        config=config,
        created_at=str(record["createdAt"]),
        last_accessed_at=str(record["lastAccessed"]),
        expires_at=str(record["expiresAt"]),
    )
