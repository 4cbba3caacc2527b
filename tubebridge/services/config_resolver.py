from __future__ import annotations

import json
import logging
from typing import Any, cast

from pydantic import ValidationError

from tubebridge.models.addon_contracts import UserConfig
from tubebridge.repositories.session_repository import (
    SessionExpired,
    SessionRepository,
    is_valid_session_id,
)
from tubebridge.services.crypto import CryptoContext, CryptoError

LOGGER = logging.getLogger("tubebridge.config")


class ConfigTokenError(Exception):
    pass


class SessionExpiredError(Exception):
    def __init__(self, session_id: str, expired_at: str) -> None:
        super().__init__(f"session {session_id} expired at {expired_at}")
        self.session_id = session_id
        self.expired_at = expired_at


class ConfigResolver:
    """Turns the `{config}` path segment into a `UserConfig`.

    The segment is either a 32-hex-char session id or a JSON config token.
    Session lookups here are anonymous reads, which renew the session.
    """

    def __init__(self, *, sessions: SessionRepository, crypto: CryptoContext) -> None:
        self._sessions = sessions
        self._crypto = crypto

    def load(self, config_ref: str) -> UserConfig:
        if is_valid_session_id(config_ref):
            lookup = self._sessions.read(config_ref)
            if lookup is None:
                raise ConfigTokenError("unknown session")
            if isinstance(lookup, SessionExpired):
                raise SessionExpiredError(lookup.session_id, lookup.expired_at)
            return parse_user_config(lookup.config)

        try:
            raw = json.loads(config_ref)
        except json.JSONDecodeError as exc:
            raise ConfigTokenError("config token is not valid JSON") from exc
        return parse_user_config(raw)

    def decrypt_secret(self, config: UserConfig) -> str | None:
        """Returns the plaintext credential blob, or None when absent or unreadable."""
        if not config.encrypted:
            return None
        try:
            payload = self._crypto.decrypt_json(config.encrypted)
        except CryptoError:
            LOGGER.warning("config secret could not be decrypted; continuing unauthenticated")
            return None
        if not isinstance(payload, dict):
            return None
        auth = cast(dict[str, Any], payload).get("auth")
        if isinstance(auth, str) and auth.strip():
            return auth
        return None


def parse_user_config(raw: Any) -> UserConfig:
    if not isinstance(raw, dict):
        raise ConfigTokenError("config must be a JSON object")
    try:
        return UserConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigTokenError(f"invalid config: {exc.error_count()} error(s)") from exc
