"""
Redacting wrapper for decrypted integration configuration.

Decrypted configuration (tokens, API keys, provider options) is handed to
provider capabilities wrapped in SecureCredentials so that it never leaks
through logging, exception messages or tracebacks:

    creds = SecureCredentials(access_token="gho_xxx", org="acme")

    print(creds)        # SecureCredentials([REDACTED])
    repr(creds)         # SecureCredentials(keys=['access_token', 'org'])
    creds["org"]        # explicit access returns the value

It behaves as a read-only mapping; iteration yields keys only.
"""

import hashlib
import json
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional

REDACTED = "[REDACTED]"


class SecureCredentials(Mapping):
    """Read-only credential mapping whose string forms never include values."""

    __slots__ = ("_data",)

    def __init__(self, **fields: Any):
        self._data: Dict[str, Any] = fields

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(keys={list(self._data)})"

    def __str__(self) -> str:
        return f"{type(self).__name__}({REDACTED})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecureCredentials):
            return NotImplemented
        return self.fingerprint() == other.fingerprint()

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON form."""
        return hashlib.sha256(self.to_json().encode()).hexdigest()

    def to_json(self) -> str:
        """Canonical JSON with real values; only for the vault."""
        return json.dumps(self._data, sort_keys=True, default=str)

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with real values; only for provider calls."""
        return dict(self._data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecureCredentials":
        return cls(**data)

    def with_updated(self, **fields: Any) -> "SecureCredentials":
        return type(self)(**{**self._data, **fields})

    def redacted_dict(self) -> Dict[str, str]:
        return dict.fromkeys(self._data, REDACTED)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class OAuthTokens(SecureCredentials):
    """
    SecureCredentials holding an OAuth token set.

    Stored fields: access_token, refresh_token, token_type, expires_at
    (ISO-8601), scope.
    """

    __slots__ = ()

    @property
    def access_token(self) -> Optional[str]:
        return self.get("access_token")

    @property
    def refresh_token(self) -> Optional[str]:
        return self.get("refresh_token")

    @property
    def token_type(self) -> str:
        return self.get("token_type") or "Bearer"

    @property
    def expires_at(self) -> Optional[datetime]:
        return _parse_timestamp(self.get("expires_at"))

    def expires_soon(self, now: datetime, buffer_seconds: int = 300) -> bool:
        """True if the access token expires within buffer_seconds of now."""
        expires_at = self.expires_at
        return expires_at is not None and now + timedelta(seconds=buffer_seconds) >= expires_at
