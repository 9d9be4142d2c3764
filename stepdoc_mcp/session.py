import base64
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"


def _exp_from_jwt(token: str) -> Optional[datetime]:
    """Extract exp from JWT without verifying signature (used only for status reporting)."""
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
        exp = payload.get("exp")
        if isinstance(exp, (int, float)):
            return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (ValueError, TypeError, AttributeError):
        return None
    return None


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh token pair for the signed-in user."""

    access_token: str
    refresh_token: str

    @property
    def access_expires_at(self) -> Optional[datetime]:
        return _exp_from_jwt(self.access_token)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store (cleared on restart)."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileKeyValueStore:
    """Durable store holding one JSON object on disk.

    Every write rewrites the whole file through a temp file + rename so a
    crash never leaves half a document behind. A missing or corrupt file
    reads as empty.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("token_store_corrupt", path=str(self.path))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class TokenStore:
    """Reads and writes the token pair under its two fixed keys.

    Only SessionRefreshManager should call the mutating methods.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def access_token(self) -> Optional[str]:
        return self.kv.get(ACCESS_TOKEN_KEY) or None

    def refresh_token(self) -> Optional[str]:
        return self.kv.get(REFRESH_TOKEN_KEY) or None

    def load(self) -> Optional[TokenPair]:
        access_token = self.access_token()
        refresh_token = self.refresh_token()
        if not access_token or not refresh_token:
            return None
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def save(self, pair: TokenPair) -> None:
        self.kv.set(ACCESS_TOKEN_KEY, pair.access_token)
        self.kv.set(REFRESH_TOKEN_KEY, pair.refresh_token)

    def clear(self) -> None:
        self.kv.delete(ACCESS_TOKEN_KEY)
        self.kv.delete(REFRESH_TOKEN_KEY)


def build_token_store(path: Optional[str] = None) -> TokenStore:
    """File-backed store when a path is configured, memory otherwise."""
    if path:
        return TokenStore(JsonFileKeyValueStore(path))
    return TokenStore(MemoryKeyValueStore())
