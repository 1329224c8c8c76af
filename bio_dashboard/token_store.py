"""
Token persistence for the dashboard client.
Durable record: the credential set, kept in a JSON file (survives restarts).
Session record: PKCE exchange material, kept in memory for one redirect round trip.
Both are stored under fixed, versioned keys so format changes can be detected.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from bio_dashboard.pkce import ExchangeMaterial

logger = logging.getLogger(__name__)

TOKENS_KEY = "bio_tokens_v1"
EXCHANGE_KEY = "pkce_exchange_v1"


@dataclass(frozen=True)
class Credentials:
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 0
    id_token: str | None = None
    refresh_token: str | None = None
    issued_at: float = 0.0

    @property
    def expires_at(self) -> float | None:
        """Epoch seconds at which the access token lapses; None when the provider gave no lifetime."""
        if self.expires_in <= 0:
            return None
        return self.issued_at + self.expires_in

    def access_token_expired_or_soon(self, buffer_seconds: int = 60) -> bool:
        """
        Due for refresh: lapsed, or inside the last buffer_seconds of its lifetime.
        Lifetimes of buffer_seconds or less count only once lapsed.
        """
        expires_at = self.expires_at
        if expires_at is None:
            return False
        margin = buffer_seconds if self.expires_in > buffer_seconds else 0
        return time.time() >= expires_at - margin

    @classmethod
    def from_token_response(cls, data: dict[str, Any], *, previous: "Credentials | None" = None) -> "Credentials":
        """Build from a token endpoint JSON body. Refresh responses may omit refresh_token."""
        refresh_token = data.get("refresh_token") or (previous.refresh_token if previous else None)
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return cls(
            access_token=str(data.get("access_token") or ""),
            token_type=str(data.get("token_type") or "Bearer"),
            expires_in=expires_in,
            id_token=data.get("id_token") or None,
            refresh_token=refresh_token,
            issued_at=time.time(),
        )


class MemoryStorage:
    """Key-value storage scoped to the running process (sessionStorage equivalent)."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStorage(MemoryStorage):
    """
    Key-value storage backed by one JSON file (localStorage equivalent).
    If the file cannot be read or written, warns once and keeps working from memory.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self.available = True
        self._load()

    def _degrade(self, exc: Exception) -> None:
        if self.available:
            logger.warning("Token storage unavailable (%s); sign-in will not survive a restart", exc)
        self.available = False

    def _load(self) -> None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as e:
            self._degrade(e)
            return
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable token storage file %s", self.path)
            return
        if isinstance(data, dict):
            self._data = {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> None:
        if not self.available:
            return
        try:
            self.path.write_text(json.dumps(self._data), encoding="utf-8")
        except OSError as e:
            self._degrade(e)

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            super().remove(key)
            self._flush()


def _drop_legacy_keys(storage: MemoryStorage, current_key: str) -> None:
    """Remove records stored under another version of the same key (e.g. bio_tokens_v0)."""
    prefix = current_key.rsplit("_v", 1)[0] + "_v"
    for key in storage.keys():
        if key != current_key and key.startswith(prefix):
            logger.info("Discarding stored record with outdated format: %s", key)
            storage.remove(key)


class TokenStore:
    """Credential set in durable storage; exchange material in session storage."""

    def __init__(self, durable: MemoryStorage | None = None, session: MemoryStorage | None = None) -> None:
        self.durable = durable if durable is not None else MemoryStorage()
        self.session = session if session is not None else MemoryStorage()
        _drop_legacy_keys(self.durable, TOKENS_KEY)
        _drop_legacy_keys(self.session, EXCHANGE_KEY)

    def save(self, credentials: Credentials) -> None:
        self.durable.set(TOKENS_KEY, json.dumps(asdict(credentials)))

    def load(self) -> Credentials | None:
        raw = self.durable.get(TOKENS_KEY)
        if raw is None:
            return None
        try:
            return Credentials(**json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Stored credentials unreadable; discarding")
            self.durable.remove(TOKENS_KEY)
            return None

    def clear(self) -> None:
        self.durable.remove(TOKENS_KEY)

    def stash_exchange_material(self, material: ExchangeMaterial) -> None:
        self.session.set(EXCHANGE_KEY, json.dumps(asdict(material)))

    def has_exchange_material(self) -> bool:
        return self.session.get(EXCHANGE_KEY) is not None

    def take_exchange_material(self) -> ExchangeMaterial | None:
        """Return the stashed material and delete it. Single use."""
        raw = self.session.get(EXCHANGE_KEY)
        self.session.remove(EXCHANGE_KEY)
        if raw is None:
            return None
        try:
            return ExchangeMaterial(**json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Stashed exchange material unreadable; discarding")
            return None

    def discard_exchange_material(self) -> None:
        self.session.remove(EXCHANGE_KEY)
