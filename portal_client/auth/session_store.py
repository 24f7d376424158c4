"""
Tiered Session Storage for the Portal Client.

Session-scoped values (cached user profile, feature flags, ...) are kept in one
of four interchangeable backends. Each tier trades availability for isolation:

- ``PERSISTENT``: system keyring, or a plain JSON file in the user's config
  directory when no keyring is available. Survives process restarts.
- ``TAB``: Fernet-encrypted file bound to one portal session. Survives
  re-creating the store within that session, destroyed when it is disposed.
- ``MEMORY_ONLY``: a dict owned by the store. Nothing outlives the process.
- ``BACKEND_MANAGED``: the real session lives in a server-side cookie; values
  are only held in memory for the lifetime of the store.

Tiers are disjoint namespaces: switching tier never migrates entries.
"""

import json
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import keyring
from cryptography.fernet import Fernet, InvalidToken

from portal_shared.exceptions import ErrorCode, PortalError, StorageError
from portal_shared.logging_config import AuditLogger, log_structured_error

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "portal-client"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

# Returned by backends for absent keys so that a stored None stays distinct.
MISSING = object()


class SessionTier(Enum):
    """Security tier of a session store."""
    PERSISTENT = "persistent"
    TAB = "tab"
    MEMORY_ONLY = "memory_only"
    BACKEND_MANAGED = "backend_managed"

    @classmethod
    def parse(cls, value: Union[str, 'SessionTier']) -> 'SessionTier':
        """
        Parse a tier name.

        Accepts the tier values as well as the ``low``/``medium``/``high``/
        ``production`` security level names used by older configurations.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower().replace('-', '_')
        if name in _LEVEL_ALIASES:
            return _LEVEL_ALIASES[name]
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown session security level: {value}") from None


_LEVEL_ALIASES = {
    'low': SessionTier.PERSISTENT,
    'medium': SessionTier.TAB,
    'high': SessionTier.MEMORY_ONLY,
    'production': SessionTier.BACKEND_MANAGED,
}

_TIER_RISKS: Dict[SessionTier, List[str]] = {
    SessionTier.PERSISTENT: [
        'Readable by any process of the same user',
        'CSRF Vulnerable',
        'Persistent Storage',
        'Data Exposure',
    ],
    SessionTier.TAB: [
        'Readable while the session is open',
        'CSRF Vulnerable',
        'Session-scoped Storage',
    ],
    SessionTier.MEMORY_ONLY: [
        'Exposed to code running in the same process',
        'No Persistence',
        'Session Loss on Restart',
    ],
    SessionTier.BACKEND_MANAGED: [
        'Backend Dependent',
        'Requires HTTPS',
    ],
}

_TIER_RECOMMENDATIONS: Dict[SessionTier, List[str]] = {
    SessionTier.PERSISTENT: [
        'Upgrade to TAB or MEMORY_ONLY security level',
        'Restrict file permissions on the session store',
        'Use httpOnly cookies for sensitive data',
        'Avoid storing tokens or personal data at this tier',
    ],
    SessionTier.TAB: [
        'Consider MEMORY_ONLY for sensitive applications',
        'Dispose the session on logout',
        'Use secure and httpOnly cookies where possible',
    ],
    SessionTier.MEMORY_ONLY: [
        'Implement proper session timeout',
        'Use secure token refresh mechanisms',
        'Consider backend session management',
    ],
    SessionTier.BACKEND_MANAGED: [],
}


@dataclass
class SecurityAssessment:
    """Static security report for the active tier."""
    tier: SessionTier
    risks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    penetration_test_ready: bool = False
    requested_tier: Optional[SessionTier] = None
    tier_overridden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.value,
            'risks': list(self.risks),
            'recommendations': list(self.recommendations),
            'penetration_test_ready': self.penetration_test_ready,
            'requested_tier': self.requested_tier.value if self.requested_tier else None,
            'tier_overridden': self.tier_overridden,
        }


class SessionBackend(ABC):
    """Key/value capability set shared by every tier."""

    tier: SessionTier

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the value for *key*, or ``MISSING``."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def dispose(self) -> None:
        """Release whatever the backend holds beyond its entries."""
        self.clear()


class MemoryBackend(SessionBackend):
    """Values held by reference, no serialization."""

    tier = SessionTier.MEMORY_ONLY

    def __init__(self):
        self._entries: Dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self._entries.get(key, MISSING)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = value

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class BackendManagedBackend(MemoryBackend):
    """
    Placeholder for server-managed sessions.

    The authoritative session is an httpOnly cookie the client never sees;
    nothing is written to a client-side persistence channel.
    """

    tier = SessionTier.BACKEND_MANAGED


class SerializingBackend(SessionBackend):
    """
    Base for tiers whose underlying store only holds strings.

    Values round-trip through their JSON representation: tuples come back as
    lists, and a value JSON cannot encode is rejected with a StorageError.
    """

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.quota_bytes = quota_bytes

    @abstractmethod
    def _read_raw(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def _write_raw(self, key: str, raw: str) -> None:
        pass

    @abstractmethod
    def _delete_raw(self, key: str) -> None:
        pass

    @abstractmethod
    def _usage_bytes(self, exclude_key: Optional[str] = None) -> int:
        """Bytes used by all entries except *exclude_key*."""
        pass

    def get(self, key: str) -> Any:
        raw = self._read_raw(key)
        if raw is None:
            return MISSING
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageError(
                f"Stored value for {key} is not valid JSON",
                ErrorCode.STORAGE_CORRUPTED,
                key=key,
                cause=e
            )

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(
                f"Value for {key} is not serializable",
                ErrorCode.STORAGE_SERIALIZATION_FAILED,
                key=key,
                cause=e
            )

        size = len(key.encode('utf-8')) + len(raw.encode('utf-8'))
        if self._usage_bytes(exclude_key=key) + size > self.quota_bytes:
            raise StorageError(
                f"Storage quota of {self.quota_bytes} bytes exceeded",
                ErrorCode.STORAGE_QUOTA_EXCEEDED,
                key=key
            )

        self._write_raw(key, raw)

    def remove(self, key: str) -> None:
        self._delete_raw(key)


def _default_config_dir() -> Path:
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / DEFAULT_SERVICE_NAME
    return Path.home() / '.config' / DEFAULT_SERVICE_NAME


class PersistentBackend(SerializingBackend):
    """
    Storage that survives process restarts.

    Uses the system keyring when available, falls back to a JSON file with
    owner-only permissions. Keyring has no enumeration, so the stored keys are
    tracked under an index entry to make ``clear`` possible. Caller keys live
    under ``ENTRY_PREFIX`` and never share a name with the index or the
    availability check.
    """

    tier = SessionTier.PERSISTENT
    INDEX_KEY = "__session_index__"
    CHECK_KEY = "__keyring_check__"
    ENTRY_PREFIX = "entry:"

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        storage_dir: Optional[Path] = None,
        quota_bytes: int = DEFAULT_QUOTA_BYTES
    ):
        super().__init__(quota_bytes)
        self.service_name = service_name
        self.keyring_available = self._check_keyring_availability()
        self.storage_path = Path(storage_dir or _default_config_dir()) / 'session_store.json'

        logger.info(f"Persistent session storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            keyring.set_password(self.service_name, self.CHECK_KEY, "test")
            result = keyring.get_password(self.service_name, self.CHECK_KEY)
            keyring.delete_password(self.service_name, self.CHECK_KEY)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    # -- keyring ---------------------------------------------------------

    def _entry_name(self, key: str) -> str:
        return f"{self.ENTRY_PREFIX}{key}"

    def _keyring_index(self) -> List[str]:
        raw = keyring.get_password(self.service_name, self.INDEX_KEY)
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except ValueError as e:
            raise StorageError(
                "Session store keyring index is corrupted",
                ErrorCode.STORAGE_CORRUPTED,
                cause=e
            )
        if not isinstance(index, list):
            raise StorageError("Session store keyring index is corrupted", ErrorCode.STORAGE_CORRUPTED)
        return index

    def _save_keyring_index(self, keys: List[str]) -> None:
        if keys:
            keyring.set_password(self.service_name, self.INDEX_KEY, json.dumps(sorted(set(keys))))
        elif keyring.get_password(self.service_name, self.INDEX_KEY) is not None:
            keyring.delete_password(self.service_name, self.INDEX_KEY)

    # -- file ------------------------------------------------------------

    def _load_file(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}
        try:
            data = json.loads(self.storage_path.read_text(encoding='utf-8'))
        except ValueError as e:
            raise StorageError(
                f"Session store file {self.storage_path} is corrupted",
                ErrorCode.STORAGE_CORRUPTED,
                cause=e
            )
        return data if isinstance(data, dict) else {}

    def _save_file(self, entries: Dict[str, str]) -> None:
        if not entries:
            if self.storage_path.exists():
                self.storage_path.unlink()
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps(entries), encoding='utf-8')
        os.chmod(self.storage_path, 0o600)

    # -- raw operations --------------------------------------------------

    def _read_raw(self, key: str) -> Optional[str]:
        if self.keyring_available:
            return keyring.get_password(self.service_name, self._entry_name(key))
        return self._load_file().get(key)

    def _write_raw(self, key: str, raw: str) -> None:
        if self.keyring_available:
            # Index before value; clear() only reaches indexed entries
            index = self._keyring_index()
            if key not in index:
                self._save_keyring_index(index + [key])
            keyring.set_password(self.service_name, self._entry_name(key), raw)
        else:
            entries = self._load_file()
            entries[key] = raw
            self._save_file(entries)

    def _delete_raw(self, key: str) -> None:
        if self.keyring_available:
            index = self._keyring_index()
            if key in index:
                name = self._entry_name(key)
                if keyring.get_password(self.service_name, name) is not None:
                    keyring.delete_password(self.service_name, name)
                self._save_keyring_index([k for k in index if k != key])
        else:
            entries = self._load_file()
            if entries.pop(key, None) is not None:
                self._save_file(entries)

    def _usage_bytes(self, exclude_key: Optional[str] = None) -> int:
        if self.keyring_available:
            entries = {}
            for key in self._keyring_index():
                value = keyring.get_password(self.service_name, self._entry_name(key))
                if value is not None:
                    entries[key] = value
        else:
            entries = self._load_file()

        return sum(
            len(k.encode('utf-8')) + len(v.encode('utf-8'))
            for k, v in entries.items() if k != exclude_key
        )

    def clear(self) -> None:
        if self.keyring_available:
            for key in self._keyring_index():
                name = self._entry_name(key)
                if keyring.get_password(self.service_name, name) is not None:
                    keyring.delete_password(self.service_name, name)
            self._save_keyring_index([])
        else:
            self._save_file({})

    def dispose(self) -> None:
        # Outliving the session is the point of this tier
        pass


class TabScopedBackend(SerializingBackend):
    """
    Encrypted storage bound to a single portal session.

    The Fernet key exists only in the session context, so the file is
    unreadable once the session is gone, and ``dispose`` removes it.
    """

    tier = SessionTier.TAB

    def __init__(
        self,
        session_id: str,
        session_key: bytes,
        storage_dir: Optional[Path] = None,
        quota_bytes: int = DEFAULT_QUOTA_BYTES
    ):
        super().__init__(quota_bytes)
        self.session_id = session_id
        self._fernet = Fernet(session_key)
        base_dir = Path(storage_dir) if storage_dir else Path(tempfile.gettempdir())
        self.storage_path = base_dir / f"{DEFAULT_SERVICE_NAME}-{session_id}.enc"

    def _load(self) -> Dict[str, str]:
        if not self.storage_path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.storage_path.read_bytes())
        except InvalidToken as e:
            raise StorageError(
                f"Session file for {self.session_id} cannot be decrypted",
                ErrorCode.STORAGE_CORRUPTED,
                cause=e
            )
        return json.loads(decrypted.decode('utf-8'))

    def _save(self, entries: Dict[str, str]) -> None:
        if not entries:
            if self.storage_path.exists():
                self.storage_path.unlink()
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_bytes(self._fernet.encrypt(json.dumps(entries).encode('utf-8')))
        os.chmod(self.storage_path, 0o600)

    def _read_raw(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def _write_raw(self, key: str, raw: str) -> None:
        entries = self._load()
        entries[key] = raw
        self._save(entries)

    def _delete_raw(self, key: str) -> None:
        entries = self._load()
        if entries.pop(key, None) is not None:
            self._save(entries)

    def _usage_bytes(self, exclude_key: Optional[str] = None) -> int:
        return sum(
            len(k.encode('utf-8')) + len(v.encode('utf-8'))
            for k, v in self._load().items() if k != exclude_key
        )

    def clear(self) -> None:
        self._save({})

    def dispose(self) -> None:
        if self.storage_path.exists():
            self.storage_path.unlink()


class TieredSessionStore:
    """
    Session key/value store with a selectable security tier.

    Every operation is guarded: a storage failure is logged and reported as
    ``False`` (or the default for ``get_item``), never raised.
    """

    def __init__(
        self,
        tier: Union[str, SessionTier] = SessionTier.TAB,
        production: bool = False,
        session_id: Optional[str] = None,
        session_key: Optional[bytes] = None,
        storage_dir: Optional[Union[str, Path]] = None,
        service_name: str = DEFAULT_SERVICE_NAME,
        quota_bytes: int = DEFAULT_QUOTA_BYTES
    ):
        self.production = production
        self.session_id = session_id or uuid.uuid4().hex
        self._session_key = session_key or Fernet.generate_key()
        self._storage_dir = Path(storage_dir) if storage_dir else None
        self._service_name = service_name
        self._quota_bytes = quota_bytes
        self._backends: Dict[SessionTier, SessionBackend] = {}
        self._audit_logger = AuditLogger()

        self.requested_tier = SessionTier.parse(tier)
        self.tier = self._enforce_production(self.requested_tier)

        logger.info(f"Session store initialized (tier: {self.tier.value})")

    @property
    def tier_overridden(self) -> bool:
        return self.tier != self.requested_tier

    def _enforce_production(self, requested: SessionTier) -> SessionTier:
        if self.production and requested != SessionTier.MEMORY_ONLY:
            logger.warning(
                f"Production environment: forcing {SessionTier.MEMORY_ONLY.value} "
                f"security level instead of {requested.value}"
            )
            self._audit_logger.log_security_level_change(
                requested.value, SessionTier.MEMORY_ONLY.value, reason="production"
            )
            return SessionTier.MEMORY_ONLY
        return requested

    def _create_backend(self, tier: SessionTier) -> SessionBackend:
        if tier == SessionTier.PERSISTENT:
            return PersistentBackend(self._service_name, self._storage_dir, self._quota_bytes)
        if tier == SessionTier.TAB:
            return TabScopedBackend(self.session_id, self._session_key,
                                    self._storage_dir, self._quota_bytes)
        if tier == SessionTier.BACKEND_MANAGED:
            return BackendManagedBackend()
        return MemoryBackend()

    def _get_backend(self, tier: SessionTier) -> SessionBackend:
        if tier not in self._backends:
            self._backends[tier] = self._create_backend(tier)
        return self._backends[tier]

    @property
    def backend(self) -> SessionBackend:
        """Backend of the active tier, created on first use."""
        return self._get_backend(self.tier)

    def set_security_level(self, tier: Union[str, SessionTier]) -> bool:
        """
        Switch the active tier.

        Entries written under the previous tier stay there and are not
        visible through the new one. In production only ``MEMORY_ONLY`` is
        accepted.

        Returns:
            True if the requested tier is now active
        """
        requested = SessionTier.parse(tier)
        if self.production and requested != SessionTier.MEMORY_ONLY:
            logger.warning(f"Production environment: refusing security level {requested.value}")
            self._audit_logger.log_security_level_change(
                requested.value, self.tier.value, reason="production"
            )
            return False

        try:
            self._get_backend(requested)
        except Exception as e:
            self._report_failure("switch tier", None, e)
            return False

        self.requested_tier = requested
        self.tier = requested
        logger.info(f"Security level changed to: {requested.value}")
        self._audit_logger.log_security_level_change(requested.value, requested.value)
        return True

    def _report_failure(self, operation: str, key: Optional[str], error: Exception) -> None:
        if not isinstance(error, PortalError):
            error = StorageError(
                f"Session storage backend failed during {operation}",
                ErrorCode.STORAGE_BACKEND_UNAVAILABLE,
                key=key,
                cause=error
            )
        error.context.setdefault('tier', self.tier.value)
        error.context.setdefault('operation', operation)
        log_structured_error(logger, error, level=logging.WARNING)

    def set_item(self, key: str, value: Any) -> bool:
        """
        Store *value* under *key*.

        Returns:
            True if the value was stored
        """
        try:
            self.backend.set(key, value)
            return True
        except Exception as e:
            self._report_failure("set", key, e)
            return False

    def get_item(self, key: str, default: Any = None) -> Any:
        """Return the value stored under *key*, or *default* if absent."""
        try:
            value = self.backend.get(key)
        except Exception as e:
            self._report_failure("get", key, e)
            return default
        return default if value is MISSING else value

    def remove_item(self, key: str) -> bool:
        try:
            self.backend.remove(key)
            return True
        except Exception as e:
            self._report_failure("remove", key, e)
            return False

    def clear(self) -> bool:
        try:
            self.backend.clear()
            return True
        except Exception as e:
            self._report_failure("clear", None, e)
            return False

    def assess_security(self) -> SecurityAssessment:
        """Describe the risks of the active tier. Does not inspect contents."""
        return SecurityAssessment(
            tier=self.tier,
            risks=list(_TIER_RISKS[self.tier]),
            recommendations=list(_TIER_RECOMMENDATIONS[self.tier]),
            penetration_test_ready=self.tier != SessionTier.PERSISTENT,
            requested_tier=self.requested_tier,
            tier_overridden=self.tier_overridden,
        )

    def dispose(self) -> bool:
        """
        Release every backend this store has used.

        Session-bound tiers are wiped; the persistent tier is left alone.
        """
        ok = True
        for tier, backend in self._backends.items():
            try:
                backend.dispose()
            except Exception as e:
                self._report_failure(f"dispose {tier.value}", None, e)
                ok = False
        return ok
