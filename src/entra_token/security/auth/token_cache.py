"""Local token cache keyed by (profile, normalized scope set).

Layout:
- token_cache.json (0600) holds access-token metadata per cache key.
  Written write-temp-then-rename under an advisory lock; concurrent
  processes are last-writer-wins.
- Refresh tokens never touch that file. They live in the credential store
  under SecretKind.REFRESH_TOKENS as a JSON map {scope-key: refresh-token}.

Lookup outcomes:
- HIT: access token usable for at least the skew margin
- REFRESHABLE: no usable access token, but a refresh token exists
- MISS: nothing usable

A corrupt cache file or entry is logged, treated as a miss and overwritten on
the next store.
"""

from __future__ import annotations

__all__ = [
    "CacheLookup",
    "CacheStatus",
    "TokenCache",
    "cache_key",
    "normalize_scopes",
]

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from entra_token.config import OAuthFlow
from entra_token.constants import TOKEN_CACHE_FILENAME, TOKEN_SKEW_MARGIN_SECONDS, get_config_dir
from entra_token.exceptions import CacheCorruptionError, SecretDecryptionError, SecretNotFoundError
from entra_token.security.auth.token_parser import CachedToken
from entra_token.security.credential_storage import CredentialStore, SecretKind
from entra_token.telemetry.system.system_logger import get_system_logger
from entra_token.utils.file_helpers import atomic_write_text, file_lock

_CACHE_VERSION = 1


class CacheStatus(Enum):
    HIT = "hit"
    REFRESHABLE = "refreshable"
    MISS = "miss"


@dataclass(frozen=True)
class CacheLookup:
    """Result of TokenCache.lookup().

    Attributes:
        status: HIT, REFRESHABLE or MISS.
        token: Cached access token (usable for HIT, stale or None otherwise).
        refresh_token: Refresh token when status is REFRESHABLE.
    """

    status: CacheStatus
    token: CachedToken | None = None
    refresh_token: str | None = field(default=None, repr=False)

    @property
    def is_hit(self) -> bool:
        return self.status is CacheStatus.HIT


def normalize_scopes(scopes: str | Iterable[str]) -> list[str]:
    """Order- and case-independent scope set: split, lower-case, dedupe, sort."""
    items = [scopes] if isinstance(scopes, str) else list(scopes)
    normalized: set[str] = set()
    for item in items:
        for part in re.split(r"[\s,]+", item.strip()):
            if part:
                normalized.add(part.lower())
    return sorted(normalized)


def _scope_key(scopes: str | Iterable[str]) -> str:
    return " ".join(normalize_scopes(scopes))


def cache_key(profile: str, scopes: str | Iterable[str]) -> str:
    """Cache key for a profile and scope set ("A B" and "b a" collide)."""
    return f"{profile.strip().lower()}|{_scope_key(scopes)}"


class TokenCache:
    """File-backed token cache with refresh tokens in the credential store.

    The cache is an explicit handle; nothing is held in process-global state.

    Usage:
        cache = TokenCache(credential_store=store)
        result = cache.lookup("graph-prod", ["https://graph.microsoft.com/.default"])
        if result.is_hit:
            return result.token
    """

    def __init__(
        self,
        path: Path | None = None,
        credential_store: CredentialStore | None = None,
        *,
        skew_seconds: int = TOKEN_SKEW_MARGIN_SECONDS,
    ) -> None:
        self.path = path or get_config_dir() / TOKEN_CACHE_FILENAME
        self._credentials = credential_store
        self.skew_seconds = skew_seconds

    @property
    def _lock_path(self) -> Path:
        return self.path.parent / f"{self.path.name}.lock"

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------

    def _read_raw(self) -> dict[str, Any]:
        """Read the cache file.

        Raises:
            CacheCorruptionError: File is not a JSON cache document.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheCorruptionError(f"Token cache {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("entries", {}), dict):
            raise CacheCorruptionError(f"Token cache {self.path} has an unexpected layout")
        return data.get("entries", {})

    def _read_entries(self) -> dict[str, CachedToken]:
        """Valid cache entries; corrupt data is logged and skipped."""
        logger = get_system_logger()
        try:
            raw = self._read_raw()
        except CacheCorruptionError as e:
            logger.warning(
                {
                    "event": "token_cache_corrupt",
                    "path": str(self.path),
                    "message": f"{e}. Treating as empty; it will be rewritten.",
                }
            )
            return {}

        entries: dict[str, CachedToken] = {}
        for key, value in raw.items():
            try:
                entries[key] = CachedToken.model_validate(value)
            except ValidationError:
                logger.warning(
                    {
                        "event": "token_cache_entry_corrupt",
                        "key": key,
                        "message": f"Discarding malformed token cache entry '{key}'",
                    }
                )
        return entries

    def _write_entries(self, entries: dict[str, CachedToken]) -> None:
        document = {
            "version": _CACHE_VERSION,
            "entries": {
                key: token.model_dump(mode="json", exclude={"refresh_token"})
                for key, token in sorted(entries.items())
            },
        }
        atomic_write_text(self.path, json.dumps(document, indent=2))

    # ------------------------------------------------------------------
    # Refresh tokens (credential store)
    # ------------------------------------------------------------------

    def _read_refresh_map(self, profile: str) -> dict[str, str]:
        if self._credentials is None:
            return {}
        try:
            raw = self._credentials.get(profile, SecretKind.REFRESH_TOKENS)
        except SecretNotFoundError:
            return {}
        except SecretDecryptionError as e:
            get_system_logger().warning(
                {
                    "event": "refresh_tokens_unreadable",
                    "profile": profile,
                    "message": f"{e} A new sign-in will be required.",
                }
            )
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            get_system_logger().warning(
                {
                    "event": "refresh_tokens_corrupt",
                    "profile": profile,
                    "message": f"Stored refresh tokens for '{profile}' are malformed; ignoring them",
                }
            )
            return {}
        return {str(k): str(v) for k, v in data.items() if v}

    def _write_refresh_map(self, profile: str, mapping: dict[str, str]) -> None:
        if self._credentials is None:
            return
        if mapping:
            self._credentials.set(profile, SecretKind.REFRESH_TOKENS, json.dumps(mapping, sort_keys=True))
        else:
            self._credentials.delete(profile, SecretKind.REFRESH_TOKENS)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def lookup(
        self,
        profile: str,
        scopes: str | Iterable[str],
        *,
        now: datetime | None = None,
    ) -> CacheLookup:
        """Look up a token for (profile, scopes).

        Never raises for cache corruption; a corrupt cache is a MISS.
        """
        entry = self._read_entries().get(cache_key(profile, scopes))

        if entry is not None and entry.is_usable(self.skew_seconds, now=now):
            return CacheLookup(CacheStatus.HIT, entry)

        refresh_token = self.get_refresh_token(profile, scopes)
        if refresh_token:
            return CacheLookup(CacheStatus.REFRESHABLE, entry, refresh_token=refresh_token)

        return CacheLookup(CacheStatus.MISS, entry)

    def store(self, profile: str, scopes: str | Iterable[str], token: CachedToken) -> None:
        """Store ``token`` for (profile, scopes), replacing any previous entry.

        ClientCredentials tokens never keep a refresh token.
        """
        if token.flow is OAuthFlow.CLIENT_CREDENTIALS:
            token = token.without_refresh_token()

        key = cache_key(profile, scopes)
        with file_lock(self._lock_path):
            entries = self._read_entries()
            entries[key] = token
            self._write_entries(entries)

            if token.refresh_token:
                mapping = self._read_refresh_map(profile)
                mapping[_scope_key(scopes)] = token.refresh_token
                self._write_refresh_map(profile, mapping)

        get_system_logger().debug(
            {"event": "token_cached", "profile": profile, "scopes": normalize_scopes(scopes)}
        )

    def invalidate(self, profile: str, scopes: str | Iterable[str]) -> bool:
        """Drop the entry and refresh token for (profile, scopes).

        Returns:
            True if anything was removed.
        """
        key = cache_key(profile, scopes)
        removed = False
        with file_lock(self._lock_path):
            entries = self._read_entries()
            if entries.pop(key, None) is not None:
                self._write_entries(entries)
                removed = True

            mapping = self._read_refresh_map(profile)
            if mapping.pop(_scope_key(scopes), None) is not None:
                self._write_refresh_map(profile, mapping)
                removed = True
        return removed

    def refreshable(self, profile: str, scopes: str | Iterable[str]) -> bool:
        """True if a refresh token exists for (profile, scopes)."""
        return self.get_refresh_token(profile, scopes) is not None

    def get_refresh_token(self, profile: str, scopes: str | Iterable[str]) -> str | None:
        return self._read_refresh_map(profile).get(_scope_key(scopes))

    def clear_profile(self, profile: str) -> int:
        """Remove every entry and refresh token for ``profile``.

        Returns:
            Number of access-token entries removed.
        """
        name = profile.strip().lower()
        # Environment-override namespaces look like "<name>#<tenant>:<client>"
        prefixes = (f"{name}|", f"{name}#")
        with file_lock(self._lock_path):
            entries = self._read_entries()
            remaining = {k: v for k, v in entries.items() if not k.startswith(prefixes)}
            removed = len(entries) - len(remaining)
            if removed or self.path.exists():
                self._write_entries(remaining)
            if self._credentials is not None:
                namespaces = {k.split("|", 1)[0] for k in entries if k.startswith(prefixes)}
                namespaces.add(name)
                for namespace in sorted(namespaces):
                    self._credentials.delete(namespace, SecretKind.REFRESH_TOKENS)
        return removed

    def clear(self, profiles: Iterable[str] = ()) -> int:
        """Remove all entries and the refresh tokens of every cached profile.

        Args:
            profiles: Extra profile names whose refresh tokens are removed
                even when no access-token entry exists for them.

        Returns:
            Number of access-token entries removed.
        """
        with file_lock(self._lock_path):
            entries = self._read_entries()
            if self._credentials is not None:
                names = {key.split("|", 1)[0] for key in entries}
                names.update(p.strip().lower() for p in profiles)
                for profile in sorted(names):
                    self._credentials.delete(profile, SecretKind.REFRESH_TOKENS)
            self._write_entries({})
        return len(entries)

    def entries(self) -> dict[str, CachedToken]:
        """Snapshot of all valid entries (used by status output)."""
        return self._read_entries()
