"""Profile store: named, non-secret connection configuration.

Profiles live in profiles.json in the config directory:

    {"version": 1, "profiles": [{"name": "graph-prod", "tenantId": ...}, ...]}

Every mutation is a read-modify-write under an advisory lock, written
write-temp-then-rename, so concurrent CLI processes never leave a torn file.
Secrets are delegated to the credential store; deleting a profile deletes its
secrets (client secret, certificate password, refresh tokens).

Import conflict policy defaults to SKIP: an existing profile is never changed
unless OVERWRITE or RENAME_SUFFIX is requested explicitly.
"""

from __future__ import annotations

__all__ = [
    "ConflictPolicy",
    "ImportReport",
    "ProfileStore",
]

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from entra_token.config import Profile, ProfileDocument
from entra_token.constants import PROFILES_FILENAME, get_config_dir
from entra_token.exceptions import (
    ConfigurationError,
    DuplicateProfileError,
    ProfileNotFoundError,
    ProfileValidationError,
    SecretNotFoundError,
)
from entra_token.profile_export import decrypt_export, encrypt_export
from entra_token.security.credential_storage import CredentialStore, SecretKind
from entra_token.telemetry.system.system_logger import get_system_logger
from entra_token.utils.file_helpers import atomic_write_text, file_lock, load_validated_json

# Secret kinds that travel in encrypted exports; refresh tokens stay on this machine
_EXPORTABLE_SECRETS = (SecretKind.CLIENT_SECRET, SecretKind.CERTIFICATE_PASSWORD)

# Map camelCase aliases and field names to field names for patches
_FIELD_NAMES: dict[str, str] = {}
for _name, _field in Profile.model_fields.items():
    _FIELD_NAMES[_name] = _name
    if _field.alias:
        _FIELD_NAMES[_field.alias] = _name


class ConflictPolicy(str, Enum):
    """What import does when a profile name already exists."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    RENAME_SUFFIX = "rename"


@dataclass
class ImportReport:
    """Outcome of an import.

    Attributes:
        created: Names imported without conflict.
        overwritten: Existing profiles replaced.
        renamed: (original name, stored name) pairs.
        skipped: Names left untouched because they already existed.
        name_map: Original name -> stored name for everything imported.
    """

    created: list[str] = field(default_factory=list)
    overwritten: list[str] = field(default_factory=list)
    renamed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    name_map: dict[str, str] = field(default_factory=dict)

    @property
    def imported_count(self) -> int:
        return len(self.name_map)


def _format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        messages.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return messages


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileStore:
    """File-backed profile store.

    Usage:
        store = ProfileStore(credential_store=create_credential_store())
        store.create(Profile(name="graph-prod", tenant_id=..., client_id=...))
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, secret)
    """

    def __init__(
        self,
        path: Path | None = None,
        credential_store: CredentialStore | None = None,
    ) -> None:
        self.path = path or get_config_dir() / PROFILES_FILENAME
        self.credential_store = credential_store
        self._identity_listeners: list[Callable[[str], Any]] = []

    @property
    def _lock_path(self) -> Path:
        return self.path.parent / f"{self.path.name}.lock"

    def add_identity_listener(self, listener: Callable[[str], Any]) -> None:
        """Register a callback for profiles whose cached tokens became stale.

        The callback receives the old profile name after an update changed
        its tenant, client or authority (or renamed it), and after an import
        overwrote it.
        """
        self._identity_listeners.append(listener)

    def _identity_changed(self, name: str) -> None:
        for listener in self._identity_listeners:
            listener(name)

    def _require_credentials(self) -> CredentialStore:
        if self.credential_store is None:
            raise ConfigurationError("No credential store configured for this profile store")
        return self.credential_store

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> ProfileDocument:
        """Read profiles.json.

        Raises:
            ConfigurationError: File exists but is not a valid profile document.
        """
        if not self.path.exists():
            return ProfileDocument()
        try:
            return load_validated_json(
                self.path,
                ProfileDocument,
                file_type="profile store",
                recovery_hint=f"Fix or remove {self.path} and re-create the profiles.",
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def _save(self, document: ProfileDocument) -> None:
        data = document.model_dump(mode="json", by_alias=True, exclude={"exported_at"})
        atomic_write_text(self.path, json.dumps(data, indent=2) + "\n")

    @staticmethod
    def _index(document: ProfileDocument, name: str) -> int | None:
        wanted = name.strip().lower()
        for i, profile in enumerate(document.profiles):
            if profile.name.lower() == wanted:
                return i
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[Profile]:
        """All profiles sorted by name."""
        return sorted(self._load().profiles, key=lambda p: p.name.lower())

    def get(self, name: str) -> Profile:
        """Look up a profile (case-insensitive).

        Raises:
            ProfileNotFoundError: No such profile.
        """
        document = self._load()
        index = self._index(document, name)
        if index is None:
            raise ProfileNotFoundError(name)
        return document.profiles[index]

    def exists(self, name: str) -> bool:
        return self._index(self._load(), name) is not None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, profile: Profile) -> Profile:
        """Add a new profile.

        Raises:
            DuplicateProfileError: Name already used (case-insensitive).
        """
        now = _utcnow()
        profile = profile.model_copy(update={"created_at": now, "updated_at": now})
        with file_lock(self._lock_path):
            document = self._load()
            if self._index(document, profile.name) is not None:
                raise DuplicateProfileError(profile.name)
            document.profiles.append(profile)
            self._save(document)

        get_system_logger().info({"event": "profile_created", "profile": profile.name})
        return profile

    def update(self, name: str, patch: Mapping[str, Any]) -> Profile:
        """Apply a partial update.

        Args:
            name: Existing profile name.
            patch: Fields to change, by field name or camelCase alias.
                Setting "name" renames the profile (and moves its secrets).

        Raises:
            ProfileNotFoundError: No such profile.
            DuplicateProfileError: Rename target already exists.
            ProfileValidationError: Result violates profile invariants.
        """
        unknown = [key for key in patch if key not in _FIELD_NAMES]
        if unknown:
            raise ProfileValidationError(
                f"Unknown profile field(s): {', '.join(sorted(unknown))}",
                [f"{key}: unknown field" for key in unknown],
            )
        changes = {_FIELD_NAMES[key]: value for key, value in patch.items()}
        changes.pop("created_at", None)

        with file_lock(self._lock_path):
            document = self._load()
            index = self._index(document, name)
            if index is None:
                raise ProfileNotFoundError(name)
            current = document.profiles[index]

            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = _utcnow()
            try:
                updated = Profile.model_validate(data)
            except ValidationError as e:
                raise ProfileValidationError(
                    f"Invalid update for profile '{current.name}'", _format_validation_error(e)
                ) from e

            renamed = updated.name.lower() != current.name.lower()
            if renamed and self._index(document, updated.name) is not None:
                raise DuplicateProfileError(updated.name)

            document.profiles[index] = updated
            self._save(document)

        if renamed or updated.identity != current.identity:
            self._identity_changed(current.name)
        if renamed:
            self._move_secrets(current.name, updated.name)
        get_system_logger().info({"event": "profile_updated", "profile": updated.name})
        return updated

    def delete(self, name: str) -> Profile:
        """Remove a profile and every secret stored for it.

        Raises:
            ProfileNotFoundError: No such profile.
        """
        with file_lock(self._lock_path):
            document = self._load()
            index = self._index(document, name)
            if index is None:
                raise ProfileNotFoundError(name)
            removed = document.profiles.pop(index)
            self._save(document)

        if self.credential_store is not None:
            self.credential_store.delete_profile(removed.name)
        get_system_logger().info({"event": "profile_deleted", "profile": removed.name})
        return removed

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def set_secret(self, name: str, kind: SecretKind, value: str) -> None:
        """Store a secret for an existing profile.

        Raises:
            ProfileNotFoundError: No such profile.
            ProfileValidationError: Empty value.
        """
        profile = self.get(name)
        if not value:
            raise ProfileValidationError(f"{kind.value} must not be empty")
        self._require_credentials().set(profile.name, kind, value)

    def has_secret(self, name: str, kind: SecretKind) -> bool:
        if self.credential_store is None:
            return False
        return self.credential_store.exists(name, kind)

    def _move_secrets(self, old_name: str, new_name: str) -> None:
        store = self.credential_store
        if store is None:
            return
        for kind in SecretKind:
            try:
                value = store.get(old_name, kind)
            except SecretNotFoundError:
                continue
            store.set(new_name, kind, value)
            store.delete(old_name, kind)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_all(
        self,
        include_secrets: bool = False,
        passphrase: str | None = None,
        names: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        """Export profiles.

        Args:
            include_secrets: Include client secrets and certificate passwords.
                The result is then an encrypted envelope.
            passphrase: Required with include_secrets.
            names: Restrict the export to these profiles.

        Returns:
            Plain document {"version", "exportedAt", "profiles"} without any
            secret material, or an encrypted envelope.

        Raises:
            ProfileNotFoundError: A requested name does not exist.
            ConfigurationError: include_secrets without a passphrase.
        """
        profiles = self.list()
        if names is not None:
            profiles = [self.get(n) for n in names]

        document = ProfileDocument(exported_at=_utcnow(), profiles=profiles)
        data = document.model_dump(mode="json", by_alias=True)

        if not include_secrets:
            return data

        if not passphrase:
            raise ConfigurationError("Exporting secrets requires a passphrase")

        store = self._require_credentials()
        secrets: dict[str, dict[str, str]] = {}
        for profile in profiles:
            for kind in _EXPORTABLE_SECRETS:
                try:
                    secrets.setdefault(profile.name, {})[kind.value] = store.get(profile.name, kind)
                except SecretNotFoundError:
                    continue
        data["secrets"] = {name: values for name, values in secrets.items() if values}
        return encrypt_export(data, passphrase)

    @staticmethod
    def _records(records: Iterable[Mapping[str, Any]] | Mapping[str, Any]) -> list[Mapping[str, Any]]:
        if isinstance(records, Mapping):
            items = records.get("profiles")
            if not isinstance(items, list):
                raise ProfileValidationError("Import document has no 'profiles' list")
            return items
        return list(records)

    def import_batch(
        self,
        records: Iterable[Mapping[str, Any]] | Mapping[str, Any],
        conflict_policy: ConflictPolicy = ConflictPolicy.SKIP,
    ) -> ImportReport:
        """Import plain profile records.

        All records are validated before anything is written. Unknown keys
        (including any secret-looking field) are dropped; the credential store
        is never populated from plain records.

        Args:
            records: List of records, or a document with a "profiles" list.
            conflict_policy: SKIP (default), OVERWRITE or RENAME_SUFFIX.

        Raises:
            ProfileValidationError: A record is invalid (nothing imported).
        """
        parsed: list[Profile] = []
        errors: list[str] = []
        for position, record in enumerate(self._records(records)):
            try:
                parsed.append(Profile.model_validate(record))
            except ValidationError as e:
                label = record.get("name") if isinstance(record, Mapping) else None
                for message in _format_validation_error(e):
                    errors.append(f"record {position} ({label or '?'}): {message}")
        if errors:
            raise ProfileValidationError("Import contains invalid profiles; nothing was imported", errors)

        report = ImportReport()
        with file_lock(self._lock_path):
            document = self._load()
            for profile in parsed:
                self._import_one(document, profile, conflict_policy, report)
            self._save(document)

        for name in report.overwritten:
            self._identity_changed(name)

        get_system_logger().info(
            {
                "event": "profiles_imported",
                "created": len(report.created),
                "overwritten": len(report.overwritten),
                "renamed": len(report.renamed),
                "skipped": len(report.skipped),
            }
        )
        return report

    def _import_one(
        self,
        document: ProfileDocument,
        profile: Profile,
        policy: ConflictPolicy,
        report: ImportReport,
    ) -> None:
        index = self._index(document, profile.name)
        if index is None:
            document.profiles.append(profile)
            report.created.append(profile.name)
            report.name_map[profile.name] = profile.name
            return

        if policy is ConflictPolicy.SKIP:
            report.skipped.append(profile.name)
        elif policy is ConflictPolicy.OVERWRITE:
            document.profiles[index] = profile.touched()
            report.overwritten.append(profile.name)
            report.name_map[profile.name] = profile.name
        else:
            suffix = 1
            while self._index(document, f"{profile.name}-{suffix}") is not None:
                suffix += 1
            new_name = f"{profile.name}-{suffix}"
            document.profiles.append(profile.model_copy(update={"name": new_name}))
            report.renamed.append((profile.name, new_name))
            report.name_map[profile.name] = new_name

    def import_encrypted(
        self,
        envelope: str | Mapping[str, Any],
        passphrase: str,
        conflict_policy: ConflictPolicy = ConflictPolicy.SKIP,
    ) -> ImportReport:
        """Import an encrypted export and restore the secrets it carries.

        Secrets are restored only for profiles that were actually imported
        (skipped profiles keep their existing secrets).

        Raises:
            ExportDecryptionError: Wrong passphrase or damaged envelope.
        """
        document = decrypt_export(dict(envelope) if isinstance(envelope, Mapping) else envelope, passphrase)
        report = self.import_batch(document, conflict_policy)

        secrets = document.get("secrets") or {}
        if secrets:
            store = self._require_credentials()
            allowed = {kind.value: kind for kind in _EXPORTABLE_SECRETS}
            for original, stored in report.name_map.items():
                for kind_value, value in (secrets.get(original) or {}).items():
                    kind = allowed.get(kind_value)
                    if kind is not None and value:
                        store.set(stored, kind, value)
        return report
