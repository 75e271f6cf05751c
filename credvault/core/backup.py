"""
Encrypted full-vault backup.

The backup is sealed with a key derived from its own passphrase (fresh salt,
independent of the master key). Only the envelope (format tag, version, KDF
parameters, ciphertext) is stored in the clear:

    {"format": "CredVaultBackup", "version": 1,
     "kdf": {"salt": "<base64>", "iterations": 120000},
     "ciphertext": "<base64>", "exported_at": 1700000000}
"""

import base64
import binascii
import os
import tempfile
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .config import BACKUP_FORMAT, BACKUP_KDF_ITERATIONS, BACKUP_VERSION, ROOT_GROUP_ID
from .crypto import MasterKey, derive_key, new_salt, open_sealed, seal
from .entries import EntryType, PasswordEntry, PasswordEntrySecrets
from .errors import DecryptionFailed, EmptyInput, UnrecognizedFormat, WrongPassphraseOrCorrupt
from .logging import logger
from .repository import Repository


# -----------------------------
# Schemas
# -----------------------------
class KdfParams(BaseModel):
    salt: str
    iterations: int


class BackupEnvelope(BaseModel):
    format: str
    version: int
    kdf: KdfParams
    ciphertext: str
    exported_at: int = 0


class BackupGroup(BaseModel):
    id: int = 0
    parent_id: int = 0
    name: str = ""


class BackupEntry(BaseModel):
    title: str = ""
    username: str = ""
    password: str = ""
    url: str = ""
    group_id: int = 0
    entry_type: int = 0
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    created_at: int = 0
    updated_at: int = 0


class BackupPayload(BaseModel):
    version: int
    exported_at: int = 0
    groups: list[BackupGroup] | None = None
    entries: list[BackupEntry] = Field(default_factory=list)


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise UnrecognizedFormat("Backup file has an invalid base64 field") from exc


class BackupCodec:
    def __init__(self, repository: Repository, iterations: int = BACKUP_KDF_ITERATIONS):
        self.repository = repository
        self.iterations = iterations

    # -----------------------------------------
    # EXPORT
    # -----------------------------------------
    def build_payload(self) -> BackupPayload:
        groups = [
            BackupGroup(id=g.id, parent_id=g.parent_id, name=g.name)
            for g in self.repository.list_groups()
        ]

        entries = []
        for summary in self.repository.list_entries():
            full = self.repository.load_entry(summary.id)
            e = full.entry
            entries.append(BackupEntry(
                title=e.title,
                username=e.username,
                password=full.password,
                url=e.url,
                group_id=e.group_id,
                entry_type=int(e.type),
                category=e.category,
                tags=list(e.tags),
                notes=full.notes,
                created_at=e.created_at,
                updated_at=e.updated_at,
            ))

        return BackupPayload(
            version=BACKUP_VERSION,
            exported_at=int(time.time()),
            groups=groups,
            entries=entries,
        )

    def export_backup(self, passphrase: str) -> bytes:
        if not passphrase:
            raise EmptyInput("Backup passphrase must not be empty")

        payload = self.build_payload()
        plain = payload.model_dump_json().encode("utf-8")

        salt = new_salt()
        key = MasterKey(derive_key(passphrase, salt, self.iterations))
        try:
            sealed = seal(key.raw(), plain)
        finally:
            key.wipe()

        envelope = BackupEnvelope(
            format=BACKUP_FORMAT,
            version=BACKUP_VERSION,
            kdf=KdfParams(salt=base64.b64encode(salt).decode("ascii"), iterations=self.iterations),
            ciphertext=base64.b64encode(sealed).decode("ascii"),
            exported_at=payload.exported_at,
        )

        logger.info("Backup exported groups=%s entries=%s", len(payload.groups), len(payload.entries))
        return envelope.model_dump_json(indent=2).encode("utf-8")

    def export_to_file(self, path, passphrase: str) -> Path:
        data = self.export_backup(passphrase)
        target = Path(path)
        fd, tmp = tempfile.mkstemp(prefix=".backup-", dir=str(target.parent or "."))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        return target

    # -----------------------------------------
    # IMPORT
    # -----------------------------------------
    @staticmethod
    def read_envelope(data) -> BackupEnvelope:
        try:
            envelope = BackupEnvelope.model_validate_json(data)
        except ValidationError as exc:
            raise UnrecognizedFormat("Backup file format is not recognized") from exc

        if envelope.format != BACKUP_FORMAT:
            raise UnrecognizedFormat(f"Not a {BACKUP_FORMAT} file")
        if envelope.version != BACKUP_VERSION:
            raise UnrecognizedFormat(f"Unsupported backup version {envelope.version}")
        return envelope

    def open_backup(self, data, passphrase: str) -> BackupPayload:
        envelope = self.read_envelope(data)

        salt = _b64decode(envelope.kdf.salt)
        ciphertext = _b64decode(envelope.ciphertext)
        if not salt or envelope.kdf.iterations <= 0 or not ciphertext:
            raise UnrecognizedFormat("Backup file is missing required fields")

        if not passphrase:
            raise EmptyInput("Backup passphrase must not be empty")

        key = MasterKey(derive_key(passphrase, salt, envelope.kdf.iterations))
        try:
            plain = open_sealed(key.raw(), ciphertext)
        except DecryptionFailed as exc:
            logger.warning("Backup import failed: wrong passphrase or corrupted file")
            raise WrongPassphraseOrCorrupt() from exc
        finally:
            key.wipe()

        try:
            payload = BackupPayload.model_validate_json(plain)
        except ValidationError as exc:
            raise WrongPassphraseOrCorrupt("Backup content is corrupted") from exc

        if payload.version != BACKUP_VERSION:
            raise UnrecognizedFormat(f"Unsupported backup content version {payload.version}")
        return payload

    def import_backup(self, data, passphrase: str) -> int:
        """Restore groups and entries from a backup; returns the number of entries added."""
        self.repository.vault.master_key()
        payload = self.open_backup(data, passphrase)

        if payload.groups is not None:
            group_map = self._restore_groups(payload.groups)
            resolve = lambda old_id: group_map.get(old_id, ROOT_GROUP_ID)  # noqa: E731
        else:
            known = {g.id for g in self.repository.list_groups()}
            resolve = lambda old_id: old_id if old_id in known else ROOT_GROUP_ID  # noqa: E731

        imported = 0
        for item in payload.entries:
            if not item.title.strip() or not item.password:
                continue

            secrets = PasswordEntrySecrets(
                entry=PasswordEntry(
                    group_id=resolve(item.group_id),
                    type=EntryType.from_int(item.entry_type),
                    title=item.title,
                    username=item.username,
                    url=item.url,
                    category=item.category,
                    tags=[t.strip() for t in item.tags if t.strip()],
                ),
                password=item.password,
                notes=item.notes,
            )
            self.repository.add_entry_with_timestamps(secrets, item.created_at, item.updated_at)
            imported += 1

        logger.info("Backup imported entries=%s", imported)
        return imported

    def import_from_file(self, path, passphrase: str) -> int:
        return self.import_backup(Path(path).read_bytes(), passphrase)

    def _restore_groups(self, groups: list[BackupGroup]) -> dict[int, int]:
        """
        Recreate backup groups and map their old ids to new ones.

        Parents may appear after their children, so groups are placed in
        passes until no more progress is made; whatever is left hangs off the
        root group.
        """
        existing = {
            (g.parent_id or 0, g.name.strip().lower()): g.id for g in self.repository.list_groups()
        }

        def ensure_group(parent_id: int, name: str) -> int:
            if parent_id <= 0:
                parent_id = ROOT_GROUP_ID
            key = (parent_id, name.strip().lower())
            if key in existing:
                return existing[key]
            created = self.repository.create_group(parent_id, name)
            existing[key] = created
            return created

        group_map = {ROOT_GROUP_ID: ROOT_GROUP_ID}
        pending = [g for g in groups if g.id > ROOT_GROUP_ID and g.name.strip()]

        progress = True
        while pending and progress:
            progress = False
            remaining = []
            for g in pending:
                parent_old = g.parent_id if g.parent_id > 0 else ROOT_GROUP_ID
                if parent_old not in group_map:
                    remaining.append(g)
                    continue
                group_map[g.id] = ensure_group(group_map[parent_old], g.name)
                progress = True
            pending = remaining

        for g in pending:
            logger.warning("Backup group id=%s has no resolvable parent; restored under root", g.id)
            group_map[g.id] = ensure_group(ROOT_GROUP_ID, g.name)

        return group_map
