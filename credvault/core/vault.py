"""
Master-key lifecycle: create, unlock, lock and rotate.

The vault stores only (salt, iterations, verifier) where verifier is the
SHA-256 of the PBKDF2-derived key. The key itself lives in memory while the
vault is unlocked and is zeroed on lock.
"""

import hmac
import time
from dataclasses import dataclass
from enum import Enum

from .config import KDF_ITERATIONS
from .crypto import MasterKey, derive_key, new_salt, open_sealed, seal
from .db import Store
from .errors import (
    AlreadyInitialized,
    DecryptionFailed,
    EmptyInput,
    NotInitialized,
    NotUnlocked,
    WrongPassword,
)
from .logging import logger
from .models import CommonPassword, Entry, VaultMeta


class VaultState(Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True)
class Meta:
    salt: bytes
    iterations: int
    verifier: bytes


class Vault:
    def __init__(self, store: Store, iterations: int = KDF_ITERATIONS):
        self.store = store
        self.iterations = iterations
        self._meta: Meta | None = None
        self._key: MasterKey | None = None
        self.reload_metadata()

    # -----------------------------------------
    # STATE
    # -----------------------------------------
    @property
    def is_initialized(self) -> bool:
        return self._meta is not None

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None and not self._key.wiped

    @property
    def state(self) -> VaultState:
        if self.is_unlocked:
            return VaultState.UNLOCKED
        if not self.is_initialized:
            return VaultState.UNINITIALIZED
        return VaultState.LOCKED

    @property
    def meta(self) -> Meta | None:
        return self._meta

    def master_key(self) -> MasterKey:
        """Borrow the active key for the duration of one operation."""
        if not self.is_unlocked:
            raise NotUnlocked()
        return self._key

    def reload_metadata(self) -> bool:
        self._meta = self._read_meta()
        return self._meta is not None

    def _read_meta(self) -> Meta | None:
        with self.store.transaction() as db:
            row = db.get(VaultMeta, 1)
            if row is None:
                return None
            return Meta(salt=bytes(row.kdf_salt), iterations=row.kdf_iterations, verifier=bytes(row.verifier))

    @staticmethod
    def _write_meta(db, meta: Meta):
        now = int(time.time())
        row = db.get(VaultMeta, 1)
        if row is None:
            row = VaultMeta(id=1, created_at=now)
            db.add(row)
        row.kdf_salt = meta.salt
        row.kdf_iterations = meta.iterations
        row.verifier = meta.verifier
        row.updated_at = now

    def _fresh_key(self, password: str) -> tuple[Meta, MasterKey]:
        salt = new_salt()
        key = MasterKey(derive_key(password, salt, self.iterations))
        return Meta(salt=salt, iterations=self.iterations, verifier=key.verifier()), key

    def _adopt(self, key: MasterKey):
        if self._key is not None:
            self._key.wipe()
        self._key = key

    # -----------------------------------------
    # OPERATIONS
    # -----------------------------------------
    def create_vault(self, master_password: str):
        if self.is_initialized or self.reload_metadata():
            raise AlreadyInitialized()

        if not (master_password or "").strip():
            raise EmptyInput("Master password must not be empty")

        meta, key = self._fresh_key(master_password)
        try:
            with self.store.transaction() as db:
                if db.get(VaultMeta, 1) is not None:
                    raise AlreadyInitialized()
                self._write_meta(db, meta)
        except BaseException:
            key.wipe()
            raise

        self._meta = meta
        self._adopt(key)
        logger.info("Vault created iterations=%s", meta.iterations)

    def unlock(self, master_password: str):
        # another instance on the same store may have rotated the password
        self.reload_metadata()
        if self._meta is None:
            raise NotInitialized()

        key = MasterKey(derive_key(master_password or "", self._meta.salt, self._meta.iterations))
        if not hmac.compare_digest(key.verifier(), self._meta.verifier):
            key.wipe()
            logger.warning("Unlock failed: wrong master password")
            raise WrongPassword()

        self._adopt(key)
        logger.info("Vault unlocked")

    def lock(self):
        if self._key is not None:
            self._key.wipe()
            self._key = None
            logger.info("Vault locked")

    def change_master_password(self, new_master_password: str):
        """
        Re-seal every sealed blob under a key derived from the new password.

        All rows and the new metadata are written in one transaction. Any
        failure rolls everything back and the old key stays active.
        """
        if not self.is_unlocked:
            raise NotUnlocked("Unlock the vault first")

        if not (new_master_password or "").strip():
            raise EmptyInput("New master password must not be empty")

        self.reload_metadata()
        if self._meta is None or not hmac.compare_digest(self._key.verifier(), self._meta.verifier):
            self.lock()
            raise NotUnlocked("The master password was changed elsewhere; unlock again")

        old_key = bytes(self._key.raw())
        new_meta, new_key = self._fresh_key(new_master_password)
        new_raw = new_key.raw()
        now = int(time.time())

        try:
            with self.store.transaction() as db:
                entries = 0
                for row in db.query(Entry).order_by(Entry.id).all():
                    row.password_enc, row.notes_enc = _reseal(
                        old_key, new_raw, row.password_enc, row.notes_enc, f"entry id={row.id}"
                    )
                    row.updated_at = now
                    entries += 1

                commons = 0
                for row in db.query(CommonPassword).order_by(CommonPassword.id).all():
                    row.password_enc, row.notes_enc = _reseal(
                        old_key, new_raw, row.password_enc, row.notes_enc, f"common password id={row.id}"
                    )
                    row.updated_at = now
                    commons += 1

                self._write_meta(db, new_meta)
        except BaseException:
            new_key.wipe()
            logger.error("Master password change aborted; previous key remains active")
            raise

        self._meta = new_meta
        self._adopt(new_key)
        logger.info("Master password changed entries=%s common_passwords=%s", entries, commons)


def _reseal(old_key, new_key, password_enc, notes_enc, what: str):
    try:
        password_plain = open_sealed(old_key, password_enc)
    except DecryptionFailed as exc:
        raise DecryptionFailed(f"Cannot decrypt password ({what})") from exc

    notes_out = b""
    if notes_enc:
        try:
            notes_out = seal(new_key, open_sealed(old_key, notes_enc))
        except DecryptionFailed as exc:
            raise DecryptionFailed(f"Cannot decrypt notes ({what})") from exc

    return seal(new_key, password_plain), notes_out
