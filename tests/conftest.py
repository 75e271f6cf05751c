"""
Shared pytest fixtures for the credvault test suite.

The data directory and log file are pointed at a per-session temp directory
before any credvault module is imported, so tests never touch the real
vault database. Every test gets its own SQLite file through ``store``.
"""

import os
import tempfile

_TMP_DATA = tempfile.mkdtemp(prefix="credvault-tests-")
os.environ.setdefault("CREDVAULT_DATA_DIR", _TMP_DATA)
os.environ.setdefault("CREDVAULT_KDF_ITERATIONS", "1000")
os.environ.setdefault("CREDVAULT_BACKUP_KDF_ITERATIONS", "1000")

import pytest  # noqa: E402

from credvault.core.db import Store  # noqa: E402
from credvault.core.entries import EntryType, PasswordEntry, PasswordEntrySecrets  # noqa: E402
from credvault.core.repository import Repository  # noqa: E402
from credvault.core.vault import Vault  # noqa: E402

MASTER = "correct horse battery staple"
FAST_ITERATIONS = 1000


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "vault.db")


@pytest.fixture
def store(db_path):
    s = Store.open(db_path)
    yield s
    s.dispose()


@pytest.fixture
def vault(store):
    v = Vault(store, iterations=FAST_ITERATIONS)
    v.create_vault(MASTER)
    yield v
    v.lock()


@pytest.fixture
def repo(vault):
    return Repository(vault)


def make_entry(title="Example", username="alice", password="Secret!", **kwargs) -> PasswordEntrySecrets:
    notes = kwargs.pop("notes", "")
    kwargs.setdefault("type", EntryType.WEB_LOGIN)
    return PasswordEntrySecrets(
        entry=PasswordEntry(title=title, username=username, **kwargs),
        password=password,
        notes=notes,
    )
