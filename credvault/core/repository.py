import time

from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import ROOT_GROUP_ID
from .crypto import open_text, seal_text
from .db import Store
from .entries import (
    CommonPasswordSecrets,
    CommonPasswordSummary,
    EntryType,
    GroupTree,
    PasswordEntry,
    PasswordEntrySecrets,
    PasswordGroup,
    normalize_tags,
)
from .errors import (
    DecryptionFailed,
    DuplicateName,
    EmptyInput,
    InvalidArgument,
    NotEmpty,
    NotFound,
    RootGroupProtected,
)
from .logging import logger
from .models import CommonPassword, Entry, EntryTag, Group, Tag
from .vault import Vault


def _now() -> int:
    return int(time.time())


def _normalize_ts(ts, fallback: int) -> int:
    ts = int(ts or 0)
    return ts if ts > 0 else fallback


def _seal_notes(key, notes: str) -> bytes:
    # empty blob means "no notes"
    return seal_text(key, notes) if (notes or "").strip() else b""


def _open_secret(key, blob, what: str) -> str:
    try:
        return open_text(key, blob)
    except DecryptionFailed as exc:
        raise DecryptionFailed(
            f"Decryption failed: {what} data is corrupted or the master password does not match"
        ) from exc


def _entry_from_row(row: Entry, tags: list[str]) -> PasswordEntry:
    return PasswordEntry(
        id=row.id,
        group_id=row.group_id,
        type=EntryType.from_int(row.entry_type),
        title=row.title or "",
        username=row.username or "",
        url=row.url or "",
        category=row.category or "",
        tags=tags,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _tags_by_entry(db: Session, entry_ids=None) -> dict[int, list[str]]:
    q = (
        db.query(EntryTag.entry_id, Tag.name)
        .join(Tag, Tag.id == EntryTag.tag_id)
        .order_by(func.lower(Tag.name))
    )
    if entry_ids is not None:
        q = q.filter(EntryTag.entry_id.in_(list(entry_ids)))
    out: dict[int, list[str]] = {}
    for entry_id, name in q.all():
        out.setdefault(entry_id, []).append(name)
    return out


def _replace_entry_tags(db: Session, entry_id: int, tags: list[str]):
    """Drop every association of the entry, then link the given tags."""
    db.query(EntryTag).filter(EntryTag.entry_id == entry_id).delete(synchronize_session=False)

    # SQLite lower() folds ASCII only, so existing names are matched here
    known: dict[str, Tag] = {}
    for tag in db.query(Tag).order_by(Tag.id).all():
        known.setdefault(tag.name.casefold(), tag)

    now = _now()
    linked = set()
    for name in tags:
        tag = known.get(name.casefold())
        if tag is None:
            tag = Tag(name=name, created_at=now, updated_at=now)
            db.add(tag)
            db.flush()
            known[name.casefold()] = tag
        if tag.id in linked:
            continue
        linked.add(tag.id)
        db.add(EntryTag(entry_id=entry_id, tag_id=tag.id, created_at=now))


def _resolve_group_id(db: Session, group_id) -> int:
    group_id = int(group_id or 0)
    if group_id <= 0 or db.get(Group, group_id) is None:
        return ROOT_GROUP_ID
    return group_id


class Repository:
    """
    Entries, groups, tags and common passwords.

    Holds no state besides the Store and the Vault it borrows the key from.
    Every mutating call runs in a single transaction.
    """

    def __init__(self, vault: Vault, store: Store | None = None):
        self.vault = vault
        self.store = store or vault.store

    def _key(self) -> bytes:
        # call-local copy; lock() zeroes the vault's buffer in place
        return bytes(self.vault.master_key().raw())

    # -----------------------------------------
    # LISTINGS (index metadata only)
    # -----------------------------------------
    def list_entries(self) -> list[PasswordEntry]:
        with self.store.transaction() as db:
            rows = db.query(Entry).order_by(Entry.updated_at.desc(), Entry.id.desc()).all()
            tags = _tags_by_entry(db)
            return [_entry_from_row(r, tags.get(r.id, [])) for r in rows]

    def list_entries_in_group(self, group_id: int, recursive: bool = True) -> list[PasswordEntry]:
        if recursive:
            wanted = set(self.group_tree().descendant_ids(group_id))
        else:
            wanted = {group_id}
        return [e for e in self.list_entries() if e.group_id in wanted]

    def list_categories(self) -> list[str]:
        with self.store.transaction() as db:
            rows = (
                db.query(Entry.category)
                .filter(Entry.category.isnot(None), Entry.category != "")
                .distinct()
                .order_by(Entry.category.asc())
                .all()
            )
            return [r[0] for r in rows]

    def list_groups(self) -> list[PasswordGroup]:
        with self.store.transaction() as db:
            rows = db.query(Group).order_by(func.lower(Group.name).asc(), Group.id).all()
            return [PasswordGroup(id=g.id, parent_id=g.parent_id or 0, name=g.name) for g in rows]

    def group_tree(self) -> GroupTree:
        return GroupTree(self.list_groups())

    def list_all_tags(self) -> list[str]:
        with self.store.transaction() as db:
            rows = db.query(Tag.name).order_by(func.lower(Tag.name).asc()).all()
            return [r[0] for r in rows]

    def list_common_passwords(self) -> list[CommonPasswordSummary]:
        with self.store.transaction() as db:
            rows = (
                db.query(CommonPassword)
                .order_by(CommonPassword.updated_at.desc(), CommonPassword.id.desc())
                .all()
            )
            return [
                CommonPasswordSummary(id=r.id, name=r.name, created_at=r.created_at, updated_at=r.updated_at)
                for r in rows
            ]

    # -----------------------------------------
    # ENTRIES
    # -----------------------------------------
    def load_entry(self, entry_id: int) -> PasswordEntrySecrets:
        key = self._key()

        with self.store.transaction() as db:
            row = db.get(Entry, entry_id)
            if row is None:
                raise NotFound(f"Entry {entry_id} not found")
            entry = _entry_from_row(row, _tags_by_entry(db, [row.id]).get(row.id, []))
            password_enc, notes_enc = row.password_enc, row.notes_enc

        password = _open_secret(key, password_enc, "password")
        notes = _open_secret(key, notes_enc, "notes") if notes_enc else ""
        return PasswordEntrySecrets(entry=entry, password=password, notes=notes)

    def add_entry(self, secrets: PasswordEntrySecrets) -> int:
        now = _now()
        return self.add_entry_with_timestamps(secrets, now, now)

    def add_entry_with_timestamps(self, secrets: PasswordEntrySecrets, created_at: int, updated_at: int) -> int:
        key = self._key()
        entry = secrets.entry
        _require_entry_fields(secrets)

        password_enc = seal_text(key, secrets.password)
        notes_enc = _seal_notes(key, secrets.notes)
        created = _normalize_ts(created_at, _now())
        updated = _normalize_ts(updated_at, created)

        with self.store.transaction() as db:
            row = Entry(
                group_id=_resolve_group_id(db, entry.group_id),
                entry_type=int(EntryType.from_int(entry.type)),
                title=entry.title,
                username=entry.username,
                password_enc=password_enc,
                url=entry.url,
                category=entry.category,
                notes_enc=notes_enc,
                created_at=created,
                updated_at=updated,
            )
            db.add(row)
            db.flush()
            _replace_entry_tags(db, row.id, normalize_tags(entry.tags))
            entry_id = row.id

        logger.info("Entry added id=%s title=%s", entry_id, entry.title)
        return entry_id

    def update_entry(self, secrets: PasswordEntrySecrets):
        key = self._key()
        entry = secrets.entry

        if entry.id <= 0:
            raise InvalidArgument("Invalid entry id")
        _require_entry_fields(secrets)

        password_enc = seal_text(key, secrets.password)
        notes_enc = _seal_notes(key, secrets.notes)

        with self.store.transaction() as db:
            row = db.get(Entry, entry.id)
            if row is None:
                raise NotFound(f"Entry {entry.id} not found")
            row.group_id = _resolve_group_id(db, entry.group_id)
            row.entry_type = int(EntryType.from_int(entry.type))
            row.title = entry.title
            row.username = entry.username
            row.password_enc = password_enc
            row.url = entry.url
            row.category = entry.category
            row.notes_enc = notes_enc
            row.updated_at = _now()
            _replace_entry_tags(db, row.id, normalize_tags(entry.tags))

        logger.info("Entry updated id=%s", entry.id)

    def move_entry_to_group(self, entry_id: int, group_id: int):
        self.vault.master_key()

        if entry_id <= 0 or group_id <= 0:
            raise InvalidArgument("Invalid entry or group id")

        with self.store.transaction() as db:
            if db.get(Group, group_id) is None:
                raise NotFound(f"Group {group_id} not found")
            changed = (
                db.query(Entry)
                .filter(Entry.id == entry_id)
                .update({Entry.group_id: group_id, Entry.updated_at: _now()}, synchronize_session=False)
            )
            if not changed:
                raise NotFound(f"Entry {entry_id} not found")

        logger.info("Entry moved id=%s group_id=%s", entry_id, group_id)

    def delete_entry(self, entry_id: int) -> bool:
        with self.store.transaction() as db:
            deleted = db.query(Entry).filter(Entry.id == entry_id).delete(synchronize_session=False)

        logger.info("Entry deleted id=%s found=%s", entry_id, bool(deleted))
        return bool(deleted)

    # -----------------------------------------
    # GROUPS
    # -----------------------------------------
    def create_group(self, parent_id: int, name: str) -> int:
        trimmed = (name or "").strip()
        if not trimmed:
            raise EmptyInput("Group name must not be empty")

        if parent_id is None or parent_id <= 0:
            parent_id = ROOT_GROUP_ID

        with self.store.transaction() as db:
            if db.get(Group, parent_id) is None:
                raise InvalidArgument(f"Parent group {parent_id} does not exist")
            _check_sibling_name(db, parent_id, trimmed)
            now = _now()
            group = Group(parent_id=parent_id, name=trimmed, created_at=now, updated_at=now)
            db.add(group)
            db.flush()
            group_id = group.id

        logger.info("Group created id=%s parent_id=%s", group_id, parent_id)
        return group_id

    def rename_group(self, group_id: int, name: str):
        if group_id is None or group_id <= 0:
            raise InvalidArgument("Invalid group id")

        if group_id == ROOT_GROUP_ID:
            raise RootGroupProtected("The root group cannot be renamed")

        trimmed = (name or "").strip()
        if not trimmed:
            raise EmptyInput("Group name must not be empty")

        with self.store.transaction() as db:
            group = db.get(Group, group_id)
            if group is None:
                raise NotFound(f"Group {group_id} not found")
            if group.name != trimmed:
                _check_sibling_name(db, group.parent_id, trimmed, exclude_id=group_id)
            group.name = trimmed
            group.updated_at = _now()

        logger.info("Group renamed id=%s", group_id)

    def delete_group(self, group_id: int):
        if group_id is None or group_id <= 0:
            raise InvalidArgument("Invalid group id")

        if group_id == ROOT_GROUP_ID:
            raise RootGroupProtected("The root group cannot be deleted")

        with self.store.transaction() as db:
            group = db.get(Group, group_id)
            if group is None:
                raise NotFound(f"Group {group_id} not found")

            child_count = db.query(func.count(Group.id)).filter(Group.parent_id == group_id).scalar()
            entry_count = db.query(func.count(Entry.id)).filter(Entry.group_id == group_id).scalar()
            if child_count > 0:
                raise NotEmpty("The group has sub-groups and cannot be deleted")
            if entry_count > 0:
                raise NotEmpty("The group has entries and cannot be deleted")

            db.delete(group)

        logger.info("Group deleted id=%s", group_id)

    # -----------------------------------------
    # COMMON PASSWORDS
    # -----------------------------------------
    def load_common_password(self, item_id: int) -> CommonPasswordSecrets:
        key = self._key()

        with self.store.transaction() as db:
            row = db.get(CommonPassword, item_id)
            if row is None:
                raise NotFound(f"Common password {item_id} not found")
            item = CommonPasswordSummary(
                id=row.id, name=row.name, created_at=row.created_at, updated_at=row.updated_at
            )
            password_enc, notes_enc = row.password_enc, row.notes_enc

        password = _open_secret(key, password_enc, "common password")
        notes = _open_secret(key, notes_enc, "notes") if notes_enc else ""
        return CommonPasswordSecrets(item=item, password=password, notes=notes)

    def add_common_password(self, secrets: CommonPasswordSecrets) -> int:
        key = self._key()
        name = _require_common_fields(secrets)

        password_enc = seal_text(key, secrets.password)
        notes_enc = _seal_notes(key, secrets.notes)
        now = _now()

        with self.store.transaction() as db:
            _check_common_name(db, name)
            row = CommonPassword(
                name=name, password_enc=password_enc, notes_enc=notes_enc, created_at=now, updated_at=now
            )
            db.add(row)
            db.flush()
            item_id = row.id

        logger.info("Common password added id=%s", item_id)
        return item_id

    def update_common_password(self, secrets: CommonPasswordSecrets):
        key = self._key()

        if secrets.item.id <= 0:
            raise InvalidArgument("Invalid id")
        name = _require_common_fields(secrets)

        password_enc = seal_text(key, secrets.password)
        notes_enc = _seal_notes(key, secrets.notes)

        with self.store.transaction() as db:
            row = db.get(CommonPassword, secrets.item.id)
            if row is None:
                raise NotFound(f"Common password {secrets.item.id} not found")
            _check_common_name(db, name, exclude_id=row.id)
            row.name = name
            row.password_enc = password_enc
            row.notes_enc = notes_enc
            row.updated_at = _now()

        logger.info("Common password updated id=%s", secrets.item.id)

    def delete_common_password(self, item_id: int) -> bool:
        with self.store.transaction() as db:
            deleted = (
                db.query(CommonPassword).filter(CommonPassword.id == item_id).delete(synchronize_session=False)
            )

        logger.info("Common password deleted id=%s found=%s", item_id, bool(deleted))
        return bool(deleted)


def _require_entry_fields(secrets: PasswordEntrySecrets):
    if not (secrets.entry.title or "").strip():
        raise EmptyInput("Title must not be empty")
    if not secrets.password:
        raise EmptyInput("Password must not be empty")


def _require_common_fields(secrets: CommonPasswordSecrets) -> str:
    name = (secrets.item.name or "").strip()
    if not name:
        raise EmptyInput("Name must not be empty")
    if not secrets.password:
        raise EmptyInput("Password must not be empty")
    return name


def _check_sibling_name(db: Session, parent_id: int, name: str, exclude_id: int | None = None):
    q = db.query(Group.id).filter(Group.parent_id == parent_id, Group.name == name)
    if exclude_id is not None:
        q = q.filter(Group.id != exclude_id)
    if q.first() is not None:
        raise DuplicateName(f"A group named '{name}' already exists here")


def _check_common_name(db: Session, name: str, exclude_id: int | None = None):
    q = db.query(CommonPassword.id).filter(CommonPassword.name == name)
    if exclude_id is not None:
        q = q.filter(CommonPassword.id != exclude_id)
    if q.first() is not None:
        raise DuplicateName(f"A common password named '{name}' already exists")
