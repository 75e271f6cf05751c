"""
Tests for Repository: entries, tags, groups and common passwords.
"""

import pytest
from sqlalchemy.exc import OperationalError

import credvault.core.repository as repository_mod
from conftest import MASTER, make_entry
from credvault.core.entries import CommonPasswordSecrets, CommonPasswordSummary, EntryType
from credvault.core.errors import (
    DuplicateName,
    EmptyInput,
    InvalidArgument,
    NotEmpty,
    NotFound,
    NotUnlocked,
    RootGroupProtected,
    StoreUnavailable,
)
from credvault.core.models import Entry, EntryTag, Tag


# ===================================================================
# Entries
# ===================================================================

def test_add_and_load_entry(repo):
    entry_id = repo.add_entry(make_entry(
        url="https://example.com",
        category="Web",
        tags=["b", "a"],
        notes="remember me",
        type=EntryType.SERVER_SSH,
    ))

    loaded = repo.load_entry(entry_id)
    e = loaded.entry
    assert e.id == entry_id
    assert e.title == "Example"
    assert e.username == "alice"
    assert e.url == "https://example.com"
    assert e.category == "Web"
    assert e.type is EntryType.SERVER_SSH
    assert e.group_id == 1
    assert sorted(e.tags) == ["a", "b"]
    assert loaded.password == "Secret!"
    assert loaded.notes == "remember me"
    assert e.created_at > 0 and e.updated_at >= e.created_at


def test_secrets_are_not_stored_in_plaintext(repo, store):
    entry_id = repo.add_entry(make_entry(password="PlainSecret", notes="PlainNote"))
    with store.transaction() as db:
        row = db.get(Entry, entry_id)
        assert b"PlainSecret" not in row.password_enc
        assert b"PlainNote" not in row.notes_enc


def test_blank_notes_store_empty_blob(repo, store):
    entry_id = repo.add_entry(make_entry(notes="   "))
    with store.transaction() as db:
        assert db.get(Entry, entry_id).notes_enc == b""
    assert repo.load_entry(entry_id).notes == ""


def test_tags_are_normalized(repo):
    entry_id = repo.add_entry(make_entry(tags=[" Work ", "work", "", "Home"]))
    assert sorted(repo.load_entry(entry_id).entry.tags) == ["Home", "Work"]
    assert repo.list_all_tags() == ["Home", "Work"]


def test_tags_are_shared_between_entries(repo):
    repo.add_entry(make_entry(title="One", tags=["shared"]))
    repo.add_entry(make_entry(title="Two", tags=["SHARED"]))
    assert repo.list_all_tags() == ["shared"]


def test_add_entry_requires_title_and_password(repo):
    with pytest.raises(EmptyInput):
        repo.add_entry(make_entry(title="  "))
    with pytest.raises(EmptyInput):
        repo.add_entry(make_entry(password=""))
    assert repo.list_entries() == []


def test_add_entry_requires_unlock(repo, vault):
    vault.lock()
    with pytest.raises(NotUnlocked):
        repo.add_entry(make_entry())


def test_load_missing_entry(repo):
    with pytest.raises(NotFound):
        repo.load_entry(999)


def test_unknown_group_falls_back_to_root(repo):
    entry_id = repo.add_entry(make_entry(group_id=424242))
    assert repo.load_entry(entry_id).entry.group_id == 1


def test_list_entries_ordered_by_update_time(repo):
    old = repo.add_entry_with_timestamps(make_entry(title="Old"), 100, 100)
    new = repo.add_entry_with_timestamps(make_entry(title="New"), 100, 200)
    tie_a = repo.add_entry_with_timestamps(make_entry(title="TieA"), 50, 150)
    tie_b = repo.add_entry_with_timestamps(make_entry(title="TieB"), 50, 150)

    assert [e.id for e in repo.list_entries()] == [new, tie_b, tie_a, old]


def test_add_entry_with_timestamps_normalizes(repo):
    entry_id = repo.add_entry_with_timestamps(make_entry(), 0, 0)
    e = repo.load_entry(entry_id).entry
    assert e.created_at > 0
    assert e.updated_at == e.created_at


def test_update_entry_replaces_fields_and_tags(repo):
    entry_id = repo.add_entry(make_entry(tags=["old"]))
    loaded = repo.load_entry(entry_id)
    loaded.password = "NewSecret"
    loaded.entry.tags = ["new"]
    loaded.entry.url = "https://new.example.com"
    repo.update_entry(loaded)

    again = repo.load_entry(entry_id)
    assert again.password == "NewSecret"
    assert again.entry.tags == ["new"]
    assert again.entry.url == "https://new.example.com"


def test_update_entry_invalid_ids(repo):
    with pytest.raises(InvalidArgument):
        repo.update_entry(make_entry())
    missing = make_entry()
    missing.entry.id = 999
    with pytest.raises(NotFound):
        repo.update_entry(missing)


def test_delete_entry_removes_tag_links(repo, store):
    entry_id = repo.add_entry(make_entry(tags=["x"]))
    assert repo.delete_entry(entry_id) is True
    assert repo.delete_entry(entry_id) is False
    with store.transaction() as db:
        assert db.query(EntryTag).filter(EntryTag.entry_id == entry_id).count() == 0


def test_non_ascii_tags_are_reused(repo):
    first = repo.add_entry(make_entry(title="One", tags=["Работа", "Ärger"]))
    second = repo.add_entry(make_entry(title="Two", tags=["работа"]))

    loaded = repo.load_entry(first)
    loaded.entry.tags = ["ärger", "Écoles"]
    repo.update_entry(loaded)

    assert sorted(repo.load_entry(second).entry.tags) == ["Работа"]
    assert sorted(repo.load_entry(first).entry.tags) == ["Ärger", "Écoles"]
    assert sorted(repo.list_all_tags()) == sorted(["Работа", "Ärger", "Écoles"])


def _failing_tag_link(monkeypatch):
    original = repository_mod._replace_entry_tags

    def link_then_fail(db, entry_id, tags):
        original(db, entry_id, tags)
        db.flush()
        raise OperationalError("INSERT INTO entry_tags", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repository_mod, "_replace_entry_tags", link_then_fail)


def test_failed_add_leaves_no_rows(repo, store, monkeypatch):
    _failing_tag_link(monkeypatch)

    with pytest.raises(StoreUnavailable):
        repo.add_entry(make_entry(tags=["x"]))

    with store.transaction() as db:
        assert db.query(Entry).count() == 0
        assert db.query(EntryTag).count() == 0
        assert db.query(Tag).count() == 0


def test_failed_update_keeps_previous_row(repo, monkeypatch):
    entry_id = repo.add_entry(make_entry(tags=["keep"]))
    _failing_tag_link(monkeypatch)

    changed = repo.load_entry(entry_id)
    changed.password = "Changed"
    changed.entry.tags = ["other"]
    with pytest.raises(StoreUnavailable):
        repo.update_entry(changed)

    loaded = repo.load_entry(entry_id)
    assert loaded.password == "Secret!"
    assert loaded.entry.tags == ["keep"]
    assert repo.list_all_tags() == ["keep"]


def test_lock_during_write_does_not_corrupt_entry(repo, vault, monkeypatch):
    original = repository_mod.seal_text

    def lock_then_seal(key, text):
        vault.lock()
        return original(key, text)

    monkeypatch.setattr(repository_mod, "seal_text", lock_then_seal)
    entry_id = repo.add_entry(make_entry())
    monkeypatch.undo()

    vault.unlock(MASTER)
    assert repo.load_entry(entry_id).password == "Secret!"
    vault.change_master_password("new master")
    assert repo.load_entry(entry_id).password == "Secret!"


def test_list_categories(repo):
    repo.add_entry(make_entry(title="A", category="Work"))
    repo.add_entry(make_entry(title="B", category="Home"))
    repo.add_entry(make_entry(title="C", category="Work"))
    repo.add_entry(make_entry(title="D"))
    assert repo.list_categories() == ["Home", "Work"]


# ===================================================================
# Groups
# ===================================================================

def test_root_group_exists(repo):
    groups = repo.list_groups()
    assert [(g.id, g.name) for g in groups] == [(1, "All")]


def test_create_nested_groups_and_tree(repo):
    personal = repo.create_group(1, "Personal")
    email = repo.create_group(personal, "Email")
    repo.create_group(0, "Work")

    tree = repo.group_tree()
    assert tree.get(email).parent_id == personal
    assert tree.path(email) == ["Personal", "Email"]
    assert set(tree.descendant_ids(personal)) == {personal, email}
    assert [g.name for g in repo.list_groups()] == ["All", "Email", "Personal", "Work"]


def test_create_group_validation(repo):
    with pytest.raises(EmptyInput):
        repo.create_group(1, "  ")
    with pytest.raises(InvalidArgument):
        repo.create_group(999, "Orphan")
    repo.create_group(1, "Work")
    with pytest.raises(DuplicateName):
        repo.create_group(1, " Work ")


def test_rename_group(repo):
    work = repo.create_group(1, "Work")
    repo.create_group(1, "Home")
    repo.rename_group(work, "Office")
    assert repo.group_tree().get(work).name == "Office"

    with pytest.raises(DuplicateName):
        repo.rename_group(work, "Home")
    with pytest.raises(InvalidArgument):
        repo.rename_group(1, "Root")
    with pytest.raises(RootGroupProtected):
        repo.rename_group(1, "Root")
    with pytest.raises(NotFound):
        repo.rename_group(999, "Nope")


def test_delete_group_rules(repo):
    parent = repo.create_group(1, "Parent")
    child = repo.create_group(parent, "Child")

    with pytest.raises(RootGroupProtected):
        repo.delete_group(1)
    with pytest.raises(InvalidArgument):
        repo.delete_group(0)
    with pytest.raises(NotFound):
        repo.delete_group(999)
    with pytest.raises(NotEmpty):
        repo.delete_group(parent)

    entry_id = repo.add_entry(make_entry(group_id=child))
    with pytest.raises(NotEmpty):
        repo.delete_group(child)

    repo.delete_entry(entry_id)
    repo.delete_group(child)
    repo.delete_group(parent)
    assert [g.id for g in repo.list_groups()] == [1]


def test_move_entry_to_group(repo):
    group = repo.create_group(1, "Target")
    entry_id = repo.add_entry(make_entry())

    repo.move_entry_to_group(entry_id, group)
    assert repo.load_entry(entry_id).entry.group_id == group

    with pytest.raises(InvalidArgument):
        repo.move_entry_to_group(0, group)
    with pytest.raises(NotFound):
        repo.move_entry_to_group(entry_id, 999)
    with pytest.raises(NotFound):
        repo.move_entry_to_group(999, group)


def test_list_entries_in_group(repo):
    parent = repo.create_group(1, "Parent")
    child = repo.create_group(parent, "Child")
    repo.add_entry(make_entry(title="Top"))
    repo.add_entry(make_entry(title="InParent", group_id=parent))
    repo.add_entry(make_entry(title="InChild", group_id=child))

    assert {e.title for e in repo.list_entries_in_group(parent)} == {"InParent", "InChild"}
    assert {e.title for e in repo.list_entries_in_group(parent, recursive=False)} == {"InParent"}
    assert len(repo.list_entries_in_group(1)) == 3


# ===================================================================
# Common passwords
# ===================================================================

def _common(name="wifi", password="hunter2", notes="", item_id=0):
    return CommonPasswordSecrets(item=CommonPasswordSummary(id=item_id, name=name), password=password, notes=notes)


def test_common_password_crud(repo):
    item_id = repo.add_common_password(_common(notes="router"))
    loaded = repo.load_common_password(item_id)
    assert loaded.item.name == "wifi"
    assert loaded.password == "hunter2"
    assert loaded.notes == "router"

    repo.update_common_password(_common(name="wifi-home", password="changed", item_id=item_id))
    assert repo.load_common_password(item_id).password == "changed"
    assert [c.name for c in repo.list_common_passwords()] == ["wifi-home"]

    assert repo.delete_common_password(item_id) is True
    assert repo.list_common_passwords() == []


def test_common_password_validation(repo):
    repo.add_common_password(_common())
    with pytest.raises(DuplicateName):
        repo.add_common_password(_common())
    with pytest.raises(EmptyInput):
        repo.add_common_password(_common(name=" "))
    with pytest.raises(EmptyInput):
        repo.add_common_password(_common(name="other", password=""))
    with pytest.raises(InvalidArgument):
        repo.update_common_password(_common())
    with pytest.raises(NotFound):
        repo.load_common_password(999)


def test_repr_never_shows_secrets():
    assert "Secret!" not in repr(make_entry())
    assert "hunter2" not in repr(_common())
