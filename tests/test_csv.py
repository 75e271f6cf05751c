"""
Tests for CSV parsing, the import engine and the native export.

Covers: header detection for Chrome / KeePassXC / native files, invalid rows,
duplicate policies, group creation from category paths, progress and cancel
callbacks, and export → import de-duplication.
"""

import threading

import pytest

from conftest import make_entry
from credvault.core.csv_io import (
    CsvFormat,
    CsvImportEngine,
    CsvImportOptions,
    DuplicatePolicy,
    export_csv,
    export_entries_csv,
    parse_csv,
    split_tags,
)
from credvault.core.entries import EntryType
from credvault.core.errors import Canceled, NotUnlocked, UnrecognizedFormat

CHROME = b"name,url,username,password\nExample,https://example.com,alice,Secret!\n"
KEEPASS = (
    b"Group,Title,Username,Password,URL,Notes\n"
    b"Personal/Email,Gmail,me@gmail.com,Secret!,https://mail.google.com,hi\n"
)


def _import(repo, data, **options):
    group_id = options.pop("group_id", 1)
    return CsvImportEngine(repo, data, base_group_id=group_id, options=CsvImportOptions(**options)).execute()


# ===================================================================
# Parsing
# ===================================================================

class TestParse:
    def test_detects_chrome(self):
        parsed = parse_csv(CHROME)
        assert parsed.format is CsvFormat.CHROME
        row = parsed.rows[0]
        assert (row.title, row.url, row.username, row.password) == (
            "Example", "https://example.com", "alice", "Secret!"
        )

    def test_chrome_with_title_column_and_note(self):
        parsed = parse_csv("title,url,username,password,note\nX,u,n,p,hello\n")
        assert parsed.format is CsvFormat.CHROME
        assert parsed.rows[0].notes == "hello"

    def test_detects_keepassxc_case_insensitive(self):
        parsed = parse_csv(KEEPASS.replace(b"Group,Title", b"GROUP,title"))
        assert parsed.format is CsvFormat.KEEPASSXC
        assert parsed.rows[0].category == "Personal/Email"
        assert parsed.rows[0].notes == "hi"

    def test_detects_native(self):
        parsed = parse_csv("title,username,password,url,category,tags,notes\nA,b,c,d,e,x;y,n\n")
        assert parsed.format is CsvFormat.NATIVE
        assert parsed.rows[0].tags == ["x", "y"]

    def test_strips_bom_and_skips_blank_lines(self):
        parsed = parse_csv(b"\xef\xbb\xbf\n\n" + CHROME + b",,,\n")
        assert parsed.format is CsvFormat.CHROME
        assert len(parsed.rows) == 1

    def test_quoted_fields(self):
        parsed = parse_csv('name,url,username,password\n"Acme, Inc",u,"a""b","p,w"\n')
        row = parsed.rows[0]
        assert row.title == "Acme, Inc"
        assert row.username == 'a"b'
        assert row.password == "p,w"

    def test_password_whitespace_is_kept(self):
        parsed = parse_csv("name,url,username,password\n X ,u,n, pw \n")
        assert parsed.rows[0].title == "X"
        assert parsed.rows[0].password == " pw "

    @pytest.mark.parametrize("data", [
        b"foo,bar\n1,2\n",
        b"",
        b"\n\n",
        b"url,username,password\n",
    ])
    def test_unrecognized(self, data):
        with pytest.raises(UnrecognizedFormat):
            parse_csv(data)

    def test_invalid_utf8(self):
        with pytest.raises(UnrecognizedFormat):
            parse_csv(b"name,url,username,password\n\xff\xfe,a,b,c\n")

    def test_extra_columns_are_reported(self):
        parsed = parse_csv("name,url,username,password,extra\nX,u,n,p,z\n")
        assert any("extra" in w for w in parsed.warnings)


def test_split_tags():
    assert split_tags(" a; b ,A;;c ") == ["a", "b", "c"]


# ===================================================================
# Import engine
# ===================================================================

def test_chrome_import(repo):
    result = _import(repo, CHROME)

    assert result.format is CsvFormat.CHROME
    assert result.inserted == 1
    [summary] = repo.list_entries()
    loaded = repo.load_entry(summary.id)
    assert loaded.entry.title == "Example"
    assert loaded.entry.username == "alice"
    assert loaded.entry.url == "https://example.com"
    assert loaded.password == "Secret!"


def test_keepassxc_group_path(repo):
    result = _import(repo, KEEPASS, create_groups_from_category_path=True)
    assert result.inserted == 1

    tree = repo.group_tree()
    [personal] = [g for g in tree.children(1) if g.name == "Personal"]
    [email] = [g for g in tree.children(personal.id) if g.name == "Email"]
    [entry] = repo.list_entries()
    assert entry.group_id == email.id
    assert entry.category == "Personal/Email"


def test_group_path_reuses_existing_groups(repo):
    personal = repo.create_group(1, "personal")
    data = KEEPASS + b"Personal/Email,Other,x,y,,\n"

    _import(repo, data, create_groups_from_category_path=True)

    names = [g.name for g in repo.list_groups()]
    assert names.count("personal") + names.count("Personal") == 1
    assert names.count("Email") == 1
    entries = repo.list_entries()
    assert len({e.group_id for e in entries}) == 1
    assert repo.group_tree().get(entries[0].group_id).parent_id == personal


def test_keepassxc_without_group_creation_keeps_category(repo):
    _import(repo, KEEPASS)
    [entry] = repo.list_entries()
    assert entry.group_id == 1
    assert entry.category == "Personal/Email"
    assert [g.id for g in repo.list_groups()] == [1]


def test_invalid_rows_are_counted(repo):
    data = CHROME + b"NoPassword,u,n,\n,u,n,pw\n"
    result = _import(repo, data)
    assert result.inserted == 1
    assert result.skipped_invalid == 2


def test_skip_duplicates(repo):
    repo.add_entry(make_entry(password="Original"))
    result = _import(repo, CHROME)
    assert (result.inserted, result.skipped_duplicates) == (0, 1)
    [entry] = repo.list_entries()
    assert repo.load_entry(entry.id).password == "Original"


def test_duplicates_within_one_file(repo):
    result = _import(repo, CHROME + b"Example,https://other,alice,Other\n")
    assert (result.inserted, result.skipped_duplicates) == (1, 1)


def test_update_duplicates(repo):
    entry_id = repo.add_entry(make_entry(tags=["old"], url="https://example.com"))
    data = b"title,username,password,url,category,tags,notes\nExample,alice,NewSecret,https://example.com,,new1;new2,\n"

    result = _import(repo, data, duplicate_policy=DuplicatePolicy.UPDATE)

    assert (result.inserted, result.updated) == (0, 1)
    loaded = repo.load_entry(entry_id)
    assert loaded.password == "NewSecret"
    assert sorted(loaded.entry.tags) == ["new1", "new2"]


def test_default_entry_type_and_type_column(repo):
    data = b"name,url,username,password,type\nA,u,n,p,\nB,u,n,p,server_ssh\n"
    _import(repo, data, default_entry_type=EntryType.API_KEY_TOKEN)
    types = {e.title: e.type for e in repo.list_entries()}
    assert types == {"A": EntryType.API_KEY_TOKEN, "B": EntryType.SERVER_SSH}


def test_missing_base_group_falls_back_to_root(repo):
    result = _import(repo, CHROME, group_id=999)
    assert repo.list_entries()[0].group_id == 1
    assert any("999" in w for w in result.warnings)


def test_import_into_base_group(repo):
    base = repo.create_group(1, "Imported")
    _import(repo, KEEPASS, group_id=base, create_groups_from_category_path=True)
    entry = repo.list_entries()[0]
    assert repo.group_tree().path(entry.group_id) == ["Imported", "Personal", "Email"]


def test_import_requires_unlock(repo, vault):
    vault.lock()
    with pytest.raises(NotUnlocked):
        _import(repo, CHROME)


def test_unrecognized_header_writes_nothing(repo):
    with pytest.raises(UnrecognizedFormat):
        _import(repo, b"a,b,c\n1,2,3\n")
    assert repo.list_entries() == []


# ===================================================================
# Worker behaviour
# ===================================================================

def test_progress_and_finished_callbacks(repo):
    ranges, progress, finished, failed = [], [], [], []
    engine = CsvImportEngine(
        repo,
        CHROME + b"Second,u,bob,pw\n",
        on_progress_range=lambda lo, hi: ranges.append((lo, hi)),
        on_progress=progress.append,
        on_finished=finished.append,
        on_failed=failed.append,
    )

    result = engine.run()

    assert ranges == [(0, 2)]
    assert progress == [1, 2]
    assert finished == [result]
    assert failed == []


def test_cancel_stops_between_rows(repo):
    finished, failed = [], []
    engine = CsvImportEngine(repo, CHROME + b"Second,u,bob,pw\nThird,u,carol,pw\n",
                             on_finished=finished.append, on_failed=failed.append)
    engine.on_progress = lambda done: engine.request_cancel()

    assert engine.run() is None

    assert finished == []
    assert len(failed) == 1 and isinstance(failed[0], Canceled)
    assert "1 of 3" in str(failed[0])
    # rows committed before the cancel stay
    assert len(repo.list_entries()) == 1


def test_execute_raises_canceled(repo):
    engine = CsvImportEngine(repo, CHROME)
    engine.request_cancel()
    assert engine.cancel_requested
    with pytest.raises(Canceled):
        engine.execute()


def test_start_runs_on_worker_thread(repo):
    done = threading.Event()
    results = []

    def finished(result):
        results.append(result)
        done.set()

    thread = CsvImportEngine(repo, CHROME, on_finished=finished).start()
    assert done.wait(10)
    thread.join(10)
    assert results[0].inserted == 1


def test_from_path(repo, tmp_path):
    path = tmp_path / "chrome.csv"
    path.write_bytes(CHROME)
    assert CsvImportEngine.from_path(repo, path).execute().inserted == 1


# ===================================================================
# Export
# ===================================================================

def test_export_csv_format():
    out = export_csv([make_entry(tags=["a", "b"], notes="n, with comma")])
    lines = out.decode("utf-8").split("\r\n")
    assert lines[0] == "title,username,password,url,category,tags,notes"
    assert lines[1] == 'Example,alice,Secret!,,,a;b,"n, with comma"'


def test_export_then_import_deduplicates(repo):
    repo.add_entry(make_entry(tags=["x"]))
    repo.add_entry(make_entry(title="Other", username="bob", password="pw2"))

    data = export_entries_csv(repo)
    result = _import(repo, data)

    assert result.format is CsvFormat.NATIVE
    assert (result.inserted, result.skipped_duplicates) == (0, 2)
    assert len(repo.list_entries()) == 2
