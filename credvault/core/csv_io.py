"""
CSV export and import.

Three header shapes are understood on import: KeePassXC
(Group,Title,Username,Password,URL,Notes), this application's own export
(title,username,password,url,category,tags,notes) and Chrome
(name,url,username,password[,note]). Column names match case-insensitively.

CsvImportEngine is built to run on a worker thread: it reports progress
through callbacks, checks a cancel flag between rows and commits each row in
its own transaction.
"""

import csv
import io
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from .config import CSV_TAG_DELIMITER, ROOT_GROUP_ID
from .entries import EntryType, PasswordEntry, PasswordEntrySecrets, normalize_tags
from .errors import Canceled, NotUnlocked, UnrecognizedFormat, VaultError
from .logging import logger
from .repository import Repository

NATIVE_HEADER = ["title", "username", "password", "url", "category", "tags", "notes"]


class CsvFormat(Enum):
    KEEPASSXC = "keepassxc"
    NATIVE = "native"
    CHROME = "chrome"


class DuplicatePolicy(Enum):
    SKIP = "skip"
    UPDATE = "update"


# Detection order matters: the native header is a superset of Chrome's
# title variant, so the more specific shapes are tried first.
_KNOWN_HEADERS = [
    (CsvFormat.KEEPASSXC, {"group": "category", "title": "title", "username": "username",
                           "password": "password", "url": "url", "notes": "notes"}),
    (CsvFormat.NATIVE, {name: name for name in NATIVE_HEADER}),
    (CsvFormat.CHROME, {"url": "url", "username": "username", "password": "password"}),
]

_OPTIONAL_COLUMNS = {
    CsvFormat.KEEPASSXC: {"tags": "tags"},
    CsvFormat.NATIVE: {},
    CsvFormat.CHROME: {"note": "notes", "notes": "notes"},
}

_TYPE_COLUMNS = ("type", "entry_type")


@dataclass
class CsvRow:
    line: int
    title: str = ""
    username: str = ""
    password: str = ""
    url: str = ""
    category: str = ""
    tags: list[str] = field(default_factory=list)
    notes: str = ""
    entry_type: EntryType | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.title.strip()) and bool(self.password)


@dataclass
class ParsedCsv:
    format: CsvFormat
    rows: list[CsvRow]
    warnings: list[str] = field(default_factory=list)


@dataclass
class CsvImportOptions:
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.SKIP
    create_groups_from_category_path: bool = False
    default_entry_type: EntryType = EntryType.WEB_LOGIN


@dataclass
class CsvImportResult:
    format: CsvFormat
    inserted: int = 0
    updated: int = 0
    skipped_duplicates: int = 0
    skipped_invalid: int = 0
    warnings: list[str] = field(default_factory=list)


# -----------------------------------------
# PARSING
# -----------------------------------------
def split_tags(value: str) -> list[str]:
    return normalize_tags(value.replace(",", CSV_TAG_DELIMITER).split(CSV_TAG_DELIMITER))


def _decode(data) -> str:
    if isinstance(data, str):
        return data[1:] if data.startswith("\ufeff") else data
    try:
        return bytes(data).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UnrecognizedFormat("CSV file is not valid UTF-8") from exc


def _detect(header: list[str]) -> tuple[CsvFormat, dict[int, str], list[str]]:
    names = [h.strip().lower() for h in header]
    warnings = []

    positions: dict[str, int] = {}
    for index, name in enumerate(names):
        if name in positions:
            warnings.append(f"Column '{header[index].strip()}' appears more than once; the first one is used")
            continue
        positions[name] = index

    for fmt, required in _KNOWN_HEADERS:
        if not set(required) <= set(positions):
            continue

        if fmt is CsvFormat.CHROME:
            if "name" not in positions and "title" not in positions:
                continue
            if "name" in positions and "title" in positions:
                warnings.append("Both 'name' and 'title' columns found; 'name' is used as the title")
            title_column = "name" if "name" in positions else "title"
            mapping = {positions[title_column]: "title"}
        else:
            mapping = {}

        for column, target in required.items():
            mapping[positions[column]] = target
        for column, target in _OPTIONAL_COLUMNS[fmt].items():
            if column in positions and target not in mapping.values():
                mapping[positions[column]] = target
        for column in _TYPE_COLUMNS:
            if column in positions and "entry_type" not in mapping.values():
                mapping[positions[column]] = "entry_type"

        ignored = [header[i].strip() for i in sorted(positions.values()) if i not in mapping and names[i]]
        if ignored:
            warnings.append(f"Ignored columns: {', '.join(ignored)}")
        return fmt, mapping, warnings

    raise UnrecognizedFormat(
        "Unrecognized CSV header; expected a Chrome, KeePassXC or native export "
        f"({','.join(NATIVE_HEADER)})"
    )


def parse_csv(data) -> ParsedCsv:
    """Parse untrusted CSV content (bytes or str) into rows; nothing is written."""
    text = _decode(data)
    reader = csv.reader(io.StringIO(text, newline=""))

    fmt = None
    mapping: dict[int, str] = {}
    rows: list[CsvRow] = []
    warnings: list[str] = []
    short_rows = 0

    try:
        for record in reader:
            if not any(cell.strip() for cell in record):
                continue

            if fmt is None:
                fmt, mapping, warnings = _detect(record)
                width = len(record)
                continue

            if len(record) < width:
                short_rows += 1

            row = CsvRow(line=reader.line_num)
            for index, target in mapping.items():
                value = record[index] if index < len(record) else ""
                if target == "tags":
                    row.tags = split_tags(value)
                elif target == "entry_type":
                    row.entry_type = EntryType.parse(value, None) if value.strip() else None
                elif target in ("password", "notes"):
                    setattr(row, target, value)
                else:
                    setattr(row, target, value.strip())
            rows.append(row)
    except csv.Error as exc:
        raise UnrecognizedFormat(f"Malformed CSV near line {reader.line_num}: {exc}") from exc

    if fmt is None:
        raise UnrecognizedFormat("CSV file is empty")

    if short_rows:
        warnings.append(f"{short_rows} row(s) had fewer columns than the header; missing values were left empty")

    return ParsedCsv(format=fmt, rows=rows, warnings=warnings)


# -----------------------------------------
# EXPORT
# -----------------------------------------
def export_csv(entries: Iterable[PasswordEntrySecrets]) -> bytes:
    """Native CSV export. The output holds plaintext passwords."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerow(NATIVE_HEADER)
    for s in entries:
        e = s.entry
        writer.writerow([
            e.title,
            e.username,
            s.password,
            e.url,
            e.category,
            CSV_TAG_DELIMITER.join(e.tags),
            s.notes,
        ])
    return buf.getvalue().encode("utf-8")


def export_entries_csv(repository: Repository) -> bytes:
    entries = [repository.load_entry(summary.id) for summary in repository.list_entries()]
    logger.info("CSV export entries=%s", len(entries))
    return export_csv(entries)


# -----------------------------------------
# IMPORT
# -----------------------------------------
class CsvImportEngine:
    def __init__(
        self,
        repository: Repository,
        data,
        base_group_id: int = ROOT_GROUP_ID,
        options: CsvImportOptions | None = None,
        on_progress_range: Callable[[int, int], None] | None = None,
        on_progress: Callable[[int], None] | None = None,
        on_finished: Callable[[CsvImportResult], None] | None = None,
        on_failed: Callable[[VaultError], None] | None = None,
    ):
        self.repository = repository
        self.data = data
        self.base_group_id = base_group_id
        self.options = options or CsvImportOptions()
        self.on_progress_range = on_progress_range
        self.on_progress = on_progress
        self.on_finished = on_finished
        self.on_failed = on_failed
        self._cancel = threading.Event()
        self._group_paths: dict[tuple[str, ...], int] = {}
        self._siblings: dict[tuple[int, str], int] = {}

    @classmethod
    def from_path(cls, repository: Repository, path, **kwargs) -> "CsvImportEngine":
        return cls(repository, Path(path).read_bytes(), **kwargs)

    def request_cancel(self):
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    # -----------------------------------------
    # WORKER ENTRY POINTS
    # -----------------------------------------
    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="csv-import", daemon=True)
        thread.start()
        return thread

    def run(self) -> CsvImportResult | None:
        """
        Worker body: exactly one of on_finished / on_failed is called.
        """
        try:
            result = self.execute()
        except VaultError as exc:
            logger.warning("CSV import failed: %s", exc)
            if self.on_failed is not None:
                self.on_failed(exc)
            return None

        if self.on_finished is not None:
            self.on_finished(result)
        return result

    def execute(self) -> CsvImportResult:
        if not self.repository.vault.is_unlocked:
            raise NotUnlocked()

        parsed = parse_csv(self.data)
        result = CsvImportResult(format=parsed.format, warnings=list(parsed.warnings))
        total = len(parsed.rows)

        if self.on_progress_range is not None:
            self.on_progress_range(0, total)

        base_group_id = self._prepare_groups(result)
        existing = {}
        for e in self.repository.list_entries():
            existing.setdefault((e.title, e.username), e.id)

        for done, row in enumerate(parsed.rows, start=1):
            if self._cancel.is_set():
                logger.info("CSV import canceled after %s of %s rows", done - 1, total)
                raise Canceled(f"Import canceled after {done - 1} of {total} rows")

            self._import_row(row, base_group_id, existing, result)

            if self.on_progress is not None:
                self.on_progress(done)

        logger.info(
            "CSV import finished format=%s inserted=%s updated=%s skipped_duplicates=%s skipped_invalid=%s",
            result.format.value,
            result.inserted,
            result.updated,
            result.skipped_duplicates,
            result.skipped_invalid,
        )
        return result

    # -----------------------------------------
    # ROWS
    # -----------------------------------------
    def _import_row(self, row: CsvRow, base_group_id: int, existing: dict, result: CsvImportResult):
        if not row.is_valid:
            result.skipped_invalid += 1
            return

        key = (row.title, row.username)
        existing_id = existing.get(key)

        if existing_id is not None:
            if self.options.duplicate_policy is DuplicatePolicy.SKIP:
                result.skipped_duplicates += 1
                return

            current = self.repository.load_entry(existing_id)
            current.password = row.password
            current.notes = row.notes
            current.entry.url = row.url
            current.entry.category = row.category
            current.entry.tags = list(row.tags)
            self.repository.update_entry(current)
            result.updated += 1
            return

        group_id = base_group_id
        if self.options.create_groups_from_category_path and row.category:
            group_id = self._ensure_group_path(base_group_id, row.category)

        secrets = PasswordEntrySecrets(
            entry=PasswordEntry(
                group_id=group_id,
                type=row.entry_type if row.entry_type is not None else self.options.default_entry_type,
                title=row.title,
                username=row.username,
                url=row.url,
                category=row.category,
                tags=list(row.tags),
            ),
            password=row.password,
            notes=row.notes,
        )
        existing[key] = self.repository.add_entry(secrets)
        result.inserted += 1

    # -----------------------------------------
    # GROUPS
    # -----------------------------------------
    def _prepare_groups(self, result: CsvImportResult) -> int:
        tree = self.repository.group_tree()
        self._siblings = {}
        for group_id in tree.descendant_ids(ROOT_GROUP_ID):
            g = tree.get(group_id)
            self._siblings.setdefault((g.parent_id, g.name.lower()), g.id)

        base = self.base_group_id or 0
        if base <= 0:
            return ROOT_GROUP_ID
        if base not in tree:
            result.warnings.append(f"Target group {base} does not exist; entries go to the root group")
            return ROOT_GROUP_ID
        return base

    def _ensure_group_path(self, base_group_id: int, path: str) -> int:
        segments = tuple(s.strip() for s in path.split("/") if s.strip())
        if not segments:
            return base_group_id

        cached = self._group_paths.get(segments)
        if cached is not None:
            return cached

        parent = base_group_id
        for depth in range(1, len(segments) + 1):
            prefix = segments[:depth]
            known = self._group_paths.get(prefix)
            if known is not None:
                parent = known
                continue

            name = prefix[-1]
            group_id = self._siblings.get((parent, name.lower()))
            if group_id is None:
                group_id = self.repository.create_group(parent, name)
                self._siblings[(parent, name.lower())] = group_id
            self._group_paths[prefix] = group_id
            parent = group_id

        return parent
