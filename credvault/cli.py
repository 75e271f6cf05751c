import argparse
import sys
from getpass import getpass
from pathlib import Path

from credvault.core.backup import BackupCodec
from credvault.core.config import DB_PATH
from credvault.core.csv_io import CsvImportEngine, CsvImportOptions, DuplicatePolicy, export_entries_csv
from credvault.core.db import Store
from credvault.core.entries import EntryType, PasswordEntry, PasswordEntrySecrets
from credvault.core.errors import VaultError
from credvault.core.repository import Repository
from credvault.core.vault import Vault

COMMANDS = [
    "init", "status", "add", "list", "show", "delete",
    "groups", "mkgroup", "rmgroup", "passwd",
    "import-csv", "export-csv", "backup", "restore",
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="credvault", description="Encrypted credential vault")
    parser.add_argument("cmd", choices=COMMANDS)
    parser.add_argument("--db", default=DB_PATH, help="Path to the vault database")
    parser.add_argument("--id", type=int, help="Entry or group ID")
    parser.add_argument("--group", type=int, default=1, help="Target group ID (default: root)")
    parser.add_argument("--name", help="Group name for mkgroup")
    parser.add_argument("--file", help="CSV or backup file for import/export")
    parser.add_argument("--update", action="store_true", help="import-csv: update duplicates instead of skipping")
    parser.add_argument("--create-groups", action="store_true", help="import-csv: create groups from category paths")
    parser.add_argument(
        "--type",
        default=EntryType.WEB_LOGIN.name.lower(),
        help="Entry type for add / default type for import-csv",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        return run(args)
    except (VaultError, OSError) as e:
        print("Error:", e)
        return 1


def run(args) -> int:
    store = Store.open(args.db)
    vault = Vault(store)
    repo = Repository(vault)

    # -----------------------------------------
    # INIT (create the vault)
    # -----------------------------------------
    if args.cmd == "init":
        pw = getpass("Create master password: ")
        if pw != getpass("Repeat master password: "):
            print("Passwords do not match.")
            return 1
        vault.create_vault(pw)
        print("Vault initialized.")
        return 0

    if args.cmd == "status":
        print(f"Vault: {vault.state.value}")
        if vault.is_initialized:
            print(f"Entries: {len(repo.list_entries())}")
            print(f"Groups: {len(repo.list_groups())}")
        return 0

    # -----------------------------------------
    # ALL OTHER COMMANDS REQUIRE MASTER PASS
    # -----------------------------------------
    vault.unlock(getpass("Master password: "))

    try:
        return dispatch(args, vault, repo)
    finally:
        vault.lock()


def dispatch(args, vault: Vault, repo: Repository) -> int:
    # -----------------------------------------
    # ADD ENTRY
    # -----------------------------------------
    if args.cmd == "add":
        secrets = PasswordEntrySecrets(
            entry=PasswordEntry(
                group_id=args.group,
                type=EntryType.parse(args.type, EntryType.WEB_LOGIN),
                title=input("Title (e.g. Github): ").strip(),
                username=input("Username (optional): ").strip(),
                url=input("URL (optional): ").strip(),
                category=input("Category (optional): ").strip(),
                tags=input("Tags, comma separated (optional): ").split(","),
            ),
            password=getpass("Password to store: "),
            notes=input("Notes (optional): ").strip(),
        )
        entry_id = repo.add_entry(secrets)
        print("Created entry with ID:", entry_id)
        return 0

    # -----------------------------------------
    # LIST ENTRIES (safe)
    # -----------------------------------------
    if args.cmd == "list":
        entries = repo.list_entries()
        if not entries:
            print("No entries.")
            return 0
        print(f"{'ID':<5}{'Title':<24}{'Username':<24}{'Type':<20}{'URL'}")
        print("-" * 90)
        for e in entries:
            print(f"{e.id:<5}{e.title:<24}{e.username:<24}{e.type.label:<20}{e.url}")
        return 0

    # -----------------------------------------
    # SHOW ENTRY
    # -----------------------------------------
    if args.cmd == "show":
        if not args.id:
            print("Please specify --id <entry_id>")
            return 1

        s = repo.load_entry(args.id)
        e = s.entry
        print("Title:", e.title)
        print("Type:", e.type.label)
        print("Username:", e.username)
        print("Password:", s.password)
        print("URL:", e.url)
        print("Category:", e.category)
        print("Tags:", ", ".join(e.tags))
        if s.notes:
            print("Notes:", s.notes)
        return 0

    # -----------------------------------------
    # DELETE ENTRY
    # -----------------------------------------
    if args.cmd == "delete":
        if not args.id:
            print("Please specify --id <entry_id>")
            return 1
        if not repo.delete_entry(args.id):
            print("Entry not found.")
            return 1
        print(f"Entry {args.id} deleted.")
        return 0

    # -----------------------------------------
    # GROUPS
    # -----------------------------------------
    if args.cmd == "groups":
        tree = repo.group_tree()
        for group_id in tree.descendant_ids(1):
            g = tree.get(group_id)
            depth = len(tree.path(group_id))
            print(f"{'  ' * depth}{g.name} (id={g.id})")
        return 0

    if args.cmd == "mkgroup":
        if not args.name:
            print("Please specify --name <group name>")
            return 1
        group_id = repo.create_group(args.group, args.name)
        print("Created group with ID:", group_id)
        return 0

    if args.cmd == "rmgroup":
        if not args.id:
            print("Please specify --id <group_id>")
            return 1
        repo.delete_group(args.id)
        print(f"Group {args.id} deleted.")
        return 0

    # -----------------------------------------
    # CHANGE MASTER PASSWORD
    # -----------------------------------------
    if args.cmd == "passwd":
        pw = getpass("New master password: ")
        if pw != getpass("Repeat new master password: "):
            print("Passwords do not match.")
            return 1
        vault.change_master_password(pw)
        print("Master password changed.")
        return 0

    # -----------------------------------------
    # CSV
    # -----------------------------------------
    if args.cmd == "import-csv":
        if not args.file:
            print("Please specify --file <csv>")
            return 1
        options = CsvImportOptions(
            duplicate_policy=DuplicatePolicy.UPDATE if args.update else DuplicatePolicy.SKIP,
            create_groups_from_category_path=args.create_groups,
            default_entry_type=EntryType.parse(args.type, EntryType.WEB_LOGIN),
        )
        result = CsvImportEngine.from_path(repo, args.file, base_group_id=args.group, options=options).execute()
        print(f"Inserted: {result.inserted}")
        print(f"Updated: {result.updated}")
        print(f"Skipped duplicates: {result.skipped_duplicates}")
        print(f"Skipped invalid: {result.skipped_invalid}")
        for w in result.warnings:
            print("Warning:", w)
        return 0

    if args.cmd == "export-csv":
        if not args.file:
            print("Please specify --file <csv>")
            return 1
        print("WARNING: the CSV file contains plaintext passwords. Delete it after use.", file=sys.stderr)
        Path(args.file).write_bytes(export_entries_csv(repo))
        print(f"Exported to {args.file}")
        return 0

    # -----------------------------------------
    # ENCRYPTED BACKUP
    # -----------------------------------------
    if args.cmd == "backup":
        if not args.file:
            print("Please specify --file <backup>")
            return 1
        passphrase = getpass("Backup passphrase: ")
        if passphrase != getpass("Repeat backup passphrase: "):
            print("Passphrases do not match.")
            return 1
        BackupCodec(repo).export_to_file(args.file, passphrase)
        print(f"Backup written to {args.file}")
        return 0

    if args.cmd == "restore":
        if not args.file:
            print("Please specify --file <backup>")
            return 1
        count = BackupCodec(repo).import_from_file(args.file, getpass("Backup passphrase: "))
        print(f"Restored {count} entries.")
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
