"""
Command line entry point for the CredVault credential manager.

LEGAL NOTICE:
This tool is for personal use only. It must operate only on credentials you
own, exported from devices you own or administer.
"""

import argparse
import getpass
import sys
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .crypto import CryptoManager
from .errors import CredVaultError
from .models import Credential
from .reconciler import ImportReconciler, find_source_files
from .storage import CredentialStore, Database
from .utils import setup_logging


def _print_table(rows: Sequence[Dict[str, Any]], columns: Sequence[str]) -> None:
    widths = {c: max([len(c)] + [len(str(r.get(c, ""))) for r in rows]) for c in columns}
    print("  ".join(c.ljust(widths[c]) for c in columns))
    print("  ".join("-" * widths[c] for c in columns))
    for row in rows:
        print("  ".join(str(row.get(c, "")).ljust(widths[c]) for c in columns))


def _print_credentials(credentials: List[Credential]) -> None:
    for index, credential in enumerate(credentials, start=1):
        print(f"{index}. {credential.name}  [id {credential.id}]")
        print(f"   URL:      {credential.url}")
        print(f"   Username: {credential.username}")
        print(f"   Source:   {credential.source}")
        if credential.note:
            print(f"   Note:     {credential.note}")
        print(f"   Created:  {credential.created_at}")
        if credential.updated_at != credential.created_at:
            print(f"   Updated:  {credential.updated_at}")
        print("-" * 80)


class CredVaultApp:
    """Runs one CLI command against a store opened for the lifetime of the process."""

    def __init__(self, settings: config.Settings):
        self.settings = settings
        self.db: Optional[Database] = None
        self.store: Optional[CredentialStore] = None
        self.reconciler: Optional[ImportReconciler] = None

    def _open(self) -> CredentialStore:
        if self.store is None:
            key = config.get_encryption_key(self.settings)
            self.db = Database(self.settings.DATABASE_PATH)
            self.db.connect()
            self.store = CredentialStore(self.db, CryptoManager.from_settings(self.settings), key)
            self.reconciler = ImportReconciler(self.store)
        return self.store

    def run(self, args: argparse.Namespace) -> int:
        """Run the selected command and return the exit status."""
        handler = getattr(self, f"cmd_{args.command.replace('-', '_')}")
        try:
            return handler(args)
        except CredVaultError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    def cleanup(self) -> None:
        """Release the database connection."""
        if self.db is not None:
            self.db.close()

    def cmd_serve(self, args: argparse.Namespace) -> int:
        # Lazy import to avoid uvicorn being required for other commands
        import uvicorn
        from .webapp import create_app

        uvicorn.run(
            create_app(self.settings),
            host=args.host or self.settings.HOST,
            port=args.port or self.settings.PORT,
            log_level=self.settings.LOG_LEVEL.lower(),
        )
        return 0

    def cmd_import(self, args: argparse.Namespace) -> int:
        self._open()
        if args.source and len(args.files) != 1:
            print("Error: --source requires exactly one file", file=sys.stderr)
            return 1

        filepaths = args.files or find_source_files(self.settings.SOURCES_DIR)
        if not filepaths:
            print(f"No CSV files found in {self.settings.SOURCES_DIR}")
            return 1

        if args.source:
            result = self.reconciler.import_file(filepaths[0], args.source)
            print(f"Imported {result.file_name} as '{result.source}': {result.inserted} inserted, "
                  f"{result.updated} updated, {result.skipped} skipped")
            return 0

        batch = self.reconciler.import_files(filepaths)
        for result in batch.files:
            print(f"{result.file_name}: {result.inserted} inserted, {result.updated} updated, "
                  f"{result.skipped} skipped")
        for failed in batch.failed_files:
            print(f"{failed}: FAILED (see log)")
        print(f"Total: {batch.inserted} inserted, {batch.updated} updated, {batch.skipped} skipped")
        return 1 if batch.failed_files else 0

    def cmd_query(self, args: argparse.Namespace) -> int:
        store = self._open()
        term = "" if args.term in (None, "all") else args.term
        credentials = store.query_page(term, args.page, args.limit)
        total = store.count_matching(term)
        if not credentials:
            print("No matching credentials")
            return 0
        print(f"Showing {len(credentials)} of {total} credentials (page {args.page})\n")
        _print_credentials(credentials)
        return 0

    def cmd_stats(self, args: argparse.Namespace) -> int:
        stats = self._open().stats()
        print(f"{stats['total']} credentials stored\n")
        print("By source:")
        _print_table(stats['by_source'], ['source', 'count'])
        print("\nBy category:")
        _print_table(stats['by_category'], ['category', 'count'])
        return 0

    def cmd_duplicates(self, args: argparse.Namespace) -> int:
        duplicates = self._open().find_duplicate_sites()
        if not duplicates:
            print("No duplicate sites found")
            return 0
        print(f"{len(duplicates)} sites stored more than once:\n")
        _print_table(duplicates, ['name', 'duplicate_count', 'usernames'])
        return 0

    def cmd_recent(self, args: argparse.Namespace) -> int:
        _print_credentials(self._open().find_recent(args.limit))
        return 0

    def cmd_empty_notes(self, args: argparse.Namespace) -> int:
        credentials = self._open().find_empty_notes()
        print(f"{len(credentials)} credentials without a note\n")
        _print_credentials(credentials)
        return 0

    def cmd_weak_passwords(self, args: argparse.Namespace) -> int:
        weak = self._open().find_weak_passwords(args.min_length)
        if not weak:
            print("No weak passwords found")
            return 0
        print(f"{len(weak)} passwords shorter than {args.min_length} characters:\n")
        _print_table(weak, ['id', 'name'])
        return 0

    def cmd_email_stats(self, args: argparse.Namespace) -> int:
        _print_table(self._open().email_domain_stats(), ['email_domain', 'count'])
        return 0

    def cmd_validate_key(self, args: argparse.Namespace) -> int:
        if self._open().validate_key():
            print("Encryption key OK")
            return 0
        print("Encryption key FAILED validation", file=sys.stderr)
        return 1

    def cmd_set_key(self, args: argparse.Namespace) -> int:
        key = getpass.getpass("New encryption key: ")
        if key != getpass.getpass("Repeat encryption key: "):
            print("Error: keys do not match", file=sys.stderr)
            return 1
        config.store_encryption_key(key)
        print(f"Encryption key stored in the '{config.KEYRING_SERVICE}' keyring entry")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credvault",
        description="Encrypted credential store for browser password exports",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind host (default: CREDVAULT_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: CREDVAULT_PORT)")

    imp = sub.add_parser("import", help="Import CSV exports (default: every CSV in CREDVAULT_SOURCES_DIR)")
    imp.add_argument("files", nargs="*", help="CSV files; the file name is the source tag")
    imp.add_argument("--source", default=None, help="Source tag for a single file")

    query = sub.add_parser("query", help="Search credentials (passwords stay encrypted)")
    query.add_argument("term", nargs="?", default="", help="Search term, or 'all'")
    query.add_argument("--page", type=int, default=1)
    query.add_argument("--limit", type=int, default=20)

    sub.add_parser("stats", help="Counts by source and category")
    sub.add_parser("duplicates", help="Sites stored more than once")
    recent = sub.add_parser("recent", help="Most recently added credentials")
    recent.add_argument("limit", nargs="?", type=int, default=config.DEFAULT_RECENT_LIMIT)
    sub.add_parser("empty-notes", help="Credentials without a note")
    weak = sub.add_parser("weak-passwords", help="Credentials with short passwords (passwords are not shown)")
    weak.add_argument("--min-length", type=int, default=config.WEAK_PASSWORD_LENGTH)
    sub.add_parser("email-stats", help="Counts by e-mail domain of the username")
    sub.add_parser("validate-key", help="Check that the configured encryption key works")
    sub.add_parser("set-key", help="Store the encryption key in the OS keyring")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = config.Settings()
    setup_logging(settings)

    app = CredVaultApp(settings)
    try:
        return app.run(args)
    finally:
        app.cleanup()


if __name__ == "__main__":
    sys.exit(main())
