"""
Storage management for the credential manager.

A single SQLite table holds every credential. The password column only ever
receives ciphertext produced by CryptoManager; this module is the sole writer
of that column and never decrypts on read paths.

LEGAL NOTICE:
This module handles secure storage of passwords. All data is encrypted locally
and never transmitted. Use only on devices you own or administer.
"""

import datetime
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

from . import config
from .crypto import CryptoManager
from .errors import DecryptionError, NotFound, StoreError, StoreUnavailable, UniquenessViolation, ValidationError
from .models import REQUIRED_FIELDS, CandidateRecord, Credential
from .utils import set_file_permissions

logger = logging.getLogger(__name__)

TABLE = config.TABLE_NAME

CREATE_TABLE = f"""
    CREATE TABLE IF NOT EXISTS {TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        username TEXT NOT NULL,
        password_ciphertext TEXT NOT NULL,
        note TEXT NOT NULL DEFAULT '',
        source TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
"""

# BINARY collation: identity matching is case-sensitive
CREATE_IDENTITY_INDEX = f"""
    CREATE UNIQUE INDEX IF NOT EXISTS unique_credential
    ON {TABLE} (name, url, username, source)
"""

COLUMNS = "id, name, url, username, password_ciphertext, note, source, created_at, updated_at"

SEARCH_CLAUSE = (
    "name LIKE ? ESCAPE '\\' OR username LIKE ? ESCAPE '\\' "
    "OR url LIKE ? ESCAPE '\\' OR source LIKE ? ESCAPE '\\'"
)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _like_pattern(term: str) -> str:
    escaped = term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def _require_fields(fields: Mapping[str, Any]) -> None:
    missing = [f for f in REQUIRED_FIELDS if not fields.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _require_positive(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{label} must be a positive integer, got {value!r}")
    return value


class Database:
    """Owns the long-lived SQLite connection and translates driver errors."""

    def __init__(self, filepath: str):
        """
        Args:
            filepath: Path to the SQLite database file, or ":memory:"
        """
        self.filepath = filepath
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def connect(self) -> None:
        """Open the connection and create the schema if needed."""
        with self._lock:
            if self._conn is not None:
                return

            in_memory = self.filepath == ":memory:"
            if not in_memory:
                directory = os.path.dirname(os.path.abspath(self.filepath))
                os.makedirs(directory, exist_ok=True)

            try:
                # Sync FastAPI endpoints run in a thread pool; access is serialized by _lock
                conn = sqlite3.connect(self.filepath, check_same_thread=False)
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Cannot open database {self.filepath}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._conn = conn

            with self.transaction() as c:
                c.execute(CREATE_TABLE)
                c.execute(CREATE_IDENTITY_INDEX)

            if not in_memory and not set_file_permissions(self.filepath):
                logger.warning(f"Failed to set secure file permissions for database: {self.filepath}.")
            logger.info(f"Connected to credential database {self.filepath}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"Closed credential database {self.filepath}")

    def __enter__(self) -> 'Database':
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically; driver errors surface as store errors."""
        with self._lock:
            if self._conn is None:
                raise StoreUnavailable("Database is not connected")
            conn = self._conn
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise self._translate(e) from e
            except BaseException:
                conn.rollback()
                raise

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.transaction() as conn:
            return conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self.transaction() as conn:
            return conn.execute(sql, params).fetchone()

    @staticmethod
    def _translate(error: sqlite3.Error) -> Exception:
        message = str(error)
        if isinstance(error, sqlite3.IntegrityError) and "UNIQUE" in message:
            return UniquenessViolation("A credential with this name, url, username and source already exists")
        if isinstance(error, sqlite3.ProgrammingError) and "closed" in message:
            return StoreUnavailable(f"Database connection is closed: {message}")
        if isinstance(error, sqlite3.OperationalError) and "unable to open" in message:
            return StoreUnavailable(f"Database cannot be opened: {message}")
        return StoreError(f"Database error: {message}")


class CredentialStore:
    """Identity lookups, comparisons and mutations of stored credentials."""

    def __init__(self, db: Database, crypto: CryptoManager, key: str):
        """
        Args:
            db: Connected database
            crypto: Cipher used for every password written or compared
            key: Shared encryption key
        """
        self.db = db
        self.crypto = crypto
        self._key = key

    def validate_key(self) -> bool:
        """Whether the shared key round-trips a probe string."""
        return self.crypto.validate_key(self._key)

    # Identity and comparison

    def find_existing(self, name: str, url: str, username: str, source: str) -> Optional[Credential]:
        """Exact, case-sensitive match on the identity tuple."""
        row = self.db.query_one(
            f"SELECT {COLUMNS} FROM {TABLE} WHERE name = ? AND url = ? AND username = ? AND source = ?",
            (name, url, username, source)
        )
        return Credential.from_row(row) if row else None

    def get_by_id(self, credential_id: int) -> Credential:
        row = self.db.query_one(f"SELECT {COLUMNS} FROM {TABLE} WHERE id = ?", (credential_id,))
        if row is None:
            raise NotFound(credential_id)
        return Credential.from_row(row)

    def compare_plaintext(self, credential_id: int, candidate_plaintext: str) -> bool:
        """
        Decrypt the stored password and compare it with a candidate.

        Raises:
            NotFound: If the id is absent
            DecryptionError: If the stored ciphertext cannot be decrypted with
                the shared key. Never reported as "different".
        """
        row = self.db.query_one(f"SELECT password_ciphertext FROM {TABLE} WHERE id = ?", (credential_id,))
        if row is None:
            raise NotFound(credential_id)
        stored = self.crypto.decrypt_password(row['password_ciphertext'], self._key)
        return self.crypto.secure_compare(stored.encode('utf-8'), candidate_plaintext.encode('utf-8'))

    # Mutations

    def insert(self, candidate: CandidateRecord) -> Credential:
        """
        Encrypt and persist a new credential.

        Raises:
            ValidationError: If a required field is empty
            UniquenessViolation: If the identity tuple is already stored
        """
        if not candidate.is_valid():
            raise ValidationError(f"Missing required fields: {', '.join(candidate.missing_fields())}")
        source = candidate.source or config.DEFAULT_SOURCE
        ciphertext = self.crypto.encrypt_password(candidate.password, self._key)
        now = _now()

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO {TABLE} (name, url, username, password_ciphertext, note, source, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (candidate.name, candidate.url, candidate.username, ciphertext,
                 candidate.note or "", source, now, now)
            )
            credential_id = cursor.lastrowid

        return Credential(
            id=credential_id,
            name=candidate.name,
            url=candidate.url,
            username=candidate.username,
            password_ciphertext=ciphertext,
            note=candidate.note or "",
            source=source,
            created_at=now,
            updated_at=now,
        )

    def update_content(self, credential_id: int, new_plaintext: str, new_note: str) -> Credential:
        """Re-encrypt the password and overwrite the note; identity is untouched."""
        if not new_plaintext:
            raise ValidationError("Missing required fields: password")
        ciphertext = self.crypto.encrypt_password(new_plaintext, self._key)

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {TABLE} SET password_ciphertext = ?, note = ?, updated_at = ? WHERE id = ?",
                (ciphertext, new_note or "", _now(), credential_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(credential_id)
        return self.get_by_id(credential_id)

    def update_full(self, credential_id: int, fields: Mapping[str, Any]) -> Credential:
        """
        Direct-edit path: overwrite every mutable field, identity included.

        A missing source keeps the stored one.

        Raises:
            ValidationError, NotFound, UniquenessViolation
        """
        _require_fields(fields)
        existing = self.get_by_id(credential_id)
        source = fields.get('source') or existing.source
        ciphertext = self.crypto.encrypt_password(fields['password'], self._key)

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {TABLE} SET name = ?, url = ?, username = ?, password_ciphertext = ?, "
                "note = ?, source = ?, updated_at = ? WHERE id = ?",
                (fields['name'], fields['url'], fields['username'], ciphertext,
                 fields.get('note') or "", source, _now(), credential_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(credential_id)
        return self.get_by_id(credential_id)

    def delete_by_id(self, credential_id: int) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {TABLE} WHERE id = ?", (credential_id,))
            if cursor.rowcount == 0:
                raise NotFound(credential_id)

    # Read paths. Ciphertext is returned as-is.

    def count_total(self) -> int:
        return self.db.query_one(f"SELECT COUNT(*) AS total FROM {TABLE}")['total']

    def count_matching(self, filter_term: str = "") -> int:
        if not filter_term:
            return self.count_total()
        pattern = _like_pattern(filter_term)
        row = self.db.query_one(f"SELECT COUNT(*) AS total FROM {TABLE} WHERE {SEARCH_CLAUSE}", (pattern,) * 4)
        return row['total']

    def query_page(self, filter_term: str = "", page_index: int = 1, page_size: int = 20) -> List[Credential]:
        """
        One page of credentials matching a case-insensitive substring.

        Args:
            filter_term: Matched against name, username, url and source; empty matches all
            page_index: 1-based page number
            page_size: Rows per page
        """
        _require_positive(page_index, "page")
        _require_positive(page_size, "limit")
        offset = (page_index - 1) * page_size

        if filter_term:
            pattern = _like_pattern(filter_term)
            rows = self.db.query(
                f"SELECT {COLUMNS} FROM {TABLE} WHERE {SEARCH_CLAUSE} "
                "ORDER BY source, name, id LIMIT ? OFFSET ?",
                (pattern,) * 4 + (page_size, offset)
            )
        else:
            rows = self.db.query(
                f"SELECT {COLUMNS} FROM {TABLE} ORDER BY source, name, id LIMIT ? OFFSET ?",
                (page_size, offset)
            )
        return [Credential.from_row(r) for r in rows]

    # Reports

    def stats(self) -> Dict[str, Any]:
        """Total count, counts per source and counts per name-derived category."""
        by_source = self.db.query(
            f"SELECT source, COUNT(*) AS count FROM {TABLE} GROUP BY source ORDER BY count DESC, source"
        )

        case_sql = " ".join("WHEN name LIKE ? THEN ?" for _ in config.NAME_CATEGORIES)
        case_params = tuple(p for pair in config.NAME_CATEGORIES for p in pair) + (config.CATEGORY_OTHER,)
        by_category = self.db.query(
            f"SELECT CASE {case_sql} ELSE ? END AS category, COUNT(*) AS count "
            f"FROM {TABLE} GROUP BY category ORDER BY count DESC, category",
            case_params
        )

        return {
            'total': self.count_total(),
            'by_source': [dict(r) for r in by_source],
            'by_category': [dict(r) for r in by_category],
        }

    def email_domain_stats(self) -> List[Dict[str, Any]]:
        rows = self.db.query(
            f"SELECT lower(substr(username, instr(username, '@') + 1)) AS email_domain, COUNT(*) AS count "
            f"FROM {TABLE} WHERE username LIKE '%@%' "
            "GROUP BY email_domain ORDER BY count DESC, email_domain"
        )
        return [dict(r) for r in rows]

    def find_duplicate_sites(self) -> List[Dict[str, Any]]:
        """Names stored more than once, with the usernames sharing them."""
        rows = self.db.query(
            f"SELECT name, COUNT(*) AS duplicate_count, GROUP_CONCAT(username, ', ') AS usernames "
            f"FROM {TABLE} GROUP BY name HAVING COUNT(*) > 1 ORDER BY duplicate_count DESC, name"
        )
        return [dict(r) for r in rows]

    def find_recent(self, limit: int = config.DEFAULT_RECENT_LIMIT) -> List[Credential]:
        _require_positive(limit, "limit")
        rows = self.db.query(
            f"SELECT {COLUMNS} FROM {TABLE} ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [Credential.from_row(r) for r in rows]

    def find_empty_notes(self) -> List[Credential]:
        rows = self.db.query(
            f"SELECT {COLUMNS} FROM {TABLE} WHERE note IS NULL OR note = '' ORDER BY source, name, id"
        )
        return [Credential.from_row(r) for r in rows]

    def find_weak_passwords(self, min_length: int = config.WEAK_PASSWORD_LENGTH) -> List[Dict[str, Any]]:
        """
        Ids and names of credentials whose password is shorter than min_length.

        Passwords are decrypted one at a time inside the store and never
        returned. Rows that fail to decrypt are logged and left out.
        """
        _require_positive(min_length, "min_length")
        rows = self.db.query(f"SELECT id, name, password_ciphertext FROM {TABLE} ORDER BY name, id")
        weak = []
        for row in rows:
            try:
                plaintext = self.crypto.decrypt_password(row['password_ciphertext'], self._key)
            except DecryptionError as e:
                logger.warning(f"Weak password check skipped credential {row['id']}: {e}")
                continue
            if len(plaintext) < min_length:
                weak.append({'id': row['id'], 'name': row['name']})
        return weak
