"""
Data types shared by the store, the parser and the import reconciler.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

REQUIRED_FIELDS = ('name', 'url', 'username', 'password')


@dataclass
class Credential:
    """A stored credential. The password is only ever held as ciphertext."""
    id: int
    name: str
    url: str
    username: str
    password_ciphertext: str
    note: str = ""
    source: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        return (self.name, self.url, self.username, self.source)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> 'Credential':
        """Create from a sqlite3.Row."""
        return cls(
            id=row['id'],
            name=row['name'],
            url=row['url'],
            username=row['username'],
            password_ciphertext=row['password_ciphertext'],
            note=row['note'] or "",
            source=row['source'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )


@dataclass
class CandidateRecord:
    """A plaintext credential parsed from an import file, not yet stored."""
    name: str
    url: str
    username: str
    password: str
    note: str = ""
    source: str = ""

    def missing_fields(self) -> List[str]:
        return [f for f in REQUIRED_FIELDS if not getattr(self, f)]

    def is_valid(self) -> bool:
        return not self.missing_fields()

    def __repr__(self) -> str:
        # Keep plaintext out of logs and tracebacks
        return (f"CandidateRecord(name={self.name!r}, url={self.url!r}, "
                f"username={self.username!r}, source={self.source!r})")


class ImportOutcome(Enum):
    """Terminal classification of one candidate during an import."""
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED_INVALID = "skipped_invalid"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    SKIPPED_ERROR = "skipped_error"

    @property
    def is_skip(self) -> bool:
        return self.value.startswith("skipped")


@dataclass
class ImportResult:
    """Counts for one reconciled batch."""
    source: str
    file_name: Optional[str] = None
    inserted: int = 0
    updated: int = 0
    skipped_invalid: int = 0
    skipped_unchanged: int = 0
    skipped_error: int = 0

    @property
    def skipped(self) -> int:
        return self.skipped_invalid + self.skipped_unchanged + self.skipped_error

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped

    def record(self, outcome: ImportOutcome) -> None:
        if outcome is ImportOutcome.INSERTED:
            self.inserted += 1
        elif outcome is ImportOutcome.UPDATED:
            self.updated += 1
        elif outcome is ImportOutcome.SKIPPED_INVALID:
            self.skipped_invalid += 1
        elif outcome is ImportOutcome.SKIPPED_UNCHANGED:
            self.skipped_unchanged += 1
        else:
            self.skipped_error += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['skipped'] = self.skipped
        return data


@dataclass
class BatchImportResult:
    """Summed counts of a multi-file import plus the per-file breakdown."""
    files: List[ImportResult] = field(default_factory=list)
    failed_files: List[str] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(r.inserted for r in self.files)

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.files)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'files': [r.to_dict() for r in self.files],
            'failed_files': list(self.failed_files),
        }
