"""
Import reconciliation.

For each candidate record of a batch, decide whether it is new, identical to
the stored credential with the same identity, or changed, and apply the
matching store operation. Candidates are processed strictly in input order,
one at a time: every step reads then writes the same identity tuple, and the
store's uniqueness constraint is the only guard against a concurrent writer.

A failure on one candidate never aborts the batch; it is logged and counted
as skipped. Only a lost database connection (StoreUnavailable) stops an
import midway.
"""

import dataclasses
import logging
import os
from typing import Iterable, List, Optional

from . import config
from .browser_import import BrowserImporter, source_from_path
from .errors import DecryptionError, StoreUnavailable, UniquenessViolation
from .models import BatchImportResult, CandidateRecord, Credential, ImportOutcome, ImportResult
from .storage import CredentialStore
from .utils import log_action

logger = logging.getLogger(__name__)


def find_source_files(directory: str) -> List[str]:
    """All CSV files directly inside a directory, sorted by name."""
    if not os.path.isdir(directory):
        return []
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name.lower().endswith(config.CSV_EXTENSION) and os.path.isfile(os.path.join(directory, name))
    )


class ImportReconciler:
    """Reconciles parsed candidate records against the credential store."""

    def __init__(self, store: CredentialStore, importer: Optional[BrowserImporter] = None):
        self.store = store
        self.importer = importer or BrowserImporter()

    def ensure_key(self) -> None:
        """
        Fail fast when the shared key cannot round-trip a probe.

        Raises:
            DecryptionError: If the key is unusable
        """
        if not self.store.validate_key():
            raise DecryptionError("Encryption key failed validation; import aborted")

    def reconcile(self, candidates: Iterable[CandidateRecord], source: str,
                  file_name: Optional[str] = None) -> ImportResult:
        """
        Reconcile one batch of candidates belonging to a single source.

        Args:
            candidates: Records in file order; each record's source is replaced by `source`
            source: Source tag of the batch, part of every credential's identity
            file_name: Reported back in the result

        Returns:
            Counts of inserted, updated and skipped records
        """
        self.ensure_key()

        result = ImportResult(source=source, file_name=file_name)
        for position, candidate in enumerate(candidates, start=1):
            result.record(self.reconcile_one(candidate, source, position))

        logger.info(
            f"Import of '{source}' finished: {result.inserted} inserted, {result.updated} updated, "
            f"{result.skipped} skipped ({result.skipped_unchanged} unchanged, "
            f"{result.skipped_invalid} invalid, {result.skipped_error} errors)"
        )
        log_action(
            "IMPORT",
            f"source={source} file={file_name or '-'} inserted={result.inserted} "
            f"updated={result.updated} skipped={result.skipped}"
        )
        return result

    def reconcile_one(self, candidate: CandidateRecord, source: str, position: int = 0) -> ImportOutcome:
        """Classify and apply a single candidate. Only StoreUnavailable propagates."""
        if candidate.source != source:
            candidate = dataclasses.replace(candidate, source=source)

        if not candidate.is_valid():
            logger.debug(f"Row {position}: missing {', '.join(candidate.missing_fields())}, skipped")
            return ImportOutcome.SKIPPED_INVALID

        try:
            return self._apply(candidate)
        except StoreUnavailable:
            raise
        except DecryptionError as e:
            logger.error(
                f"Row {position} ({candidate.name} / {candidate.username}): "
                f"stored password cannot be verified: {e}"
            )
        except Exception as e:
            logger.error(f"Row {position} ({candidate.name} / {candidate.username}): {e}", exc_info=True)
        return ImportOutcome.SKIPPED_ERROR

    def _apply(self, candidate: CandidateRecord) -> ImportOutcome:
        identity = (candidate.name, candidate.url, candidate.username, candidate.source)
        existing = self.store.find_existing(*identity)

        if existing is None:
            try:
                self.store.insert(candidate)
                return ImportOutcome.INSERTED
            except UniquenessViolation:
                # Another writer stored the same identity since our lookup
                existing = self.store.find_existing(*identity)
                if existing is None:
                    raise
                logger.warning(f"{candidate.name} / {candidate.username} was inserted concurrently; "
                               "re-resolving as an update")

        return self._reconcile_existing(existing, candidate)

    def _reconcile_existing(self, existing: Credential, candidate: CandidateRecord) -> ImportOutcome:
        if self.store.compare_plaintext(existing.id, candidate.password):
            return ImportOutcome.SKIPPED_UNCHANGED
        self.store.update_content(existing.id, candidate.password, candidate.note)
        return ImportOutcome.UPDATED

    def import_file(self, filepath: str, source: Optional[str] = None) -> ImportResult:
        """
        Parse and reconcile one CSV export.

        Args:
            filepath: Path to the CSV file
            source: Source tag; defaults to the file name without extension
        """
        source = source or source_from_path(filepath)
        logger.info(f"Importing {filepath} as source '{source}'")
        candidates = self.importer.parse_file(filepath, source)
        return self.reconcile(candidates, source, file_name=os.path.basename(filepath))

    def import_files(self, filepaths: Iterable[str]) -> BatchImportResult:
        """
        Import several files sequentially, one source per file.

        A file that fails as a whole contributes nothing and is listed in
        failed_files; the remaining files still run.
        """
        self.ensure_key()

        batch = BatchImportResult()
        for filepath in filepaths:
            try:
                batch.files.append(self.import_file(filepath))
            except StoreUnavailable:
                raise
            except Exception as e:
                logger.error(f"Import of {filepath} failed: {e}", exc_info=True)
                batch.failed_files.append(filepath)

        logger.info(
            f"Batch import finished: {len(batch.files)} files, {batch.inserted} inserted, "
            f"{batch.updated} updated, {batch.skipped} skipped, {len(batch.failed_files)} failed"
        )
        return batch

    def import_directory(self, directory: str) -> BatchImportResult:
        """Import every CSV file found in a directory."""
        return self.import_files(find_source_files(directory))
