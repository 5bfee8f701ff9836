"""
Browser password export parsing.

Turns the CSV files exported by Chrome, Edge, Brave or Firefox into candidate
records for the import reconciler. Missing columns become empty strings;
rows with empty required fields are still yielded so the reconciler can count
them as skipped. Rows the CSV reader cannot decode at all are logged and
dropped.

LEGAL NOTICE:
This module reads password exports. It must only be used with files you
exported yourself, from browsers on devices you own or administer.
"""

import csv
import logging
import os
from typing import Dict, Iterator, List, Optional, TextIO
from urllib.parse import urlparse

from . import config
from .errors import ValidationError
from .models import CandidateRecord
from .utils import timestamp_from_epoch_ms

logger = logging.getLogger(__name__)


def source_from_path(filepath: str) -> str:
    """Source tag for a file: its name without extension."""
    return os.path.splitext(os.path.basename(filepath))[0]


def extract_site_name(url: str) -> str:
    """
    Derive a site name from a URL: the host without "www." and without
    subdomains, e.g. "https://accounts.google.com/login" -> "google.com".
    Returns the input unchanged when it has no host.
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return url
    if not hostname:
        return url

    if hostname.startswith('www.'):
        hostname = hostname[4:]

    parts = hostname.split('.')
    if len(parts) > 2 and not all(p.isdigit() for p in parts):
        hostname = '.'.join(parts[-2:])
    return hostname


class BrowserImporter:
    """Parses browser password exports into candidate records."""

    HEADER_MAPPINGS = config.BROWSER_HEADER_MAPPINGS

    def parse_file(self, filepath: str, source: Optional[str] = None) -> Iterator[CandidateRecord]:
        """
        Parse a CSV export.

        Args:
            filepath: Path to the CSV file
            source: Source tag stamped on every record; defaults to the file name

        Returns:
            A lazy, single-pass iterator of candidate records

        Raises:
            ValidationError: If the file does not exist or is not a CSV file
        """
        if not os.path.isfile(filepath):
            raise ValidationError(f"File not found: {filepath}")
        if not filepath.lower().endswith(config.CSV_EXTENSION):
            raise ValidationError(f"Only CSV files can be imported: {filepath}")

        return self._iter_file(filepath, source or source_from_path(filepath))

    def _iter_file(self, filepath: str, source: str) -> Iterator[CandidateRecord]:
        with open(filepath, 'r', encoding='utf-8-sig', newline='') as f:
            try:
                yield from self.parse(f, source)
            except UnicodeDecodeError as e:
                logger.warning(f"{filepath} is not UTF-8 encoded: {e}")
                raise ValidationError("CSV file is not UTF-8 encoded; export it again as UTF-8") from e

    def parse(self, stream: TextIO, source: str) -> Iterator[CandidateRecord]:
        """Parse an open, seekable text stream holding a CSV export with a header row."""
        sample = stream.read(config.CSV_SNIFF_SAMPLE_SIZE)
        stream.seek(0)

        reader = csv.reader(stream, delimiter=self._detect_delimiter(sample))
        headers = next(reader, None)
        if not headers:
            return

        header_map = self._map_headers(headers)
        if 'password' not in header_map:
            logger.warning(f"No password column found in headers {headers}; every row will be skipped.")

        time_created_index = self._find_column(headers, [config.FIREFOX_TIME_CREATED_HEADER])

        while True:
            try:
                row = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                logger.warning(f"Dropping unreadable CSV row at line {reader.line_num}: {e}")
                continue

            if not any(cell.strip() for cell in row):
                continue
            yield self._parse_row(row, header_map, time_created_index, source)

    @staticmethod
    def _detect_delimiter(sample: str) -> str:
        first_line = sample.splitlines()[0] if sample else ""
        try:
            delimiter = csv.Sniffer().sniff(sample, delimiters=config.CSV_DELIMITERS).delimiter
        except csv.Error:
            return ','
        return delimiter if delimiter in first_line else ','

    def _map_headers(self, headers: List[str]) -> Dict[str, int]:
        """Map candidate fields to column indexes."""
        header_map = {}
        for field, variations in self.HEADER_MAPPINGS.items():
            index = self._find_column(headers, variations)
            if index is not None:
                header_map[field] = index
        return header_map

    @staticmethod
    def _find_column(headers: List[str], variations: List[str]) -> Optional[int]:
        for index, header in enumerate(headers):
            if header.lower().strip() in variations:
                return index
        return None

    def _parse_row(self, row: List[str], header_map: Dict[str, int],
                   time_created_index: Optional[int], source: str) -> CandidateRecord:
        """Parse a CSV row into a CandidateRecord."""
        def cell(index: Optional[int]) -> str:
            if index is None or index >= len(row):
                return ''
            return row[index]

        name = cell(header_map.get('name')).strip()
        url = cell(header_map.get('url')).strip()
        username = cell(header_map.get('username')).strip()
        password = cell(header_map.get('password'))
        note = cell(header_map.get('note')).strip()

        # If URL is missing but the name looks like a URL, use it
        if not url and (name.startswith('http://') or name.startswith('https://')):
            url = name
            name = extract_site_name(url)

        # Firefox exports have no name column
        if 'name' not in header_map and url:
            name = extract_site_name(url)

        if not note and time_created_index is not None:
            created = timestamp_from_epoch_ms(cell(time_created_index))
            if created:
                note = f"Created: {created}"

        return CandidateRecord(
            name=name,
            url=url,
            username=username,
            password=password,
            note=note,
            source=source
        )
