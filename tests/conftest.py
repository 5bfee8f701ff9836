"""Shared test fixtures.

Provides a temp-dir database, a low-cost CryptoManager, the store and
reconciler built on them, settings pointing at the temp dir, and a FastAPI
TestClient.
"""

import csv
from collections.abc import Generator
from pathlib import Path
from typing import Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from credvault.config import Settings
from credvault.crypto import CryptoManager
from credvault.reconciler import ImportReconciler
from credvault.storage import CredentialStore, Database

TEST_KEY = "correct horse battery staple"

# Argon2 minimum costs keep the suite fast
FAST_KDF = {"time_cost": 1, "memory_cost": 64, "parallelism": 1}

CHROME_HEADER = ["name", "url", "username", "password", "note"]


def write_csv(path: Path, rows: Sequence[Sequence[str]], header: Optional[Sequence[str]] = None,
              delimiter: str = ",") -> Path:
    """Write a CSV export with a header row."""
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f, delimiter=delimiter)
        writer.writerow(header or CHROME_HEADER)
        writer.writerows(rows)
    return path


@pytest.fixture()
def crypto() -> CryptoManager:
    return CryptoManager(**FAST_KDF)


@pytest.fixture()
def db(tmp_path: Path) -> Generator[Database, None, None]:
    database = Database(str(tmp_path / "credentials.db"))
    database.connect()
    yield database
    database.close()


@pytest.fixture()
def store(db: Database, crypto: CryptoManager) -> CredentialStore:
    return CredentialStore(db, crypto, TEST_KEY)


@pytest.fixture()
def reconciler(store: CredentialStore) -> ImportReconciler:
    return ImportReconciler(store)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_PATH=str(tmp_path / "api.db"),
        ENCRYPTION_KEY=TEST_KEY,
        USE_KEYRING=False,
        UPLOAD_DIR=str(tmp_path / "uploads"),
        SOURCES_DIR=str(tmp_path / "sources"),
        LOG_DIR=str(tmp_path / "logs"),
        MAX_UPLOAD_SIZE=64 * 1024,
        ARGON2_TIME_COST=FAST_KDF["time_cost"],
        ARGON2_MEMORY_COST=FAST_KDF["memory_cost"],
        ARGON2_PARALLELISM=FAST_KDF["parallelism"],
    )


@pytest.fixture()
def test_client(settings: Settings) -> Generator[TestClient, None, None]:
    """Provide a FastAPI TestClient with the lifespan running."""
    from credvault.webapp import create_app

    with TestClient(create_app(settings)) as client:
        yield client
