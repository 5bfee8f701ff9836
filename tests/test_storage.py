"""Unit tests for Database and CredentialStore against a temp-dir SQLite file."""

import os
import sys

import pytest

from conftest import TEST_KEY

from credvault.crypto import CryptoManager
from credvault.errors import NotFound, StoreUnavailable, UniquenessViolation, ValidationError
from credvault.models import CandidateRecord
from credvault.storage import CredentialStore, Database


def _candidate(name: str = "github.com", url: str = "https://github.com/", username: str = "dev@example.com",
               password: str = "pw1", note: str = "", source: str = "Chrome") -> CandidateRecord:
    return CandidateRecord(name=name, url=url, username=username, password=password, note=note, source=source)


class TestDatabase:
    def test_connect_creates_file_and_directory(self, tmp_path) -> None:
        path = tmp_path / "nested" / "dir" / "vault.db"
        with Database(str(path)) as db:
            assert db.is_connected
        assert path.exists()
        assert not db.is_connected

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_database_file_is_owner_only(self, db: Database) -> None:
        assert os.stat(db.filepath).st_mode & 0o777 == 0o600

    def test_in_memory_database(self, crypto: CryptoManager) -> None:
        with Database(":memory:") as db:
            store = CredentialStore(db, crypto, TEST_KEY)
            store.insert(_candidate())
            assert store.count_total() == 1

    def test_closed_database_is_unavailable(self, db: Database, store: CredentialStore) -> None:
        """Given a closed connection, every store call raises StoreUnavailable."""
        db.close()
        with pytest.raises(StoreUnavailable):
            store.count_total()
        with pytest.raises(StoreUnavailable):
            store.find_existing("a", "b", "c", "d")

    def test_failed_transaction_rolls_back(self, db: Database, store: CredentialStore) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO credentials (name, url, username, password_ciphertext, source, created_at, "
                    "updated_at) VALUES ('a', 'b', 'c', 'd', 'e', 'f', 'g')"
                )
                raise RuntimeError("boom")
        assert store.count_total() == 0


class TestIdentityAndComparison:
    def test_insert_and_find_existing(self, store: CredentialStore) -> None:
        created = store.insert(_candidate())
        found = store.find_existing("github.com", "https://github.com/", "dev@example.com", "Chrome")
        assert found is not None
        assert found.id == created.id
        assert found.identity == ("github.com", "https://github.com/", "dev@example.com", "Chrome")

    def test_find_existing_is_case_sensitive(self, store: CredentialStore) -> None:
        store.insert(_candidate())
        assert store.find_existing("GitHub.com", "https://github.com/", "dev@example.com", "Chrome") is None
        assert store.find_existing("github.com", "https://github.com/", "Dev@example.com", "Chrome") is None

    def test_same_identity_in_other_source_is_separate(self, store: CredentialStore) -> None:
        store.insert(_candidate(source="Chrome"))
        store.insert(_candidate(source="Firefox"))
        assert store.count_total() == 2

    def test_duplicate_identity_is_rejected(self, store: CredentialStore) -> None:
        """Given an identity already stored, a second insert raises UniquenessViolation and stores nothing."""
        store.insert(_candidate())
        with pytest.raises(UniquenessViolation):
            store.insert(_candidate(password="pw2"))
        assert store.count_total() == 1

    def test_password_is_stored_encrypted(self, db: Database, store: CredentialStore) -> None:
        created = store.insert(_candidate(password="plain-secret"))
        row = db.query_one("SELECT password_ciphertext FROM credentials WHERE id = ?", (created.id,))
        assert "plain-secret" not in row["password_ciphertext"]
        assert store.crypto.decrypt_password(row["password_ciphertext"], TEST_KEY) == "plain-secret"

    def test_compare_plaintext(self, store: CredentialStore) -> None:
        created = store.insert(_candidate(password="pw1"))
        assert store.compare_plaintext(created.id, "pw1") is True
        assert store.compare_plaintext(created.id, "pw2") is False
        assert store.compare_plaintext(created.id, "PW1") is False

    def test_compare_plaintext_unknown_id(self, store: CredentialStore) -> None:
        with pytest.raises(NotFound):
            store.compare_plaintext(999, "pw1")

    def test_compare_plaintext_with_wrong_key(self, db: Database, crypto: CryptoManager,
                                              store: CredentialStore) -> None:
        """Given a store opened with another key, comparison raises instead of reporting a difference."""
        from credvault.errors import DecryptionError

        created = store.insert(_candidate())
        other = CredentialStore(db, crypto, "some other key")
        with pytest.raises(DecryptionError):
            other.compare_plaintext(created.id, "pw1")


class TestMutations:
    def test_insert_defaults(self, store: CredentialStore) -> None:
        created = store.insert(_candidate(source=""))
        assert created.source == "manual"
        assert created.note == ""
        assert created.created_at == created.updated_at

    @pytest.mark.parametrize("field", ["name", "url", "username", "password"])
    def test_insert_requires_fields(self, store: CredentialStore, field: str) -> None:
        candidate = _candidate()
        setattr(candidate, field, "")
        with pytest.raises(ValidationError, match=field):
            store.insert(candidate)
        assert store.count_total() == 0

    def test_update_content(self, store: CredentialStore) -> None:
        created = store.insert(_candidate(password="pw1", note="old"))
        updated = store.update_content(created.id, "pw2", "new note")
        assert updated.identity == created.identity
        assert updated.note == "new note"
        assert updated.password_ciphertext != created.password_ciphertext
        assert updated.updated_at >= created.updated_at
        assert updated.created_at == created.created_at
        assert store.compare_plaintext(created.id, "pw2")

    def test_update_content_unknown_id(self, store: CredentialStore) -> None:
        with pytest.raises(NotFound):
            store.update_content(42, "pw2", "")

    def test_update_full_changes_identity(self, store: CredentialStore) -> None:
        created = store.insert(_candidate())
        updated = store.update_full(created.id, {
            "name": "gitlab.com", "url": "https://gitlab.com/", "username": "dev@example.com",
            "password": "pw9", "note": "moved",
        })
        assert updated.name == "gitlab.com"
        assert updated.source == "Chrome"
        assert store.compare_plaintext(created.id, "pw9")

    def test_update_full_collision(self, store: CredentialStore) -> None:
        store.insert(_candidate(name="a.com"))
        second = store.insert(_candidate(name="b.com"))
        with pytest.raises(UniquenessViolation):
            store.update_full(second.id, {
                "name": "a.com", "url": "https://github.com/", "username": "dev@example.com",
                "password": "pw1", "source": "Chrome",
            })
        assert store.get_by_id(second.id).name == "b.com"

    def test_update_full_validation_and_not_found(self, store: CredentialStore) -> None:
        created = store.insert(_candidate())
        with pytest.raises(ValidationError):
            store.update_full(created.id, {"name": "x", "url": "y", "username": "z", "password": ""})
        with pytest.raises(NotFound):
            store.update_full(999, {"name": "x", "url": "y", "username": "z", "password": "p"})

    def test_delete(self, store: CredentialStore) -> None:
        created = store.insert(_candidate())
        store.delete_by_id(created.id)
        with pytest.raises(NotFound):
            store.get_by_id(created.id)
        with pytest.raises(NotFound):
            store.delete_by_id(created.id)


class TestQueries:
    @pytest.fixture()
    def populated(self, store: CredentialStore) -> CredentialStore:
        for name in ("e.com", "c.com", "a.com", "d.com", "b.com"):
            store.insert(_candidate(name=name, url=f"https://{name}/", username="user", source="s"))
        return store

    def test_query_page_order_and_pagination(self, populated: CredentialStore) -> None:
        first = populated.query_page("", 1, 2)
        third = populated.query_page("", 3, 2)
        assert [c.name for c in first] == ["a.com", "b.com"]
        assert [c.name for c in third] == ["e.com"]
        assert populated.query_page("", 4, 2) == []

    def test_query_page_filter_is_case_insensitive(self, populated: CredentialStore) -> None:
        assert [c.name for c in populated.query_page("C.COM")] == ["c.com"]
        assert populated.count_matching("C.COM") == 1
        assert populated.count_matching("") == 5

    def test_query_page_filter_matches_username_and_source(self, store: CredentialStore) -> None:
        store.insert(_candidate(username="alice@corp.example", source="Edge"))
        assert store.count_matching("alice") == 1
        assert store.count_matching("edge") == 1

    def test_like_wildcards_are_literal(self, store: CredentialStore) -> None:
        """Given % and _ in a search term, they match themselves only."""
        store.insert(_candidate(name="100%club", url="u1", username="n1", source="s"))
        store.insert(_candidate(name="100 club", url="u2", username="n2", source="s"))
        store.insert(_candidate(name="a_b", url="u3", username="n3", source="s"))
        store.insert(_candidate(name="axb", url="u4", username="n4", source="s"))
        assert [c.name for c in store.query_page("%")] == ["100%club"]
        assert [c.name for c in store.query_page("a_b")] == ["a_b"]

    @pytest.mark.parametrize("page,size", [(0, 20), (-1, 20), (1, 0), (1, -5)])
    def test_query_page_rejects_bad_paging(self, store: CredentialStore, page: int, size: int) -> None:
        with pytest.raises(ValidationError):
            store.query_page("", page, size)

    def test_rows_carry_ciphertext_only(self, store: CredentialStore) -> None:
        store.insert(_candidate(password="visible?"))
        row = store.query_page()[0].to_dict()
        assert "password" not in row
        assert "visible?" not in row["password_ciphertext"]


class TestReports:
    def test_stats(self, store: CredentialStore) -> None:
        for name, source in [("github.com", "Chrome"), ("gist.github.com", "Chrome"), ("dropbox.com", "Edge"),
                             ("netflix.com", "Edge"), ("x.com", "Edge"), ("mail.google.com", "Firefox")]:
            store.insert(_candidate(name=name, source=source))

        stats = store.stats()
        assert stats["total"] == 6
        assert {r["source"]: r["count"] for r in stats["by_source"]} == {"Chrome": 2, "Edge": 3, "Firefox": 1}
        assert stats["by_source"][0] == {"source": "Edge", "count": 3}
        assert {r["category"]: r["count"] for r in stats["by_category"]} == {
            "GitHub": 2, "Dropbox": 1, "Other": 1, "Twitter/X": 1, "Google": 1,
        }

    def test_stats_empty(self, store: CredentialStore) -> None:
        assert store.stats() == {"total": 0, "by_source": [], "by_category": []}

    def test_email_domain_stats(self, store: CredentialStore) -> None:
        store.insert(_candidate(name="a", username="alice@Example.com"))
        store.insert(_candidate(name="b", username="bob@example.com"))
        store.insert(_candidate(name="c", username="carol@mail.test"))
        store.insert(_candidate(name="d", username="dave"))
        assert store.email_domain_stats() == [
            {"email_domain": "example.com", "count": 2},
            {"email_domain": "mail.test", "count": 1},
        ]

    def test_find_duplicate_sites(self, store: CredentialStore) -> None:
        store.insert(_candidate(username="alice"))
        store.insert(_candidate(username="bob"))
        store.insert(_candidate(name="single.com"))
        duplicates = store.find_duplicate_sites()
        assert len(duplicates) == 1
        assert duplicates[0]["name"] == "github.com"
        assert duplicates[0]["duplicate_count"] == 2
        assert set(duplicates[0]["usernames"].split(", ")) == {"alice", "bob"}

    def test_find_recent(self, store: CredentialStore) -> None:
        for name in ("one", "two", "three"):
            store.insert(_candidate(name=name))
        assert [c.name for c in store.find_recent(2)] == ["three", "two"]
        with pytest.raises(ValidationError):
            store.find_recent(0)

    def test_find_empty_notes(self, store: CredentialStore) -> None:
        store.insert(_candidate(name="with", note="has a note"))
        store.insert(_candidate(name="without"))
        assert [c.name for c in store.find_empty_notes()] == ["without"]

    def test_find_weak_passwords(self, store: CredentialStore) -> None:
        """Given short and long passwords, only ids and names of the short ones come back."""
        short = store.insert(_candidate(name="short.com", password="1234567"))
        store.insert(_candidate(name="long.com", password="12345678"))

        assert store.find_weak_passwords() == [{"id": short.id, "name": "short.com"}]
        assert [r["name"] for r in store.find_weak_passwords(min_length=9)] == ["long.com", "short.com"]
        with pytest.raises(ValidationError):
            store.find_weak_passwords(min_length=0)

    def test_find_weak_passwords_skips_undecryptable_rows(self, db: Database, crypto: CryptoManager,
                                                          store: CredentialStore) -> None:
        CredentialStore(db, crypto, "another key").insert(_candidate(name="foreign.com", password="x"))
        store.insert(_candidate(name="mine.com", password="y"))
        assert [r["name"] for r in store.find_weak_passwords()] == ["mine.com"]
