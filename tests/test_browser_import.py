"""Unit tests for browser CSV export parsing."""

import io
import types

import pytest

from conftest import write_csv

from credvault.browser_import import BrowserImporter, extract_site_name, source_from_path
from credvault.errors import ValidationError

FIREFOX_HEADER = ["url", "username", "password", "httpRealm", "formActionOrigin", "guid",
                  "timeCreated", "timeLastUsed", "timePasswordChanged"]


@pytest.fixture()
def importer() -> BrowserImporter:
    return BrowserImporter()


class TestExtractSiteName:
    @pytest.mark.parametrize("url,expected", [
        ("https://github.com/login", "github.com"),
        ("https://www.example.org/", "example.org"),
        ("https://accounts.google.com/signin", "google.com"),
        ("http://login.mail.yahoo.com:8080/path", "yahoo.com"),
        ("http://192.168.1.10/admin", "192.168.1.10"),
        ("http://localhost:3000", "localhost"),
        ("not a url", "not a url"),
        ("", ""),
    ])
    def test_extract_site_name(self, url: str, expected: str) -> None:
        assert extract_site_name(url) == expected

    def test_source_from_path(self) -> None:
        assert source_from_path("/exports/Chrome Passwords.csv") == "Chrome Passwords"
        assert source_from_path("Firefox.CSV") == "Firefox"


class TestChromeExport:
    def test_parse_chrome_export(self, importer: BrowserImporter, tmp_path) -> None:
        path = write_csv(tmp_path / "Chrome.csv", [
            ["github.com", "https://github.com/", "dev@example.com", "pw1", ""],
            ["example.org", "https://example.org/login", " alice ", " spaced pw ", "  work  "],
        ])
        records = list(importer.parse_file(str(path)))

        assert len(records) == 2
        first, second = records
        assert (first.name, first.url, first.username, first.password, first.note, first.source) == (
            "github.com", "https://github.com/", "dev@example.com", "pw1", "", "Chrome")
        assert second.username == "alice"
        assert second.note == "work"
        assert second.password == " spaced pw "

    def test_source_override(self, importer: BrowserImporter, tmp_path) -> None:
        path = write_csv(tmp_path / "export.csv", [["a", "https://a/", "u", "p", ""]])
        assert next(iter(importer.parse_file(str(path), "Laptop Chrome"))).source == "Laptop Chrome"

    def test_header_variations(self, importer: BrowserImporter) -> None:
        stream = io.StringIO("Title,Website,Login,Pass,Comments\nMy Bank,https://bank.test,me,secret,hi\n")
        record = next(importer.parse(stream, "Other"))
        assert (record.name, record.url, record.username, record.password, record.note) == (
            "My Bank", "https://bank.test", "me", "secret", "hi")

    def test_semicolon_delimiter(self, importer: BrowserImporter) -> None:
        stream = io.StringIO("name;url;username;password\nsite;https://site.test;bob;pw\n")
        record = next(importer.parse(stream, "s"))
        assert (record.name, record.username, record.password) == ("site", "bob", "pw")

    def test_utf8_bom_is_ignored(self, importer: BrowserImporter, tmp_path) -> None:
        path = tmp_path / "Edge.csv"
        path.write_bytes("\ufeffname,url,username,password\nsite,https://site.test,bob,pw\n".encode("utf-8"))
        record = next(iter(importer.parse_file(str(path))))
        assert record.name == "site"

    def test_name_holding_url_moves_to_url(self, importer: BrowserImporter) -> None:
        stream = io.StringIO("name,url,username,password\nhttps://www.shop.example.com/cart,,bob,pw\n")
        record = next(importer.parse(stream, "s"))
        assert record.url == "https://www.shop.example.com/cart"
        assert record.name == "example.com"


class TestIncompleteRows:
    def test_missing_fields_are_passed_through(self, importer: BrowserImporter) -> None:
        """Given a row without username, it is still yielded so the caller can count it as skipped."""
        stream = io.StringIO("name,url,username,password\nsite,https://site.test,,pw\n")
        records = list(importer.parse(stream, "s"))
        assert len(records) == 1
        assert not records[0].is_valid()
        assert records[0].missing_fields() == ["username"]

    def test_missing_column_becomes_empty(self, importer: BrowserImporter) -> None:
        stream = io.StringIO("name,url,username\nsite,https://site.test,bob\n")
        record = next(importer.parse(stream, "s"))
        assert record.password == ""
        assert record.missing_fields() == ["password"]

    def test_short_rows_and_blank_lines(self, importer: BrowserImporter) -> None:
        stream = io.StringIO("name,url,username,password,note\n\nsite,https://site.test\n , , \n")
        records = list(importer.parse(stream, "s"))
        assert len(records) == 1
        assert records[0].username == ""

    def test_empty_file(self, importer: BrowserImporter) -> None:
        assert list(importer.parse(io.StringIO(""), "s")) == []

    def test_repr_hides_password(self) -> None:
        from credvault.models import CandidateRecord

        record = CandidateRecord(name="n", url="u", username="user", password="s3cret")
        assert "s3cret" not in repr(record)


class TestFirefoxExport:
    def test_parse_firefox_export(self, importer: BrowserImporter, tmp_path) -> None:
        path = write_csv(tmp_path / "Firefox.csv", [
            ["https://accounts.google.com", "me@gmail.com", "pw1", "", "https://accounts.google.com",
             "{guid-1}", "1577836800000", "1577836800000", "1577836800000"],
            ["https://www.reddit.com", "redditor", "pw2", "", "", "{guid-2}", "bad", "", ""],
        ], header=FIREFOX_HEADER)
        first, second = list(importer.parse_file(str(path)))

        assert first.name == "google.com"
        assert first.url == "https://accounts.google.com"
        assert first.username == "me@gmail.com"
        assert first.source == "Firefox"
        assert first.note == "Created: 2020-01-01T00:00:00+00:00"
        assert second.name == "reddit.com"
        assert second.note == ""


class TestParseFileValidation:
    def test_missing_file(self, importer: BrowserImporter, tmp_path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            importer.parse_file(str(tmp_path / "nope.csv"))

    def test_non_csv_file(self, importer: BrowserImporter, tmp_path) -> None:
        path = tmp_path / "passwords.txt"
        path.write_text("name,url,username,password\n", encoding="utf-8")
        with pytest.raises(ValidationError, match="Only CSV"):
            importer.parse_file(str(path))

    def test_parse_file_is_lazy(self, importer: BrowserImporter, tmp_path) -> None:
        path = write_csv(tmp_path / "Chrome.csv", [["a", "https://a/", "u", "p", ""]])
        assert isinstance(importer.parse_file(str(path)), types.GeneratorType)

    def test_non_utf8_file_is_a_validation_error(self, importer: BrowserImporter, tmp_path) -> None:
        """Given a cp1252 export, iterating raises ValidationError instead of UnicodeDecodeError."""
        path = tmp_path / "Chrome.csv"
        path.write_bytes("name,url,username,password\ncafé.com,https://cafe.test/,bob,pw\n".encode("cp1252"))

        records = importer.parse_file(str(path))
        with pytest.raises(ValidationError, match="UTF-8"):
            list(records)
