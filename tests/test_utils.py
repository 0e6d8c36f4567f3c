"""Unit tests for utility functions."""

import hashlib
from datetime import date, datetime, timezone

import pytest

from pyspeleodb.utils import (
    calculate_checksum,
    calculate_file_checksum,
    compare_versions,
    format_size,
    is_local_address,
    is_valid_oauth_token,
    normalize_instance_url,
    parse_iso_date,
    parse_iso_timestamp,
    strip_scheme,
)


class TestStripScheme:
    """Tests for strip_scheme function."""

    def test_removes_scheme_and_slashes(self):
        """Test scheme and trailing slash removal."""
        assert strip_scheme("https://www.speleodb.org/") == "www.speleodb.org"
        assert strip_scheme("HTTP://localhost:8000//") == "localhost:8000"

    def test_keeps_path(self):
        """Test that inner paths survive."""
        assert strip_scheme("example.org/speleodb/") == "example.org/speleodb"


class TestIsLocalAddress:
    """Tests for is_local_address function."""

    @pytest.mark.parametrize(
        "host",
        [
            "localhost",
            "LOCALHOST:8000",
            "127.0.0.1",
            "10.1.2.3:8080",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.0.10",
            "http://192.168.0.10:8000/api",
        ],
    )
    def test_local(self, host):
        """Test loopback and private ranges."""
        assert is_local_address(host)

    @pytest.mark.parametrize(
        "host", ["www.speleodb.org", "172.15.0.1", "172.32.0.1", "8.8.8.8", "localhost.org"]
    )
    def test_public(self, host):
        """Test public hosts."""
        assert not is_local_address(host)


class TestNormalizeInstanceUrl:
    """Tests for normalize_instance_url function."""

    def test_public_uses_https(self):
        """Test that public hosts get https, even if http was given."""
        assert normalize_instance_url("http://stage.speleodb.org") == (
            "https://stage.speleodb.org"
        )

    def test_local_uses_http(self):
        """Test that local hosts get http, even if https was given."""
        assert normalize_instance_url("https://localhost:8000/") == (
            "http://localhost:8000"
        )

    def test_empty_raises(self):
        """Test that empty values are refused."""
        with pytest.raises(ValueError):
            normalize_instance_url("http:///")


class TestChecksums:
    """Tests for checksum helpers."""

    def test_bytes_checksum(self):
        """Test against a known SHA-256."""
        assert calculate_checksum(b"") == hashlib.sha256(b"").hexdigest()
        assert calculate_checksum(b"abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_file_checksum_matches_bytes(self, tmp_path):
        """Test that chunked file hashing equals in-memory hashing."""
        data = bytes(range(256)) * 1000
        path = tmp_path / "archive.tml"
        path.write_bytes(data)
        assert calculate_file_checksum(path, chunk_size=1000) == calculate_checksum(data)


class TestOAuthToken:
    """Tests for is_valid_oauth_token function."""

    def test_valid(self):
        """Test a 40 character lowercase hex token."""
        assert is_valid_oauth_token("0123456789abcdef" * 2 + "01234567")

    @pytest.mark.parametrize(
        "token", [None, "", "a" * 39, "a" * 41, "A" * 40, "g" * 40]
    )
    def test_invalid(self, token):
        """Test wrong length, case and characters."""
        assert not is_valid_oauth_token(token)


class TestCompareVersions:
    """Tests for compare_versions function."""

    @pytest.mark.parametrize(
        "left, right, expected",
        [
            ("25.2.1", "25.10.0", -1),
            ("1.0", "1.0.0", 0),
            ("v2.0", "1.9.9", 1),
            ("2025.1.0-beta", "2025.1.0", 0),
        ],
    )
    def test_compare(self, left, right, expected):
        """Test numeric component comparison."""
        assert compare_versions(left, right) == expected


class TestTimestamps:
    """Tests for timestamp parsing."""

    def test_zulu_timestamp(self):
        """Test the Z suffix."""
        assert parse_iso_timestamp("2025-01-15T10:30:00.000000Z") == datetime(
            2025, 1, 15, 10, 30, tzinfo=timezone.utc
        )

    def test_invalid_timestamp(self):
        """Test that garbage yields None."""
        assert parse_iso_timestamp("yesterday") is None
        assert parse_iso_timestamp(None) is None

    def test_date(self):
        """Test date-only parsing."""
        assert parse_iso_date("2025-06-23") == date(2025, 6, 23)
        assert parse_iso_date("23/06/2025") is None
        assert parse_iso_date("") is None


class TestFormatSize:
    """Tests for format_size function."""

    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5.0 MB")],
    )
    def test_format(self, size, expected):
        """Test unit selection."""
        assert format_size(size) == expected
