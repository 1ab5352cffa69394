"""
Unit tests for packaging module (dbvault/backup/packaging.py).

Tests compression, checksums, deterministic naming and validation.
"""

import gzip
from dataclasses import replace
from datetime import datetime

import pytest

from dbvault.backup.packaging import (
    PackagingError,
    calculate_checksum,
    compress_content,
    decompress_content,
    generate_filename,
    get_file_format,
    is_compressed,
    package,
    sanitize_base_name,
    validate,
    verify_checksum,
)
from dbvault.backup.types import CompressionOptions, ExportFormat, NamingOptions


NOW = datetime(2024, 1, 15, 14, 30, 5)
SQL_DUMP = b"INSERT INTO members (id, name) VALUES (1, 'Member');\n" * 200


class TestGenerateFilename:
    """Test deterministic artifact names."""

    def test_full_name(self):
        name = generate_filename('gym_database_backup', ExportFormat.SQL, compressed=True, now=NOW)

        assert name == 'gym_database_backup_2024-01-15_14-30-05_sql_compressed.sql.gz'

    def test_uncompressed_name(self):
        name = generate_filename('gym_database_backup', ExportFormat.XLSX, compressed=False, now=NOW)

        assert name == 'gym_database_backup_2024-01-15_14-30-05_xlsx.xlsx'

    def test_optional_parts(self):
        naming = NamingOptions(include_timestamp=False, include_format=False, separator='-')

        assert generate_filename('db', ExportFormat.JSON, naming, compressed=True, now=NOW) == 'db-compressed.json.gz'

    def test_idempotent(self):
        """Test identical inputs and instant give identical names."""
        first = generate_filename('db', ExportFormat.JSON, compressed=True, now=NOW)
        second = generate_filename('db', ExportFormat.JSON, compressed=True, now=NOW)

        assert first == second

    def test_sanitize_base_name(self):
        assert sanitize_base_name('my db/backup!') == 'my_db_backup_'
        assert sanitize_base_name('gym-db_2') == 'gym-db_2'


class TestCompression:
    """Test compress/decompress helpers."""

    def test_gzip_round_trip(self):
        compressed = compress_content(SQL_DUMP)

        assert len(compressed) < len(SQL_DUMP)
        assert gzip.decompress(compressed) == SQL_DUMP

    def test_gzip_output_is_deterministic(self):
        assert compress_content(SQL_DUMP) == compress_content(SQL_DUMP)

    def test_deflate(self):
        options = CompressionOptions(algorithm='deflate')
        compressed = compress_content(SQL_DUMP, options)

        assert decompress_content(compressed, 'deflate') == SQL_DUMP

    def test_invalid_level(self):
        with pytest.raises(ValueError, match='Invalid compression level'):
            compress_content(SQL_DUMP, CompressionOptions(level=10))

    def test_unknown_algorithm(self):
        with pytest.raises(PackagingError, match='Unsupported compression algorithm'):
            compress_content(SQL_DUMP, CompressionOptions(algorithm='lz4'))

    def test_decompress_garbage(self):
        with pytest.raises(PackagingError, match='Decompression failed'):
            decompress_content(b'not gzip at all')

    def test_checksum(self):
        checksum = calculate_checksum(b'hello')

        assert checksum == '2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
        assert verify_checksum('hello', checksum) is True
        assert verify_checksum(b'hello!', checksum) is False


class TestPackage:
    """Test package()."""

    def test_compressible_format(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, now=NOW)
        metadata = packaged.metadata

        assert metadata.compressed is True
        assert metadata.name.endswith('_sql_compressed.sql.gz')
        assert metadata.raw_size == len(SQL_DUMP)
        assert metadata.packaged_size == len(packaged.content)
        assert metadata.compression_ratio >= 1
        assert metadata.checksum == calculate_checksum(packaged.content)
        assert metadata.created_at == NOW
        assert metadata.algorithm == 'gzip'

    def test_deflate_artifact(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, CompressionOptions(algorithm='deflate'), now=NOW)
        metadata = packaged.metadata

        assert metadata.algorithm == 'deflate'
        assert metadata.name == 'gym_2024-01-15_14-30-05_sql_compressed.sql.zz'
        assert decompress_content(packaged.content, 'deflate') == SQL_DUMP

    def test_xlsx_never_compressed(self):
        workbook = b'PK\x03\x04' + b'\x00' * 512
        packaged = package(workbook, 'gym', ExportFormat.XLSX, now=NOW)

        assert packaged.metadata.compressed is False
        assert packaged.content == workbook
        assert packaged.metadata.packaged_size is None
        assert packaged.metadata.compression_ratio is None
        assert packaged.metadata.name.endswith('.xlsx')
        assert packaged.metadata.algorithm is None

    def test_compression_disabled(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, CompressionOptions(enabled=False), now=NOW)

        assert packaged.metadata.compressed is False
        assert packaged.content == SQL_DUMP
        assert packaged.metadata.name == 'gym_2024-01-15_14-30-05_sql.sql'

    def test_accepts_text(self):
        packaged = package('{"data": []}', 'gym', ExportFormat.JSON, now=NOW)

        assert decompress_content(packaged.content) == b'{"data": []}'


class TestValidate:
    """Test validate()."""

    @pytest.mark.parametrize('fmt', [ExportFormat.SQL, ExportFormat.JSON, ExportFormat.XLSX])
    def test_packaged_content_is_valid(self, fmt):
        packaged = package(SQL_DUMP, 'gym', fmt, now=NOW)

        result = validate(packaged.content, packaged.metadata)

        assert result.valid is True
        assert result.errors == []

    def test_deflate_artifact_is_valid(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.JSON, CompressionOptions(algorithm='deflate'), now=NOW)

        result = validate(packaged.content, packaged.metadata)

        assert result.valid is True
        assert result.errors == []

    def test_decompression_uses_recorded_algorithm(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, now=NOW)
        metadata = replace(packaged.metadata, algorithm='deflate')

        result = validate(packaged.content, metadata)

        assert result.valid is False
        assert any('Decompression test failed' in error for error in result.errors)

    def test_detects_corruption(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, now=NOW)
        corrupted = packaged.content[:-4] + b'\x00\x00\x00\x00'

        result = validate(corrupted, packaged.metadata)

        assert result.valid is False
        assert any('Checksum' in error for error in result.errors)

    def test_detects_size_mismatch(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, CompressionOptions(enabled=False), now=NOW)
        metadata = replace(packaged.metadata, raw_size=1)

        result = validate(packaged.content, metadata)

        assert result.valid is False
        assert any('size mismatch' in error for error in result.errors)

    def test_never_raises(self):
        packaged = package(SQL_DUMP, 'gym', ExportFormat.SQL, now=NOW)

        result = validate(b'garbage', packaged.metadata)

        assert result.valid is False
        assert len(result.errors) == 3


class TestFilenameHelpers:
    """Test format detection from filenames."""

    def test_get_file_format(self):
        assert get_file_format('db_sql_compressed.sql.gz') is ExportFormat.SQL
        assert get_file_format('db.json') is ExportFormat.JSON
        assert get_file_format('db.xlsx') is ExportFormat.XLSX
        assert get_file_format('db.tar') is None
        assert get_file_format('db_sql_compressed.sql.zz') is ExportFormat.SQL

    def test_is_compressed(self):
        assert is_compressed('db.sql.gz') is True
        assert is_compressed('db.sql') is False
        assert is_compressed('db.json.zz') is True
