"""
Unit tests for compression (cadangkan/backup/compression.py).

Tests streaming compression, checksums over the stored bytes and
decompression of stored artifacts.
"""

import gzip
import hashlib
import io

import pytest

from cadangkan.backup.compression import (
    CompressionError,
    Compressor,
    Decompressor,
    UnsupportedCompressionError,
    calculate_checksum,
    estimate_compressed_size,
    get_extension,
    get_file_size,
    is_supported,
    verify_checksum,
)


class TestCodecHelpers:
    """Test codec name helpers."""

    def test_extensions(self):
        assert get_extension('gzip') == '.sql.gz'
        assert get_extension('zstd') == '.sql.zst'
        assert get_extension('none') == '.sql'

    def test_unknown_codec_extension_falls_back_to_gzip(self):
        assert get_extension('lz4') == '.sql.gz'

    def test_is_supported(self):
        assert is_supported('gzip')
        assert is_supported('none')
        assert not is_supported('zstd')
        assert not is_supported('bz2')

    def test_estimate_compressed_size(self):
        assert estimate_compressed_size(1000, 'gzip') == 350
        assert estimate_compressed_size(1000, 'none') == 1000

    def test_zstd_is_unsupported(self):
        """Test zstd is reserved but not implemented."""
        with pytest.raises(UnsupportedCompressionError):
            Compressor('zstd')
        with pytest.raises(NotImplementedError):
            Decompressor('zstd')

    def test_unknown_codec_rejected(self):
        with pytest.raises(CompressionError):
            Compressor('bz2')


class TestCompressor:
    """Test streaming compression."""

    def test_gzip_output_is_valid_gzip(self, tmp_path):
        data = b'INSERT INTO t VALUES (1);\n' * 1000
        path = str(tmp_path / 'out.sql.gz')

        result = Compressor('gzip').stream_compress(io.BytesIO(data), path)

        with gzip.open(path, 'rb') as f:
            assert f.read() == data
        assert result.bytes_read == len(data)

    def test_checksum_covers_stored_bytes(self, tmp_path):
        """Test the streamed checksum equals the checksum of the file on disk."""
        data = b'CREATE TABLE t (id INT);\n' * 500
        path = str(tmp_path / 'out.sql.gz')

        result = Compressor('gzip').stream_compress(io.BytesIO(data), path)

        with open(path, 'rb') as f:
            stored = f.read()
        assert result.checksum == 'sha256:' + hashlib.sha256(stored).hexdigest()
        assert result.checksum == calculate_checksum(path)
        assert result.bytes_written == len(stored)

    def test_none_codec_copies_bytes(self, tmp_path):
        data = b'SELECT 1;\n'
        path = str(tmp_path / 'out.sql')

        result = Compressor('none').stream_compress(io.BytesIO(data), path)

        with open(path, 'rb') as f:
            assert f.read() == data
        assert result.bytes_read == result.bytes_written == len(data)

    def test_output_is_deterministic(self, tmp_path):
        """Test identical input gives identical artifacts (no gzip mtime)."""
        data = b'INSERT INTO t VALUES (42);\n' * 10
        first = Compressor('gzip').stream_compress(io.BytesIO(data), str(tmp_path / 'a.sql.gz'))
        second = Compressor('gzip').stream_compress(io.BytesIO(data), str(tmp_path / 'b.sql.gz'))

        assert first.checksum == second.checksum

    def test_empty_input(self, tmp_path):
        path = str(tmp_path / 'empty.sql.gz')

        result = Compressor('gzip').stream_compress(io.BytesIO(b''), path)

        assert result.bytes_read == 0
        with gzip.open(path, 'rb') as f:
            assert f.read() == b''

    def test_unwritable_destination(self, tmp_path):
        with pytest.raises(CompressionError):
            Compressor('gzip').stream_compress(
                io.BytesIO(b'data'), str(tmp_path / 'missing' / 'out.sql.gz')
            )

    def test_invalid_level_falls_back_to_default(self):
        assert Compressor('gzip', level=42).level == 6


class TestDecompressor:
    """Test reading artifacts back."""

    def test_gzip_round_trip(self, tmp_path):
        data = b'INSERT INTO orders VALUES (1, "a");\n' * 2000
        path = str(tmp_path / 'out.sql.gz')
        Compressor('gzip').stream_compress(io.BytesIO(data), path)

        with open(path, 'rb') as f:
            reader = Decompressor('gzip').decompress_to_reader(f)
            assert reader.read() == data

    def test_corrupt_gzip_raises_compression_error(self, tmp_path):
        path = tmp_path / 'bad.sql.gz'
        path.write_bytes(b'this is not gzip data at all')

        with open(path, 'rb') as f:
            reader = Decompressor('gzip').decompress_to_reader(f)
            with pytest.raises(CompressionError):
                reader.read()

    def test_none_codec_passes_through(self, tmp_path):
        path = tmp_path / 'plain.sql'
        path.write_bytes(b'SELECT 1;\n')

        with open(path, 'rb') as f:
            assert Decompressor('none').decompress_to_reader(f).read() == b'SELECT 1;\n'


class TestChecksums:
    """Test checksum helpers."""

    def test_calculate_checksum_format(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'abc')

        checksum = calculate_checksum(str(path))

        assert checksum == 'sha256:ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad'

    def test_verify_checksum_detects_single_byte_change(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'hello world')
        expected = calculate_checksum(str(path))

        path.write_bytes(b'hello worle')

        assert not verify_checksum(str(path), expected)

    def test_calculate_checksum_missing_file(self, tmp_path):
        with pytest.raises(CompressionError):
            calculate_checksum(str(tmp_path / 'missing'))

    def test_get_file_size(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'12345')

        assert get_file_size(str(path)) == 5

        with pytest.raises(CompressionError, match='File not found'):
            get_file_size(str(tmp_path / 'missing'))
