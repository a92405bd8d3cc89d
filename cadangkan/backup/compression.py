"""
Compression and checksum handling for backup artifacts.

Supports:
- gzip: Standard gzip stream (artifact extension .sql.gz)
- none: Raw SQL text (artifact extension .sql)
- zstd: Reserved, recognized but not implemented

The checksum recorded for an artifact is the SHA-256 of the bytes as they
sit on disk, i.e. of the compressed stream. Verifying an artifact therefore
never requires decompressing it.
"""

import gzip
import hashlib
import io
import os
import zlib
from dataclasses import dataclass
from typing import BinaryIO

from .errors import BackupError


COMPRESSION_GZIP = 'gzip'
COMPRESSION_ZSTD = 'zstd'
COMPRESSION_NONE = 'none'

CHECKSUM_PREFIX = 'sha256:'

# Read/write chunk size for streaming
CHUNK_SIZE = 64 * 1024

# Compressed/raw ratio used when estimating space for gzip dumps
GZIP_SIZE_RATIO = 0.35

EXTENSION_MAP = {
    COMPRESSION_GZIP: '.sql.gz',
    COMPRESSION_ZSTD: '.sql.zst',
    COMPRESSION_NONE: '.sql',
}


class CompressionError(BackupError):
    """Raised when compressing, decompressing or hashing a stream fails."""
    pass


class UnsupportedCompressionError(CompressionError, NotImplementedError):
    """Raised for codecs that are recognized but not implemented yet."""
    pass


@dataclass
class CompressResult:
    """Outcome of a streaming compression pass."""
    bytes_read: int
    bytes_written: int
    checksum: str


def get_extension(compression: str) -> str:
    """
    Get the artifact file extension for a codec.

    Unknown codecs fall back to the gzip extension.
    """
    return EXTENSION_MAP.get(compression, EXTENSION_MAP[COMPRESSION_GZIP])


def is_supported(compression: str) -> bool:
    """True if the codec is implemented."""
    return compression in (COMPRESSION_GZIP, COMPRESSION_NONE)


def estimate_compressed_size(raw_size: int, compression: str) -> int:
    """Estimate the on-disk size of a dump of raw_size bytes."""
    if compression == COMPRESSION_GZIP:
        return int(raw_size * GZIP_SIZE_RATIO)
    return raw_size


def _check_codec(compression: str):
    if compression == COMPRESSION_ZSTD:
        raise UnsupportedCompressionError("zstd compression not implemented")
    if compression not in (COMPRESSION_GZIP, COMPRESSION_NONE):
        raise CompressionError(f"Unknown compression type: {compression}")


class _HashingWriter(io.RawIOBase):
    """File wrapper that hashes and counts every byte written through it."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj
        self._hash = hashlib.sha256()
        self.bytes_written = 0

    def writable(self):
        return True

    def write(self, data):
        self._fileobj.write(data)
        self._hash.update(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self):
        if not self._fileobj.closed:
            self._fileobj.flush()

    @property
    def checksum(self) -> str:
        return CHECKSUM_PREFIX + self._hash.hexdigest()


class Compressor:
    """
    Streams raw dump output into an artifact file.

    Args:
        compression: Codec name ('gzip' or 'none')
        level: gzip level 1-9, default 6
    """

    def __init__(self, compression: str = COMPRESSION_GZIP, level: int = 6):
        _check_codec(compression)
        self.compression = compression
        self.level = level if 1 <= level <= 9 else 6

    @property
    def extension(self) -> str:
        return get_extension(self.compression)

    def stream_compress(self, reader: BinaryIO, output_path: str) -> CompressResult:
        """
        Read all of reader and write the encoded stream to output_path.

        The checksum is computed over the bytes written to output_path in the
        same pass.

        Args:
            reader: Binary stream with raw data
            output_path: Destination file, truncated if it exists

        Returns:
            CompressResult with raw and written byte counts and the checksum

        Raises:
            CompressionError: If reading or writing fails
        """
        bytes_read = 0
        try:
            with open(output_path, 'wb') as out:
                sink = _HashingWriter(out)
                if self.compression == COMPRESSION_GZIP:
                    encoder = gzip.GzipFile(
                        filename='',
                        mode='wb',
                        compresslevel=self.level,
                        fileobj=sink,
                        mtime=0
                    )
                else:
                    encoder = sink

                try:
                    while True:
                        chunk = reader.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        encoder.write(chunk)
                        bytes_read += len(chunk)
                finally:
                    if encoder is not sink:
                        encoder.close()
                sink.flush()

                return CompressResult(
                    bytes_read=bytes_read,
                    bytes_written=sink.bytes_written,
                    checksum=sink.checksum
                )
        except OSError as e:
            raise CompressionError(f"Failed to compress to {output_path}: {e}") from e


class _DecodingReader(io.RawIOBase):
    """Reader that turns codec failures into CompressionError."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream

    def readable(self):
        return True

    def read(self, size=-1):
        try:
            return self._stream.read(size)
        except (OSError, EOFError, zlib.error) as e:
            raise CompressionError(f"Failed to decompress stream: {e}") from e

    def readinto(self, buffer):
        data = self.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)

    def close(self):
        try:
            self._stream.close()
        finally:
            super().close()


class Decompressor:
    """Reverses the codec an artifact was written with."""

    def __init__(self, compression: str = COMPRESSION_GZIP):
        _check_codec(compression)
        self.compression = compression

    def decompress_to_reader(self, fileobj: BinaryIO) -> BinaryIO:
        """
        Wrap an artifact stream in a reader that yields the raw SQL bytes.

        Corrupt or truncated input raises CompressionError from read().
        """
        if self.compression == COMPRESSION_GZIP:
            return _DecodingReader(gzip.GzipFile(fileobj=fileobj, mode='rb'))
        return _DecodingReader(fileobj)


def calculate_checksum(file_path: str) -> str:
    """
    Calculate the SHA-256 checksum of a file.

    Args:
        file_path: Path to the file

    Returns:
        Checksum as "sha256:<lowercase hex>"

    Raises:
        CompressionError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
    except OSError as e:
        raise CompressionError(f"Failed to read {file_path} for checksum: {e}") from e
    return CHECKSUM_PREFIX + digest.hexdigest()


def verify_checksum(file_path: str, expected: str) -> bool:
    """True if the file's checksum equals expected."""
    return calculate_checksum(file_path) == expected


def get_file_size(file_path: str) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionError: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(file_path)
    except FileNotFoundError as e:
        raise CompressionError(f"File not found: {file_path}") from e
    except OSError as e:
        raise CompressionError(f"Failed to get file size: {e}") from e
