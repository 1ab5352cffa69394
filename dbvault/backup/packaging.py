"""
Packaging of raw export bytes into backup artifacts.

Packaging is:
- Compression (gzip or deflate, skipped for formats that are already compressed)
- A SHA-256 checksum of the final bytes
- A deterministic filename: {base}_{YYYY-MM-DD_HH-MM-SS}_{format}[_compressed].{ext}[.gz|.zz]
"""

import gzip
import hashlib
import logging
import os
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from .types import Artifact, CompressionOptions, ExportFormat, NamingOptions


logger = logging.getLogger(__name__)

# algorithm -> (filename suffix, content type)
COMPRESSION_ALGORITHMS = {
    'gzip': ('.gz', 'application/gzip'),
    'deflate': ('.zz', 'application/zlib'),
}


class PackagingError(Exception):
    """Raised when compression or decompression fails."""
    pass


@dataclass
class PackagedArtifact:
    content: bytes
    metadata: Artifact


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _as_bytes(content: Union[str, bytes]) -> bytes:
    if isinstance(content, str):
        return content.encode('utf-8')
    return bytes(content)


def sanitize_base_name(base_name: str) -> str:
    """Replace anything but letters, digits, '-' and '_' with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in base_name
    )


def generate_filename(
    base_name: str,
    fmt: ExportFormat,
    naming: NamingOptions = NamingOptions(),
    compressed: bool = False,
    now: Optional[datetime] = None,
    algorithm: str = 'gzip',
) -> str:
    """
    Generate a deterministic artifact filename.

    Args:
        base_name: Base name of the backup
        fmt: Export format
        naming: Which parts to include and how to join them
        compressed: Whether the content is compressed
        now: Instant used for the timestamp part (defaults to current time)
        algorithm: Compression algorithm, selects the suffix added when compressed

    Returns:
        Filename (without path)
    """
    parts = [sanitize_base_name(base_name)]

    if naming.include_timestamp:
        parts.append((now or datetime.now()).strftime(naming.timestamp_format))

    if naming.include_format:
        parts.append(fmt.value)

    if naming.include_compression and compressed:
        parts.append('compressed')

    extension = f".{fmt.extension}"
    if compressed:
        extension += compression_suffix(algorithm)

    return naming.separator.join(parts) + extension


def compression_suffix(algorithm: str) -> str:
    """
    Filename suffix for content compressed with the given algorithm.

    Raises:
        PackagingError: If the algorithm is unknown
    """
    try:
        return COMPRESSION_ALGORITHMS[algorithm][0]
    except KeyError:
        raise PackagingError(f"Unsupported compression algorithm: {algorithm}")


def compression_content_type(algorithm: str) -> str:
    return COMPRESSION_ALGORITHMS.get(algorithm, COMPRESSION_ALGORITHMS['gzip'])[1]


def compress_content(content: Union[str, bytes], options: CompressionOptions = CompressionOptions()) -> bytes:
    """
    Compress content with the configured algorithm.

    Raises:
        PackagingError: If the algorithm is unknown or compression fails
        ValueError: If the compression level is out of range
    """
    if not 1 <= options.level <= 9:
        raise ValueError(f"Invalid compression level: {options.level}. Valid range: 1-9")

    data = _as_bytes(content)

    try:
        if options.algorithm == 'gzip':
            # fixed mtime keeps output byte-identical across runs
            return gzip.compress(data, compresslevel=options.level, mtime=0)
        if options.algorithm == 'deflate':
            return zlib.compress(data, options.level)
    except Exception as e:
        raise PackagingError(f"Compression failed: {e}")

    raise PackagingError(f"Unsupported compression algorithm: {options.algorithm}")


def decompress_content(content: bytes, algorithm: str = 'gzip') -> bytes:
    """
    Decompress content.

    Raises:
        PackagingError: If the content cannot be decompressed
    """
    try:
        if algorithm == 'gzip':
            return gzip.decompress(content)
        if algorithm == 'deflate':
            return zlib.decompress(content)
    except Exception as e:
        raise PackagingError(f"Decompression failed: {e}")

    raise PackagingError(f"Unsupported decompression algorithm: {algorithm}")


def calculate_checksum(content: Union[str, bytes]) -> str:
    return hashlib.sha256(_as_bytes(content)).hexdigest()


def verify_checksum(content: Union[str, bytes], expected: str) -> bool:
    return calculate_checksum(content) == expected


def package(
    raw_content: Union[str, bytes],
    base_name: str,
    fmt: ExportFormat,
    compression: CompressionOptions = CompressionOptions(),
    naming: NamingOptions = NamingOptions(),
    now: Optional[datetime] = None,
) -> PackagedArtifact:
    """
    Package raw export content into an artifact.

    Compression is skipped for formats that are not compressible even when
    enabled in the options.

    Args:
        raw_content: Exporter output
        base_name: Base name for the artifact file
        fmt: Export format of the content
        compression: Compression options
        naming: Filename options
        now: Instant used for naming and created_at

    Returns:
        PackagedArtifact with the final bytes and their metadata

    Raises:
        PackagingError: If compression fails
    """
    now = now or datetime.now()
    raw = _as_bytes(raw_content)
    should_compress = compression.enabled and fmt.compressible

    content = compress_content(raw, compression) if should_compress else raw

    metadata = Artifact(
        name=generate_filename(base_name, fmt, naming, should_compress, now, compression.algorithm),
        format=fmt,
        raw_size=len(raw),
        checksum=calculate_checksum(content),
        compressed=should_compress,
        created_at=now,
        algorithm=compression.algorithm if should_compress else None,
    )

    if should_compress:
        metadata.packaged_size = len(content)
        metadata.compression_ratio = len(raw) / len(content) if content else 1.0
        logger.info(
            f"Compressed {metadata.name}: {len(raw)} -> {len(content)} bytes "
            f"({metadata.compression_ratio:.2f}x)"
        )

    logger.info(f"Packaged {metadata.name} (checksum {metadata.checksum[:16]}...)")
    return PackagedArtifact(content=content, metadata=metadata)


def validate(content: bytes, metadata: Artifact) -> ValidationResult:
    """
    Check packaged bytes against their metadata.

    Verifies the checksum, the expected size and, for compressed content,
    that it still decompresses with the algorithm recorded in the metadata.
    Problems are reported, never raised.

    Returns:
        ValidationResult with every problem found
    """
    errors = []

    try:
        if not verify_checksum(content, metadata.checksum):
            errors.append('Checksum verification failed - file may be corrupted')

        expected_size = metadata.packaged_size if metadata.compressed else metadata.raw_size
        if expected_size is not None and len(content) != expected_size:
            errors.append(f"File size mismatch - expected {expected_size}, got {len(content)}")

        if metadata.compressed:
            try:
                decompress_content(content, metadata.algorithm or 'gzip')
            except PackagingError as e:
                errors.append(f"Decompression test failed: {e}")
    except Exception as e:
        errors.append(f"Validation error: {e}")

    if errors:
        logger.warning(f"Validation failed for {metadata.name}: {'; '.join(errors)}")

    return ValidationResult(valid=not errors, errors=errors)


def get_file_format(filename: str) -> Optional[ExportFormat]:
    """
    Get the export format from a filename, ignoring a compression suffix.

    Returns:
        ExportFormat, or None if the extension is not a known format
    """
    filename = _strip_compression_suffix(filename)
    extension = os.path.splitext(filename)[1].lstrip('.').lower()
    try:
        return ExportFormat(extension)
    except ValueError:
        return None


def _strip_compression_suffix(filename: str) -> str:
    for suffix, _ in COMPRESSION_ALGORITHMS.values():
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return filename


def compression_algorithm(filename: str) -> Optional[str]:
    """Algorithm implied by a filename suffix, or None if uncompressed."""
    for algorithm, (suffix, _) in COMPRESSION_ALGORITHMS.items():
        if filename.endswith(suffix):
            return algorithm
    return None


def is_compressed(filename: str) -> bool:
    return compression_algorithm(filename) is not None
