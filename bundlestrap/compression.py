"""Compression utilities for container image layers.

This module provides detection and streaming decompression for the gzip
and zstd formats used in Docker/OCI image layers, so that a layer blob can
be handed to tarfile as a plain tar stream.
"""

import gzip

import zstandard as zstd

from bundlestrap import constants


# Magic bytes for compression format detection
GZIP_MAGIC = b'\x1f\x8b'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'


def detect_compression(data):
    """Detect compression format from magic bytes.

    Args:
        data: Bytes or seekable file-like object with at least 4 bytes.

    Returns:
        One of COMPRESSION_GZIP, COMPRESSION_ZSTD, COMPRESSION_NONE,
        or COMPRESSION_UNKNOWN.
    """
    if hasattr(data, 'read'):
        pos = data.tell()
        magic = data.read(4)
        data.seek(pos)
    else:
        magic = data[:4]

    if len(magic) < 2:
        return constants.COMPRESSION_UNKNOWN

    if magic[:2] == GZIP_MAGIC:
        return constants.COMPRESSION_GZIP
    if len(magic) >= 4 and magic[:4] == ZSTD_MAGIC:
        return constants.COMPRESSION_ZSTD

    # Check for tar magic at offset 257 (ustar format)
    if hasattr(data, 'read'):
        pos = data.tell()
        data.seek(pos + 257)
        tar_magic = data.read(5)
        data.seek(pos)
        if tar_magic == b'ustar':
            return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


def detect_compression_from_media_type(media_type):
    """Detect compression format from OCI/Docker media type.

    Args:
        media_type: Media type string from manifest.

    Returns:
        One of COMPRESSION_GZIP, COMPRESSION_ZSTD, COMPRESSION_NONE,
        or COMPRESSION_UNKNOWN.
    """
    if media_type is None:
        return constants.COMPRESSION_UNKNOWN

    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_GZIP,
                      constants.MEDIA_TYPE_DOCKER_LAYER_FOREIGN_GZIP,
                      constants.MEDIA_TYPE_OCI_LAYER_GZIP,
                      constants.MEDIA_TYPE_OCI_LAYER_NONDIST_GZIP):
        return constants.COMPRESSION_GZIP
    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_ZSTD,
                      constants.MEDIA_TYPE_OCI_LAYER_ZSTD):
        return constants.COMPRESSION_ZSTD
    if media_type == constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED:
        return constants.COMPRESSION_NONE

    # Fallback: check for known suffixes
    if media_type.endswith('+gzip') or media_type.endswith('.gzip'):
        return constants.COMPRESSION_GZIP
    if media_type.endswith('+zstd') or media_type.endswith('.zstd'):
        return constants.COMPRESSION_ZSTD
    if media_type.endswith('.tar') and '+' not in media_type:
        return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


def open_layer_stream(fileobj, media_type=None):
    """Wrap a compressed layer blob in a decompressing reader.

    The media type is trusted first. Docker archives label every layer as
    a plain tar even when it is not, so when the media type is missing or
    claims no compression we fall back to sniffing the magic bytes.

    Args:
        fileobj: Seekable binary file object positioned at the blob start.
        media_type: The layer's media type from the manifest, if known.

    Returns:
        A binary file-like object yielding the uncompressed tar stream.
    """
    compression_type = detect_compression_from_media_type(media_type)
    if compression_type in (constants.COMPRESSION_UNKNOWN,
                            constants.COMPRESSION_NONE):
        sniffed = detect_compression(fileobj)
        if sniffed != constants.COMPRESSION_UNKNOWN:
            compression_type = sniffed

    if compression_type == constants.COMPRESSION_GZIP:
        return gzip.GzipFile(fileobj=fileobj, mode='rb')
    if compression_type == constants.COMPRESSION_ZSTD:
        return zstd.ZstdDecompressor().stream_reader(fileobj)
    return fileobj
