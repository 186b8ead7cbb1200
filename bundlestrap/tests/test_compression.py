"""Tests for the compression module."""

import gzip
import io
import tarfile
import unittest

import zstandard as zstd

from bundlestrap import compression
from bundlestrap import constants


def _tar_bytes():
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w',
                      format=tarfile.USTAR_FORMAT) as tar:
        ti = tarfile.TarInfo('hello')
        ti.size = 5
        tar.addfile(ti, io.BytesIO(b'world'))
    return buf.getvalue()


class TestDetectCompression(unittest.TestCase):
    """Tests for compression detection from magic bytes."""

    def test_gzip_bytes(self):
        """Test detection of gzip data."""
        result = compression.detect_compression(gzip.compress(b'data'))
        self.assertEqual(result, constants.COMPRESSION_GZIP)

    def test_zstd_bytes(self):
        """Test detection of zstd data."""
        result = compression.detect_compression(
            zstd.ZstdCompressor().compress(b'data'))
        self.assertEqual(result, constants.COMPRESSION_ZSTD)

    def test_tar_file(self):
        """Test a plain tar file object is detected by its ustar magic."""
        f = io.BytesIO(_tar_bytes())
        result = compression.detect_compression(f)
        self.assertEqual(result, constants.COMPRESSION_NONE)
        self.assertEqual(0, f.tell())

    def test_file_position_restored(self):
        """Test the file position is left where it was."""
        f = io.BytesIO(b'prefix' + gzip.compress(b'data'))
        f.seek(6)
        result = compression.detect_compression(f)
        self.assertEqual(result, constants.COMPRESSION_GZIP)
        self.assertEqual(6, f.tell())

    def test_unknown(self):
        """Test unrecognised data."""
        result = compression.detect_compression(b'not compressed')
        self.assertEqual(result, constants.COMPRESSION_UNKNOWN)

    def test_short_data(self):
        """Test handling of very short data."""
        result = compression.detect_compression(b'x')
        self.assertEqual(result, constants.COMPRESSION_UNKNOWN)


class TestDetectCompressionFromMediaType(unittest.TestCase):
    """Tests for compression detection from media type."""

    def test_docker_gzip(self):
        """Test Docker gzip layer media type."""
        result = compression.detect_compression_from_media_type(
            constants.MEDIA_TYPE_DOCKER_LAYER_GZIP)
        self.assertEqual(result, constants.COMPRESSION_GZIP)

    def test_oci_zstd(self):
        """Test OCI zstd layer media type."""
        result = compression.detect_compression_from_media_type(
            constants.MEDIA_TYPE_OCI_LAYER_ZSTD)
        self.assertEqual(result, constants.COMPRESSION_ZSTD)

    def test_oci_uncompressed(self):
        """Test OCI uncompressed layer media type."""
        result = compression.detect_compression_from_media_type(
            constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED)
        self.assertEqual(result, constants.COMPRESSION_NONE)

    def test_none_media_type(self):
        """Test None media type."""
        result = compression.detect_compression_from_media_type(None)
        self.assertEqual(result, constants.COMPRESSION_UNKNOWN)

    def test_unknown_media_type(self):
        """Test unknown media type."""
        result = compression.detect_compression_from_media_type(
            'application/octet-stream')
        self.assertEqual(result, constants.COMPRESSION_UNKNOWN)

    def test_suffix_fallback(self):
        """Test fallback to suffix matching."""
        self.assertEqual(
            constants.COMPRESSION_GZIP,
            compression.detect_compression_from_media_type(
                'application/x-tar+gzip'))
        self.assertEqual(
            constants.COMPRESSION_ZSTD,
            compression.detect_compression_from_media_type(
                'application/x-tar+zstd'))


class TestOpenLayerStream(unittest.TestCase):
    """Tests for wrapping layer blobs in decompressing readers."""

    def test_gzip(self):
        """Test a gzip layer labelled as such."""
        stream = compression.open_layer_stream(
            io.BytesIO(gzip.compress(b'layer')),
            constants.MEDIA_TYPE_OCI_LAYER_GZIP)
        self.assertEqual(b'layer', stream.read())

    def test_zstd(self):
        """Test a zstd layer labelled as such."""
        stream = compression.open_layer_stream(
            io.BytesIO(zstd.ZstdCompressor().compress(b'layer')),
            constants.MEDIA_TYPE_OCI_LAYER_ZSTD)
        self.assertEqual(b'layer', stream.read())

    def test_mislabelled(self):
        """Test a gzip layer labelled as plain tar is sniffed."""
        stream = compression.open_layer_stream(
            io.BytesIO(gzip.compress(b'layer')),
            constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED)
        self.assertEqual(b'layer', stream.read())

    def test_plain(self):
        """Test a plain tar is passed through."""
        data = _tar_bytes()
        f = io.BytesIO(data)
        self.assertIs(f, compression.open_layer_stream(f, None))
        self.assertEqual(data, f.read())


if __name__ == '__main__':
    unittest.main()
