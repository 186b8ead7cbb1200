"""Tests for the SIF reader and the signature gate."""

import os
import shutil
import struct
import tempfile
from unittest import mock

import testtools

from bundlestrap import bundle
from bundlestrap import constants
from bundlestrap import context
from bundlestrap.conveyors import local
from bundlestrap import exceptions
from bundlestrap import sif
from bundlestrap import verify


FINGERPRINT = bytes(range(1, 21))


def partition_extra(fs_type, part_type, arch='02'):
    return struct.pack(sif.PARTITION_FORMAT, fs_type, part_type,
                       arch.encode('ascii'))


def signature_extra(fingerprint=FINGERPRINT):
    return struct.pack(sif.SIGNATURE_FORMAT, 8, fingerprint)


def write_sif(path, objects):
    """Write a minimal SIF.

    objects is a list of (data_type, name, extra, data) tuples.
    """
    table_size = sif.DESCRIPTOR_SIZE * len(objects)
    data_offset = sif.HEADER_SIZE + table_size

    descriptors = b''
    payload = b''
    for i, (data_type, name, extra, data) in enumerate(objects):
        offset = data_offset + len(payload)
        descriptors += struct.pack(
            sif.DESCRIPTOR_FORMAT, data_type, True, i + 1,
            sif.GROUP_MASK | 1, 0, offset, len(data), len(data), 0, 0, 0, 0,
            name.encode('utf-8'), extra)
        payload += data

    header = struct.pack(
        sif.HEADER_FORMAT, b'#!/usr/bin/env run-singularity\n',
        sif.SIF_MAGIC, b'01', b'02', b'\0' * 16, 0, 0, 0, len(objects),
        sif.HEADER_SIZE, table_size, data_offset, len(payload))
    with open(path, 'wb') as f:
        f.write(header + descriptors + payload)
    return path


class SIFTestCase(testtools.TestCase):
    def setUp(self):
        super(SIFTestCase, self).setUp()
        self.base = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.base, ignore_errors=True)

    def _path(self, name):
        return os.path.join(self.base, name)

    def test_image_type(self):
        """Test images are recognised by their magic."""
        write_sif(self._path('image.sif'), [])
        self.assertEqual(sif.IMAGE_SIF,
                         sif.image_type(self._path('image.sif')))

        with open(self._path('image.sqfs'), 'wb') as f:
            f.write(sif.SQUASHFS_MAGIC + b'\0' * 200)
        self.assertEqual(sif.IMAGE_SQUASHFS,
                         sif.image_type(self._path('image.sqfs')))

        with open(self._path('image.ext3'), 'wb') as f:
            f.write(b'\0' * sif.EXT_MAGIC_OFFSET + sif.EXT_MAGIC + b'\0' * 10)
        self.assertEqual(sif.IMAGE_EXT3,
                         sif.image_type(self._path('image.ext3')))

        self.assertEqual(sif.IMAGE_SANDBOX, sif.image_type(self.base))

        with open(self._path('junk'), 'wb') as f:
            f.write(b'junk')
        self.assertRaises(exceptions.ExtractionFailedError,
                          sif.image_type, self._path('junk'))

    def test_descriptors(self):
        """Test partitions, signatures and the OCI config are found."""
        path = write_sif(self._path('image.sif'), [
            (sif.DATA_DEFFILE, 'definition', b'', b'Bootstrap: docker\n'),
            (sif.DATA_PARTITION, 'rootfs',
             partition_extra(sif.FS_SQUASH, sif.PART_PRIMARY_SYSTEM),
             b'hsqs' + b'\0' * 60),
            (sif.DATA_SIGNATURE, 'sig', signature_extra(), b'-----SIG-----'),
            (sif.DATA_GENERIC_JSON, sif.OCI_CONFIG_NAME, b'',
             b'{"Cmd": ["sh"]}'),
        ])
        image = sif.SIFImage(path)

        self.assertEqual(4, len(image.descriptors))
        self.assertEqual(1, image.descriptors[0].group_id)

        part = image.primary_partition()
        self.assertEqual(sif.FS_SQUASH, part.fs_type)
        self.assertEqual('02', part.arch)
        self.assertEqual(b'hsqs', image.read(part.descriptor)[:4])

        sigs = image.signatures()
        self.assertEqual(1, len(sigs))
        self.assertEqual(FINGERPRINT.hex().upper(), sigs[0].fingerprint)

        self.assertEqual(b'{"Cmd": ["sh"]}', image.oci_config())

    def test_no_primary_partition(self):
        """Test an image without a primary system partition."""
        path = write_sif(self._path('image.sif'), [
            (sif.DATA_PARTITION, 'data',
             partition_extra(sif.FS_RAW, sif.PART_DATA), b'raw')])
        self.assertRaises(sif.SIFFormatError,
                          sif.SIFImage(path).primary_partition)

    def test_not_sif(self):
        """Test short and non SIF files are format errors."""
        with open(self._path('short'), 'wb') as f:
            f.write(b'SIF')
        self.assertRaises(sif.SIFFormatError, sif.SIFImage,
                          self._path('short'))

        with open(self._path('other'), 'wb') as f:
            f.write(b'\0' * (sif.HEADER_SIZE + 10))
        self.assertRaises(sif.SIFFormatError, sif.SIFImage,
                          self._path('other'))


class VerifyTestCase(testtools.TestCase):
    def setUp(self):
        super(VerifyTestCase, self).setUp()
        self.base = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.base, ignore_errors=True)
        self.ctx = context.BuildContext()
        self.signed = write_sif(os.path.join(self.base, 'signed.sif'), [
            (sif.DATA_SIGNATURE, 'sig', signature_extra(), b'sig')])
        self.unsigned = write_sif(os.path.join(self.base, 'unsigned.sif'),
                                  [])
        self.fingerprint = FINGERPRINT.hex().upper()

    def test_parse_fingerprints(self):
        """Test the fingerprints header format."""
        self.assertEqual(['AB', 'cd'],
                         verify.parse_fingerprints(' AB, cd,, # comment'))
        self.assertEqual([], verify.parse_fingerprints(''))

    def test_unsigned(self):
        """Test an unsigned image has no signatures to verify."""
        self.assertRaises(exceptions.SignatureNotFoundError,
                          verify.Verifier(self.ctx).verify, self.unsigned)

    def test_wrong_signer(self):
        """Test a missing required fingerprint."""
        self.assertRaises(exceptions.FingerprintMismatchError,
                          verify.Verifier(self.ctx).verify, self.signed,
                          ['00' * 20])

    @mock.patch('bundlestrap.verify.util.run_tool')
    @mock.patch('bundlestrap.verify.util.find_bin',
                return_value='/usr/bin/apptainer')
    def test_verified(self, mock_find_bin, mock_run_tool):
        """Test the verifier tool is run for the image."""
        verify.Verifier(self.ctx, {'url': 'https://keys.example.com'}).verify(
            self.signed, [self.fingerprint.lower()])
        mock_run_tool.assert_called_once_with(
            self.ctx, ['/usr/bin/apptainer', 'verify', '--url',
                       'https://keys.example.com', self.signed],
            logger=verify.LOG)

    @mock.patch('bundlestrap.verify.util.find_bin',
                side_effect=exceptions.ToolMissingError('x'))
    def test_no_verifier(self, mock_find_bin):
        """Test a missing verifier tool."""
        self.assertRaises(exceptions.ToolMissingError,
                          verify.Verifier(self.ctx).verify, self.signed)

    def test_gate_unsigned_without_fingerprints(self):
        """Test unsigned images pass when no fingerprints are required."""
        verify.check_local_image(verify.Verifier(self.ctx), self.unsigned, '')

    def test_gate_unsigned_with_fingerprints(self):
        """Test unsigned images fail when fingerprints are required."""
        self.assertRaises(exceptions.FingerprintMismatchError,
                          verify.check_local_image,
                          verify.Verifier(self.ctx), self.unsigned,
                          self.fingerprint)

    @mock.patch('bundlestrap.verify.util.run_tool',
                side_effect=exceptions.CommandFailedError(
                    ['verify'], 255, '', 'bad signature'))
    @mock.patch('bundlestrap.verify.util.find_bin',
                return_value='/usr/bin/apptainer')
    def test_gate_bad_signature(self, mock_find_bin, mock_run_tool):
        """Test a bad signature is fatal only with fingerprints."""
        verifier = verify.Verifier(self.ctx)
        verify.check_local_image(verifier, self.signed, '')
        self.assertRaises(exceptions.FingerprintMismatchError,
                          verify.check_local_image, verifier, self.signed,
                          self.fingerprint)


class SIFPackerTestCase(testtools.TestCase):
    def setUp(self):
        super(SIFPackerTestCase, self).setUp()
        self.base = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.base, ignore_errors=True)
        self.rootfs = os.path.join(self.base, 'rootfs')
        os.mkdir(self.rootfs)
        self.bundle = bundle.Bundle(self.base, self.rootfs, self.base)
        self.ctx = context.BuildContext()

    def _sif(self, fs_type):
        return write_sif(os.path.join(self.base, 'image.sif'), [
            (sif.DATA_DEFFILE, 'definition', b'', b'Bootstrap: docker\n'),
            (sif.DATA_PARTITION, 'rootfs',
             partition_extra(fs_type, sif.PART_PRIMARY_SYSTEM),
             b'p' * 64),
            (sif.DATA_GENERIC_JSON, sif.OCI_CONFIG_NAME, b'',
             b'{"Cmd": ["sh"]}'),
        ])

    def _partition_offset(self):
        # Header, three descriptors, then the definition's 18 bytes.
        return sif.HEADER_SIZE + 3 * sif.DESCRIPTOR_SIZE + 18

    @mock.patch('bundlestrap.unpack.unpack_squashfs')
    def test_squashfs_partition(self, mock_unsquashfs):
        """Test the primary partition is extracted from its offset."""
        path = self._sif(sif.FS_SQUASH)
        local.SIFPacker(path, self.bundle).pack(self.ctx)

        mock_unsquashfs.assert_called_once_with(
            self.ctx, path, self.rootfs, self.base,
            offset=self._partition_offset(), size=64)
        self.assertEqual(
            b'{"Cmd": ["sh"]}',
            self.bundle.json_objects[constants.JSON_OBJECT_OCI_CONFIG])

    @mock.patch('bundlestrap.unpack.unpack_ext3')
    def test_ext3_partition(self, mock_ext3):
        """Test an ext3 primary partition is loop mounted at its offset."""
        path = self._sif(sif.FS_EXT3)
        local.SIFPacker(path, self.bundle).pack(self.ctx)
        mock_ext3.assert_called_once_with(
            self.ctx, path, self.rootfs, self.base,
            offset=self._partition_offset(), size=64)

    def test_unsupported_partition(self):
        """Test a raw primary partition can't be extracted."""
        path = self._sif(sif.FS_RAW)
        self.assertRaises(exceptions.ExtractionFailedError,
                          local.SIFPacker(path, self.bundle).pack, self.ctx)
