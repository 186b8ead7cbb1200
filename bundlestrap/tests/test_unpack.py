"""Tests for rootfs extraction.

Layers are built in memory with tarfile and applied rootless, so the
tests behave the same as root and as a normal user.
"""

import gzip
import io
import json
import os
import stat
import tarfile
import tempfile
from unittest import mock

import testtools

from bundlestrap import bundle
from bundlestrap import constants
from bundlestrap import context
from bundlestrap import exceptions
from bundlestrap import layout
from bundlestrap import unpack


def _dir(name, mode=0o755):
    ti = tarfile.TarInfo(name)
    ti.type = tarfile.DIRTYPE
    ti.mode = mode
    return ti, None


def _file(name, data=b'', mode=0o644):
    ti = tarfile.TarInfo(name)
    ti.size = len(data)
    ti.mode = mode
    return ti, io.BytesIO(data)


def _symlink(name, target):
    ti = tarfile.TarInfo(name)
    ti.type = tarfile.SYMTYPE
    ti.linkname = target
    return ti, None


def _hardlink(name, target):
    ti = tarfile.TarInfo(name)
    ti.type = tarfile.LNKTYPE
    ti.linkname = target
    return ti, None


def _layer(*entries):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tar:
        for tarinfo, fileobj in entries:
            tar.addfile(tarinfo, fileobj)
    return buf.getvalue()


def _mode(path):
    return stat.S_IMODE(os.lstat(path).st_mode)


class UnpackTestCase(testtools.TestCase):
    def setUp(self):
        super(UnpackTestCase, self).setUp()
        self.base = tempfile.mkdtemp()
        self.addCleanup(bundle.force_remove, self.base)
        self.rootfs = os.path.join(self.base, 'rootfs')
        os.mkdir(self.rootfs)
        self.ctx = context.BuildContext()

    def _apply(self, *layers):
        applier = unpack.LayerApplier(self.rootfs, rootless=True)
        for data in layers:
            unpack.apply_tar_stream(self.ctx, applier, io.BytesIO(data),
                                    'test layer')
        applier.finalize()

    def _path(self, name):
        return os.path.join(self.rootfs, name)


class LayerApplierTestCase(UnpackTestCase):
    def test_basic(self):
        """Test files, directories and symlinks with their modes."""
        self._apply(_layer(
            _dir('etc'),
            _file('etc/motd', b'hello', mode=0o640),
            _file('bin/tool', b'#!/bin/sh\n', mode=0o755),
            _symlink('usr', 'bin')))

        with open(self._path('etc/motd'), 'rb') as f:
            self.assertEqual(b'hello', f.read())
        self.assertEqual(0o640, _mode(self._path('etc/motd')))
        self.assertEqual(0o755, _mode(self._path('bin/tool')))
        self.assertEqual('bin', os.readlink(self._path('usr')))

    def test_later_layer_wins(self):
        """Test a file in a later layer replaces the earlier one."""
        self._apply(_layer(_file('data', b'one')),
                    _layer(_file('data', b'two')))
        with open(self._path('data'), 'rb') as f:
            self.assertEqual(b'two', f.read())

    def test_type_change(self):
        """Test a directory can be replaced by a file."""
        self._apply(_layer(_dir('thing'), _file('thing/inner')),
                    _layer(_file('thing', b'now a file')))
        self.assertTrue(os.path.isfile(self._path('thing')))

    def test_deferred_directory_mode(self):
        """Test a read only directory can be written by a later layer."""
        self._apply(_layer(_dir('ro', mode=0o555)),
                    _layer(_file('ro/file', b'x')))
        self.assertTrue(os.path.exists(self._path('ro/file')))
        self.assertEqual(0o555, _mode(self._path('ro')))

    def test_whiteout(self):
        """Test a whiteout removes the entry from lower layers."""
        self._apply(
            _layer(_dir('a'), _file('a/file'), _file('a/keep'),
                   _dir('a/sub'), _file('a/sub/deep')),
            _layer(_file('a/.wh.file'), _file('a/.wh.sub')))

        self.assertFalse(os.path.lexists(self._path('a/file')))
        self.assertFalse(os.path.lexists(self._path('a/sub')))
        self.assertFalse(os.path.lexists(self._path('a/.wh.file')))
        self.assertTrue(os.path.exists(self._path('a/keep')))

    def test_whiteout_symlink_to_directory(self):
        """Test whiting out a link to a directory keeps the directory."""
        self._apply(
            _layer(_dir('data'), _file('data/keep', b'x'),
                   _symlink('current', 'data')),
            _layer(_file('.wh.current')))

        self.assertFalse(os.path.lexists(self._path('current')))
        self.assertTrue(os.path.exists(self._path('data/keep')))

    def _device(self, name):
        ti = tarfile.TarInfo(name)
        ti.type = tarfile.CHRTYPE
        ti.devmajor = 1
        ti.devminor = 3
        return ti, None

    def test_device_rootless(self):
        """Test a device which can't be created rootless is skipped."""
        with mock.patch('bundlestrap.unpack.os.mknod',
                        side_effect=PermissionError(1, 'denied')):
            self._apply(_layer(_dir('dev'), self._device('dev/null'),
                               _file('after', b'x')))
        self.assertFalse(os.path.lexists(self._path('dev/null')))
        self.assertTrue(os.path.exists(self._path('after')))

    def test_device_privileged(self):
        """Test a device which can't be created as root fails extraction."""
        applier = unpack.LayerApplier(self.rootfs, rootless=False)
        with mock.patch('bundlestrap.unpack.os.mknod',
                        side_effect=PermissionError(1, 'denied')):
            self.assertRaises(
                exceptions.ExtractionFailedError, unpack.apply_tar_stream,
                self.ctx, applier, io.BytesIO(_layer(self._device('null'))),
                'test layer')

    def test_whiteout_missing(self):
        """Test a whiteout of something absent is ignored."""
        self._apply(_layer(_file('.wh.nothing')))
        self.assertEqual([], os.listdir(self.rootfs))

    def test_opaque_whiteout(self):
        """Test an opaque directory hides only the lower layers."""
        self._apply(
            _layer(_dir('dir'), _file('dir/old'), _dir('dir/olddir'),
                   _file('other')),
            _layer(_dir('dir'), _file('dir/new'),
                   _file('dir/.wh..wh..opq')))

        self.assertEqual(['new'], os.listdir(self._path('dir')))
        self.assertTrue(os.path.exists(self._path('other')))

    def test_hardlink(self):
        """Test hardlinks share an inode."""
        self._apply(_layer(_file('orig', b'data'),
                           _hardlink('link', 'orig')))
        self.assertEqual(os.stat(self._path('orig')).st_ino,
                         os.stat(self._path('link')).st_ino)

    def test_hardlink_missing(self):
        """Test a hardlink to nothing fails extraction."""
        self.assertRaises(exceptions.ExtractionFailedError,
                          self._apply, _layer(_hardlink('link', 'absent')))

    def test_symlink_escape(self):
        """Test writing through an absolute symlink stays in the rootfs."""
        outside = os.path.join(self.base, 'outside')
        os.mkdir(outside)
        self._apply(_layer(_symlink('escape', outside),
                           _file('escape/planted', b'x')))

        self.assertEqual([], os.listdir(outside))
        self.assertTrue(os.path.exists(
            os.path.join(self.rootfs, outside.lstrip('/'), 'planted')))

    def test_dotdot_names(self):
        """Test parent references can't climb out of the rootfs."""
        self._apply(_layer(_file('../../escaped', b'x')))
        self.assertTrue(os.path.exists(self._path('escaped')))
        self.assertFalse(os.path.exists(os.path.join(self.base, 'escaped')))

    def test_corrupt_layer(self):
        """Test a corrupt stream is an extraction failure."""
        self.assertRaises(exceptions.ExtractionFailedError,
                          self._apply, b'this is not a tar file' * 50)

    def test_cancelled(self):
        """Test a cancelled context stops extraction."""
        self.ctx.cancel()
        self.assertRaises(exceptions.BuildCancelledError,
                          self._apply, _layer(_file('data')))


class UnpackRootfsTestCase(UnpackTestCase):
    def _image(self, layer_blobs, media_type):
        oci = layout.OCILayout(os.path.join(self.base, 'layout'))
        config = json.dumps({'os': 'linux', 'architecture': 'amd64',
                             'config': {}}).encode('utf-8')
        config_digest = oci.write_blob(config)
        layers = []
        for blob in layer_blobs:
            layers.append({'mediaType': media_type,
                           'digest': oci.write_blob(blob),
                           'size': len(blob)})
        digest = oci.write_manifest({
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
            'config': {'mediaType': constants.MEDIA_TYPE_OCI_CONFIG,
                       'digest': config_digest, 'size': len(config)},
            'layers': layers,
        })
        return oci.image(digest)

    def test_gzip_layers(self):
        """Test compressed layers are applied in manifest order."""
        image = self._image(
            [gzip.compress(_layer(_file('a', b'1'), _file('b', b'1'))),
             gzip.compress(_layer(_file('.wh.a'), _file('b', b'2')))],
            constants.MEDIA_TYPE_OCI_LAYER_GZIP)
        unpack.unpack_rootfs(self.ctx, image, self.rootfs, rootless=True)

        self.assertFalse(os.path.exists(self._path('a')))
        with open(self._path('b'), 'rb') as f:
            self.assertEqual(b'2', f.read())

    def test_mislabelled_layer(self):
        """Test a gzip layer labelled as plain tar is still read."""
        image = self._image([gzip.compress(_layer(_file('a', b'1')))],
                            constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED)
        unpack.unpack_rootfs(self.ctx, image, self.rootfs, rootless=True)
        self.assertTrue(os.path.exists(self._path('a')))

    def test_not_extractable(self):
        """Test an artifact without filesystem layers is refused."""
        image = self._image([b'SIF data'], constants.MEDIA_TYPE_SIF_LAYER)
        self.assertRaises(exceptions.NotExtractableError,
                          unpack.unpack_rootfs, self.ctx, image,
                          self.rootfs, rootless=True)


class CopyTreeTestCase(UnpackTestCase):
    def _src(self):
        src = os.path.join(self.base, 'src')
        os.makedirs(os.path.join(src, 'dir'))
        with open(os.path.join(src, 'dir/file'), 'w') as f:
            f.write('data')
        os.chmod(os.path.join(src, 'dir/file'), 0o600)
        os.symlink('dir/file', os.path.join(src, 'link'))
        return src

    def test_copy(self):
        """Test a tree copy keeps links and modes."""
        src = self._src()
        unpack.copy_tree(self.ctx, src, self.rootfs, rootless=True)

        self.assertEqual(0o600, _mode(self._path('dir/file')))
        with open(self._path('dir/file')) as f:
            self.assertEqual('data', f.read())
        self.assertEqual('dir/file', os.readlink(self._path('link')))

    def test_copy_large(self):
        """Test a tree bigger than a pipe buffer streams through."""
        src = self._src()
        data = os.urandom(1024 * 1024)
        with open(os.path.join(src, 'big'), 'wb') as f:
            f.write(data)

        unpack.copy_tree(self.ctx, src, self.rootfs, rootless=True)
        with open(self._path('big'), 'rb') as f:
            self.assertEqual(data, f.read())

    def test_copy_apply_failure(self):
        """Test a failure applying the stream stops the writer too."""
        src = self._src()
        with open(os.path.join(src, 'big'), 'wb') as f:
            f.write(b'\0' * (1024 * 1024))

        with mock.patch.object(unpack.LayerApplier, 'apply',
                               side_effect=exceptions.ExtractionFailedError(
                                   'disk full')):
            e = self.assertRaises(exceptions.ExtractionFailedError,
                                  unpack.copy_tree, self.ctx, src,
                                  self.rootfs, rootless=True)
        self.assertEqual('disk full', str(e))

    def test_copy_missing_source(self):
        """Test an unreadable source is an extraction failure."""
        self.assertRaises(exceptions.ExtractionFailedError,
                          unpack.copy_tree, self.ctx,
                          os.path.join(self.base, 'absent'), self.rootfs,
                          rootless=True)


class UnsquashfsTestCase(UnpackTestCase):
    def setUp(self):
        super(UnsquashfsTestCase, self).setUp()
        self.tmp = os.path.join(self.base, 'tmp')
        os.mkdir(self.tmp)
        self.image = os.path.join(self.base, 'image')
        with open(self.image, 'wb') as f:
            f.write(b'HEADER' + b'hsqs-partition' + b'TRAILER')

        patcher = mock.patch('bundlestrap.util.find_bin',
                             return_value='/usr/bin/unsquashfs')
        patcher.start()
        self.addCleanup(patcher.stop)

    @mock.patch('bundlestrap.util.is_unprivileged', return_value=False)
    @mock.patch('bundlestrap.util.run_tool', return_value=('', '', 0))
    def test_whole_image(self, mock_run_tool, mock_unprivileged):
        """Test a squashfs file is extracted in place."""
        unpack.unpack_squashfs(self.ctx, self.image, self.rootfs, self.tmp)
        mock_run_tool.assert_called_once_with(
            self.ctx, ['/usr/bin/unsquashfs', '-f', '-d', self.rootfs,
                       self.image], logger=unpack.LOG)

    @mock.patch('bundlestrap.util.is_unprivileged', return_value=True)
    def test_partition_rootless(self, mock_unprivileged):
        """Test a partition is copied out and extracted without xattrs."""
        seen = []

        def _run_tool(ctx, cmd, logger=None):
            with open(cmd[-1], 'rb') as f:
                seen.append(f.read())
            return '', '', 0

        with mock.patch('bundlestrap.util.run_tool',
                        side_effect=_run_tool) as mock_run_tool:
            unpack.unpack_squashfs(self.ctx, self.image, self.rootfs,
                                   self.tmp, offset=6, size=14)

        cmd = mock_run_tool.call_args[0][1]
        self.assertEqual(['/usr/bin/unsquashfs', '-f', '-d', self.rootfs,
                          '-no-xattrs'], cmd[:5])
        self.assertEqual(self.tmp, os.path.dirname(cmd[5]))
        self.assertEqual([b'hsqs-partition'], seen)
        self.assertEqual([], os.listdir(self.tmp))

    @mock.patch('bundlestrap.util.is_unprivileged', return_value=False)
    @mock.patch('bundlestrap.util.run_tool',
                side_effect=exceptions.CommandFailedError(
                    ['unsquashfs'], 1, '', 'bad superblock'))
    def test_failure(self, mock_run_tool, mock_unprivileged):
        """Test unsquashfs failures are extraction failures."""
        e = self.assertRaises(exceptions.ExtractionFailedError,
                              unpack.unpack_squashfs, self.ctx, self.image,
                              self.rootfs, self.tmp, offset=6)
        self.assertIn(self.image, str(e))
        self.assertEqual([], os.listdir(self.tmp))


class Ext3TestCase(UnpackTestCase):
    def setUp(self):
        super(Ext3TestCase, self).setUp()
        self.tmp = os.path.join(self.base, 'tmp')
        os.mkdir(self.tmp)
        self.image = os.path.join(self.base, 'image.ext3')
        with open(self.image, 'wb') as f:
            f.write(b'\0' * 4096)

        patcher = mock.patch('bundlestrap.util.find_bin',
                             side_effect=lambda name: '/bin/%s' % name)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _commands(self, mock_run_tool):
        return [c[0][1] for c in mock_run_tool.call_args_list]

    @mock.patch('bundlestrap.unpack.copy_tree')
    @mock.patch('bundlestrap.util.run_tool', return_value=('', '', 0))
    def test_mount_options(self, mock_run_tool, mock_copy_tree):
        """Test the image is mounted read only at its offset and released."""
        unpack.unpack_ext3(self.ctx, self.image, self.rootfs, self.tmp,
                           offset=512, size=1024)

        mount, umount = self._commands(mock_run_tool)
        mountpoint = mount[-1]
        self.assertEqual(
            ['/bin/mount', '-t', 'ext3', '-o',
             'loop,ro,nosuid,nodev,errors=remount-ro,offset=512,'
             'sizelimit=1024', self.image], mount[:-1])
        self.assertEqual(['/bin/umount', mountpoint], umount)
        mock_copy_tree.assert_called_once_with(self.ctx, mountpoint,
                                               self.rootfs)
        self.assertEqual([], os.listdir(self.tmp))

    @mock.patch('bundlestrap.unpack.copy_tree',
                side_effect=exceptions.ExtractionFailedError('copy broke'))
    @mock.patch('bundlestrap.util.run_tool', return_value=('', '', 0))
    def test_unmount_after_failure(self, mock_run_tool, mock_copy_tree):
        """Test the image is unmounted when the copy fails."""
        e = self.assertRaises(exceptions.ExtractionFailedError,
                              unpack.unpack_ext3, self.ctx, self.image,
                              self.rootfs, self.tmp)
        self.assertEqual('copy broke', str(e))
        self.assertEqual('/bin/umount', self._commands(mock_run_tool)[-1][0])
        self.assertEqual([], os.listdir(self.tmp))

    @mock.patch('bundlestrap.unpack.copy_tree',
                side_effect=exceptions.ExtractionFailedError('copy broke'))
    def test_lazy_unmount_failure_keeps_error(self, mock_copy_tree):
        """Test a failed unmount doesn't hide why the copy failed."""
        def _run_tool(ctx, cmd, logger=None):
            if cmd[0] == '/bin/umount':
                raise exceptions.CommandFailedError(cmd, 32, '', 'busy')
            return '', '', 0

        with mock.patch('bundlestrap.util.run_tool',
                        side_effect=_run_tool) as mock_run_tool:
            e = self.assertRaises(exceptions.ExtractionFailedError,
                                  unpack.unpack_ext3, self.ctx, self.image,
                                  self.rootfs, self.tmp)
        self.assertEqual('copy broke', str(e))
        self.assertEqual(['-l'], self._commands(mock_run_tool)[-1][1:2])

    @mock.patch('bundlestrap.unpack.copy_tree')
    def test_unmount_failure(self, mock_copy_tree):
        """Test a mount which can't be released fails the extraction."""
        def _run_tool(ctx, cmd, logger=None):
            if cmd[0] == '/bin/umount':
                raise exceptions.CommandFailedError(cmd, 32, '', 'busy')
            return '', '', 0

        with mock.patch('bundlestrap.util.run_tool', side_effect=_run_tool):
            e = self.assertRaises(exceptions.ExtractionFailedError,
                                  unpack.unpack_ext3, self.ctx, self.image,
                                  self.rootfs, self.tmp)
        self.assertIn('unable to unmount', str(e))

    @mock.patch('bundlestrap.util.run_tool',
                side_effect=exceptions.CommandFailedError(
                    ['mount'], 32, '', 'wrong fs type'))
    def test_mount_failure(self, mock_run_tool):
        """Test a failed mount leaves no mountpoint behind."""
        self.assertRaises(exceptions.ExtractionFailedError,
                          unpack.unpack_ext3, self.ctx, self.image,
                          self.rootfs, self.tmp)
        self.assertEqual([], os.listdir(self.tmp))


class PermsTestCase(UnpackTestCase):
    def _restrictive_tree(self):
        locked = self._path('locked')
        os.mkdir(locked)
        with open(os.path.join(locked, 'secret'), 'w') as f:
            f.write('x')
        os.chmod(os.path.join(locked, 'secret'), 0o000)
        os.chmod(locked, 0o500)
        os.symlink('/nonexistent', self._path('dangling'))
        return locked

    def test_fix_perms(self):
        """Test owner rwX is added and other bits are kept."""
        locked = self._restrictive_tree()
        os.chmod(locked, 0o555)
        unpack.fix_perms(self.rootfs)
        self.assertEqual(0o755, _mode(locked))
        self.assertEqual(0o600, _mode(os.path.join(locked, 'secret')))

    def test_fix_perms_partial(self):
        """Test failures are counted rather than stopping the walk."""
        self._restrictive_tree()
        with mock.patch('bundlestrap.unpack.os.chmod',
                        side_effect=OSError(1, 'denied')):
            e = self.assertRaises(exceptions.PermsPartialFixError,
                                  unpack.fix_perms, self.rootfs)
        self.assertTrue(e.count >= 1)

    def test_check_perms(self):
        """Test restrictive directories are reported."""
        self.assertTrue(unpack.check_perms(self.rootfs))
        self._restrictive_tree()
        self.assertFalse(unpack.check_perms(self.rootfs))

    def test_post_unpack(self):
        """Test the fix-perms option wins over the sandbox scan."""
        locked = self._restrictive_tree()
        unpack.post_unpack(self.rootfs, bundle.Options(sandbox_target=True))
        self.assertEqual(0o500, _mode(locked))

        unpack.post_unpack(self.rootfs, bundle.Options(fix_perms=True,
                                                       sandbox_target=True))
        self.assertEqual(0o700, _mode(locked))
