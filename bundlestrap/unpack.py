"""Root filesystem extraction.

OCI images are applied layer by layer, in manifest order, onto the
rootfs. Each layer is a tar changeset:

https://github.com/opencontainers/image-spec/blob/main/layer.md

- A .wh.<name> entry deletes <name> from the layers below.
- A .wh..wh..opq entry deletes everything below in its directory, but
  not the entries of the same layer.

Entries are always written relative to the rootfs. Symlinks in parent
directories are resolved inside the rootfs, so a layer can't write
through an absolute symlink onto the host.

Squashfs, ext3 and sandbox sources end up in the same place, using
unsquashfs, a loop mount and a tar stream copy respectively.
"""

from collections import deque, namedtuple
from concurrent.futures import ThreadPoolExecutor
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import zlib

import zstandard as zstd

from bundlestrap import compression
from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


WHITEOUT_PREFIX = '.wh.'
OPAQUE_WHITEOUT = '.wh..wh..opq'
MAX_SYMLINK_DEPTH = 255
XATTR_PAX_PREFIX = 'SCHILY.xattr.'

IDMap = namedtuple('IDMap', ['container_id', 'host_id', 'size'])


def secure_join(root, unsafe_path):
    """Join unsafe_path to root, resolving symlinks inside root.

    Every component, including the last, is resolved. '..' never climbs
    above root and absolute link targets are taken relative to root.
    """
    parts = deque(unsafe_path.split('/'))
    current = ''
    links = 0
    while parts:
        part = parts.popleft()
        if part in ('', '.'):
            continue
        if part == '..':
            current = os.path.dirname(current)
            continue

        candidate = os.path.join(current, part) if current else part
        full = os.path.join(root, candidate)
        if os.path.islink(full):
            links += 1
            if links > MAX_SYMLINK_DEPTH:
                raise exceptions.ExtractionFailedError(
                    'too many levels of symbolic links resolving %s'
                    % unsafe_path)
            target = os.readlink(full)
            if target.startswith('/'):
                current = ''
            parts.extendleft(reversed(target.split('/')))
            continue
        current = candidate

    if not current:
        return root
    return os.path.join(root, current)


def normalize_name(name):
    """Clean a tar entry name into a path relative to the rootfs."""
    name = os.path.normpath('/' + name).lstrip('/')
    if name == '.':
        return ''
    return name


def is_layer(media_type):
    return media_type in constants.LAYER_MEDIA_TYPES


def _remove_path(path):
    if not os.path.lexists(path):
        return
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)


class LayerApplier(object):
    """Applies tar changesets onto a directory.

    Directory modes are applied by finalize() once every layer is in
    place, so that a read only directory in one layer doesn't stop a
    later layer writing into it.
    """

    def __init__(self, dest, rootless=None):
        self.dest = os.path.realpath(dest)
        if rootless is None:
            rootless = util.is_unprivileged()
        self.rootless = rootless
        self.uid_map = [IDMap(0, os.geteuid(), 1)]
        self.gid_map = [IDMap(0, os.getegid(), 1)]
        self._deferred_dirs = {}

    def _resolve(self, name):
        """Return the host path for a rootfs relative name.

        The parent is resolved inside the rootfs, the final component is
        not followed.
        """
        dirname, basename = os.path.split(name)
        parent = secure_join(self.dest, dirname)
        if not basename:
            return parent
        return os.path.join(parent, basename)

    def _map_id(self, value, id_map):
        for m in id_map:
            if m.container_id <= value < m.container_id + m.size:
                return m.host_id + value - m.container_id
        return None

    def _chown(self, path, member):
        if self.rootless:
            uid = self._map_id(member.uid, self.uid_map)
            gid = self._map_id(member.gid, self.gid_map)
            if uid is None or gid is None:
                # Ids outside the map can't be represented, the file stays
                # owned by us.
                return
        else:
            uid, gid = member.uid, member.gid
        try:
            os.lchown(path, uid, gid)
        except OSError as e:
            if not self.rootless:
                raise
            LOG.debug('Unable to change ownership of %s: %s' % (path, e))

    def _apply_xattrs(self, path, member):
        for key, value in member.pax_headers.items():
            if not key.startswith(XATTR_PAX_PREFIX):
                continue
            attr = key[len(XATTR_PAX_PREFIX):]
            try:
                os.setxattr(path, attr, value.encode('utf-8', 'surrogateescape'),
                            follow_symlinks=False)
            except OSError as e:
                LOG.debug('Unable to set xattr %s on %s: %s' % (attr, path, e))

    def _clear_opaque(self, name, created):
        path = secure_join(self.dest, name)
        if not os.path.isdir(path):
            return
        for child in os.listdir(path):
            child_name = os.path.join(name, child) if name else child
            child_path = os.path.join(path, child)
            if child_name in created:
                if os.path.isdir(child_path) and not os.path.islink(child_path):
                    self._clear_opaque(child_name, created)
                continue
            LOG.debug('Opaque whiteout removes %s' % child_name)
            _remove_path(child_path)

    def _prepare_target(self, path, member):
        if not os.path.lexists(path):
            return
        if member.isdir() and os.path.isdir(path) and not os.path.islink(path):
            return
        _remove_path(path)

    def _extract_member(self, tar, member, name):
        path = self._resolve(name)
        parent = os.path.dirname(path)
        if not os.path.isdir(parent):
            os.makedirs(parent, mode=0o755, exist_ok=True)
        self._prepare_target(path, member)

        if member.isdir():
            if not os.path.isdir(path):
                os.mkdir(path, 0o700)
            self._chown(path, member)
            self._apply_xattrs(path, member)
            self._deferred_dirs[path] = member
            return

        if member.isfile():
            fd = os.open(path,
                         os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW,
                         0o600)
            with os.fdopen(fd, 'wb') as out:
                src = tar.extractfile(member)
                for chunk in iter(lambda: src.read(102400), b''):
                    out.write(chunk)

        elif member.issym():
            os.symlink(member.linkname, path)

        elif member.islnk():
            source = self._resolve(normalize_name(member.linkname))
            if not os.path.lexists(source):
                raise exceptions.ExtractionFailedError(
                    'hardlink %s points at missing %s'
                    % (member.name, member.linkname))
            os.link(source, path, follow_symlinks=False)
            return

        elif member.ischr() or member.isblk():
            kind = stat.S_IFCHR if member.ischr() else stat.S_IFBLK
            try:
                os.mknod(path, kind | 0o600,
                         os.makedev(member.devmajor, member.devminor))
            except OSError as e:
                if not self.rootless:
                    raise
                LOG.warning('Unable to create device %s: %s' % (name, e))
                return

        elif member.isfifo():
            os.mkfifo(path, 0o600)

        else:
            LOG.warning('Skipping %s of unsupported tar type %r'
                        % (name, member.type))
            return

        self._chown(path, member)
        self._apply_xattrs(path, member)
        if not member.issym():
            os.chmod(path, member.mode)
            os.utime(path, (member.mtime, member.mtime))
        else:
            try:
                os.utime(path, (member.mtime, member.mtime),
                         follow_symlinks=False)
            except NotImplementedError:
                pass

    def apply(self, ctx, tar):
        """Apply one layer, tar being a tarfile open for reading."""
        created = set()
        for member in tar:
            ctx.check()
            name = normalize_name(member.name)
            if not name:
                continue

            dirname, basename = os.path.split(name)
            if basename == OPAQUE_WHITEOUT:
                self._clear_opaque(dirname, created)
                continue

            if basename.startswith(WHITEOUT_PREFIX):
                target = os.path.join(dirname, basename[len(WHITEOUT_PREFIX):])
                LOG.debug('Whiteout removes %s' % target)
                _remove_path(self._resolve(target))
                continue

            self._extract_member(tar, member, name)
            created.add(name)

    def finalize(self):
        # Deepest first, so restricting a parent can't block a child.
        for path in sorted(self._deferred_dirs, reverse=True):
            member = self._deferred_dirs[path]
            if not os.path.isdir(path) or os.path.islink(path):
                continue
            os.chmod(path, member.mode)
            os.utime(path, (member.mtime, member.mtime))
        self._deferred_dirs = {}


def apply_tar_stream(ctx, applier, fileobj, description):
    try:
        with tarfile.open(fileobj=fileobj, mode='r|') as tar:
            applier.apply(ctx, tar)
    except (tarfile.TarError, OSError, EOFError, zlib.error,
            zstd.ZstdError) as e:
        raise exceptions.ExtractionFailedError(
            'while applying %s: %s' % (description, e))


def unpack_rootfs(ctx, image, dest, rootless=None):
    """Extract the layers of an OCI image handle onto dest."""
    layers = image.layers()
    if not any(is_layer(layer.media_type) for layer in layers):
        raise exceptions.NotExtractableError(
            'image %s has no layers which can be extracted, it may be an '
            'artifact rather than a container image' % image)

    applier = LayerApplier(dest, rootless=rootless)
    if applier.rootless:
        LOG.info('Extracting rootless with uid map %s and gid map %s'
                 % (applier.uid_map, applier.gid_map))

    for layer in layers:
        ctx.check()
        if not is_layer(layer.media_type):
            LOG.warning('Skipping non-layer blob %s of type %s'
                        % (layer.digest, layer.media_type))
            continue
        LOG.info('Extracting layer %s' % layer.digest)
        with layer.open_compressed() as f:
            apply_tar_stream(
                ctx, applier, compression.open_layer_stream(f, layer.media_type),
                'layer %s' % layer.digest)
    applier.finalize()


def _partition_file(ctx, image_path, offset, size, tmp_dir):
    """Copy a partition out of a container file into its own file."""
    fd, path = tempfile.mkstemp(prefix='partition-', dir=tmp_dir)
    with os.fdopen(fd, 'wb') as out, open(image_path, 'rb') as src:
        src.seek(offset)
        remaining = size
        while remaining > 0:
            ctx.check()
            chunk = src.read(min(remaining, 1024 * 1024))
            if not chunk:
                break
            out.write(chunk)
            remaining -= len(chunk)
    return path


def unpack_squashfs(ctx, image_path, dest, tmp_dir, offset=0, size=None):
    """Extract a squashfs image, or a squashfs partition of a file."""
    unsquashfs = util.find_bin('unsquashfs')

    source = image_path
    if offset or size:
        if size is None:
            size = os.path.getsize(image_path) - offset
        source = _partition_file(ctx, image_path, offset, size, tmp_dir)

    cmd = [unsquashfs, '-f', '-d', dest]
    if util.is_unprivileged():
        # Device nodes and foreign ownership can't be restored rootless.
        cmd.append('-no-xattrs')
    cmd.append(source)

    try:
        LOG.info('Extracting squashfs image %s' % image_path)
        util.run_tool(ctx, cmd, logger=LOG)
    except exceptions.CommandFailedError as e:
        raise exceptions.ExtractionFailedError(
            'while extracting squashfs %s: %s' % (image_path, e))
    finally:
        if source != image_path:
            os.unlink(source)


def _tree_xattr_filter(src):
    def _filter(tarinfo):
        path = os.path.join(src, tarinfo.name)
        try:
            for attr in os.listxattr(path, follow_symlinks=False):
                value = os.getxattr(path, attr, follow_symlinks=False)
                tarinfo.pax_headers[XATTR_PAX_PREFIX + attr] = \
                    value.decode('utf-8', 'surrogateescape')
        except OSError as e:
            LOG.debug('Unable to read xattrs of %s: %s' % (path, e))
        return tarinfo
    return _filter


def _write_tree(ctx, src, write_fd):
    with os.fdopen(write_fd, 'wb') as out:
        with tarfile.open(fileobj=out, mode='w|',
                          format=tarfile.PAX_FORMAT) as tar:
            for entry in sorted(os.listdir(src)):
                ctx.check()
                tar.add(os.path.join(src, entry), arcname=entry,
                        filter=_tree_xattr_filter(src))


def copy_tree(ctx, src, dest, rootless=None):
    """Copy a directory tree, keeping links, modes and xattrs.

    The tree is written as a tar stream into a pipe by a worker thread
    and applied to dest as it arrives, so nothing is staged on disk.
    """
    applier = LayerApplier(dest, rootless=rootless)
    apply_error = None
    read_fd, write_fd = os.pipe()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(_write_tree, ctx, src, write_fd)

        # Closing the read end on failure gives the writer EPIPE rather
        # than leaving it blocked on a full pipe.
        with os.fdopen(read_fd, 'rb') as reader:
            try:
                apply_tar_stream(ctx, applier, reader, 'copy of %s' % src)
                # The reader stops at the end of archive marker, the
                # writer may still be padding the final record.
                for _ in iter(lambda: reader.read(65536), b''):
                    pass
            except exceptions.BuildError as e:
                apply_error = e

    write_error = future.exception()
    if apply_error and (write_error is None or
                        isinstance(write_error, BrokenPipeError)):
        raise apply_error
    if isinstance(write_error, (tarfile.TarError, OSError)):
        raise exceptions.ExtractionFailedError(
            'while copying %s to %s: %s' % (src, dest, write_error))
    if write_error:
        raise write_error
    applier.finalize()


def unpack_sandbox(ctx, src, dest):
    LOG.info('Copying sandbox %s' % src)
    copy_tree(ctx, src, dest)


def _release_mount(ctx, umount, mountpoint):
    """Unmount and remove mountpoint, falling back to a lazy unmount.

    Returns False if the mount could not be released.
    """
    try:
        util.run_tool(ctx.detached(), [umount, mountpoint], logger=LOG)
    except exceptions.CommandFailedError:
        LOG.warning('Unable to unmount %s, forcing a lazy unmount'
                    % mountpoint)
        try:
            util.run_tool(ctx.detached(), [umount, '-l', mountpoint],
                          logger=LOG)
        except exceptions.CommandFailedError as e:
            LOG.error('Lazy unmount of %s failed: %s' % (mountpoint, e))
            return False
    os.rmdir(mountpoint)
    return True


def unpack_ext3(ctx, image_path, dest, tmp_dir, offset=0, size=None):
    """Loop mount an ext3 image (or partition) read only and copy it."""
    mount = util.find_bin('mount')
    umount = util.find_bin('umount')
    if size is None:
        size = os.path.getsize(image_path) - offset

    mountpoint = tempfile.mkdtemp(prefix='ext3-', dir=tmp_dir)
    # mount(8) sets LO_FLAGS_AUTOCLEAR on loop devices it allocates, so
    # the device goes away with the mount.
    options = ('loop,ro,nosuid,nodev,errors=remount-ro,offset=%d,sizelimit=%d'
               % (offset, size))
    try:
        util.run_tool(ctx, [mount, '-t', 'ext3', '-o', options, image_path,
                            mountpoint], logger=LOG)
    except exceptions.CommandFailedError as e:
        os.rmdir(mountpoint)
        raise exceptions.ExtractionFailedError(
            'while mounting ext3 image %s: %s' % (image_path, e))

    try:
        copy_tree(ctx, mountpoint, dest)
    except Exception:
        _release_mount(ctx, umount, mountpoint)
        raise

    if not _release_mount(ctx, umount, mountpoint):
        raise exceptions.ExtractionFailedError(
            'unable to unmount ext3 image %s from %s'
            % (image_path, mountpoint))


def fix_perms(rootfs):
    """Make everything in rootfs manageable by its owner.

    Directories gain owner rwx and regular files owner rw. Other bits are
    preserved.

    Raises:
        PermsPartialFixError when any path could not be changed.
    """
    errors = 0

    def _fix(path, wanted):
        st = os.lstat(path)
        mode = stat.S_IMODE(st.st_mode)
        if mode & wanted != wanted:
            os.chmod(path, mode | wanted)

    try:
        _fix(rootfs, 0o700)
    except OSError as e:
        LOG.error('While setting permissions on %s: %s' % (rootfs, e))
        errors += 1

    for root, dirs, files in os.walk(rootfs):
        for d in dirs:
            path = os.path.join(root, d)
            if os.path.islink(path):
                continue
            try:
                _fix(path, 0o700)
            except OSError as e:
                LOG.error('While setting permissions on %s: %s' % (path, e))
                errors += 1
        for f in files:
            path = os.path.join(root, f)
            try:
                if stat.S_ISREG(os.lstat(path).st_mode):
                    _fix(path, 0o600)
            except OSError as e:
                LOG.error('While setting permissions on %s: %s' % (path, e))
                errors += 1

    if errors:
        raise exceptions.PermsPartialFixError(errors)


def check_perms(rootfs):
    """Warn about directories the owner won't be able to remove.

    Returns:
        True if no restrictive directory was found.
    """
    for root, dirs, _ in os.walk(rootfs):
        for d in [root] + [os.path.join(root, d) for d in dirs]:
            if os.path.islink(d):
                continue
            mode = stat.S_IMODE(os.lstat(d).st_mode)
            if mode & 0o700 != 0o700:
                LOG.warning("The sandbox contain files/dirs that cannot be "
                            "removed with 'rm'.")
                LOG.warning("Use 'chmod -R u+rwX' to set permissions that "
                            "allow removal.")
                LOG.warning("Use the '--fix-perms' option to 'build' to "
                            "modify permissions at build time.")
                return False
    return True


def post_unpack(rootfs, opts):
    """Apply the fix-perms / sandbox permission policy after extraction."""
    if opts.fix_perms:
        LOG.debug('Modifying permissions for file/directory owners')
        fix_perms(rootfs)
    elif opts.sandbox_target:
        check_perms(rootfs)
