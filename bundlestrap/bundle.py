import errno
import logging
import os
import shutil
import stat
import tempfile

from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


CHOWN_SENTINEL = '.chownTest'


class Options(object):
    """Per build policy.

    Every option has a default which produces an ordinary privileged
    build with caching disabled and every section enabled.
    """

    def __init__(self, sections=None, tmp_dir=None, library_url=None,
                 library_auth_token=None, fakeroot_path='',
                 key_server_opts=None, oci_auth_config=None,
                 docker_auth_config=None, docker_daemon_host=None,
                 encryption_key_info=None, img_cache=None, no_test=False,
                 force=False, update=False, no_https=False,
                 no_clean_up=False, no_cache=False, fix_perms=False,
                 sandbox_target=False, unprivilege=False, binds=None,
                 arch=None, req_auth_file=None, platform=None):
        if sections is None:
            sections = ['all']
        self.sections = list(sections)
        self.tmp_dir = tmp_dir
        self.library_url = library_url
        self.library_auth_token = library_auth_token
        self.fakeroot_path = fakeroot_path
        self.key_server_opts = key_server_opts
        self.oci_auth_config = oci_auth_config
        self.docker_auth_config = docker_auth_config
        self.docker_daemon_host = docker_daemon_host
        self.encryption_key_info = encryption_key_info
        self.img_cache = img_cache
        self.no_test = no_test
        self.force = force
        self.update = update
        self.no_https = no_https
        self.no_clean_up = no_clean_up
        self.no_cache = no_cache
        self.fix_perms = fix_perms
        self.sandbox_target = sandbox_target
        self.unprivilege = unprivilege
        self.binds = list(binds or [])
        self.arch = arch
        self.req_auth_file = req_auth_file
        self.platform = platform

    @property
    def cache(self):
        if self.no_cache:
            return None
        return self.img_cache


def can_chown(path):
    """Check whether files created under path can be chown'd.

    A sentinel file is created, chown'd to uid=gid=1 and removed again.
    A non-root builder can't chown anyway, so a permission failure only
    counts against the filesystem when we are root.
    """
    sentinel = os.path.join(path, CHOWN_SENTINEL)
    fd = os.open(sentinel,
                 os.O_CREAT | os.O_EXCL | os.O_WRONLY | os.O_NOFOLLOW,
                 0o600)
    try:
        os.fchown(fd, 1, 1)
        return True
    except OSError as e:
        if e.errno in (errno.EPERM, errno.EACCES):
            return os.geteuid() != 0
        if e.errno in (errno.ENOTSUP, errno.EOPNOTSUPP):
            return False
        # EINVAL means the id isn't mapped in our user namespace, which
        # says nothing about the filesystem.
        LOG.debug('Ownership check in %s returned %s' % (path, e))
        return True
    finally:
        os.close(fd)
        os.unlink(sentinel)


def _make_dir(path):
    os.makedirs(path, exist_ok=True)
    os.chmod(path, 0o755)


class Bundle(object):
    def __init__(self, parent_path, rootfs_path, tmp_dir, recipe=None,
                 opts=None, encryption_key_info=None):
        self.parent_path = parent_path
        self.rootfs_path = rootfs_path
        self.tmp_dir = tmp_dir
        self.recipe = recipe
        self.opts = opts or Options()
        self.encryption_key_info = encryption_key_info
        self.json_objects = {}

    def __repr__(self):
        return 'Bundle(rootfs=%s, tmp=%s)' % (self.rootfs_path, self.tmp_dir)

    def run_section(self, name):
        sections = self.opts.sections
        if 'all' in sections and 'none' not in sections:
            return True
        return name in sections

    def remove(self):
        failures = []
        for path in (self.tmp_dir, self.parent_path):
            if not path or not os.path.lexists(path):
                continue
            try:
                force_remove(path)
            except OSError as e:
                failures.append((path, e))

        if failures:
            raise exceptions.BundleRemovalError(failures)


def force_remove(path):
    """Recursively remove path, adding owner rwx to directories first."""
    if os.path.islink(path) or not os.path.isdir(path):
        os.unlink(path)
        return

    for root, dirs, _ in os.walk(path):
        st = os.lstat(root)
        if stat.S_IMODE(st.st_mode) & 0o700 != 0o700:
            os.chmod(root, stat.S_IMODE(st.st_mode) | 0o700)
        for d in dirs:
            d_path = os.path.join(root, d)
            if os.path.islink(d_path):
                continue
            st = os.lstat(d_path)
            if stat.S_IMODE(st.st_mode) & 0o700 != 0o700:
                os.chmod(d_path, stat.S_IMODE(st.st_mode) | 0o700)
    shutil.rmtree(path)


def create_bundle(parent_path, temp_dir=None, recipe=None, opts=None,
                  encryption_key_info=None):
    """Create the on-disk workspace for a build.

    Args:
        parent_path: Directory which will hold the rootfs.
        temp_dir: Root for scratch directories, defaults to the system
            temp directory.
        recipe: The Recipe being built.
        opts: The build's Options.
        encryption_key_info: Carried through for the assembler.

    Returns:
        A Bundle.

    Raises:
        FSChownUnsupportedError if neither parent_path nor a directory
        under temp_dir supports ownership changes.
    """
    if not temp_dir:
        temp_dir = tempfile.gettempdir()

    tmp_dir = tempfile.mkdtemp(prefix='bundle-temp-', dir=temp_dir)
    os.chmod(tmp_dir, 0o755)

    rootfs_path = os.path.join(parent_path, 'rootfs')
    try:
        _make_dir(rootfs_path)
        if not can_chown(rootfs_path):
            relocated = tempfile.mkdtemp(prefix='build-temp-', dir=temp_dir)
            os.chmod(relocated, 0o755)
            LOG.warning('%s does not support ownership changes, building in '
                        '%s instead' % (parent_path, relocated))
            os.rmdir(rootfs_path)
            parent_path = relocated
            rootfs_path = os.path.join(parent_path, 'rootfs')
            _make_dir(rootfs_path)

            if not can_chown(rootfs_path):
                LOG.error('Could not set files/directories ownership, if %s '
                          'is on a network filesystem, you must set TMPDIR '
                          'to a local path (eg: TMPDIR=/var/tmp bundlestrap '
                          'build ...)' % temp_dir)
                shutil.rmtree(relocated)
                raise exceptions.FSChownUnsupportedError(
                    'ownership change not allowed in %s, aborting'
                    % temp_dir)
    except Exception:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise

    LOG.debug('Created bundle with rootfs %s and temporary directory %s'
              % (rootfs_path, tmp_dir))
    return Bundle(parent_path, rootfs_path, tmp_dir, recipe=recipe,
                  opts=opts, encryption_key_info=encryption_key_info)


def remove_bundle(bundle):
    bundle.remove()
