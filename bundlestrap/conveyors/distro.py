"""Shared plumbing for sources which install a distribution with its own
package tooling.

Those tools expect to find a handful of device nodes in the target and
like to mount things while they work. Inside a user namespace neither
mknod nor mount are available, so the devices are bind mounted from the
host and the mount commands are replaced with true for the duration of
the install.
"""

import contextlib
import logging
import os
import re
import shutil
import stat

from bundlestrap import baseenv
from bundlestrap import constants
from bundlestrap.conveyors.base import ConveyorPacker
from bundlestrap import envscripts
from bundlestrap import exceptions
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


OSVERSION_RE = re.compile(r'(?i)%{OSVERSION}')

PSEUDO_DEVICES = [
    ('dev/null', 1, 3),
    ('dev/random', 1, 8),
    ('dev/urandom', 1, 9),
    ('dev/zero', 1, 5),
]


def include_list(recipe, defaults):
    """The packages to install: defaults, the include header, then $INCLUDE."""
    include = '%s %s' % (recipe.get('include'), os.environ.get('INCLUDE', ''))
    return list(defaults) + include.split()


def substitute_osversion(bootstrap, recipe, urls):
    """Replace %{OSVERSION} in urls, requiring an osversion header if used."""
    if not any(OSVERSION_RE.search(u or '') for u in urls):
        return list(urls)
    osversion = recipe.get('osversion')
    if not osversion:
        raise exceptions.RecipeHeaderMissingError(
            bootstrap, 'osversion',
            'invalid %s header, osversion referenced in mirror but no '
            'osversion specified' % bootstrap)
    return [OSVERSION_RE.sub(osversion, u) if u else u for u in urls]


def make_pseudo_devices(rootfs, rootless=False):
    """Create the device nodes package scripts expect.

    When rootless the nodes can't be created, so empty files are left as
    bind mount targets instead.
    """
    dev = os.path.join(rootfs, 'dev')
    os.makedirs(dev, exist_ok=True)
    os.chmod(dev, 0o775)

    for path, major, minor in PSEUDO_DEVICES:
        path = os.path.join(rootfs, path)
        if os.path.lexists(path):
            continue
        if rootless:
            with open(path, 'w'):
                pass
        else:
            os.mknod(path, stat.S_IFCHR | 0o666, os.makedev(major, minor))
            os.chmod(path, 0o666)


@contextlib.contextmanager
def fakeroot_env(ctx, rootfs, tmp_dir):
    """Bind mount enough of the host into rootfs for an install to work.

    Only does anything inside a user namespace which allows setgroups,
    the case where the install runs as a fake root. Every mount made is
    undone on exit, whether or not the install succeeded.
    """
    inside, setgroups_allowed = util.is_inside_user_namespace()
    if not (inside and setgroups_allowed):
        yield
        return

    true_path = util.find_bin('true')
    mount_path = util.find_bin('mount')
    umount_path = util.find_bin('umount')

    # Private copies, the originals get true bound over them.
    mount_bin = os.path.join(tmp_dir, 'mount')
    umount_bin = os.path.join(tmp_dir, 'umount')
    shutil.copy2(mount_path, mount_bin)
    shutil.copy2(umount_path, umount_bin)

    proc = os.path.join(rootfs, 'proc')
    os.makedirs(proc, exist_ok=True)
    make_pseudo_devices(rootfs, rootless=True)

    binds = [('/proc', proc)]
    for path, _, _ in PSEUDO_DEVICES:
        binds.append(('/' + path, os.path.join(rootfs, path)))
    binds.append((true_path, mount_path))
    binds.append((true_path, umount_path))

    mounted = []
    try:
        for src, dest in binds:
            LOG.debug('Bind mounting %s on %s' % (src, dest))
            util.run_tool(ctx, [mount_bin, '--bind', src, dest], logger=LOG)
            mounted.append(dest)
        yield
    finally:
        for dest in reversed(mounted):
            try:
                util.run_tool(ctx.detached(), [umount_bin, '-l', dest],
                              logger=LOG)
            except exceptions.CommandFailedError as e:
                LOG.warning('Unable to unmount %s: %s' % (dest, e))


class DistroConveyorPacker(ConveyorPacker):
    """Base for sources whose Get installs packages into the rootfs."""

    def write_file(self, relpath, content, mode):
        path = os.path.join(self.bundle.rootfs_path, relpath)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            f.write(content)
        os.chmod(path, mode)
        return path

    def pack(self, ctx):
        baseenv.make_base_env(self.bundle.rootfs_path, overwrite=True)
        self.write_file(constants.RUNSCRIPT_PATH, envscripts.MINIMAL_RUNSCRIPT,
                        0o755)
        return self.bundle
