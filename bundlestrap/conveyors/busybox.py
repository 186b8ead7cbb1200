import logging
import os

from bundlestrap import baseenv
from bundlestrap import constants
from bundlestrap.conveyors import distro
from bundlestrap import envscripts
from bundlestrap import exceptions
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


# The busybox mirrors are often slow to accept connections, so allow a
# long connect and no read timeout.
DOWNLOAD_TIMEOUT = (60, None)

BASE_FILES = [
    ('etc/passwd', 'root:!:0:0:root:/root:/bin/sh'),
    ('etc/group', ' root:x:0:'),
    ('etc/hosts', '127.0.0.1   localhost localhost.localdomain localhost4 '
                  'localhost4.localdomain4'),
]


def relink_applets(bin_dir, busybox):
    """Point applet symlinks at busybox relative to their own directory."""
    real = os.path.realpath(busybox)
    for entry in os.listdir(bin_dir):
        path = os.path.join(bin_dir, entry)
        if not os.path.islink(path):
            continue
        target = os.readlink(path)
        if os.path.isabs(target) and (target == busybox or
                                      os.path.realpath(target) == real):
            os.unlink(path)
            os.symlink('busybox', path)


class BusyBoxConveyorPacker(distro.DistroConveyorPacker):
    bootstrap = 'busybox'

    def fetch(self, ctx, mirrorurl, dest):
        r = util.request_url('GET', mirrorurl, stream=True,
                             timeout=DOWNLOAD_TIMEOUT)
        written, _ = util.stream_to_file(ctx, r, dest)

        expected = r.headers.get('Content-Length')
        if expected is not None and int(expected) != written:
            raise exceptions.BuildError(
                'file received is not the right size. supposed to be: %s '
                'actually: %d' % (expected, written))
        os.chmod(dest, 0o755)
        LOG.info('Downloaded busybox (%d bytes) from %s' % (written, mirrorurl))

    def get(self, ctx, bundle):
        self.bundle = bundle
        mirrorurl = bundle.recipe.get('mirrorurl')
        if not mirrorurl:
            raise exceptions.RecipeHeaderMissingError(
                'busybox', 'mirrorurl',
                'invalid busybox header, no mirror url specified')

        baseenv.make_base_env(bundle.rootfs_path, overwrite=True)
        for relpath, content in BASE_FILES:
            self.write_file(relpath, content, 0o664)

        bin_dir = os.path.join(bundle.rootfs_path, 'bin')
        os.makedirs(bin_dir, exist_ok=True)
        busybox = os.path.join(bin_dir, 'busybox')
        self.fetch(ctx, mirrorurl, busybox)

        util.run_tool(ctx, [busybox, '--install', '-s', bin_dir], logger=LOG)
        relink_applets(bin_dir, busybox)

    def pack(self, ctx):
        # The base env went in before the base files during get, so
        # rewriting it here would truncate etc/hosts.
        self.write_file(constants.RUNSCRIPT_PATH, envscripts.MINIMAL_RUNSCRIPT,
                        0o755)
        return self.bundle
