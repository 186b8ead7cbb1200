import logging
import os
import platform

from bundlestrap.conveyors import distro
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


DEFAULT_PACMAN_CONF_URL = ('https://github.com/archlinux/svntogit-packages/'
                           'raw/master/pacman/trunk/pacman.conf')
DEFAULT_PACKAGES = ['base']


class ArchConveyorPacker(distro.DistroConveyorPacker):
    bootstrap = 'arch'

    def packages(self, recipe):
        include = recipe.get('include').strip()
        if include:
            return include.split()
        return list(DEFAULT_PACKAGES)

    def fetch_pacman_conf(self, ctx, url):
        path = os.path.join(self.bundle.tmp_dir, 'pacman.conf')
        r = util.request_url('GET', url, stream=True)
        util.stream_to_file(ctx, r, path)
        return path

    def get(self, ctx, bundle):
        self.bundle = bundle
        recipe = bundle.recipe
        confurl = recipe.get('confurl') or DEFAULT_PACMAN_CONF_URL
        packages = self.packages(recipe)

        pacstrap = util.find_bin('pacstrap')
        arch_chroot = util.find_bin('arch-chroot')

        arch, _ = ociplatform.normalize_arch(platform.machine())
        if arch != 'amd64':
            raise exceptions.UnsupportedPlatformError(
                '%s architecture is not supported' % arch)

        conf = self.fetch_pacman_conf(ctx, confurl)
        rootfs = bundle.rootfs_path

        LOG.debug('Pacstrap: %s, Pacman conf: %s, Install list: %s'
                  % (pacstrap, confurl, ' '.join(packages)))
        with distro.fakeroot_env(ctx, rootfs, bundle.tmp_dir):
            util.run_tool(ctx, [pacstrap, '-C', conf, '-c', '-G', '-M', rootfs,
                                'haveged'] + packages, logger=LOG)

        # Package signing setup, then remove the entropy daemon again.
        util.run_tool(ctx, [arch_chroot, rootfs, '/bin/sh', '-c',
                            'haveged -w 1024; pacman-key --init; '
                            'pacman-key --populate archlinux'], logger=LOG)
        util.run_tool(ctx, [arch_chroot, rootfs, 'pacman', '-Rs',
                            '--noconfirm', 'haveged'], logger=LOG)
