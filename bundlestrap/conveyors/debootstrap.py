import logging

from bundlestrap.conveyors import distro
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


# OCI architecture names to Debian's.
DEBIAN_ARCHES = {
    '386': 'i386',
    'amd64': 'amd64',
    'arm': 'armhf',
    'arm64': 'arm64',
    'ppc64le': 'ppc64el',
    'mips64le': 'mips64el',
    's390x': 's390x',
    'riscv64': 'riscv64',
}

EXCLUDES = ['openssl', 'udev', 'debconf-i18n', 'e2fsprogs']
DEFAULT_INCLUDES = ['apt']


def debian_arch(architecture, variant=''):
    if architecture == 'arm' and variant in ('v5', 'v6'):
        return 'armel'
    try:
        return DEBIAN_ARCHES[architecture]
    except KeyError:
        raise exceptions.UnsupportedPlatformError(
            'debootstrap does not support architecture %s' % architecture)


class DebootstrapConveyorPacker(distro.DistroConveyorPacker):
    bootstrap = 'debootstrap'

    def command(self, debootstrap, recipe, arch):
        mirrorurl = recipe.get('mirrorurl')
        if not mirrorurl:
            raise exceptions.RecipeHeaderMissingError('debootstrap',
                                                      'mirrorurl')
        osversion = recipe.get('osversion')
        if not osversion:
            raise exceptions.RecipeHeaderMissingError('debootstrap',
                                                      'osversion')
        mirrorurl, = distro.substitute_osversion('debootstrap', recipe,
                                                 [mirrorurl])
        include = distro.include_list(recipe, DEFAULT_INCLUDES)

        return [debootstrap, '--variant=minbase',
                '--exclude=%s' % ','.join(EXCLUDES),
                '--include=%s' % ','.join(include),
                '--arch=%s' % arch,
                osversion, self.bundle.rootfs_path, mirrorurl]

    def get(self, ctx, bundle):
        self.bundle = bundle
        debootstrap = util.find_bin('debootstrap')
        platform = ociplatform.resolve_platform(bundle.opts)
        cmd = self.command(debootstrap, bundle.recipe,
                           debian_arch(platform.architecture,
                                       platform.variant))

        distro.make_pseudo_devices(bundle.rootfs_path,
                                   rootless=util.is_unprivileged())
        with distro.fakeroot_env(ctx, bundle.rootfs_path, bundle.tmp_dir):
            util.run_tool(ctx, cmd, logger=LOG)
