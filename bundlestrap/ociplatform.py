"""OCI platform handling.

A platform is the (os, architecture, variant) triple an image is built
for. Architecture names are normalized the way containerd does it, so
that a host reporting x86_64 asks registries for amd64 images.
"""

from collections import namedtuple
import logging
import platform as host_platform
import sys

from bundlestrap import constants
from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class Platform(namedtuple('Platform', ['os', 'architecture', 'variant'])):
    __slots__ = ()

    def __str__(self):
        if self.variant:
            return '%s/%s/%s' % (self.os, self.architecture, self.variant)
        return '%s/%s' % (self.os, self.architecture)


def normalize_arch(arch, variant=''):
    """Normalize an architecture and variant pair.

    Returns:
        Tuple of (architecture, variant).
    """
    arch = arch.lower()
    variant = (variant or '').lower()

    if arch == 'i386':
        return '386', ''
    if arch in ('x86_64', 'x86-64', 'amd64'):
        if variant == 'v1':
            variant = ''
        return 'amd64', variant
    if arch in ('aarch64', 'arm64'):
        if variant in ('8', 'v8'):
            variant = ''
        return 'arm64', variant
    if arch == 'armhf':
        return 'arm', 'v7'
    if arch == 'armel':
        return 'arm', 'v6'
    if arch == 'arm':
        if variant in ('', '7'):
            variant = 'v7'
        elif variant in ('5', '6', '8'):
            variant = 'v' + variant
        return 'arm', variant
    return arch, variant


def _read_cpuinfo_arch(path='/proc/cpuinfo'):
    try:
        with open(path) as f:
            for line in f:
                if line.lower().startswith('cpu architecture'):
                    return line.split(':', 1)[1].strip()
    except OSError as e:
        LOG.debug('Unable to read %s: %s' % (path, e))
    return ''


def cpu_variant(arch=None):
    """Return the CPU variant of the host for architectures that have one."""
    if not arch:
        arch, _ = normalize_arch(host_platform.machine())
    if arch not in ('arm', 'arm64'):
        return ''

    cpu_arch = _read_cpuinfo_arch()
    if arch == 'arm64':
        return ''
    if cpu_arch in ('5', '6', '7', '8'):
        if cpu_arch == '8':
            return 'v8'
        return 'v' + cpu_arch
    # AArch32 kernels report numbers like "5TEJ" on older parts.
    if cpu_arch[:1] in ('5', '6', '7'):
        return 'v' + cpu_arch[:1]
    return 'v7'


def default_platform():
    """Return the platform of the host we are running on."""
    if not sys.platform.startswith('linux'):
        raise exceptions.UnsupportedPlatformError(
            '%s is not a supported platform' % sys.platform)

    arch, variant = normalize_arch(host_platform.machine())
    if not variant:
        variant = cpu_variant(arch)
    return Platform('linux', arch, variant)


def platform_from_string(value):
    """Parse an os/arch[/variant] string into a normalized Platform."""
    parts = value.strip().split('/')
    if len(parts) < 2 or len(parts) > 3 or not all(parts):
        raise exceptions.RecipeHeaderMalformedError(
            'invalid platform %r, expected os/arch[/variant]' % value)

    os_name = parts[0].lower()
    if os_name != 'linux':
        raise exceptions.UnsupportedPlatformError(
            '%s is not a supported platform' % os_name)

    variant = ''
    if len(parts) == 3:
        variant = parts[2]
    arch, variant = normalize_arch(parts[1], variant)
    return Platform(os_name, arch, variant)


def platform_from_arch(arch):
    """Resolve a short architecture alias via the alias table."""
    if arch not in constants.ARCH_MAP:
        raise exceptions.ArchUnknownError(
            'failed to parse the arch value: %s, should be one of %s'
            % (arch, sorted(constants.ARCH_MAP.keys())))
    oci_arch, variant = constants.ARCH_MAP[arch]
    oci_arch, variant = normalize_arch(oci_arch, variant)
    return Platform('linux', oci_arch, variant)


def resolve_platform(opts):
    """Work out the platform to request for a build's options."""
    if opts.arch:
        return platform_from_arch(opts.arch)
    if opts.platform:
        if isinstance(opts.platform, Platform):
            return opts.platform
        return platform_from_string(opts.platform)
    return default_platform()


def satisfies(required, candidate):
    """True if candidate is acceptable where required was asked for."""
    req_arch, req_variant = normalize_arch(
        required.architecture, required.variant)
    can_arch, can_variant = normalize_arch(
        candidate.architecture, candidate.variant)

    if required.os != candidate.os:
        return False
    if req_arch != can_arch:
        return False
    if req_variant and req_variant != can_variant:
        return False
    return True


def check_image_platform(required, image):
    """Check the platform declared by an image handle.

    Images that don't declare a platform are accepted with a warning.
    """
    declared = image.platform()
    if not declared or not declared.os or not declared.architecture:
        LOG.warning('OCI image does not declare a platform. It may not be '
                    'compatible with this system.')
        return

    if not satisfies(required, declared):
        raise exceptions.PlatformMismatchError(str(required), str(declared))
