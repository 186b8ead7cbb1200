import logging
import os
import platform
import tempfile

from bundlestrap.conveyors import distro
from bundlestrap.conveyors import yum
from bundlestrap import exceptions
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


ZYPPER_CONF = 'etc/zypp/zypp.conf'
ZYPPER_CONF_CONTENT = '[main]\ncachedir=/var/cache/zypp-bootstrap\n\n'
DEFAULT_INCLUDES = ['aaa_base']

# zypper's ZYPPER_EXIT_INF_RPM_SCRIPT_FAILED
EXIT_RPM_SCRIPT_FAILED = 107


def other_urls(recipe):
    """Collect otherurl0..otherurlN (or otherurl1..N), stopping at a gap."""
    urls = []
    index = 0 if recipe.get('otherurl0') else 1
    while recipe.get('otherurl%d' % index):
        urls.append(recipe.get('otherurl%d' % index))
        index += 1
    return urls


def sle_registration(recipe):
    """Work out the SUSEConnect product and module version, if registering.

    Returns:
        None when product, user and regcode are all unset, otherwise a
        tuple of (product, module version).
    """
    product = recipe.get('product')
    user = recipe.get('user')
    regcode = recipe.get('regcode')
    if not (product or user or regcode):
        return None
    for key, value in (('product', product), ('user', user),
                       ('regcode', regcode)):
        if not value:
            raise exceptions.RecipeHeaderMissingError(
                'zypper', key,
                "for installation of SLE 'Product', 'User' and 'Regcode' "
                "need to be set")

    osversion = recipe.get('osversion')
    if not osversion:
        raise exceptions.RecipeHeaderMissingError(
            'zypper', 'osversion',
            'invalid zypper header, OSVersion always required for SLE')

    parts = osversion.split('.')
    if not parts[0].isdigit():
        raise exceptions.RecipeHeaderMalformedError(
            'OSVersion has wrong format: %s' % osversion)
    major = parts[0]
    minor = ''
    servicepack = ''
    if len(parts) > 1:
        minor = '.' + parts[1]
        if parts[1].isdigit() and int(parts[1]) > 0:
            servicepack = '.' + parts[1]

    if int(major) > 12 and not recipe.get('mirrorurl'):
        raise exceptions.RecipeHeaderMissingError(
            'zypper', 'mirrorurl',
            "for SLE version > 12 'MirrorURL' must be defined and point "
            "to the installer")

    product = distro.OSVERSION_RE.sub(major + servicepack, product)
    components = product.split('/')
    machine = platform.machine()
    if len(components) == 3:
        machine = components[2]
    if len(components) == 2:
        product += '/' + machine
    elif len(components) == 3:
        product += '/' + osversion + '/' + machine
    elif len(components) != 1:
        raise exceptions.RecipeHeaderMalformedError(
            'malformed Product setting: %s' % product)
    return product, '%s%s/%s' % (major, minor, machine)


class ZypperConveyorPacker(distro.DistroConveyorPacker):
    bootstrap = 'zypper'

    def zypper(self, ctx, zypper, *args, **kwargs):
        cmd = [zypper, '--root', self.bundle.rootfs_path] + list(args)
        return util.run_tool(ctx, cmd, logger=LOG, **kwargs)

    def add_repo(self, ctx, zypper, url, name, refresh_only=False):
        args = ['ar']
        if refresh_only:
            args.append('-f')
        self.zypper(ctx, zypper, *(args + [url, name]))
        self.zypper(ctx, zypper, '--gpg-auto-import-keys', 'refresh', '-r',
                    name)

    def import_pgp(self, ctx, key):
        fd, path = tempfile.mkstemp(prefix='pgp-', dir=self.bundle.tmp_dir)
        with os.fdopen(fd, 'w') as f:
            f.write(key + '\n')
        try:
            util.run_tool(ctx, [util.find_bin('rpmkeys'), '--root',
                                self.bundle.rootfs_path, '--import', path],
                          logger=LOG)
        finally:
            os.unlink(path)

    def register(self, ctx, product, modver):
        recipe = self.bundle.recipe
        suseconnect = util.find_bin('SUSEConnect')
        rootfs = self.bundle.rootfs_path

        cmd = [suseconnect, '--root', rootfs, '--product', product,
               '--email', recipe.get('user'), '--regcode',
               recipe.get('regcode')]
        if recipe.get('registerurl'):
            cmd.extend(['--url', recipe.get('registerurl')])
        util.run_tool(ctx, cmd, logger=LOG)

        for module in recipe.get('modules').split(','):
            module = module.strip()
            if not module:
                continue
            util.run_tool(ctx, [suseconnect, '--root', rootfs, '--product',
                                '%s/%s' % (module, modver)], logger=LOG)

    def get(self, ctx, bundle):
        self.bundle = bundle
        recipe = bundle.recipe

        zypper = util.find_bin('zypper')
        yum.check_rpm(ctx, util.find_bin('rpm'))

        include = distro.include_list(recipe, DEFAULT_INCLUDES)
        registration = sle_registration(recipe)
        mirrorurl = recipe.get('mirrorurl')
        updateurl = recipe.get('updateurl')
        osversion = recipe.get('osversion')
        if registration:
            include.append('SUSEConnect')
        elif not mirrorurl:
            raise exceptions.RecipeHeaderMissingError(
                'zypper', 'mirrorurl',
                'invalid zypper header, no MirrorURL specified')
        mirrorurl, updateurl = distro.substitute_osversion(
            'zypper', recipe, [mirrorurl, updateurl])

        self.write_file(ZYPPER_CONF, ZYPPER_CONF_CONTENT, 0o664)
        distro.make_pseudo_devices(bundle.rootfs_path,
                                   rootless=util.is_unprivileged())

        with distro.fakeroot_env(ctx, bundle.rootfs_path, bundle.tmp_dir):
            if mirrorurl:
                self.zypper(ctx, zypper, 'ar', mirrorurl, 'repo')
                self.zypper(ctx, zypper, '--gpg-auto-import-keys', 'refresh')
                if updateurl:
                    self.add_repo(ctx, zypper, updateurl, 'update',
                                  refresh_only=True)

            if recipe.get('productpgp'):
                self.import_pgp(ctx, recipe.get('productpgp'))

            if registration:
                self.register(ctx, *registration)

            for i, url in enumerate(other_urls(recipe)):
                self.add_repo(ctx, zypper, url, 'repo-%d' % i,
                              refresh_only=True)

            cmd = [zypper, '--non-interactive', '-c',
                   os.path.join(bundle.rootfs_path, ZYPPER_CONF),
                   '--root', bundle.rootfs_path,
                   '--releasever=%s' % osversion,
                   '-n', 'install', '--auto-agree-with-licenses',
                   '--download-in-advance'] + include
            LOG.debug('Zypper: %s, OSVersion: %s, MirrorURL: %s, '
                      'Includes: %s'
                      % (zypper, osversion, mirrorurl, ' '.join(include)))
            _, _, exit_code = util.run_tool(
                ctx, cmd, logger=LOG,
                check_exit_code=(0, EXIT_RPM_SCRIPT_FAILED))
            if exit_code == EXIT_RPM_SCRIPT_FAILED:
                LOG.warning('Bootstrap succeeded, some RPM scripts failed')
