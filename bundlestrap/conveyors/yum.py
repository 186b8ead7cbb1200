import logging
import os
import shutil

from bundlestrap.conveyors import distro
from bundlestrap import exceptions
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


YUM_CONF = 'etc/bootstrap-yum.conf'
YUM_CACHE = 'var/cache/yum-bootstrap'
DEFAULT_INCLUDES = ['/etc/redhat-release', 'coreutils']

TRADITIONAL_DBPATH = '/var/lib/rpm'
SYSIMAGE_DBPATH = '/usr/lib/sysimage/rpm'


def find_installer():
    for name in ('dnf', 'yum'):
        try:
            path = util.find_bin(name)
            LOG.debug('Found %s at %s' % (name, path))
            return path
        except exceptions.ToolMissingError:
            continue
    raise exceptions.ToolMissingError('yum', 'neither yum nor dnf in PATH')


def rpm_macro(ctx, rpm, name):
    out, _, _ = util.run_tool(ctx, [rpm, '--eval', '%%%s' % name], logger=LOG)
    value = out.strip()
    if value == '%%%s' % name:
        return None
    return value


def check_rpm(ctx, rpm):
    """Make sure the host rpm will create a database the target can read."""
    backend = rpm_macro(ctx, rpm, '_db_backend')
    if backend is None:
        LOG.debug('Undefined macro _db_backend is ignored.')
    elif backend != 'bdb':
        LOG.warning('Your host system is using the %s RPM database backend.'
                    % backend)
        LOG.warning('Bootstrapping of older distributions that use the bdb '
                    'backend will fail.')

    dbpath = rpm_macro(ctx, rpm, '_dbpath')
    if dbpath == TRADITIONAL_DBPATH:
        return
    if dbpath == SYSIMAGE_DBPATH:
        LOG.warning('Your host system is using a new RPM database path: %s'
                    % dbpath)
        LOG.warning('Bootstrapping of older distributions that use %s will '
                    'fail.' % TRADITIONAL_DBPATH)
        return

    raise exceptions.BuildError(
        'rpm database is using a non-standard path: %s\n'
        'You are probably running this bootstrap on Debian or Ubuntu.\n'
        'There is a way to work around this problem:\n'
        'Create a file at path %s/.rpmmacros.\n'
        'Place the following lines into the \'.rpmmacros\' file:\n'
        '%%_var /var\n'
        '%%_dbpath %%{_var}/lib/rpm\n'
        'After creating the file, re-run the bootstrap'
        % (dbpath, os.environ.get('HOME', '~')))


def yum_config(mirrorurl, updateurl='', gpg=False):
    gpgcheck = 'gpgcheck=%d' % (1 if gpg else 0)
    lines = [
        '[main]',
        'cachedir=/var/cache/yum-bootstrap',
        'keepcache=0',
        'debuglevel=2',
        'logfile=/var/log/yum.log',
        'syslog_device=/dev/null',
        'exactarch=1',
        'obsoletes=1',
        gpgcheck,
        'plugins=1',
        'reposdir=0',
        'deltarpm=0',
        '',
        '[base]',
        'name=Linux $releasever - $basearch',
        'baseurl=%s' % mirrorurl,
        'enabled=1',
        gpgcheck,
    ]
    if updateurl:
        lines.extend([
            '[updates]',
            'name=Linux $releasever - $basearch updates',
            'baseurl=%s' % updateurl,
            'enabled=1',
            gpgcheck,
            '',
        ])
    return '\n'.join(lines) + '\n'


class YumConveyorPacker(distro.DistroConveyorPacker):
    bootstrap = 'yum'

    def options(self, recipe):
        mirrorurl = recipe.get('mirrorurl')
        if not mirrorurl:
            raise exceptions.RecipeHeaderMissingError('yum', 'mirrorurl')
        mirrorurl, updateurl = distro.substitute_osversion(
            'yum', recipe, [mirrorurl, recipe.get('updateurl')])
        return {
            'mirrorurl': mirrorurl,
            'updateurl': updateurl,
            'osversion': recipe.get('osversion'),
            'include': distro.include_list(recipe, DEFAULT_INCLUDES),
            'setopt': recipe.get('setopt'),
            'gpg': os.environ.get('GPG', ''),
        }

    def import_gpg_key(self, ctx, rpm, gpg):
        LOG.info('We have a GPG key! Preparing RPM database.')
        if not gpg.startswith('https://'):
            raise exceptions.RecipeHeaderMalformedError(
                'gpg key must be fetched with https')
        util.find_bin('curl')

        rootfs = self.bundle.rootfs_path
        util.run_tool(ctx, [rpm, '--root', rootfs, '--initdb'], logger=LOG)
        util.run_tool(ctx, [rpm, '--root', rootfs, '--import', gpg],
                      logger=LOG)
        LOG.info('GPG key import complete!')

    def install_command(self, installer, opts):
        rootfs = self.bundle.rootfs_path
        cmd = [installer, '--noplugins', '-c', os.path.join(rootfs, YUM_CONF),
               '--installroot', rootfs, '--releasever=%s' % opts['osversion'],
               '-y']
        if opts['setopt']:
            cmd.extend(['--setopt', opts['setopt']])
        cmd.append('install')
        cmd.extend(opts['include'])
        return cmd

    def get(self, ctx, bundle):
        self.bundle = bundle
        installer = find_installer()
        rpm = util.find_bin('rpm')
        check_rpm(ctx, rpm)

        opts = self.options(bundle.recipe)
        self.write_file(YUM_CONF, yum_config(opts['mirrorurl'],
                                             opts['updateurl'],
                                             bool(opts['gpg'])), 0o664)
        if opts['gpg']:
            self.import_gpg_key(ctx, rpm, opts['gpg'])
        else:
            LOG.info('Skipping GPG Key Import')

        distro.make_pseudo_devices(bundle.rootfs_path,
                                   rootless=util.is_unprivileged())

        LOG.debug('Installer: %s, OSVersion: %s, MirrorURL: %s, '
                  'UpdateURL: %s, Includes: %s, Setopt: %s'
                  % (installer, opts['osversion'], opts['mirrorurl'],
                     opts['updateurl'], ' '.join(opts['include']),
                     opts['setopt']))
        with distro.fakeroot_env(ctx, bundle.rootfs_path, bundle.tmp_dir):
            util.run_tool(ctx, self.install_command(installer, opts),
                          logger=LOG)

        cache = os.path.join(bundle.rootfs_path, YUM_CACHE)
        if os.path.exists(cache):
            LOG.debug('Removing bootstrap cache %s' % cache)
            shutil.rmtree(cache)
