import logging
import os
import stat

from bundlestrap import envscripts


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


DIRECTORIES = [
    '.singularity.d/libs',
    '.singularity.d/actions',
    '.singularity.d/env',
    'dev',
    'proc',
    'root',
    'var/tmp',
    'tmp',
    'etc',
    'sys',
    'home',
]

SYMLINKS = [
    ('singularity', '.singularity.d/runscript'),
    ('.run', '.singularity.d/actions/run'),
    ('.exec', '.singularity.d/actions/exec'),
    ('.test', '.singularity.d/actions/test'),
    ('.shell', '.singularity.d/actions/shell'),
    ('environment', '.singularity.d/env/90-environment.sh'),
]

FILES = [
    ('etc/hosts', 0o644, ''),
    ('etc/resolv.conf', 0o644, ''),
    ('.singularity.d/actions/exec', 0o755, envscripts.EXEC_ACTION),
    ('.singularity.d/actions/run', 0o755, envscripts.RUN_ACTION),
    ('.singularity.d/actions/shell', 0o755, envscripts.SHELL_ACTION),
    ('.singularity.d/actions/start', 0o755, envscripts.START_ACTION),
    ('.singularity.d/actions/test', 0o755, envscripts.TEST_ACTION),
    ('.singularity.d/env/01-base.sh', 0o755, envscripts.BASE_ENV),
    ('.singularity.d/env/90-environment.sh', 0o755, envscripts.ENVIRONMENT),
    ('.singularity.d/env/95-apps.sh', 0o755, envscripts.APPS_ENV),
    ('.singularity.d/env/99-base.sh', 0o755, envscripts.FINAL_BASE_ENV),
    ('.singularity.d/env/99-runtimevars.sh', 0o755,
     envscripts.RUNTIME_VARS_ENV),
    ('.singularity.d/runscript', 0o755, envscripts.RUNSCRIPT),
    ('.singularity.d/startscript', 0o755, envscripts.STARTSCRIPT),
]


def make_file(path, mode, content, overwrite):
    """Write content to path unless it exists and overwrite is False.

    An existing file is always chmod'd first. Images extracted from docker
    layers often have an etc/hosts we can't write to.
    """
    if os.path.islink(path):
        # Never follow a link out of the rootfs.
        if not overwrite:
            return
        os.unlink(path)
    elif os.path.exists(path):
        os.chmod(path, mode)
        if not overwrite:
            return

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, 'w') as f:
        f.write(content)
    os.chmod(path, mode)


def make_dirs(rootfs):
    for d in DIRECTORIES:
        path = os.path.join(rootfs, d)
        if not os.path.lexists(path):
            os.makedirs(path, mode=0o755, exist_ok=True)
            os.chmod(path, 0o755)


def make_symlinks(rootfs):
    for name, target in SYMLINKS:
        path = os.path.join(rootfs, name)
        if os.path.lexists(path):
            continue
        os.symlink(target, path)


def make_files(rootfs, overwrite):
    for name, mode, content in FILES:
        make_file(os.path.join(rootfs, name), mode, content, overwrite)


def make_base_env(rootfs, overwrite=False):
    """Install the directories, symlinks and scripts of the base env.

    Args:
        rootfs: Path to the rootfs being built.
        overwrite: Rewrite files which already exist. When False, only
            their permissions are updated.
    """
    st = os.stat(rootfs)
    if not st.st_mode & stat.S_IWUSR:
        LOG.info('Adding owner write permission to build path: %s' % rootfs)
        os.chmod(rootfs, stat.S_IMODE(st.st_mode) | stat.S_IWUSR)

    make_dirs(rootfs)
    make_symlinks(rootfs)
    make_files(rootfs, overwrite)
