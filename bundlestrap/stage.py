"""Applying a definition's own sections to a packed rootfs.

Once a source has been fetched and packed, the definition gets its turn.
Sections are applied in this order:

    %pre          on the host, before the source is fetched
    %setup        on the host, with the rootfs in $SINGULARITY_ROOTFS
    %files        host paths copied into the rootfs
    %post         chrooted into the rootfs
    %environment, %runscript, %startscript, %test, %help and %labels
                  written into .singularity.d, along with the definition
    %test         chrooted into the rootfs, unless tests are disabled

Each one only runs when the build's section list allows it. Scripts
chrooted into the rootfs run in a private mount namespace made with
unshare, so none of the bind mounts they need outlive them.
"""

import datetime
import glob
import json
import logging
import os
import shlex
import shutil

from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import runscript
from bundlestrap import unpack
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


SCRIPT_HEADER = '#!/bin/sh\n\n'

# Section, path in the rootfs, mode, and what goes before the section text.
METADATA_SECTIONS = [
    ('environment', constants.ENVIRONMENT_PATH, 0o755, SCRIPT_HEADER),
    ('runscript', constants.RUNSCRIPT_PATH, 0o755, SCRIPT_HEADER),
    ('startscript', constants.STARTSCRIPT_PATH, 0o755, SCRIPT_HEADER),
    ('test', constants.TEST_PATH, 0o755, SCRIPT_HEADER),
    ('help', constants.HELP_PATH, 0o644, ''),
]

# Host paths every chrooted script sees.
SYSTEM_BINDS = [('/dev', 'dev'), ('/proc', 'proc'), ('/sys', 'sys')]
SESSION_FILES = ['resolv.conf', 'hosts']

CONTAINER_PATH = '/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin'


def _section(bundle, name):
    """Return a section's text if the build should use it, else ''."""
    text = bundle.recipe.sections.get(name, '')
    if not text.strip() or not bundle.run_section(name):
        return ''
    return text


def _write(path, mode, content):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(content)
    os.chmod(path, mode)


def script_args(args, script):
    """Return the argv which runs script for a section.

    Sections run with "/bin/sh -ex" unless the section header picks
    another interpreter with -c, as in "%post -c /bin/bash".
    """
    try:
        words = shlex.split(args or '')
    except ValueError as e:
        raise exceptions.RecipeSectionMalformedError(
            'invalid section arguments %r: %s' % (args, e))

    argv = ['/bin/sh', '-ex']
    if '-c' in words:
        argv = words[words.index('-c') + 1:]
        if not argv:
            raise exceptions.RecipeSectionMalformedError(
                'section argument -c needs an interpreter')
    return argv + [script]


def host_env(rootfs):
    environment = '/' + constants.POST_ENVIRONMENT_PATH
    return {
        'SINGULARITY_ROOTFS': rootfs,
        'APPTAINER_ROOTFS': rootfs,
        'SINGULARITY_ENVIRONMENT': environment,
        'APPTAINER_ENVIRONMENT': environment,
    }


def container_env():
    environment = '/' + constants.POST_ENVIRONMENT_PATH
    labels = '/' + constants.BUILD_LABELS_PATH
    return {
        'PATH': CONTAINER_PATH,
        'HOME': '/root',
        'LANG': 'C',
        'SINGULARITY_ENVIRONMENT': environment,
        'APPTAINER_ENVIRONMENT': environment,
        'SINGULARITY_LABELS': labels,
        'APPTAINER_LABELS': labels,
    }


def run_host_script(ctx, bundle, name):
    """Run a %pre or %setup section on the host.

    Returns:
        True if the section ran.
    """
    text = _section(bundle, name)
    if not text:
        return False

    path = os.path.join(bundle.tmp_dir, '%s-script' % name)
    _write(path, 0o755, text + '\n')
    argv = script_args(bundle.recipe.section_args.get(name), path)
    LOG.info('Running %%%s scriptlet' % name)
    try:
        util.run_tool(ctx, argv, env=host_env(bundle.rootfs_path),
                      logger=LOG)
    finally:
        os.unlink(path)
    return True


def parse_files(text):
    """Return the (source, destination) pairs of a %files section."""
    pairs = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        try:
            words = shlex.split(line)
        except ValueError as e:
            raise exceptions.RecipeSectionMalformedError(
                'invalid %%files line %r: %s' % (line, e))
        if len(words) > 2:
            raise exceptions.RecipeSectionMalformedError(
                'invalid %%files line %r: expected a source and an optional '
                'destination' % line)
        pairs.append((words[0], words[-1]))
    return pairs


def _copy(src, dest):
    LOG.info('Copying %s to %s' % (src, dest))
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    if os.path.isdir(src):
        shutil.copytree(src, dest, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest)


def copy_files(ctx, bundle):
    """Copy the host paths listed in %files into the rootfs.

    Sources may be globs. A destination which ends in a slash, which is
    an existing directory, or which receives more than one source gets
    each source copied inside it. Symlinks in the sources are followed.

    Returns:
        The number of paths copied.
    """
    text = _section(bundle, 'files')
    if not text:
        return 0

    args = bundle.recipe.section_args.get('files')
    if args:
        raise exceptions.RecipeSectionMalformedError(
            'copying files %s is not supported, only one stage is built'
            % args)

    rootfs = bundle.rootfs_path
    copied = 0
    for src, dst in parse_files(text):
        matches = sorted(glob.glob(src))
        if not matches:
            raise exceptions.BuildError(
                '%%files source %s does not exist' % src)

        target = unpack.secure_join(rootfs, dst)
        into = (dst.endswith('/') or len(matches) > 1 or
                os.path.isdir(target))
        for match in matches:
            ctx.check()
            if into:
                name = os.path.basename(match.rstrip('/'))
                dest = unpack.secure_join(rootfs, os.path.join(dst, name))
            else:
                dest = target
            _copy(match, dest)
            copied += 1
    return copied


def parse_binds(binds):
    """Parse "src[:dst[:ro|rw]]" bind specs, which may be comma separated.

    Returns:
        A list of (src, dst, read_only) tuples.
    """
    result = []
    for spec in binds:
        for item in spec.split(','):
            item = item.strip()
            if not item:
                continue
            parts = item.split(':')
            if len(parts) > 3:
                raise exceptions.BuildError('invalid bind %s' % item)
            src = parts[0]
            dst = parts[1] if len(parts) > 1 and parts[1] else src
            option = parts[2] if len(parts) > 2 else 'rw'
            if option not in ('ro', 'rw'):
                raise exceptions.BuildError(
                    'invalid bind option %s in %s, should be ro or rw'
                    % (option, item))
            if not os.path.exists(src):
                raise exceptions.BuildError(
                    'bind source %s does not exist' % src)
            result.append((src, dst, option == 'ro'))
    return result


def fakeroot_binds(ctx, fakeroot_path):
    """Work out what has to be bound into the rootfs to run fakeroot there.

    fakeroot is a wrapper which preloads its library, so the library's
    directory goes in at the path the wrapper expects, as does faked.

    Returns:
        A list of (src, dst) pairs.
    """
    out, _, _ = util.run_tool(ctx, [fakeroot_path, 'env'], logger=LOG)
    found = {}
    for line in out.splitlines():
        key, _, value = line.partition('=')
        if key in ('LD_PRELOAD', 'LD_LIBRARY_PATH'):
            found[key] = value
    preload = found.get('LD_PRELOAD', '')
    if not preload:
        raise exceptions.BuildError(
            'no LD_PRELOAD found in the environment of %s' % fakeroot_path)

    lib_dir = None
    if os.path.isabs(preload):
        lib_dir = os.path.dirname(preload)
    else:
        for candidate in found.get('LD_LIBRARY_PATH', '').split(':'):
            if candidate and os.path.exists(os.path.join(candidate, preload)):
                lib_dir = candidate
                break
    if not lib_dir:
        raise exceptions.BuildError(
            'unable to find %s for %s' % (preload, fakeroot_path))

    binds = [(fakeroot_path, 'usr/bin/fakeroot'), (lib_dir, lib_dir)]
    faked = os.path.join(os.path.dirname(fakeroot_path), 'faked')
    if os.path.exists(faked):
        binds.append((faked, 'usr/bin/faked'))
    return binds


def _make_point(path, directory):
    """Create a mount point, returning the paths created top down."""
    created = []
    parent = os.path.dirname(path)
    while not os.path.lexists(parent):
        created.insert(0, parent)
        parent = os.path.dirname(parent)
    os.makedirs(os.path.dirname(path), exist_ok=True)

    if not os.path.lexists(path):
        if directory:
            os.mkdir(path)
        else:
            open(path, 'w').close()
        created.append(path)
    return created


def _remove_points(created):
    for path in reversed(created):
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                os.rmdir(path)
            else:
                os.unlink(path)
        except OSError as e:
            LOG.warning('Unable to remove mount point %s: %s' % (path, e))


def launcher_script(rootfs, mounts, argv, env):
    """Return the shell script which mounts then execs argv in rootfs.

    Args:
        rootfs: The rootfs to chroot into.
        mounts: (src, dest, read_only) tuples, dest already resolved
            inside rootfs.
        argv: The command to run inside rootfs.
        env: The whole environment of the command.
    """
    mount = util.find_bin('mount')
    lines = ['set -e']
    for src, dest, read_only in mounts:
        lines.append('%s --rbind %s %s'
                     % (mount, shlex.quote(src), shlex.quote(dest)))
        if read_only:
            lines.append('%s -o remount,bind,ro %s'
                         % (mount, shlex.quote(dest)))

    command = [util.find_bin('env'), '-i']
    for key in sorted(env):
        command.append('%s=%s' % (key, env[key]))
    command.append(util.find_bin('chroot'))
    command.append(rootfs)
    command.extend(argv)
    lines.append('exec ' + ' '.join(shlex.quote(c) for c in command))
    return '\n'.join(lines) + '\n'


def run_in_rootfs(ctx, bundle, argv, name):
    """Run argv chrooted into the bundle's rootfs.

    The host's /dev, /proc and /sys, copies of its resolv.conf and hosts,
    the build's binds and fakeroot (when configured) are bound in first.
    Unprivileged builds also get a user namespace with root mapped to the
    calling user. Mount points created here are removed afterwards.
    """
    rootfs = bundle.rootfs_path
    opts = bundle.opts

    binds = [(src, dst, False) for src, dst in SYSTEM_BINDS]
    for filename in SESSION_FILES:
        host_path = os.path.join('/etc', filename)
        if os.path.exists(host_path):
            session_path = os.path.join(bundle.tmp_dir, filename)
            shutil.copy2(host_path, session_path)
            binds.append((session_path, 'etc/' + filename, False))
    binds.extend(parse_binds(opts.binds))

    prefix = []
    if opts.fakeroot_path:
        binds.extend((src, dst, True)
                     for src, dst in fakeroot_binds(ctx, opts.fakeroot_path))
        prefix = ['/usr/bin/fakeroot']

    created = []
    launcher = os.path.join(bundle.tmp_dir, '%s-launcher' % name)
    try:
        mounts = []
        for src, dst, read_only in binds:
            dest = unpack.secure_join(rootfs, dst)
            created.extend(_make_point(dest, os.path.isdir(src)))
            mounts.append((src, dest, read_only))

        _write(launcher, 0o755, launcher_script(
            rootfs, mounts, prefix + argv, container_env()))

        cmd = [util.find_bin('unshare'), '--mount', '--propagation',
               'private', '--fork']
        if opts.unprivilege or util.is_unprivileged():
            cmd.append('--map-root-user')
        cmd.extend(['/bin/sh', '-e', launcher])
        util.run_tool(ctx, cmd, logger=LOG)
    finally:
        if os.path.exists(launcher):
            os.unlink(launcher)
        _remove_points(created)


def run_post(ctx, bundle):
    """Run %post inside the rootfs.

    Returns:
        True if the section ran.
    """
    text = _section(bundle, 'post')
    if not text:
        return False

    path = os.path.join(bundle.rootfs_path, constants.POST_SCRIPT_PATH)
    _write(path, 0o755, text + '\n')
    argv = script_args(bundle.recipe.section_args.get('post'),
                       '/' + constants.POST_SCRIPT_PATH)
    LOG.info('Running %post scriptlet')
    try:
        run_in_rootfs(ctx, bundle, argv, 'post')
    finally:
        os.unlink(path)
    return True


def run_test(ctx, bundle):
    """Run the rootfs' test action, which runs the %test section.

    Returns:
        True if the section ran.
    """
    if not _section(bundle, 'test'):
        return False
    if bundle.opts.no_test:
        LOG.info('Skipping %test, tests are disabled')
        return False

    LOG.info('Running %test scriptlet')
    run_in_rootfs(ctx, bundle, ['/' + constants.TEST_ACTION_PATH], 'test')
    return True


def parse_labels(text):
    labels = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        words = line.split(None, 1)
        labels[words[0]] = words[1].strip() if len(words) > 1 else ''
    return labels


def insert_labels(bundle):
    """Merge %labels, and labels written by %post, into labels.json.

    Labels the rootfs already has are only replaced when forced.
    """
    rootfs = bundle.rootfs_path
    labels = parse_labels(_section(bundle, 'labels'))

    build_labels = os.path.join(rootfs, constants.BUILD_LABELS_PATH)
    if os.path.isfile(build_labels):
        with open(build_labels) as f:
            labels.update(parse_labels(f.read()))
        os.unlink(build_labels)

    if not labels:
        return {}

    path = os.path.join(rootfs, constants.LABELS_PATH)
    merged = {}
    if os.path.exists(path):
        with open(path) as f:
            try:
                merged = json.load(f)
            except ValueError as e:
                raise exceptions.BuildError(
                    'unable to read existing labels %s: %s' % (path, e))

    for key, value in sorted(labels.items()):
        if key in merged and merged[key] != value and not bundle.opts.force:
            LOG.warning('Label %s already exists and will not be replaced'
                        % key)
            continue
        merged[key] = value
    merged.setdefault('org.label-schema.schema-version', '1.0')
    merged['org.label-schema.build-date'] = \
        datetime.datetime.now(datetime.timezone.utc).strftime(
            '%A_%d_%B_%Y_%H:%M:%S_%Z')

    _write(path, 0o644, runscript.generate_labels(merged))
    return merged


def insert_definition(bundle):
    """Keep the definition in the rootfs, moving any earlier one aside."""
    raw = bundle.recipe.raw
    if not raw:
        return None

    rootfs = bundle.rootfs_path
    path = os.path.join(rootfs, constants.DEFINITION_PATH)
    if os.path.exists(path):
        history = os.path.join(rootfs, constants.DEFINITION_HISTORY_DIR)
        os.makedirs(history, exist_ok=True)
        moved = os.path.join(history, 'Singularity%d'
                             % len(os.listdir(history)))
        LOG.debug('Moving previous definition to %s' % moved)
        os.rename(path, moved)

    _write(path, 0o644, raw)
    return path


def insert_metadata(bundle):
    rootfs = bundle.rootfs_path
    for name, relpath, mode, header in METADATA_SECTIONS:
        text = _section(bundle, name)
        if text:
            LOG.debug('Writing %%%s to %s' % (name, relpath))
            _write(os.path.join(rootfs, relpath), mode, header + text + '\n')
    insert_labels(bundle)
    insert_definition(bundle)


def apply_sections(ctx, bundle):
    """Apply the sections which follow Get and Pack, in build order."""
    for app in sorted(bundle.recipe.apps):
        LOG.warning('Not installing app %s, SCIF apps are not supported'
                    % app)

    run_host_script(ctx, bundle, 'setup')
    copy_files(ctx, bundle)
    ctx.check()
    run_post(ctx, bundle)
    insert_metadata(bundle)
    ctx.check()
    run_test(ctx, bundle)
    return bundle
