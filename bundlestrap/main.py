import click
import logging
import os
from shakenfist_utilities import logs
import signal
import sys

from bundlestrap import build as build_mod
from bundlestrap import bundle
from bundlestrap import cache
from bundlestrap import context
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import recipe as recipe_mod
from bundlestrap import uri


LOG = logs.setup_console(__name__)


@click.group()
@click.option('--verbose', is_flag=True)
@click.option('--tmpdir', default=None, envvar='TMPDIR',
              help='Directory for temporary build files')
@click.option('--arch', default=None,
              help='Architecture to build for, for example arm64v8')
@click.option('--platform', default=None,
              help='Platform to build for, for example linux/arm64')
@click.option('--cache-dir', default=None,
              help='Directory to cache downloaded images in')
@click.option('--authfile', default=None,
              help='Docker-style credentials file for registries')
@click.option('--no-https', is_flag=True, default=False,
              help='Use HTTP instead of HTTPS for remote sources')
@click.pass_context
def cli(ctx, verbose=None, tmpdir=None, arch=None, platform=None,
        cache_dir=None, authfile=None, no_https=None):
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
        LOG.setLevel(logging.DEBUG)

    if not ctx.obj:
        ctx.obj = {}
    ctx.obj['TMPDIR'] = tmpdir
    ctx.obj['ARCH'] = arch
    ctx.obj['PLATFORM'] = platform
    ctx.obj['CACHE_DIR'] = cache_dir
    ctx.obj['AUTHFILE'] = authfile
    ctx.obj['NO_HTTPS'] = no_https


def _error(message):
    click.echo('Error: %s' % message, err=True)
    sys.exit(1)


def cancel_on_signal(build_ctx, signums=(signal.SIGTERM,)):
    """Cancel build_ctx when one of signums arrives."""
    def _cancel(signum, frame):
        LOG.warning('Received signal %d, cancelling build' % signum)
        build_ctx.cancel()

    for signum in signums:
        signal.signal(signum, _cancel)
    return _cancel


@click.command('build')
@click.argument('definition')
@click.argument('destination')
@click.option('--section', 'sections', multiple=True,
              help='Only run the named sections (can be repeated)')
@click.option('--bind', 'binds', multiple=True,
              help='Bind src[:dst[:ro]] into the rootfs for %post and %test')
@click.option('--no-test', is_flag=True, default=False,
              help='Do not run the %test section')
@click.option('--unprivileged', is_flag=True, default=False,
              help='Extract and run sections as if not root')
@click.option('--fix-perms', is_flag=True, default=False,
              help='Give the owner rwX on everything in the rootfs')
@click.option('--sandbox', is_flag=True, default=False,
              help='Warn about permissions which prevent removal')
@click.option('--no-cleanup', is_flag=True, default=False,
              help='Keep the build directories on failure')
@click.option('--library', default=None,
              help='Container library URL')
@click.option('--fakeroot-path', default='',
              help='Path to a fakeroot wrapper for unprivileged builds')
@click.option('--docker-host', default=None,
              help='Docker daemon to use for docker-daemon sources')
@click.option('--update', is_flag=True, default=False,
              help='Update an existing sandbox in place')
@click.option('--force', is_flag=True, default=False,
              help='Replace an existing destination')
@click.option('--json-objects', is_flag=True, default=False,
              help='Write the build\'s JSON objects into .singularity.d')
@click.pass_context
def build_cmd(ctx, definition, destination, sections, binds, no_test,
              unprivileged, fix_perms, sandbox, no_cleanup, library,
              fakeroot_path, docker_host, update, force, json_objects):
    """Build DEFINITION into a sandbox directory at DESTINATION."""
    img_cache = None
    if ctx.obj['CACHE_DIR']:
        img_cache = cache.ImageCache(ctx.obj['CACHE_DIR'])

    opts = bundle.Options(
        sections=list(sections) or None,
        tmp_dir=ctx.obj['TMPDIR'],
        library_url=library,
        library_auth_token=os.environ.get('BUNDLESTRAP_LIBRARY_TOKEN'),
        fakeroot_path=fakeroot_path,
        binds=binds,
        no_test=no_test,
        unprivilege=unprivileged,
        docker_daemon_host=docker_host,
        img_cache=img_cache,
        no_cache=img_cache is None,
        force=force,
        update=update,
        no_https=ctx.obj['NO_HTTPS'],
        no_clean_up=no_cleanup,
        fix_perms=fix_perms,
        sandbox_target=sandbox,
        arch=ctx.obj['ARCH'],
        req_auth_file=ctx.obj['AUTHFILE'],
        platform=ctx.obj['PLATFORM'])

    build_ctx = context.BuildContext()
    cancel_on_signal(build_ctx)

    try:
        recipe = recipe_mod.parse_file(definition)
        build_mod.build(build_ctx, recipe, destination, opts,
                        write_json=json_objects)
    except (exceptions.BuildError, OSError) as e:
        _error(e)


@click.command('inspect-ref')
@click.argument('ref')
@click.pass_context
def inspect_ref_cmd(ctx, ref):
    """Show how REF is parsed."""
    try:
        parsed = uri.parse_ref(ref)
    except exceptions.BuildError as e:
        _error(e)

    for field in parsed._fields:
        value = getattr(parsed, field)
        if value is not None:
            click.echo('%s: %s' % (field, value))


@click.command('platform')
@click.pass_context
def platform_cmd(ctx):
    """Show the platform images will be fetched for."""
    try:
        platform = ociplatform.resolve_platform(bundle.Options(
            arch=ctx.obj['ARCH'], platform=ctx.obj['PLATFORM']))
    except exceptions.BuildError as e:
        _error(e)
    click.echo(str(platform))


cli.add_command(build_cmd)
cli.add_command(inspect_ref_cmd)
cli.add_command(platform_cmd)
