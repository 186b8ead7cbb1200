"""Build orchestration: pick a source for a recipe, run it, apply the
definition's sections and assemble the result."""

import logging
import os
import shutil
import tempfile

from bundlestrap import bundle as bundle_mod
from bundlestrap.conveyors.arch import ArchConveyorPacker
from bundlestrap.conveyors.buildkit import BuildKitConveyorPacker
from bundlestrap.conveyors.busybox import BusyBoxConveyorPacker
from bundlestrap.conveyors.debootstrap import DebootstrapConveyorPacker
from bundlestrap.conveyors.library import LibraryConveyorPacker
from bundlestrap.conveyors.local import LocalConveyorPacker
from bundlestrap.conveyors.oci import OCIConveyorPacker
from bundlestrap.conveyors.oras import OrasConveyorPacker
from bundlestrap.conveyors.scratch import ScratchConveyorPacker
from bundlestrap.conveyors.shub import ShubConveyorPacker
from bundlestrap.conveyors.yum import YumConveyorPacker
from bundlestrap.conveyors.zypper import ZypperConveyorPacker
from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import stage
from bundlestrap import unpack


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


CONVEYORS = {
    'docker': OCIConveyorPacker,
    'docker-daemon': OCIConveyorPacker,
    'docker-archive': OCIConveyorPacker,
    'oci': OCIConveyorPacker,
    'oci-archive': OCIConveyorPacker,
    'buildkit': BuildKitConveyorPacker,
    'library': LibraryConveyorPacker,
    'oras': OrasConveyorPacker,
    'shub': ShubConveyorPacker,
    'localimage': LocalConveyorPacker,
    'yum': YumConveyorPacker,
    'zypper': ZypperConveyorPacker,
    'arch': ArchConveyorPacker,
    'debootstrap': DebootstrapConveyorPacker,
    'busybox': BusyBoxConveyorPacker,
    'scratch': ScratchConveyorPacker,
}


def conveyor_packer_for(recipe):
    """Return a new conveyor packer for the recipe's bootstrap header."""
    bootstrap = recipe.bootstrap
    if not bootstrap:
        raise exceptions.RecipeHeaderMissingError(
            'definition', 'bootstrap', 'no bootstrap specified in definition')
    if bootstrap not in CONVEYORS:
        raise exceptions.RecipeHeaderMalformedError(
            'unsupported bootstrap %s, should be one of %s'
            % (bootstrap, ', '.join(sorted(CONVEYORS))))
    return CONVEYORS[bootstrap]()


def run_build(ctx, bundle):
    """Run Get then Pack for bundle's recipe.

    On failure the bundle is cleaned up (unless the options say not to)
    and the error is raised again.

    Returns:
        The packed Bundle.
    """
    cp = conveyor_packer_for(bundle.recipe)
    kind = bundle.recipe.bootstrap
    try:
        LOG.info('Starting %s bootstrap' % kind)
        cp.get(ctx, bundle)
        ctx.check()
        result = cp.pack(ctx)
        LOG.info('Finished %s bootstrap' % kind)
        return result

    except Exception as e:
        LOG.error('%s bootstrap failed: %s: %s'
                  % (kind, e.__class__.__name__, e))
        cp.bundle = bundle
        try:
            cp.cleanup()
        except exceptions.BundleRemovalError as removal_error:
            LOG.error('Cleanup after failed build also failed: %s'
                      % removal_error)
        raise


def write_json_objects(bundle, rootfs):
    for key, data in sorted(bundle.json_objects.items()):
        path = os.path.join(rootfs, constants.SINGULARITY_D, '%s.json' % key)
        LOG.debug('Writing JSON object %s to %s' % (key, path))
        with open(path, 'wb') as f:
            f.write(data)
        os.chmod(path, 0o644)


def assemble_sandbox(ctx, bundle, dest, write_json=False):
    """Put the built rootfs at dest as a sandbox directory.

    An existing dest is replaced with opts.force, updated in place with
    opts.update, and otherwise an error.
    """
    opts = bundle.opts
    if bundle.encryption_key_info:
        raise exceptions.BuildError(
            'sandbox images can not be encrypted, remove the encryption key')

    if os.path.lexists(dest):
        if opts.update and os.path.isdir(dest):
            LOG.info('Updating existing sandbox %s' % dest)
            unpack.copy_tree(ctx, bundle.rootfs_path, dest)
            if write_json:
                write_json_objects(bundle, dest)
            return dest
        if not opts.force:
            raise exceptions.BuildError(
                'destination %s already exists, use --force to overwrite it '
                'or --update to update it' % dest)
        LOG.info('Removing existing %s' % dest)
        bundle_mod.force_remove(dest)

    LOG.info('Creating sandbox directory %s' % dest)
    shutil.move(bundle.rootfs_path, dest)
    if write_json:
        write_json_objects(bundle, dest)
    return dest


def build(ctx, recipe, dest, opts, write_json=False):
    """Build recipe into a sandbox directory at dest.

    Returns:
        The path of the sandbox.
    """
    dest = os.path.abspath(dest)
    # Next to the destination so the final move is a rename.
    parent = tempfile.mkdtemp(prefix='build-temp-',
                              dir=os.path.dirname(dest))
    try:
        bundle = bundle_mod.create_bundle(
            parent, temp_dir=opts.tmp_dir, recipe=recipe, opts=opts,
            encryption_key_info=opts.encryption_key_info)
    except Exception:
        shutil.rmtree(parent, ignore_errors=True)
        raise

    try:
        stage.run_host_script(ctx, bundle, 'pre')
        run_build(ctx, bundle)
        try:
            stage.apply_sections(ctx, bundle)
        except Exception as e:
            LOG.error('applying definition sections failed: %s: %s'
                      % (e.__class__.__name__, e))
            raise
        try:
            assemble_sandbox(ctx, bundle, dest, write_json=write_json)
        except Exception as e:
            LOG.error('sandbox assembly failed: %s: %s'
                      % (e.__class__.__name__, e))
            raise
    finally:
        if opts.no_clean_up:
            LOG.info('Not removing build directories %s and %s'
                     % (bundle.parent_path, bundle.tmp_dir))
        else:
            # Both are no-ops for paths already removed.
            try:
                bundle.remove()
                if os.path.isdir(parent):
                    bundle_mod.force_remove(parent)
            except (exceptions.BundleRemovalError, OSError) as e:
                LOG.error('Unable to remove build directories: %s' % e)

    LOG.info('Build complete: %s' % dest)
    return dest
