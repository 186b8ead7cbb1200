import logging
import os

from bundlestrap import baseenv
from bundlestrap import constants
from bundlestrap.conveyors.base import ConveyorPacker
from bundlestrap import exceptions
from bundlestrap import sif
from bundlestrap import unpack
from bundlestrap import uri
from bundlestrap import verify


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class LocalPacker(object):
    """Extracts one kind of local image into a bundle's rootfs."""

    def __init__(self, src, bundle):
        self.src = src
        self.bundle = bundle

    def pack(self, ctx):
        raise NotImplementedError()


class SIFPacker(LocalPacker):
    def pack(self, ctx):
        image = sif.SIFImage(self.src)
        part = image.primary_partition()
        rootfs = self.bundle.rootfs_path
        LOG.info('Extracting primary partition of %s (fs type %d)'
                 % (self.src, part.fs_type))

        if part.fs_type == sif.FS_SQUASH:
            unpack.unpack_squashfs(
                ctx, self.src, rootfs, self.bundle.tmp_dir,
                offset=part.descriptor.offset, size=part.descriptor.size)
        elif part.fs_type == sif.FS_EXT3:
            unpack.unpack_ext3(
                ctx, self.src, rootfs, self.bundle.tmp_dir,
                offset=part.descriptor.offset, size=part.descriptor.size)
        else:
            raise exceptions.ExtractionFailedError(
                'unsupported primary partition filesystem type %d in %s'
                % (part.fs_type, self.src))

        unpack.post_unpack(rootfs, self.bundle.opts)

        config = image.oci_config()
        if config:
            LOG.debug('Carrying OCI config from %s' % self.src)
            self.bundle.json_objects[constants.JSON_OBJECT_OCI_CONFIG] = config
        return self.bundle


class SquashfsPacker(LocalPacker):
    def pack(self, ctx):
        unpack.unpack_squashfs(ctx, self.src, self.bundle.rootfs_path,
                               self.bundle.tmp_dir)
        unpack.post_unpack(self.bundle.rootfs_path, self.bundle.opts)
        return self.bundle


class Ext3Packer(LocalPacker):
    def pack(self, ctx):
        unpack.unpack_ext3(ctx, self.src, self.bundle.rootfs_path,
                           self.bundle.tmp_dir)
        return self.bundle


class SandboxPacker(LocalPacker):
    def pack(self, ctx):
        unpack.unpack_sandbox(ctx, self.src, self.bundle.rootfs_path)
        return self.bundle


PACKERS = {
    sif.IMAGE_SIF: SIFPacker,
    sif.IMAGE_SQUASHFS: SquashfsPacker,
    sif.IMAGE_EXT3: Ext3Packer,
    sif.IMAGE_SANDBOX: SandboxPacker,
}


def get_local_packer(path, bundle):
    """Pick a packer for path by sniffing what kind of image it is."""
    kind = sif.image_type(path)
    LOG.debug('%s is a %s image' % (path, kind))
    return PACKERS[kind](path, bundle)


class LocalConveyorPacker(ConveyorPacker):
    bootstrap = 'localimage'

    def __init__(self):
        super(LocalConveyorPacker, self).__init__()
        self.src = None
        self.packer = None

    def get(self, ctx, bundle):
        self.bundle = bundle
        ref = uri.parse_ref('localimage:%s' % bundle.recipe.require('from'))
        self.src = os.path.abspath(ref.path)
        self.packer = get_local_packer(self.src, bundle)

        if isinstance(self.packer, SIFPacker):
            verify.check_local_image(
                verify.Verifier(ctx, bundle.opts.key_server_opts),
                self.src, bundle.recipe.get('fingerprints'))

    def pack(self, ctx):
        self.packer.pack(ctx)
        baseenv.make_base_env(self.bundle.rootfs_path, overwrite=False)
        return self.bundle


class DownloadedImageConveyorPacker(ConveyorPacker):
    """Base for sources which fetch a whole image file, then unpack it.

    Subclasses implement download(), returning the path of the fetched
    image file.
    """

    def __init__(self):
        super(DownloadedImageConveyorPacker, self).__init__()
        self.src = None
        self.packer = None

    def download(self, ctx, bundle):
        raise NotImplementedError()

    def get(self, ctx, bundle):
        self.bundle = bundle
        self.src = self.download(ctx, bundle)
        LOG.info('Downloaded %s image to %s' % (self.bootstrap, self.src))

        # Written first so the image's own metadata wins on extraction.
        baseenv.make_base_env(bundle.rootfs_path, overwrite=True)
        self.packer = get_local_packer(self.src, bundle)

    def pack(self, ctx):
        self.packer.pack(ctx)
        return self.bundle
