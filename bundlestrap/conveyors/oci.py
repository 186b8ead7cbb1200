import logging

from bundlestrap import baseenv
from bundlestrap.conveyors.base import ConveyorPacker
from bundlestrap import fetcher
from bundlestrap import runscript
from bundlestrap import unpack
from bundlestrap import uri


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class OCIConveyorPacker(ConveyorPacker):
    """Bootstraps from an OCI image.

    Handles the docker, docker-daemon, docker-archive, oci and oci-archive
    bootstrap kinds, which only differ in the transport used to fetch.
    """

    bootstrap = 'docker'

    def __init__(self):
        super(OCIConveyorPacker, self).__init__()
        self.image = None
        self.img_config = None

    def reference(self, bundle):
        recipe = bundle.recipe
        return uri.build_ref(recipe.bootstrap, recipe.require('from'),
                             registry=recipe.get('registry'),
                             namespace=recipe.get('namespace'))

    def fetch(self, ctx, bundle, ref):
        self.image = fetcher.fetch_to_layout(
            ctx, bundle.opts, bundle.opts.cache, ref, bundle.tmp_dir)
        self.img_config = self.image.config_file()

    def get(self, ctx, bundle):
        self.bundle = bundle
        self.fetch(ctx, bundle, self.reference(bundle))

    def pack(self, ctx):
        rootfs = self.bundle.rootfs_path
        unpack.unpack_rootfs(ctx, self.image, rootfs,
                             rootless=self.bundle.opts.unprivilege or None)
        unpack.post_unpack(rootfs, self.bundle.opts)
        baseenv.make_base_env(rootfs, overwrite=False)
        runscript.insert_metadata(self.bundle, self.img_config)
        return self.bundle
