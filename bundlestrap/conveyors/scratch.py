from bundlestrap import baseenv
from bundlestrap.conveyors import distro


class ScratchConveyorPacker(distro.DistroConveyorPacker):
    """An empty rootfs holding only the base environment."""

    bootstrap = 'scratch'

    def get(self, ctx, bundle):
        self.bundle = bundle
        baseenv.make_base_env(bundle.rootfs_path, overwrite=True)
