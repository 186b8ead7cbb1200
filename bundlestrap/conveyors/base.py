from abc import ABC, abstractmethod
import logging


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class ConveyorPacker(ABC):
    """Abstract base class for bootstrap sources.

    A build runs get() to put the raw source content into the bundle's
    rootfs, then pack() to finalize the rootfs metadata. cleanup() is
    safe to call at any point, including more than once.
    """

    bootstrap = None

    def __init__(self):
        self.bundle = None

    @abstractmethod
    def get(self, ctx, bundle):
        """Populate bundle.rootfs_path with the source content.

        Args:
            ctx: The build's BuildContext.
            bundle: The Bundle being built.
        """
        pass

    @abstractmethod
    def pack(self, ctx):
        """Finalize the rootfs.

        Returns:
            The finished Bundle.
        """
        pass

    def cleanup(self):
        if self.bundle is None:
            return
        if self.bundle.opts.no_clean_up:
            LOG.info('Not removing build directories %s and %s'
                     % (self.bundle.parent_path, self.bundle.tmp_dir))
            return
        LOG.debug('Removing build directories %s and %s'
                  % (self.bundle.parent_path, self.bundle.tmp_dir))
        self.bundle.remove()
