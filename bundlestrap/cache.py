import logging
import os
import shutil
import tempfile

from bundlestrap import layout


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class ImageCache(object):
    """Content addressed storage shared between builds.

    OCI blobs live in a single OCI layout so that pulls of images sharing
    a base only fetch the base once. Whole image files (library, oras and
    shub pulls) are kept per transport, keyed by their digest.
    """

    def __init__(self, root):
        self.root = root
        os.makedirs(root, exist_ok=True)
        self._layout = None

    @property
    def layout(self):
        if self._layout is None:
            self._layout = layout.OCILayout(
                os.path.join(self.root, 'oci-blob'))
        return self._layout

    def _file_dir(self, kind):
        path = os.path.join(self.root, kind)
        os.makedirs(path, exist_ok=True)
        return path

    def file_path(self, kind, digest):
        return os.path.join(self._file_dir(kind),
                            digest.replace(':', '.').replace('/', '_'))

    def get_file(self, kind, digest):
        path = self.file_path(kind, digest)
        if os.path.exists(path):
            LOG.info('Using cached %s image %s' % (kind, digest))
            return path
        return None

    def put_file(self, kind, digest, source):
        path = self.file_path(kind, digest)
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path),
                                        prefix='.tmp-')
        os.close(fd)
        shutil.copyfile(source, tmp_path)
        os.rename(tmp_path, path)
        LOG.debug('Cached %s image %s at %s' % (kind, digest, path))
        return path
