import logging
import os

from bundlestrap.conveyors.local import DownloadedImageConveyorPacker
from bundlestrap import uri
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def manifest_url(ref, secure=True):
    name = ref.name
    if ref.digest:
        name = '%s@%s' % (name, ref.digest)
    elif ref.tag:
        name = '%s:%s' % (name, ref.tag)
    return '%s://%s/api/container/%s' % ('https' if secure else 'http',
                                         ref.host, name)


class ShubConveyorPacker(DownloadedImageConveyorPacker):
    """Pulls an image from a Singularity Hub style registry.

    The registry describes each container with a small JSON document whose
    image field is the download URL of the image file.
    """

    bootstrap = 'shub'

    def download(self, ctx, bundle):
        source = bundle.recipe.require('from').strip()
        if not source.startswith('shub:'):
            source = 'shub://%s' % source
        ref = uri.parse_ref(source)

        r = util.request_url('GET', manifest_url(ref, not bundle.opts.no_https))
        manifest = r.json()
        LOG.info('Found %s version %s' % (ref.name, manifest.get('version')))

        cache = bundle.opts.cache
        version = manifest.get('version')
        if cache is not None and version:
            cached = cache.get_file('shub', version)
            if cached:
                return cached

        dest = os.path.join(bundle.tmp_dir, 'shub-image.sif')
        r = util.request_url('GET', manifest['image'], stream=True)
        written, _ = util.stream_to_file(ctx, r, dest)
        LOG.info('Downloaded %d bytes' % written)

        if cache is not None and version:
            return cache.put_file('shub', version, dest)
        return dest
