# A minimal client for the container library API. Images are resolved to
# a content hash first so that we can reuse cached copies, then the image
# file is downloaded and handed to the local image packers.

import logging
import os

from bundlestrap.conveyors.local import DownloadedImageConveyorPacker
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import uri
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


HASH_PREFIX = 'sha256.'


def base_url(url, no_https=False):
    url = url.rstrip('/')
    if '://' in url:
        return url
    if no_https:
        return 'http://%s' % url
    return 'https://%s' % url


def normalize_path(name):
    """Expand a library path to entity/collection/container."""
    parts = name.split('/')
    if len(parts) == 1:
        return 'library/default/%s' % parts[0]
    if len(parts) == 2:
        return '%s/default/%s' % (parts[0], parts[1])
    return name


class LibraryClient(object):
    def __init__(self, ctx, url, auth_token=None):
        self.ctx = ctx
        self.url = url
        self.auth_token = auth_token

    def _headers(self):
        headers = {}
        if self.auth_token:
            headers['Authorization'] = 'Bearer %s' % self.auth_token
        return headers

    def image_hash(self, path, tag, arch):
        r = util.request_url(
            'GET', '%s/v1/images/%s:%s?arch=%s' % (self.url, path, tag, arch),
            headers=self._headers())
        data = r.json().get('data') or {}
        image_hash = data.get('hash')
        if not image_hash:
            raise exceptions.ImageNotFoundError(
                'library image %s:%s has no hash for %s' % (path, tag, arch),
                'GET', self.url, r.status_code, r.text, r.headers)
        return image_hash

    def download(self, path, tag, arch, dest, image_hash):
        LOG.info('Downloading library image %s:%s for %s' % (path, tag, arch))
        r = util.request_url(
            'GET', '%s/v1/imagefile/%s:%s?arch=%s'
            % (self.url, path, tag, arch),
            headers=self._headers(), stream=True)
        written, digest = util.stream_to_file(self.ctx, r, dest)
        LOG.info('Downloaded %d bytes' % written)

        if image_hash.startswith(HASH_PREFIX):
            expected = image_hash[len(HASH_PREFIX):]
            if digest != expected:
                os.unlink(dest)
                raise exceptions.ExtractionFailedError(
                    'library image %s:%s hash mismatch, expected %s got %s'
                    % (path, tag, expected, digest))
        else:
            LOG.debug('Not verifying unsupported hash format %s' % image_hash)
        return dest


class LibraryConveyorPacker(DownloadedImageConveyorPacker):
    bootstrap = 'library'

    def library_url(self, bundle):
        url = (bundle.recipe.get('library') or bundle.opts.library_url or
               '')
        if url:
            return base_url(url, bundle.opts.no_https)
        return None

    def download(self, ctx, bundle):
        source = bundle.recipe.require('from').strip()
        if not source.startswith('library:'):
            source = 'library://%s' % source
        ref = uri.parse_ref(source, library_url=self.library_url(bundle))
        url = base_url(ref.host, bundle.opts.no_https)
        path = normalize_path(ref.name)
        tag = ref.tag or 'latest'
        arch = ociplatform.resolve_platform(bundle.opts).architecture

        client = LibraryClient(ctx, url, bundle.opts.library_auth_token)
        image_hash = client.image_hash(path, tag, arch)

        cache = bundle.opts.cache
        if cache is not None:
            cached = cache.get_file('library', image_hash)
            if cached:
                return cached

        dest = os.path.join(bundle.tmp_dir, 'library-image.sif')
        client.download(path, tag, arch, dest, image_hash)
        if cache is not None:
            return cache.put_file('library', image_hash, dest)
        return dest
