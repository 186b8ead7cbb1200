"""A minimal OCI image layout.

https://github.com/opencontainers/image-spec/blob/main/image-layout.md
describes the format: an oci-layout marker file, an index.json and
content addressed blobs under blobs/<algorithm>/<hex>. Every transport
writes into one of these, and everything after the fetch reads images
back through LayoutImage.
"""

from collections import namedtuple
import hashlib
import json
import logging
import os
import tempfile

from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import ociplatform


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


ImageConfig = namedtuple(
    'ImageConfig',
    ['os', 'architecture', 'variant', 'entrypoint', 'cmd', 'env', 'labels',
     'runtime_config'])


def image_config_from_json(data):
    """Extract the parts of an image config the build cares about."""
    runtime = data.get('config') or {}
    return ImageConfig(
        os=data.get('os', ''),
        architecture=data.get('architecture', ''),
        variant=data.get('variant', ''),
        entrypoint=runtime.get('Entrypoint') or [],
        cmd=runtime.get('Cmd') or [],
        env=runtime.get('Env') or [],
        labels=runtime.get('Labels') or {},
        runtime_config=runtime)


def digest_hex(digest):
    algorithm, _, hexdigest = digest.partition(':')
    if algorithm != 'sha256' or not hexdigest:
        raise exceptions.ExtractionFailedError(
            'unsupported digest %s' % digest)
    if '/' in hexdigest or hexdigest.startswith('.'):
        raise exceptions.ExtractionFailedError('invalid digest %s' % digest)
    return hexdigest


class OCILayout(object):
    def __init__(self, path):
        self.path = path
        self.blob_dir = os.path.join(path, 'blobs', 'sha256')
        os.makedirs(self.blob_dir, exist_ok=True)

        marker = os.path.join(path, 'oci-layout')
        if not os.path.exists(marker):
            with open(marker, 'w') as f:
                f.write(json.dumps(
                    {'imageLayoutVersion': constants.OCI_LAYOUT_VERSION}))

    def blob_path(self, digest):
        return os.path.join(self.blob_dir, digest_hex(digest))

    def has_blob(self, digest):
        return os.path.exists(self.blob_path(digest))

    def _commit(self, tmp_path, digest, actual):
        if digest and digest_hex(digest) != actual:
            os.unlink(tmp_path)
            raise exceptions.ExtractionFailedError(
                'hash verification failed for blob %s (got sha256:%s)'
                % (digest, actual))
        digest = 'sha256:%s' % actual
        # A rename within one directory is atomic, so a concurrent writer
        # of the same blob can't leave a partial file behind.
        os.rename(tmp_path, self.blob_path(digest))
        return digest

    def write_blob(self, data, digest=None):
        """Store bytes, returning their digest."""
        fd, tmp_path = tempfile.mkstemp(dir=self.blob_dir, prefix='.tmp-')
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        return self._commit(tmp_path, digest,
                            hashlib.sha256(data).hexdigest())

    def write_blob_from_chunks(self, ctx, chunks, digest=None):
        """Store a stream of byte chunks, verifying digest if given."""
        h = hashlib.sha256()
        fd, tmp_path = tempfile.mkstemp(dir=self.blob_dir, prefix='.tmp-')
        try:
            with os.fdopen(fd, 'wb') as f:
                for chunk in chunks:
                    ctx.check()
                    f.write(chunk)
                    h.update(chunk)
        except BaseException:
            os.unlink(tmp_path)
            raise
        return self._commit(tmp_path, digest, h.hexdigest())

    def write_blob_from_file(self, ctx, fileobj, digest=None):
        return self.write_blob_from_chunks(
            ctx, iter(lambda: fileobj.read(102400), b''), digest=digest)

    def read_blob(self, digest):
        with open(self.blob_path(digest), 'rb') as f:
            return f.read()

    def read_json(self, digest):
        return json.loads(self.read_blob(digest))

    def index(self):
        index_path = os.path.join(self.path, 'index.json')
        if not os.path.exists(index_path):
            return {'schemaVersion': 2, 'manifests': []}
        with open(index_path) as f:
            return json.loads(f.read())

    def add_manifest(self, descriptor):
        index = self.index()
        manifests = [m for m in index.get('manifests', [])
                     if m['digest'] != descriptor['digest']]
        manifests.append(descriptor)
        index['manifests'] = manifests
        index['mediaType'] = constants.MEDIA_TYPE_OCI_INDEX

        fd, tmp_path = tempfile.mkstemp(dir=self.path, prefix='.index-')
        with os.fdopen(fd, 'w') as f:
            f.write(json.dumps(index, indent=4, sort_keys=True))
        os.rename(tmp_path, os.path.join(self.path, 'index.json'))

    def write_manifest(self, manifest, platform=None, ref_name=None):
        """Store a manifest and record it in index.json."""
        data = json.dumps(manifest, sort_keys=True).encode('utf-8')
        digest = self.write_blob(data)
        descriptor = {
            'mediaType': manifest.get('mediaType',
                                      constants.MEDIA_TYPE_OCI_MANIFEST),
            'digest': digest,
            'size': len(data),
        }
        if platform:
            descriptor['platform'] = {
                'os': platform.os,
                'architecture': platform.architecture,
            }
            if platform.variant:
                descriptor['platform']['variant'] = platform.variant
        if ref_name:
            descriptor['annotations'] = {
                constants.OCI_REF_NAME_ANNOTATION: ref_name}
        self.add_manifest(descriptor)
        return digest

    def image(self, manifest_digest):
        return LayoutImage(self, manifest_digest)


class Layer(object):
    def __init__(self, layout, descriptor):
        self.layout = layout
        self.digest = descriptor['digest']
        self.media_type = descriptor.get('mediaType', '')
        self.size = descriptor.get('size', 0)

    def __repr__(self):
        return 'Layer(%s, %s)' % (self.digest, self.media_type)

    def open_compressed(self):
        return open(self.layout.blob_path(self.digest), 'rb')


class LayoutImage(object):
    """An image stored in an OCI layout, identified by manifest digest."""

    def __init__(self, layout, manifest_digest):
        self.layout = layout
        self.manifest_digest = manifest_digest
        self._manifest = None
        self._config = None

    def __str__(self):
        return '%s@%s' % (self.layout.path, self.manifest_digest)

    def manifest(self):
        if self._manifest is None:
            self._manifest = self.layout.read_json(self.manifest_digest)
        return self._manifest

    def raw_config(self):
        if self._config is None:
            self._config = self.layout.read_json(
                self.manifest()['config']['digest'])
        return self._config

    def config_file(self):
        return image_config_from_json(self.raw_config())

    def layers(self):
        return [Layer(self.layout, d)
                for d in self.manifest().get('layers', [])]

    def platform(self):
        config = self.raw_config()
        if not config.get('os') or not config.get('architecture'):
            return None
        arch, variant = ociplatform.normalize_arch(
            config['architecture'], config.get('variant', ''))
        return ociplatform.Platform(config['os'], arch, variant)


def _matches_platform(descriptor, platform):
    declared = descriptor.get('platform')
    if not declared:
        return True
    candidate = ociplatform.Platform(declared.get('os', ''),
                                     declared.get('architecture', ''),
                                     declared.get('variant', ''))
    return ociplatform.satisfies(platform, candidate)


def select_manifest(layout, index, tag=None, platform=None):
    """Find the manifest digest in an index for a tag and platform.

    Nested indexes are followed.
    """
    candidates = index.get('manifests', [])
    if tag:
        candidates = [
            m for m in candidates
            if (m.get('annotations') or {}).get(
                constants.OCI_REF_NAME_ANNOTATION) == tag]
        if not candidates:
            raise exceptions.ImageNotFoundError(
                'API request failed', 'GET', layout.path, 404,
                'no image tagged %s in layout' % tag, {})

    for m in candidates:
        if m.get('mediaType') in (constants.MEDIA_TYPE_OCI_INDEX,
                                  constants.MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2):
            try:
                return select_manifest(layout, layout.read_json(m['digest']),
                                       platform=platform)
            except exceptions.PlatformMismatchError:
                continue
        if platform is None or _matches_platform(m, platform):
            return m['digest']

    if not candidates:
        raise exceptions.ImageNotFoundError(
            'API request failed', 'GET', layout.path, 404,
            'layout index is empty', {})
    raise exceptions.PlatformMismatchError(
        str(platform), ', '.join(
            '%s/%s' % (m.get('platform', {}).get('os', '?'),
                       m.get('platform', {}).get('architecture', '?'))
            for m in candidates))


def load_image(path, tag=None, platform=None):
    layout = OCILayout(path)
    digest = select_manifest(layout, layout.index(), tag=tag,
                             platform=platform)
    LOG.debug('Selected manifest %s from layout %s' % (digest, path))
    return layout.image(digest)
