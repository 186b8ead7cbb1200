# A simple docker registry client. Pulls an image into an OCI layout.
# With a big nod to https://github.com/NotGlop/docker-drag/blob/master/docker_pull.py

# https://docs.docker.com/registry/spec/manifest-v2-2/ documents the image manifest
# format, noting that the response format you get back varies based on what you have
# in your accept header for the request.

# https://github.com/opencontainers/image-spec/blob/main/media-types.md documents
# the new OCI mime types.

from concurrent.futures import ThreadPoolExecutor
import logging
import re
import threading
import time

from requests.exceptions import ChunkedEncodingError, ConnectionError

from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import util

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # Exponential backoff: 2^attempt seconds

LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

AUTH_RE = re.compile(r'(\w+)="([^"]*)"')

MANIFEST_MEDIA_TYPES = (
    constants.MEDIA_TYPE_DOCKER_MANIFEST_V2,
    constants.MEDIA_TYPE_OCI_MANIFEST,
)
INDEX_MEDIA_TYPES = (
    constants.MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
    constants.MEDIA_TYPE_OCI_INDEX,
)


def registry_endpoint(host):
    if host == 'docker.io':
        return constants.DOCKER_HUB_REGISTRY
    return host


class Image(object):
    def __init__(self, ctx, registry, image, reference, platform=None,
                 auth=None, secure=True, max_workers=4):
        self.ctx = ctx
        self.registry = registry_endpoint(registry)
        self.image = image
        self.reference = reference
        self.platform = platform
        self.auth = auth
        self.secure = secure
        self.max_workers = max_workers

        self._cached_auth = None
        if auth and auth.registry_token:
            self._cached_auth = auth.registry_token
        self._auth_lock = threading.Lock()

    @property
    def moniker(self):
        if self.secure:
            return 'https'
        return 'http'

    def _url(self, kind, reference):
        return ('%(moniker)s://%(registry)s/v2/%(image)s/%(kind)s/%(ref)s'
                % {
                    'moniker': self.moniker,
                    'registry': self.registry,
                    'image': self.image,
                    'kind': kind,
                    'ref': reference
                })

    def _basic_auth(self):
        if not self.auth:
            return None
        if self.auth.username and self.auth.password:
            return (self.auth.username, self.auth.password)
        if self.auth.identity_token:
            return ('<token>', self.auth.identity_token)
        return None

    def _fetch_token(self, challenge):
        params = dict(AUTH_RE.findall(challenge))
        if 'realm' not in params:
            return None

        auth_url = '%s?scope=repository:%s:pull' % (params['realm'],
                                                     self.image)
        if 'service' in params:
            auth_url += '&service=%s' % params['service']

        r = util.request_url('GET', auth_url, auth=self._basic_auth())
        body = r.json()
        return body.get('token') or body.get('access_token')

    def request_url(self, method, url, headers=None, stream=False):
        """Make an authenticated request to the registry.

        Thread-safe: uses _auth_lock to protect _cached_auth updates.
        """
        if not headers:
            headers = {}

        with self._auth_lock:
            if self._cached_auth:
                headers.update({'Authorization': 'Bearer %s' % self._cached_auth})

        try:
            return util.request_url(method, url, headers=headers,
                                    stream=stream)
        except exceptions.UnauthorizedError as e:
            challenge = e.headers.get('Www-Authenticate', '')
            if not challenge.lower().startswith('bearer'):
                raise
            token = self._fetch_token(challenge)
            if not token:
                raise
            headers.update({'Authorization': 'Bearer %s' % token})
            with self._auth_lock:
                self._cached_auth = token

            return util.request_url(method, url, headers=headers,
                                    stream=stream)

    def _select_manifest(self, index):
        for m in index['manifests']:
            p = m.get('platform', {})
            LOG.info('Found manifest for %s on %s %s'
                     % (p.get('os'), p.get('architecture'),
                        p.get('variant', '')))

        if not self.platform:
            return index['manifests'][0]['digest']

        for m in index['manifests']:
            p = m.get('platform', {})
            candidate = ociplatform.Platform(
                p.get('os', ''), p.get('architecture', ''),
                p.get('variant', ''))
            if ociplatform.satisfies(self.platform, candidate):
                LOG.info('Fetching matching manifest %s' % m['digest'])
                return m['digest']

        raise exceptions.PlatformMismatchError(
            str(self.platform),
            ', '.join('%s/%s' % (m.get('platform', {}).get('os'),
                                 m.get('platform', {}).get('architecture'))
                      for m in index['manifests']))

    def fetch_manifest(self):
        LOG.info('Fetching manifest for %s/%s:%s'
                 % (self.registry, self.image, self.reference))
        r = self.request_url(
            'GET', self._url('manifests', self.reference),
            headers={
                'Accept': ','.join(MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES)
            })

        content_type = r.headers.get('Content-Type', '').split(';')[0]
        body = r.json()
        if not content_type:
            content_type = body.get('mediaType', '')

        if content_type in INDEX_MEDIA_TYPES:
            digest = self._select_manifest(body)
            r = self.request_url(
                'GET', self._url('manifests', digest),
                headers={'Accept': ','.join(MANIFEST_MEDIA_TYPES)})
            content_type = r.headers.get('Content-Type', '').split(';')[0]
            body = r.json()
            if not content_type:
                content_type = body.get('mediaType', '')

        if content_type not in MANIFEST_MEDIA_TYPES:
            raise exceptions.APIError(
                'Unknown manifest content type %s' % content_type, 'GET',
                self._url('manifests', self.reference), r.status_code,
                r.text, r.headers)
        return content_type, r.content, body

    def download_blob(self, layout, descriptor):
        """Download a single blob into the layout.

        This method is designed to be called from a ThreadPoolExecutor for
        parallel layer downloads. It handles hash verification and retry
        logic.

        Args:
            layout: The OCILayout to store the blob in.
            descriptor: Blob descriptor dict with 'digest' and 'size'.

        Returns:
            The blob digest on success.

        Raises:
            The last connection error once all retries are exhausted.
        """
        digest = descriptor['digest']
        if layout.has_blob(digest):
            LOG.info('Using cached blob %s' % digest)
            return digest

        LOG.info('Fetching blob %s (%d bytes)'
                 % (digest, descriptor.get('size', 0)))
        for attempt in range(MAX_RETRIES + 1):
            try:
                r = self.request_url('GET', self._url('blobs', digest),
                                     stream=True)
                return layout.write_blob_from_chunks(
                    self.ctx, r.iter_content(102400), digest=digest)

            except (ChunkedEncodingError, ConnectionError) as e:
                if attempt >= MAX_RETRIES:
                    LOG.error('Blob download failed after %d attempts: %s'
                              % (MAX_RETRIES + 1, str(e)))
                    raise
                wait_time = RETRY_BACKOFF_BASE ** attempt
                LOG.warning(
                    'Blob download failed (attempt %d/%d): %s. '
                    'Retrying in %d seconds...'
                    % (attempt + 1, MAX_RETRIES + 1, str(e), wait_time))
                time.sleep(wait_time)

    def pull(self, layout):
        """Pull the image into layout, returning its LayoutImage."""
        media_type, raw_manifest, manifest = self.fetch_manifest()

        self.download_blob(layout, manifest['config'])

        LOG.info('There are %d image layers' % len(manifest['layers']))
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self.download_blob, layout, layer)
                       for layer in manifest['layers']]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        digest = layout.write_blob(raw_manifest)
        descriptor = {
            'mediaType': media_type,
            'digest': digest,
            'size': len(raw_manifest),
        }
        if self.platform:
            descriptor['platform'] = {
                'os': self.platform.os,
                'architecture': self.platform.architecture,
            }
        layout.add_manifest(descriptor)
        LOG.info('Done')
        return layout.image(digest)
