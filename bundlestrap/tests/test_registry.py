"""Tests for the registry client."""

import hashlib
import json
import shutil
import tempfile
from unittest import mock

import testtools

from bundlestrap import auth
from bundlestrap import constants
from bundlestrap import context
from bundlestrap import exceptions
from bundlestrap.inputs import registry
from bundlestrap import layout
from bundlestrap import ociplatform


AMD64 = ociplatform.Platform('linux', 'amd64', '')


def _digest(data):
    return 'sha256:%s' % hashlib.sha256(data).hexdigest()


def _response(body=None, content_type=None, raw=None):
    r = mock.MagicMock()
    r.status_code = 200
    r.headers = {}
    if content_type:
        r.headers['Content-Type'] = content_type
    if raw is None and body is not None:
        raw = json.dumps(body).encode('utf-8')
    r.content = raw
    r.text = raw.decode('utf-8') if raw else ''
    r.json.return_value = body
    r.iter_content.return_value = [raw[:3], raw[3:]]
    return r


class FakeRegistry(object):
    """Serves one image, optionally behind a manifest list."""

    def __init__(self, arches=('amd64',), corrupt=False):
        self.config = json.dumps({'os': 'linux',
                                  'architecture': 'amd64'}).encode('utf-8')
        self.layer = b'layer data'
        served_layer = b'other data' if corrupt else self.layer
        self.manifest = {
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
            'config': {'mediaType': constants.MEDIA_TYPE_OCI_CONFIG,
                       'digest': _digest(self.config),
                       'size': len(self.config)},
            'layers': [{'mediaType': constants.MEDIA_TYPE_OCI_LAYER_GZIP,
                        'digest': _digest(self.layer),
                        'size': len(self.layer)}],
        }
        self.raw_manifest = json.dumps(self.manifest).encode('utf-8')
        self.manifest_digest = _digest(self.raw_manifest)

        self.index = {
            'schemaVersion': 2,
            'mediaType': constants.MEDIA_TYPE_OCI_INDEX,
            'manifests': [{
                'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
                'digest': (self.manifest_digest if arch == 'amd64'
                           else 'sha256:' + '1' * 64),
                'size': len(self.raw_manifest),
                'platform': {'os': 'linux', 'architecture': arch},
            } for arch in arches],
        }

        self.blobs = {
            _digest(self.config): self.config,
            _digest(self.layer): served_layer,
        }
        self.requested = []

    def __call__(self, method, url, headers=None, stream=False, **kwargs):
        self.requested.append(url)
        ref = url.split('/')[-1]
        if '/manifests/' in url:
            if ref == 'latest':
                return _response(self.index, constants.MEDIA_TYPE_OCI_INDEX)
            if ref == self.manifest_digest:
                return _response(self.manifest,
                                 constants.MEDIA_TYPE_OCI_MANIFEST,
                                 raw=self.raw_manifest)
        if '/blobs/' in url and ref in self.blobs:
            return _response(raw=self.blobs[ref])
        raise exceptions.ImageNotFoundError(
            'API request failed', method, url, 404, '', {})


class RegistryTestCase(testtools.TestCase):
    def setUp(self):
        super(RegistryTestCase, self).setUp()
        self.base = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.base, ignore_errors=True)
        self.oci = layout.OCILayout(self.base)
        self.ctx = context.BuildContext()

    def _image(self, **kwargs):
        return registry.Image(self.ctx, 'docker.io', 'library/busybox',
                              'latest', **kwargs)

    def test_endpoint(self):
        """Test docker.io is mapped to the registry host."""
        self.assertEqual(constants.DOCKER_HUB_REGISTRY,
                         registry.registry_endpoint('docker.io'))
        self.assertEqual('ghcr.io', registry.registry_endpoint('ghcr.io'))
        self.assertEqual(
            'https://registry-1.docker.io/v2/library/busybox/manifests/latest',
            self._image()._url('manifests', 'latest'))
        self.assertEqual('http', self._image(secure=False).moniker)

    def test_pull(self):
        """Test the matching manifest and its blobs are pulled."""
        fake = FakeRegistry(arches=('arm64', 'amd64'))
        with mock.patch('bundlestrap.inputs.registry.util.request_url',
                        side_effect=fake):
            image = self._image(platform=AMD64).pull(self.oci)

        self.assertEqual(fake.manifest_digest, image.manifest_digest)
        self.assertEqual(fake.layer,
                         self.oci.read_blob(fake.manifest['layers'][0][
                             'digest']))
        self.assertNotIn('sha256:' + '1' * 64,
                         ' '.join(fake.requested))

        index = self.oci.index()
        self.assertEqual(1, len(index['manifests']))
        self.assertEqual('amd64',
                         index['manifests'][0]['platform']['architecture'])

    def test_cached_blobs(self):
        """Test blobs already in the layout are not fetched again."""
        fake = FakeRegistry()
        self.oci.write_blob(fake.layer)
        with mock.patch('bundlestrap.inputs.registry.util.request_url',
                        side_effect=fake):
            self._image(platform=AMD64).pull(self.oci)
        self.assertNotIn(
            'https://registry-1.docker.io/v2/library/busybox/blobs/%s'
            % _digest(fake.layer), fake.requested)

    def test_platform_mismatch(self):
        """Test a manifest list without the platform asked for."""
        fake = FakeRegistry(arches=('arm64', 's390x'))
        with mock.patch('bundlestrap.inputs.registry.util.request_url',
                        side_effect=fake):
            e = self.assertRaises(exceptions.PlatformMismatchError,
                                  self._image(platform=AMD64).pull,
                                  self.oci)
        self.assertIn('s390x', str(e))

    def test_corrupt_blob(self):
        """Test a blob which does not match its digest is rejected."""
        fake = FakeRegistry(corrupt=True)
        with mock.patch('bundlestrap.inputs.registry.util.request_url',
                        side_effect=fake):
            self.assertRaises(exceptions.ExtractionFailedError,
                              self._image(platform=AMD64).pull, self.oci)
        self.assertFalse(self.oci.has_blob(_digest(fake.layer)))

    @mock.patch('bundlestrap.inputs.registry.util.request_url')
    def test_bearer_token(self, mock_request):
        """Test a bearer challenge is answered with a fetched token."""
        challenge = exceptions.UnauthorizedError(
            'API request failed', 'GET', 'url', 401, '',
            {'Www-Authenticate': 'Bearer realm="https://auth.example.com/'
                                 'token",service="registry.example.com"'})
        mock_request.side_effect = [
            challenge, _response({'token': 'secret'}), _response({})]

        image = self._image()
        image.request_url('GET', 'https://registry/v2/')

        token_call = mock_request.call_args_list[1]
        self.assertEqual(
            'https://auth.example.com/token?scope=repository:library/'
            'busybox:pull&service=registry.example.com',
            token_call[0][1])
        self.assertIsNone(token_call[1]['auth'])
        self.assertEqual('Bearer secret',
                         mock_request.call_args[1]['headers']['Authorization'])
        self.assertEqual('secret', image._cached_auth)

    @mock.patch('bundlestrap.inputs.registry.util.request_url')
    def test_basic_challenge(self, mock_request):
        """Test challenges other than bearer are not retried."""
        mock_request.side_effect = exceptions.UnauthorizedError(
            'API request failed', 'GET', 'url', 401, '',
            {'Www-Authenticate': 'Basic realm="registry"'})
        self.assertRaises(exceptions.UnauthorizedError,
                          self._image().request_url, 'GET',
                          'https://registry/v2/')
        self.assertEqual(1, mock_request.call_count)

    def test_registry_token(self):
        """Test a stored registry token is sent without a challenge."""
        image = self._image(auth=auth.make_auth(registry_token='stored'))
        with mock.patch('bundlestrap.inputs.registry.util.request_url',
                        return_value=_response({})) as mock_request:
            image.request_url('GET', 'https://registry/v2/')
        self.assertEqual('Bearer stored',
                         mock_request.call_args[1]['headers']['Authorization'])

    def test_basic_auth(self):
        """Test credentials used for the token request."""
        image = self._image(auth=auth.make_auth(username='u', password='p'))
        self.assertEqual(('u', 'p'), image._basic_auth())
        image = self._image(auth=auth.make_auth(identity_token='refresh'))
        self.assertEqual(('<token>', 'refresh'), image._basic_auth())
        self.assertIsNone(self._image()._basic_auth())
