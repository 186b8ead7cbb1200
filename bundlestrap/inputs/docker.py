# Fetch images from the local Docker or Podman daemon via the Docker Engine API.
# This communicates over a Unix domain socket (default: /var/run/docker.sock)
# or a tcp:// endpoint.
#
# Docker Engine API documentation:
# https://docs.docker.com/engine/api/
#
# The API only provides /images/{name}/get, which returns the same tarball
# as 'docker save'. We buffer that to a file and import it with the docker
# archive transport.

import logging
import os
from urllib.parse import quote

import requests_unixsocket

from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap.inputs import archive
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def daemon_host(opts):
    host = opts.docker_daemon_host
    if not host:
        host = os.environ.get('APPTAINER_DOCKER_HOST')
    if not host:
        host = os.environ.get('DOCKER_HOST')
    if not host:
        host = 'unix://%s' % constants.DEFAULT_DOCKER_SOCKET
    return host


class Image(object):
    def __init__(self, ctx, image, tag='latest', host=None):
        self.ctx = ctx
        self.image = image
        self.tag = tag or 'latest'
        self.host = host or 'unix://%s' % constants.DEFAULT_DOCKER_SOCKET
        self._session = None

    def _get_session(self):
        if self._session is None:
            self._session = requests_unixsocket.Session()
        return self._session

    def _base_url(self):
        if self.host.startswith('unix://'):
            # requests_unixsocket uses http+unix:// scheme with URL-encoded path
            encoded_socket = self.host[len('unix://'):].replace('/', '%2F')
            return 'http+unix://%s' % encoded_socket
        if self.host.startswith('tcp://'):
            return 'http://%s' % self.host[len('tcp://'):]
        return self.host

    def _request(self, method, path, stream=False):
        session = self._get_session()
        url = '%s%s' % (self._base_url(), path)
        LOG.debug('Docker API request: %s %s' % (method, path))
        r = session.request(method, url, stream=stream,
                            headers={'User-Agent': util.get_user_agent()})
        if r.status_code == 404:
            raise exceptions.ImageNotFoundError(
                'Image not found: %s:%s' % (self.image, self.tag), method,
                path, r.status_code, r.text, r.headers)
        if r.status_code != 200:
            raise exceptions.APIError(
                'Docker API error', method, path, r.status_code, r.text,
                r.headers)
        return r

    def _reference(self):
        return quote('%s:%s' % (self.image, self.tag), safe='')

    def inspect(self):
        """Get image metadata from the Docker daemon."""
        return self._request('GET', '/images/%s/json' % self._reference()).json()

    def pull(self, layout, tmp_dir):
        LOG.info('Fetching image %s:%s from Docker daemon at %s'
                 % (self.image, self.tag, self.host))
        self.inspect()

        r = self._request('GET', '/images/%s/get' % self._reference(),
                          stream=True)
        archive_path = os.path.join(tmp_dir, 'docker-daemon.tar')
        LOG.info('Buffering image to temporary file %s' % archive_path)
        try:
            util.stream_to_file(self.ctx, r, archive_path)
            return archive.import_docker_archive(
                self.ctx, archive_path, layout, self.image, self.tag)
        finally:
            if os.path.exists(archive_path):
                os.unlink(archive_path)
