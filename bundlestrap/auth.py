import base64
from collections import namedtuple
import json
import logging
import os

from bundlestrap import constants
from bundlestrap import exceptions


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


AuthConfig = namedtuple(
    'AuthConfig',
    ['username', 'password', 'identity_token', 'registry_token'])

DOCKER_HUB_ALIASES = ('docker.io', 'index.docker.io', 'registry-1.docker.io')


def make_auth(username=None, password=None, identity_token=None,
              registry_token=None):
    return AuthConfig(username, password, identity_token, registry_token)


def default_auth_files():
    """The credential files we search, in order of preference."""
    paths = []
    if os.environ.get('REGISTRY_AUTH_FILE'):
        paths.append(os.environ['REGISTRY_AUTH_FILE'])
    if os.environ.get('XDG_RUNTIME_DIR'):
        paths.append(os.path.join(os.environ['XDG_RUNTIME_DIR'],
                                  'containers/auth.json'))
    if os.environ.get('DOCKER_CONFIG'):
        paths.append(os.path.join(os.environ['DOCKER_CONFIG'], 'config.json'))
    home = os.environ.get('HOME') or os.path.expanduser('~')
    paths.append(os.path.join(home, '.docker/config.json'))
    return paths


def normalize_registry(registry):
    """Reduce a credential store key or registry name to a lookup key."""
    key = registry
    for prefix in ('https://', 'http://'):
        if key.startswith(prefix):
            key = key[len(prefix):]
    key = key.split('/')[0]
    if key in DOCKER_HUB_ALIASES:
        return constants.DOCKER_HUB_AUTH_KEY
    return key


def _parse_entry(entry):
    username = entry.get('username')
    password = entry.get('password')
    if entry.get('auth'):
        decoded = base64.b64decode(entry['auth']).decode('utf-8')
        if ':' not in decoded:
            raise ValueError('auth field is not of the form user:password')
        username, password = decoded.split(':', 1)
    return make_auth(username=username, password=password,
                     identity_token=entry.get('identitytoken'),
                     registry_token=entry.get('registrytoken'))


class Keychain(object):
    def __init__(self, entries=None, path=None):
        self.entries = entries or {}
        self.path = path

    @classmethod
    def load(cls, req_auth_file=None):
        """Load a docker format credential file.

        A file the caller explicitly asked for must exist and parse. Files
        on the default search path are skipped when missing.
        """
        if req_auth_file:
            try:
                return cls(cls._read(req_auth_file), req_auth_file)
            except (OSError, ValueError) as e:
                raise exceptions.AuthConfigUnreadableError(
                    'while loading credentials from %s: %s'
                    % (req_auth_file, e))

        for path in default_auth_files():
            if not os.path.exists(path):
                continue
            try:
                LOG.debug('Loading registry credentials from %s' % path)
                return cls(cls._read(path), path)
            except (OSError, ValueError) as e:
                LOG.warning('Ignoring unreadable credentials file %s: %s'
                            % (path, e))
        return cls()

    @staticmethod
    def _read(path):
        with open(path) as f:
            data = json.loads(f.read())
        if not isinstance(data, dict):
            raise ValueError('credentials file is not a JSON object')

        entries = {}
        auths = data.get('auths') or {}
        if not isinstance(auths, dict):
            raise ValueError('auths is not a JSON object')
        for key, entry in auths.items():
            if not isinstance(entry, dict):
                LOG.debug('Skipping malformed credentials for %s' % key)
                continue
            entries[normalize_registry(key)] = _parse_entry(entry)
        return entries

    def resolve(self, registry):
        return self.entries.get(normalize_registry(registry))


def from_docker_auth(docker_auth):
    """Convert docker style credentials into an AuthConfig."""
    if isinstance(docker_auth, AuthConfig):
        return docker_auth
    return make_auth(username=docker_auth.get('username'),
                     password=docker_auth.get('password'),
                     identity_token=docker_auth.get('identitytoken'),
                     registry_token=docker_auth.get('registrytoken'))


def resolve_auth(opts, registry):
    """Work out which credentials to present to registry.

    Explicit OCI credentials take precedence over docker credentials, which
    take precedence over the credential file.
    """
    if opts.oci_auth_config:
        return from_docker_auth(opts.oci_auth_config)
    if opts.docker_auth_config:
        return from_docker_auth(opts.docker_auth_config)
    return Keychain.load(opts.req_auth_file).resolve(registry)
