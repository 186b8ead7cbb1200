"""Build an image from a Dockerfile, then bootstrap from the result.

The build itself happens in a BuildKit daemon via buildctl or, when that
isn't available (or DOCKER_BUILDKIT is set), the docker CLI. Both write
an archive which is then fetched through the oci-archive transport.
"""

from abc import ABC, abstractmethod
import base64
from collections import namedtuple
import json
import logging
import os
import tempfile

from bundlestrap import constants
from bundlestrap.conveyors.oci import OCIConveyorPacker
from bundlestrap import exceptions
from bundlestrap import ociplatform
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


DEFAULT_FRONTEND = 'dockerfile.v0'
DEFAULT_FILENAME = 'Dockerfile'

BuildSpec = namedtuple(
    'BuildSpec',
    ['context_dir', 'filename', 'frontend', 'target', 'build_args',
     'platform', 'output', 'log_path', 'docker_config'])


def parse_build_args(value):
    args = []
    for pair in (value or '').split():
        if '=' not in pair:
            raise exceptions.RecipeHeaderMalformedError(
                'invalid buildargs entry %r, expected KEY=VALUE' % pair)
        args.append(pair)
    return args


class OCIProducer(ABC):
    """Something which builds a Dockerfile into an image archive."""

    def __init__(self, tool):
        self.tool = tool

    @abstractmethod
    def produce(self, ctx, spec):
        """Build spec, writing an archive to spec.output."""
        pass


def _write_log(path, out, err):
    with open(path, 'a') as f:
        f.write(out or '')
        f.write(err or '')


class BuildKitProducer(OCIProducer):
    def daemon_env(self):
        if os.environ.get('BUILDKIT_HOST'):
            return {}
        if not os.path.exists(constants.DEFAULT_BUILDKIT_SOCKET):
            raise exceptions.BuildToolMissingError(
                'buildkitd',
                'cannot connect to the BuildKit daemon at unix://%s. Is the '
                'buildkit daemon running?' % constants.DEFAULT_BUILDKIT_SOCKET)
        return {'BUILDKIT_HOST': 'unix://%s'
                % constants.DEFAULT_BUILDKIT_SOCKET}

    def command(self, spec):
        cmd = [self.tool, 'build',
               '--progress=plain',
               '--frontend=%s' % spec.frontend,
               '--local', 'context=%s' % spec.context_dir,
               '--local', 'dockerfile=%s' % spec.context_dir,
               '--opt', 'filename=%s' % spec.filename,
               '--opt', 'platform=%s' % spec.platform]
        if spec.target:
            cmd.extend(['--opt', 'target=%s' % spec.target])
        for arg in spec.build_args:
            cmd.extend(['--opt', 'build-arg:%s' % arg])
        cmd.extend(['--output', 'type=oci,dest=%s' % spec.output])
        return cmd

    def produce(self, ctx, spec):
        env = self.daemon_env()
        if spec.docker_config:
            env['DOCKER_CONFIG'] = spec.docker_config
        LOG.info('Building %s with BuildKit' % spec.context_dir)
        try:
            out, err, _ = util.run_tool(ctx, self.command(spec), env=env,
                                        logger=LOG)
        except exceptions.CommandFailedError as e:
            _write_log(spec.log_path, e.stdout, e.stderr)
            raise
        _write_log(spec.log_path, out, err)
        return spec.output


class DockerProducer(OCIProducer):
    def command(self, spec):
        cmd = [self.tool, 'build', '--quiet',
               '--file', os.path.join(spec.context_dir, spec.filename),
               '--platform', spec.platform]
        if spec.target:
            cmd.extend(['--target', spec.target])
        for arg in spec.build_args:
            cmd.extend(['--build-arg', arg])
        cmd.append(spec.context_dir)
        return cmd

    def produce(self, ctx, spec):
        env = {'DOCKER_BUILDKIT': '1'}
        if spec.docker_config:
            env['DOCKER_CONFIG'] = spec.docker_config
        LOG.info('Building %s with the docker CLI' % spec.context_dir)
        try:
            out, err, _ = util.run_tool(ctx, self.command(spec), env=env,
                                        logger=LOG)
        except exceptions.CommandFailedError as e:
            _write_log(spec.log_path, e.stdout, e.stderr)
            raise
        _write_log(spec.log_path, out, err)

        image_id = out.strip().splitlines()[-1]
        util.run_tool(ctx, [self.tool, 'save', '--output', spec.output,
                            image_id], env=env, logger=LOG)
        return spec.output


def _which(name):
    try:
        return util.find_bin(name)
    except exceptions.ToolMissingError:
        return None


def select_producer():
    buildctl = _which('buildctl')
    docker = _which('docker')
    if buildctl and not os.environ.get('DOCKER_BUILDKIT'):
        return BuildKitProducer(buildctl)
    if docker:
        return DockerProducer(docker)
    if buildctl:
        return BuildKitProducer(buildctl)
    raise exceptions.BuildToolMissingError(
        'buildctl', 'neither buildctl nor docker were found in PATH')


def write_docker_config(opts, tmp_dir):
    """Write explicit credentials where the build tools will find them."""
    credentials = opts.oci_auth_config or opts.docker_auth_config
    if not credentials:
        return None
    if isinstance(credentials, dict):
        username = credentials.get('username')
        password = credentials.get('password')
    else:
        username, password = credentials.username, credentials.password
    if not username or not password:
        return None

    config_dir = tempfile.mkdtemp(prefix='docker-config-', dir=tmp_dir)
    token = base64.b64encode(
        ('%s:%s' % (username, password)).encode('utf-8')).decode('ascii')
    with open(os.path.join(config_dir, 'config.json'), 'w') as f:
        f.write(json.dumps(
            {'auths': {constants.DOCKER_HUB_AUTH_KEY: {'auth': token}}}))
    os.chmod(os.path.join(config_dir, 'config.json'), 0o600)
    return config_dir


class BuildKitConveyorPacker(OCIConveyorPacker):
    bootstrap = 'buildkit'

    def build_spec(self, bundle):
        recipe = bundle.recipe
        context_dir = os.path.abspath(recipe.require('from'))
        if not os.path.isdir(context_dir):
            raise exceptions.RecipeHeaderMalformedError(
                'build context %s is not an accessible directory'
                % context_dir)

        log_path = os.path.join(bundle.rootfs_path,
                                constants.BUILDKIT_LOG_PATH)
        os.makedirs(os.path.dirname(log_path), exist_ok=True)

        return BuildSpec(
            context_dir=context_dir,
            filename=recipe.get('filename') or DEFAULT_FILENAME,
            frontend=recipe.get('frontend') or DEFAULT_FRONTEND,
            target=recipe.get('target'),
            build_args=parse_build_args(recipe.get('buildargs')),
            platform=str(ociplatform.resolve_platform(bundle.opts)),
            output=os.path.join(bundle.tmp_dir, 'buildkit-image.tar'),
            log_path=log_path,
            docker_config=write_docker_config(bundle.opts, bundle.tmp_dir))

    def get(self, ctx, bundle):
        self.bundle = bundle
        spec = self.build_spec(bundle)
        archive = select_producer().produce(ctx, spec)
        LOG.info('Build log written to %s' % spec.log_path)
        self.fetch(ctx, bundle, 'oci-archive:%s' % archive)
