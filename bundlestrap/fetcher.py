import logging
import os
import tempfile

from bundlestrap import auth
from bundlestrap.exceptions import URIParseError
from bundlestrap.inputs import archive as input_archive
from bundlestrap.inputs import docker as input_docker
from bundlestrap.inputs import registry as input_registry
from bundlestrap import layout as oci_layout
from bundlestrap import ociplatform
from bundlestrap import uri


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def _target_layout(cache, tmp_dir):
    if cache is not None:
        return cache.layout
    return oci_layout.OCILayout(
        tempfile.mkdtemp(prefix='layout-', dir=tmp_dir))


def fetch_to_layout(ctx, opts, cache, ref, tmp_dir):
    """Fetch the image ref points at into a local OCI layout.

    Args:
        ctx: The build's BuildContext.
        opts: The build's Options, which carry credentials, platform and
            transport settings.
        cache: An ImageCache, or None to fetch into tmp_dir.
        ref: A scheme:location image reference.
        tmp_dir: Scratch space for this build.

    Returns:
        A LayoutImage.
    """
    parsed = uri.parse_ref(ref, library_url=opts.library_url)
    platform = ociplatform.resolve_platform(opts)
    LOG.info('Fetching %s for platform %s' % (ref, platform))

    if parsed.scheme == 'docker':
        credentials = auth.resolve_auth(opts, parsed.host)
        image = input_registry.Image(
            ctx, parsed.host, parsed.name, parsed.digest or parsed.tag,
            platform=platform, auth=credentials,
            secure=not opts.no_https).pull(_target_layout(cache, tmp_dir))

    elif parsed.scheme == 'docker-daemon':
        image = input_docker.Image(
            ctx, parsed.name, parsed.tag,
            host=input_docker.daemon_host(opts)).pull(
                _target_layout(cache, tmp_dir), tmp_dir)

    elif parsed.scheme == 'docker-archive':
        image = input_archive.import_docker_archive(
            ctx, parsed.path, _target_layout(cache, tmp_dir),
            parsed.name, parsed.tag)

    elif parsed.scheme == 'oci-archive':
        dest = tempfile.mkdtemp(prefix='oci-archive-', dir=tmp_dir)
        input_archive.extract_oci_archive(ctx, parsed.path, dest)
        if (not os.path.exists(os.path.join(dest, 'index.json')) and
                os.path.exists(os.path.join(dest, 'manifest.json'))):
            # docker save output without an OCI index
            LOG.info('%s is a docker archive, importing it as one'
                     % parsed.path)
            image = input_archive.import_docker_archive(
                ctx, parsed.path, _target_layout(cache, tmp_dir))
        else:
            image = input_archive.load_oci_layout(dest, tag=parsed.tag,
                                                  platform=platform)

    elif parsed.scheme == 'oci':
        image = input_archive.load_oci_layout(
            os.path.abspath(parsed.path), tag=parsed.tag, platform=platform)

    else:
        raise URIParseError('%s references are not OCI images' % parsed.scheme)

    ociplatform.check_image_platform(platform, image)
    LOG.info('Fetched %s as %s' % (ref, image))
    return image
