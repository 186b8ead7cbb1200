"""Image reference parsing.

References are of the form scheme:location:

    docker://[host[:port]/]name[:tag][@digest]
    docker-daemon:name[:tag]
    docker-archive:/path/to/file.tar[:name:tag]
    oci-archive:/path/to/file.tar[:tag]
    oci:/path/to/layout[:tag]
    oras://host[:port]/name[:tag][@digest]
    library://[host/]entity/collection/container[:tag]
    shub://[host/]user/container[:tag][@version]
    localimage:///path/to/image
"""

from collections import namedtuple
import os

from bundlestrap import constants
from bundlestrap.exceptions import URIParseError


# Named tuple for parsed references. host is the registry or library
# host, name the repository path, path the filesystem path for the
# schemes that point at local files.
ImageRef = namedtuple('ImageRef',
                      ['scheme', 'host', 'name', 'tag', 'digest', 'path'])

SCHEMES = {'docker', 'docker-daemon', 'docker-archive', 'oci-archive', 'oci',
           'oras', 'library', 'shub', 'localimage'}

DOCKER_HUB = 'docker.io'


def _looks_like_host(component):
    return ('.' in component or ':' in component or
            component == 'localhost')


def split_scheme(ref_string):
    if ':' not in ref_string:
        raise URIParseError('Missing scheme in reference: %s' % ref_string)
    scheme, rest = ref_string.split(':', 1)
    scheme = scheme.lower()
    if scheme not in SCHEMES:
        raise URIParseError('Unsupported scheme %s in reference: %s'
                            % (scheme, ref_string))
    if rest.startswith('//'):
        rest = rest[2:]
    return scheme, rest


def split_name_tag(name, default_tag='latest'):
    """Split name[:tag][@digest] into its parts."""
    digest = None
    if '@' in name:
        name, digest = name.split('@', 1)

    tag = None
    last_slash = name.rfind('/')
    last_colon = name.rfind(':')
    if last_colon > last_slash:
        name, tag = name[:last_colon], name[last_colon + 1:]
        if not tag:
            raise URIParseError('Empty tag in reference: %s' % name)
    if not tag and not digest:
        tag = default_tag
    if not name:
        raise URIParseError('Empty name in reference')
    return name, tag, digest


def _split_path_suffix(rest):
    """Split path[:suffix] where suffix can't contain a slash."""
    if ':' in rest:
        path, suffix = rest.split(':', 1)
        if '/' not in suffix:
            return path, suffix
    return rest, None


def parse_docker_name(rest, default_host=DOCKER_HUB):
    components = rest.split('/')
    host = default_host
    if len(components) > 1 and _looks_like_host(components[0]):
        host = components[0]
        rest = '/'.join(components[1:])
    name, tag, digest = split_name_tag(rest)
    if host == DOCKER_HUB and '/' not in name:
        name = 'library/%s' % name
    return host, name, tag, digest


def parse_ref(ref_string, library_url=None):
    """Parse an image reference.

    Args:
        ref_string: A reference like 'docker://busybox:latest'.
        library_url: Default host for library:// references.

    Returns:
        ImageRef(scheme, host, name, tag, digest, path)

    Raises:
        URIParseError: If the reference is malformed.
    """
    scheme, rest = split_scheme(ref_string)
    if not rest:
        raise URIParseError('Empty reference: %s' % ref_string)

    if scheme == 'docker':
        host, name, tag, digest = parse_docker_name(rest)
        if not host:
            raise URIParseError('docker reference requires a host: %s'
                                % ref_string)
        return ImageRef(scheme, host, name, tag, digest, None)

    if scheme == 'oras':
        components = rest.split('/')
        if len(components) < 2 or not _looks_like_host(components[0]):
            raise URIParseError('oras reference requires a host: %s'
                                % ref_string)
        name, tag, digest = split_name_tag('/'.join(components[1:]))
        return ImageRef(scheme, components[0], name, tag, digest, None)

    if scheme == 'docker-daemon':
        name, tag, digest = split_name_tag(rest)
        return ImageRef(scheme, None, name, tag, digest, None)

    if scheme == 'docker-archive':
        path, suffix = _split_path_suffix(rest)
        name = tag = None
        if suffix:
            name, tag, _ = split_name_tag(rest[len(path) + 1:])
        return ImageRef(scheme, None, name, tag, None, path)

    if scheme in ('oci-archive', 'oci'):
        path, tag = _split_path_suffix(rest)
        return ImageRef(scheme, None, None, tag, None, path)

    if scheme == 'library':
        host = None
        components = rest.split('/')
        if len(components) > 3 or (len(components) > 1 and
                                   _looks_like_host(components[0])):
            host = components[0]
            rest = '/'.join(components[1:])
        if not host:
            host = library_url or constants.DEFAULT_LIBRARY_URL
        name, tag, digest = split_name_tag(rest)
        if len(name.split('/')) > 3:
            raise URIParseError('library reference has too many '
                                'components: %s' % ref_string)
        return ImageRef(scheme, host, name, tag, digest, None)

    if scheme == 'shub':
        components = rest.split('/')
        host = constants.DEFAULT_SHUB_REGISTRY
        if len(components) > 2 and _looks_like_host(components[0]):
            host = components[0]
            rest = '/'.join(components[1:])
        name, tag, digest = split_name_tag(rest)
        return ImageRef(scheme, host, name, tag, digest, None)

    # localimage
    path = rest
    if not os.path.exists(path):
        raise URIParseError('localimage path does not exist: %s' % path)
    return ImageRef(scheme, None, None, None, None, path)


def build_ref(bootstrap, source, registry='', namespace=''):
    """Construct a reference from definition headers.

    For registry pulls the namespace and then the registry are prepended
    to the from value before the scheme.
    """
    source = source.strip()
    if bootstrap != 'docker':
        return '%s:%s' % (bootstrap, source)

    if namespace:
        source = '%s/%s' % (namespace.strip().strip('/'), source)
    if registry:
        source = '%s/%s' % (registry.strip().strip('/'), source)
    return 'docker://%s' % source
