import logging
import tempfile

from bundlestrap import auth
from bundlestrap import constants
from bundlestrap.conveyors.local import DownloadedImageConveyorPacker
from bundlestrap import exceptions
from bundlestrap.inputs import registry as input_registry
from bundlestrap import layout as oci_layout
from bundlestrap import uri


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def find_sif_layer(manifest):
    for layer in manifest.get('layers', []):
        if layer.get('mediaType') == constants.MEDIA_TYPE_SIF_LAYER:
            return layer
    raise exceptions.NotExtractableError(
        'artifact has no layer of type %s' % constants.MEDIA_TYPE_SIF_LAYER)


class OrasConveyorPacker(DownloadedImageConveyorPacker):
    """Pulls a SIF image stored as an OCI artifact."""

    bootstrap = 'oras'

    def download(self, ctx, bundle):
        source = bundle.recipe.require('from').strip()
        if not source.startswith('oras:'):
            source = 'oras://%s' % source
        ref = uri.parse_ref(source)
        opts = bundle.opts

        image = input_registry.Image(
            ctx, ref.host, ref.name, ref.digest or ref.tag,
            auth=auth.resolve_auth(opts, ref.host),
            secure=not opts.no_https)
        _, _, manifest = image.fetch_manifest()
        layer = find_sif_layer(manifest)

        if opts.cache is not None:
            target = opts.cache.layout
        else:
            target = oci_layout.OCILayout(
                tempfile.mkdtemp(prefix='oras-', dir=bundle.tmp_dir))
        image.download_blob(target, layer)
        return target.blob_path(layer['digest'])
