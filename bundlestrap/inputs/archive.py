import json
import logging
import os
import tarfile

from bundlestrap import compression
from bundlestrap import constants
from bundlestrap import exceptions
from bundlestrap import layout as oci_layout


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


def _layer_media_type(blob_path):
    with open(blob_path, 'rb') as f:
        found = compression.detect_compression(f)
    if found == constants.COMPRESSION_GZIP:
        return constants.MEDIA_TYPE_OCI_LAYER_GZIP
    if found == constants.COMPRESSION_ZSTD:
        return constants.MEDIA_TYPE_OCI_LAYER_ZSTD
    return constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED


def _select_entry(manifest, name=None, tag=None):
    if not manifest:
        raise exceptions.ExtractionFailedError(
            'docker archive manifest.json lists no images')
    if not name or len(manifest) == 1:
        return manifest[0]

    wanted = ['%s:%s' % (name, tag or 'latest')]
    if '/' not in name:
        wanted.append('docker.io/library/%s:%s' % (name, tag or 'latest'))
    for entry in manifest:
        for repo_tag in entry.get('RepoTags') or []:
            if repo_tag in wanted:
                return entry
    raise exceptions.ExtractionFailedError(
        'docker archive does not contain %s' % wanted[0])


def import_docker_archive(ctx, path, layout, name=None, tag=None):
    """Import a docker save tarball into an OCI layout.

    Returns:
        The LayoutImage for the imported image.
    """
    LOG.info('Reading image from docker archive %s' % path)
    with tarfile.open(path, 'r') as tf:
        manifest = json.loads(
            tf.extractfile(tf.getmember('manifest.json')).read())
        entry = _select_entry(manifest, name, tag)

        config_filename = entry['Config']
        LOG.info('Reading config file %s' % config_filename)
        config_data = tf.extractfile(tf.getmember(config_filename)).read()
        config_digest = layout.write_blob(config_data)

        layers = entry['Layers']
        LOG.info('There are %d image layers' % len(layers))

        descriptors = []
        for layer_path in layers:
            ctx.check()
            LOG.info('Reading layer %s' % layer_path)
            member = tf.getmember(layer_path)
            layer_digest = layout.write_blob_from_file(
                ctx, tf.extractfile(member))
            descriptors.append({
                'mediaType': _layer_media_type(
                    layout.blob_path(layer_digest)),
                'digest': layer_digest,
                'size': os.path.getsize(layout.blob_path(layer_digest)),
            })

    image_manifest = {
        'schemaVersion': 2,
        'mediaType': constants.MEDIA_TYPE_OCI_MANIFEST,
        'config': {
            'mediaType': constants.MEDIA_TYPE_OCI_CONFIG,
            'digest': config_digest,
            'size': len(config_data),
        },
        'layers': descriptors,
    }
    digest = layout.write_manifest(image_manifest)
    LOG.info('Done')
    return layout.image(digest)


def _check_member(member, dest):
    target = os.path.realpath(os.path.join(dest, member.name))
    if target != dest and not target.startswith(dest + os.sep):
        raise exceptions.ExtractionFailedError(
            'archive entry %s would be extracted outside %s'
            % (member.name, dest))
    if member.issym():
        link = os.path.realpath(os.path.join(os.path.dirname(target),
                                             member.linkname))
        if link != dest and not link.startswith(dest + os.sep):
            raise exceptions.ExtractionFailedError(
                'archive entry %s links outside %s' % (member.name, dest))
        return
    if not (member.isfile() or member.isdir()):
        raise exceptions.ExtractionFailedError(
            'archive entry %s is not a regular file, directory or symlink'
            % member.name)


def extract_oci_archive(ctx, path, dest):
    """Unpack an oci-archive tarball into dest, refusing path traversal."""
    dest = os.path.realpath(dest)
    LOG.info('Extracting OCI archive %s to %s' % (path, dest))
    with tarfile.open(path, 'r') as tf:
        for member in tf:
            ctx.check()
            _check_member(member, dest)
            target = os.path.join(dest, member.name)
            if member.isdir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if member.issym():
                # docker save keeps its legacy layer paths as links to blobs
                os.symlink(member.linkname, target)
                continue
            with open(target, 'wb') as out:
                src = tf.extractfile(member)
                for chunk in iter(lambda: src.read(102400), b''):
                    out.write(chunk)
    return dest


def load_oci_layout(path, tag=None, platform=None):
    if not os.path.exists(os.path.join(path, 'index.json')):
        raise exceptions.ExtractionFailedError(
            '%s is not an OCI image layout' % path)
    return oci_layout.load_image(path, tag=tag, platform=platform)
