import logging

from bundlestrap import exceptions
from bundlestrap import sif
from bundlestrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


VERIFIER_TOOLS = ('apptainer', 'singularity')


def parse_fingerprints(value):
    """Parse a fingerprints header: comma separated, '#' starts a comment."""
    value = (value or '').split('#', 1)[0]
    return [fp.strip() for fp in value.split(',') if fp.strip()]


class Verifier(object):
    """Checks the signatures carried by a SIF image.

    The signature objects are read from the image here. Checking the
    signatures themselves is left to the host's verifier tool.
    """

    def __init__(self, ctx, key_server_opts=None):
        self.ctx = ctx
        self.key_server_opts = key_server_opts or {}

    def _find_tool(self):
        for name in VERIFIER_TOOLS:
            try:
                return util.find_bin(name)
            except exceptions.ToolMissingError:
                continue
        raise exceptions.ToolMissingError(
            VERIFIER_TOOLS[0],
            'no signature verifier (%s) found in PATH'
            % ' or '.join(VERIFIER_TOOLS))

    def verify(self, image_path, fingerprints=None):
        """Verify image_path, optionally requiring specific signers.

        Raises:
            SignatureNotFoundError if the image carries no signatures,
            FingerprintMismatchError if a required fingerprint is absent,
            VerificationError if the signatures don't verify.
        """
        signatures = sif.SIFImage(image_path).signatures()
        if not signatures:
            raise exceptions.SignatureNotFoundError(
                'no signatures found in %s' % image_path)

        present = set(s.fingerprint for s in signatures)
        LOG.debug('%s is signed by %s' % (image_path, ', '.join(sorted(present))))
        if fingerprints:
            missing = [fp for fp in fingerprints if fp.upper() not in present]
            if missing:
                raise exceptions.FingerprintMismatchError(
                    '%s is not signed by required key(s) %s'
                    % (image_path, ', '.join(missing)))

        cmd = [self._find_tool(), 'verify']
        if self.key_server_opts.get('url'):
            cmd.extend(['--url', self.key_server_opts['url']])
        if not fingerprints:
            cmd.append('--all')
        cmd.append(image_path)
        try:
            util.run_tool(self.ctx, cmd, logger=LOG)
        except exceptions.CommandFailedError as e:
            raise exceptions.VerificationError(
                'signature verification of %s failed: %s' % (image_path, e))


def check_local_image(verifier, image_path, fingerprints_header):
    """Gate a local SIF image on its signatures.

    With fingerprints listed every one must have signed the image. Without
    any, verification is advisory.
    """
    fingerprints = parse_fingerprints(fingerprints_header)
    if fingerprints:
        LOG.info('Checking bootstrap image %s is signed by %s'
                 % (image_path, ', '.join(fingerprints)))
        try:
            verifier.verify(image_path, fingerprints)
        except (exceptions.SignatureNotFoundError,
                exceptions.VerificationError) as e:
            raise exceptions.FingerprintMismatchError(
                'while checking fingerprints of %s: %s' % (image_path, e))
        return

    try:
        verifier.verify(image_path)
    except exceptions.SignatureNotFoundError as e:
        LOG.debug('Bootstrap image is not signed: %s' % e)
    except exceptions.BuildError as e:
        LOG.warning('Bootstrap image could not be verified, but build will '
                    'continue.')
        LOG.debug('Verification error was: %s' % e)
