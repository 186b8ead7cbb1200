class BuildError(Exception):
    pass


class FSChownUnsupportedError(BuildError):
    pass


class UnsupportedPlatformError(BuildError):
    pass


class PlatformMismatchError(BuildError):
    def __init__(self, required, image):
        super(PlatformMismatchError, self).__init__(
            'image (%s) does not satisfy required platform (%s)'
            % (image, required))
        self.required = required
        self.image = image


class ArchUnknownError(BuildError):
    pass


class ToolMissingError(BuildError):
    def __init__(self, tool, message=None):
        if not message:
            message = '%s is not in PATH' % tool
        super(ToolMissingError, self).__init__(message)
        self.tool = tool


class BuildToolMissingError(ToolMissingError):
    pass


class NotExtractableError(BuildError):
    pass


class ExtractionFailedError(BuildError):
    pass


class PermsPartialFixError(BuildError):
    def __init__(self, count):
        super(PermsPartialFixError, self).__init__(
            '%d errors were encountered when setting permissions' % count)
        self.count = count


class FingerprintMismatchError(BuildError):
    pass


class SignatureNotFoundError(BuildError):
    pass


class VerificationError(BuildError):
    pass


class AuthConfigUnreadableError(BuildError):
    pass


class RecipeHeaderMissingError(BuildError):
    def __init__(self, bootstrap, key, message=None):
        if not message:
            message = ('invalid %s header, no %s specified'
                       % (bootstrap, key))
        super(RecipeHeaderMissingError, self).__init__(message)
        self.bootstrap = bootstrap
        self.key = key


class RecipeHeaderMalformedError(BuildError):
    pass


class URIParseError(RecipeHeaderMalformedError):
    """Raised when an image reference cannot be parsed."""
    pass


class BuildCancelledError(BuildError):
    pass


class BundleRemovalError(BuildError):
    def __init__(self, failures):
        super(BundleRemovalError, self).__init__(
            '; '.join('could not remove %r: %s' % (path, err)
                      for path, err in failures))
        self.failures = failures


class CommandFailedError(BuildError):
    def __init__(self, cmd, exit_code, stdout, stderr):
        super(CommandFailedError, self).__init__(
            'while running %s: exit code %s: %s'
            % (' '.join(cmd), exit_code, (stderr or '').strip()))
        self.cmd = cmd
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class APIError(BuildError):
    def __init__(self, message, method, url, status_code, text, headers):
        super(APIError, self).__init__(
            '%s: %s %s returned %s' % (message, method, url, status_code))
        self.method = method
        self.url = url
        self.status_code = status_code
        self.text = text
        self.headers = headers


class UnauthorizedError(APIError):
    pass


class ImageNotFoundError(APIError):
    pass


class RecipeSectionMalformedError(BuildError):
    pass
