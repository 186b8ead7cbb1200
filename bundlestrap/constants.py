# Compression type constants
COMPRESSION_GZIP = 'gzip'
COMPRESSION_ZSTD = 'zstd'
COMPRESSION_NONE = 'none'
COMPRESSION_UNKNOWN = 'unknown'

# Docker manifest media types
MEDIA_TYPE_DOCKER_MANIFEST_V2 = \
    'application/vnd.docker.distribution.manifest.v2+json'
MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2 = \
    'application/vnd.docker.distribution.manifest.list.v2+json'
MEDIA_TYPE_DOCKER_CONFIG = 'application/vnd.docker.container.image.v1+json'

# Docker layer media types
MEDIA_TYPE_DOCKER_LAYER_GZIP = \
    'application/vnd.docker.image.rootfs.diff.tar.gzip'
MEDIA_TYPE_DOCKER_LAYER_ZSTD = \
    'application/vnd.docker.image.rootfs.diff.tar.zstd'
MEDIA_TYPE_DOCKER_LAYER_FOREIGN_GZIP = \
    'application/vnd.docker.image.rootfs.foreign.diff.tar.gzip'

# OCI manifest media types
MEDIA_TYPE_OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
MEDIA_TYPE_OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
MEDIA_TYPE_OCI_CONFIG = 'application/vnd.oci.image.config.v1+json'

# OCI layer media types
MEDIA_TYPE_OCI_LAYER_GZIP = 'application/vnd.oci.image.layer.v1.tar+gzip'
MEDIA_TYPE_OCI_LAYER_ZSTD = 'application/vnd.oci.image.layer.v1.tar+zstd'
MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED = 'application/vnd.oci.image.layer.v1.tar'
MEDIA_TYPE_OCI_LAYER_NONDIST_GZIP = \
    'application/vnd.oci.image.layer.nondistributable.v1.tar+gzip'

# Media types which carry a filesystem changeset. Anything else in a
# manifest's layer list (SIF files pushed with oras, for example) is an
# artifact and can't be applied to a rootfs.
LAYER_MEDIA_TYPES = (
    MEDIA_TYPE_DOCKER_LAYER_GZIP,
    MEDIA_TYPE_DOCKER_LAYER_ZSTD,
    MEDIA_TYPE_DOCKER_LAYER_FOREIGN_GZIP,
    MEDIA_TYPE_OCI_LAYER_GZIP,
    MEDIA_TYPE_OCI_LAYER_ZSTD,
    MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED,
    MEDIA_TYPE_OCI_LAYER_NONDIST_GZIP,
)

MEDIA_TYPE_SIF_LAYER = 'application/vnd.sylabs.sif.layer.v1.sif'
MEDIA_TYPE_SIF_CONFIG = 'application/vnd.sylabs.sif.config.v1+json'

OCI_LAYOUT_VERSION = '1.0.0'
OCI_REF_NAME_ANNOTATION = 'org.opencontainers.image.ref.name'

# Keys for Bundle.json_objects
JSON_OBJECT_OCI_CONFIG = 'oci-config'

# Short architecture names accepted by the arch option, and the OCI
# architecture / variant pair each one selects.
ARCH_MAP = {
    'amd64': ('amd64', ''),
    'arm32v5': ('arm', 'v5'),
    'arm32v6': ('arm', 'v6'),
    'arm32v7': ('arm', 'v7'),
    'arm': ('arm', 'v7'),
    'arm64v8': ('arm64', 'v8'),
    'arm64': ('arm64', 'v8'),
    '386': ('386', ''),
    'ppc64le': ('ppc64le', ''),
    's390x': ('s390x', ''),
    'riscv64': ('riscv64', ''),
}

# Paths inside a rootfs
SINGULARITY_D = '.singularity.d'
RUNSCRIPT_PATH = '.singularity.d/runscript'
STARTSCRIPT_PATH = '.singularity.d/startscript'
LABELS_PATH = '.singularity.d/labels.json'
DOCKER_ENV_PATH = '.singularity.d/env/10-docker2singularity.sh'
BUILDKIT_LOG_PATH = '.singularity.d/buildkit_build.log'
ENVIRONMENT_PATH = '.singularity.d/env/90-environment.sh'
POST_ENVIRONMENT_PATH = '.singularity.d/env/91-environment.sh'
TEST_PATH = '.singularity.d/test'
TEST_ACTION_PATH = '.singularity.d/actions/test'
HELP_PATH = '.singularity.d/runscript.help'
DEFINITION_PATH = '.singularity.d/Singularity'
DEFINITION_HISTORY_DIR = '.singularity.d/bootstrap_history'
BUILD_LABELS_PATH = '.build.labels'
POST_SCRIPT_PATH = '.post.script'

DEFAULT_LIBRARY_URL = 'https://library.sylabs.io'
DEFAULT_SHUB_REGISTRY = 'singularity-hub.org'
DEFAULT_DOCKER_SOCKET = '/var/run/docker.sock'
DEFAULT_BUILDKIT_SOCKET = '/run/buildkit/buildkitd.sock'
DOCKER_HUB_AUTH_KEY = 'https://index.docker.io/v1/'
DOCKER_HUB_REGISTRY = 'registry-1.docker.io'
