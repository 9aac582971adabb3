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

# OCI manifest media types
MEDIA_TYPE_OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
MEDIA_TYPE_OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
MEDIA_TYPE_OCI_CONFIG = 'application/vnd.oci.image.config.v1+json'

# OCI layer media types
MEDIA_TYPE_OCI_LAYER_GZIP = 'application/vnd.oci.image.layer.v1.tar+gzip'
MEDIA_TYPE_OCI_LAYER_ZSTD = 'application/vnd.oci.image.layer.v1.tar+zstd'
MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED = 'application/vnd.oci.image.layer.v1.tar'

IMAGE_MANIFEST_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST_V2, MEDIA_TYPE_OCI_MANIFEST)
MANIFEST_LIST_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
                       MEDIA_TYPE_OCI_INDEX)

# Archive entry kinds
ENTRY_FILE = 'file'
ENTRY_DIRECTORY = 'directory'
ENTRY_SYMLINK = 'symlink'
ENTRY_HARDLINK = 'hardlink'
ENTRY_OTHER = 'other'

# Materialization driver states
STATE_PENDING = 'pending'
STATE_RESOLVING = 'resolving'
STATE_FETCHING = 'fetching'
STATE_DECODING = 'decoding'
STATE_APPLYING = 'applying'
STATE_DONE = 'done'
STATE_FAILED = 'failed'

# Whiteout markers, see
# https://github.com/opencontainers/image-spec/blob/main/layer.md#whiteouts
WHITEOUT_PREFIX = '.wh.'
WHITEOUT_OPAQUE = '.wh..wh..opq'

# Bundle member names
BUNDLE_MANIFEST = 'manifest.json'
BUNDLE_INDEX = 'index.json'
BUNDLE_CONFIG_PREFIX = 'config'

# I/O tuning
CHUNK_SIZE = 8192
COPY_BUFFER_SIZE = 102400

# Symlink resolution depth, the same limit Linux uses
MAX_SYMLINK_DEPTH = 40
