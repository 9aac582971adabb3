class MaterializationError(Exception):
    """Base class for every failure reported by a materialization.

    Each error may carry the digest, path and layer index it relates to so
    that callers can report exactly what went wrong. None of these errors
    are retried internally.
    """

    kind = 'materialization_error'

    def __init__(self, message, digest=None, path=None, layer_index=None):
        super(MaterializationError, self).__init__(message)
        self.message = message
        self.digest = digest
        self.path = path
        self.layer_index = layer_index

    def __str__(self):
        details = []
        if self.layer_index is not None:
            details.append('layer %d' % self.layer_index)
        if self.digest is not None:
            details.append('digest %s' % self.digest)
        if self.path is not None:
            details.append('path %s' % self.path)
        if not details:
            return self.message
        return '%s (%s)' % (self.message, ', '.join(details))


class MalformedDigest(MaterializationError):
    kind = 'malformed_digest'


class DigestMismatch(MaterializationError):
    kind = 'digest_mismatch'


class DecompressionError(MaterializationError):
    kind = 'decompression_error'


class ArchiveParseError(MaterializationError):
    kind = 'archive_parse_error'


class PathTraversal(MaterializationError):
    kind = 'path_traversal'


class PathConflict(MaterializationError):
    kind = 'path_conflict'


class ManifestError(MaterializationError):
    kind = 'manifest_error'


class FetchFailure(MaterializationError):
    kind = 'fetch_failure'


class IncompleteBundle(FetchFailure):
    kind = 'incomplete_bundle'


class Cancelled(MaterializationError):
    kind = 'cancelled'
