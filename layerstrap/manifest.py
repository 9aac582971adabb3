"""Image references, manifests and materialization targets.

These are plain immutable values: they are created once per invocation and
only read afterwards.
"""

from collections import namedtuple
import json

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors


class ImageReference(namedtuple('ImageReference',
                                ['registry', 'repository', 'reference'])):
    """A registry image. reference is either a tag or a digest string."""

    __slots__ = ()

    @property
    def is_digest(self):
        return ':' in self.reference

    def __str__(self):
        if self.is_digest:
            return '%s/%s@%s' % (self.registry, self.repository, self.reference)
        return '%s/%s:%s' % (self.registry, self.repository, self.reference)


BlobDescriptor = namedtuple('BlobDescriptor', ['media_type', 'digest', 'size'])


def descriptor_from_dict(d):
    try:
        return BlobDescriptor(
            media_type=d.get('mediaType'),
            digest=digest_codec.parse(d['digest']),
            size=int(d['size']))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise errors.ManifestError('Invalid blob descriptor: %s' % e)


def descriptor_to_dict(desc):
    return {
        'mediaType': desc.media_type,
        'digest': str(desc.digest),
        'size': desc.size,
    }


class Manifest(namedtuple('Manifest', ['schema_version', 'media_type',
                                       'config', 'layers', 'raw'])):
    """An image manifest: a config blob and an ordered list of layer blobs.

    raw holds the exact bytes the manifest was parsed from, so that the
    manifest digest matches the one the registry reports.
    """

    __slots__ = ()

    @classmethod
    def from_bytes(cls, raw, media_type=None):
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise errors.ManifestError('Manifest is not valid JSON: %s' % e)
        if not isinstance(doc, dict):
            raise errors.ManifestError('Manifest is not a JSON object')

        media_type = doc.get('mediaType', media_type)
        if media_type in constants.MANIFEST_LIST_TYPES or 'manifests' in doc:
            raise errors.ManifestError(
                'Expected an image manifest, got a manifest list (%s)'
                % media_type)
        if 'config' not in doc or 'layers' not in doc:
            raise errors.ManifestError(
                'Manifest has no config or layers, schema version %s is '
                'not supported' % doc.get('schemaVersion'))

        return cls(
            schema_version=doc.get('schemaVersion', 2),
            media_type=media_type,
            config=descriptor_from_dict(doc['config']),
            layers=tuple(descriptor_from_dict(layer)
                         for layer in doc['layers']),
            raw=raw)

    @classmethod
    def build(cls, config, layers, media_type=constants.MEDIA_TYPE_OCI_MANIFEST,
              schema_version=2):
        """Construct a manifest from descriptors, rendering canonical JSON."""
        doc = {
            'schemaVersion': schema_version,
            'mediaType': media_type,
            'config': descriptor_to_dict(config),
            'layers': [descriptor_to_dict(layer) for layer in layers],
        }
        raw = json.dumps(doc, sort_keys=True,
                         separators=(',', ':')).encode('utf-8')
        return cls(schema_version, media_type, config, tuple(layers), raw)

    @property
    def digest(self):
        return digest_codec.from_bytes(self.raw)

    @property
    def size(self):
        return len(self.raw)


# Materialization targets
DirectoryTree = namedtuple('DirectoryTree', ['base_path'])


class ArchiveBundle(namedtuple('ArchiveBundle', ['base_path', 'name'])):
    """A bundle written into base_path. name defaults to the sanitized
    manifest digest when None."""

    __slots__ = ()

    def __new__(cls, base_path, name=None):
        return super(ArchiveBundle, cls).__new__(cls, base_path, name)
