import json
import logging
import os
import tarfile

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap.inputs.base import BlobFetcher, ManifestProvider
from layerstrap.manifest import ImageReference, Manifest


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


class _MemberStream(object):
    """A bundle member which closes its tarball when it is closed."""

    def __init__(self, tf, fileobj):
        self._tf = tf
        self._fileobj = fileobj

    def read(self, size=-1):
        return self._fileobj.read(size)

    def close(self):
        self._fileobj.close()
        self._tf.close()


class Bundle(ManifestProvider, BlobFetcher):
    """Reads an image back out of a bundle written by BundleWriter."""

    def __init__(self, bundle_path):
        self.bundle_path = bundle_path
        self._index = None
        self._raw_manifest = None
        self._paths = {}
        self._load_index()

    def _load_index(self):
        LOG.info('Reading bundle index from %s' % self.bundle_path)
        try:
            with tarfile.open(self.bundle_path, 'r') as tf:
                self._index = json.loads(
                    tf.extractfile(constants.BUNDLE_INDEX).read())
                self._raw_manifest = tf.extractfile(
                    self._index['manifest']['path']).read()
            for entry in [self._index['config']] + self._index['layers']:
                self._paths[digest_codec.parse(entry['digest'])] = \
                    entry['path']
        except (KeyError, TypeError, ValueError, tarfile.TarError) as e:
            raise errors.ManifestError(
                'Not a valid bundle: %s' % e, path=self.bundle_path)

    @property
    def reference(self):
        return ImageReference(
            'bundle', os.path.basename(self.bundle_path),
            self._index['manifest']['digest'])

    def get_manifest(self, reference=None):
        expected = digest_codec.parse(self._index['manifest']['digest'])
        if digest_codec.from_bytes(self._raw_manifest) != expected:
            raise errors.DigestMismatch(
                'Bundle manifest does not match its digest',
                digest=expected, path=self.bundle_path)
        return Manifest.from_bytes(
            self._raw_manifest,
            media_type=self._index['manifest'].get('mediaType'))

    def fetch(self, reference, digest):
        if digest not in self._paths:
            raise errors.FetchFailure(
                'Blob is not in bundle', digest=digest, path=self.bundle_path)

        LOG.info('Reading blob %s from bundle' % digest)
        tf = tarfile.open(self.bundle_path, 'r')
        try:
            return _MemberStream(tf, tf.extractfile(self._paths[digest]))
        except (KeyError, tarfile.TarError):
            tf.close()
            raise errors.FetchFailure(
                'Blob is missing from bundle', digest=digest,
                path=self.bundle_path)
