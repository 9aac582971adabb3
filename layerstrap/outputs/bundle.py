import io
import json
import logging
import os
import tarfile
import tempfile

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap.manifest import descriptor_to_dict
from layerstrap.outputs.base import ImageOutput


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


# A bundle is a single uncompressed tarball named after the manifest digest:
#
#   manifest.json        the manifest, exactly as served
#   config.json          the config blob (config.bin if it isn't JSON)
#   sha256_<hex>         one member per layer blob, still compressed
#   index.json           descriptors for all of the above
#
# Member metadata is fixed and members are always written in the same order,
# so bundling the same image twice produces identical files. The tarball is
# built under a temporary name and only renamed into place once complete.

def config_member_name(descriptor):
    media_type = descriptor.media_type or ''
    if media_type.endswith('json'):
        return '%s.json' % constants.BUNDLE_CONFIG_PREFIX
    return '%s.bin' % constants.BUNDLE_CONFIG_PREFIX


def layer_member_name(descriptor):
    return digest_codec.sanitize_for_filesystem(descriptor.digest)


class BundleWriter(ImageOutput):
    wants_config = True

    def __init__(self, base_path, name=None):
        self.base_path = base_path
        self.name = name
        self.final_path = None
        self.manifest = None
        self.image_tar = None

        self._tf = None
        self._written = set()

    def _tarinfo(self, name, size):
        ti = tarfile.TarInfo(name)
        ti.size = size
        ti.mtime = 0
        ti.mode = 0o644
        ti.uid = 0
        ti.gid = 0
        ti.uname = ''
        ti.gname = ''
        return ti

    def _add_bytes(self, name, data):
        self.image_tar.addfile(self._tarinfo(name, len(data)), io.BytesIO(data))

    def begin(self, manifest):
        self.manifest = manifest
        if not self.name:
            self.name = digest_codec.sanitize_for_filesystem(manifest.digest)
        if '/' in self.name or self.name in ('.', '..'):
            raise errors.PathTraversal('Invalid bundle name', path=self.name)

        if not os.path.exists(self.base_path):
            os.makedirs(self.base_path)
        self.final_path = os.path.join(self.base_path, self.name)

        self._tf = tempfile.NamedTemporaryFile(
            delete=False, dir=self.base_path, prefix='.%s.' % self.name,
            suffix='.partial')
        LOG.info('Writing bundle for %s to temporary file %s'
                 % (manifest.digest, self._tf.name))
        self.image_tar = tarfile.open(fileobj=self._tf, mode='w',
                                      format=tarfile.PAX_FORMAT)
        self._add_bytes(constants.BUNDLE_MANIFEST, manifest.raw)

    def process_blob(self, descriptor, path):
        if descriptor == self.manifest.config:
            name = config_member_name(descriptor)
            LOG.info('Writing config file to bundle')
        else:
            name = layer_member_name(descriptor)
            LOG.info('Writing layer %s to bundle' % descriptor.digest)

        # Images may repeat a layer, it only needs storing once
        if name in self._written:
            return
        self._written.add(name)

        with open(path, 'rb') as f:
            self.image_tar.addfile(
                self._tarinfo(name, os.path.getsize(path)), f)

    def _index(self):
        manifest_entry = {
            'mediaType': self.manifest.media_type,
            'digest': str(self.manifest.digest),
            'size': self.manifest.size,
            'path': constants.BUNDLE_MANIFEST,
        }

        config_entry = descriptor_to_dict(self.manifest.config)
        config_entry['path'] = config_member_name(self.manifest.config)

        layers = []
        for layer in self.manifest.layers:
            entry = descriptor_to_dict(layer)
            entry['path'] = layer_member_name(layer)
            layers.append(entry)

        return {
            'schemaVersion': 2,
            'manifest': manifest_entry,
            'config': config_entry,
            'layers': layers,
        }

    def finalize(self):
        LOG.info('Writing index file to bundle')
        self._add_bytes(
            constants.BUNDLE_INDEX,
            json.dumps(self._index(), indent=4, sort_keys=True).encode('utf-8'))
        self.image_tar.close()
        self._tf.close()

        os.chmod(self._tf.name, 0o644)
        os.replace(self._tf.name, self.final_path)
        LOG.info('Bundle written to %s' % self.final_path)
        return self.final_path

    def abort(self):
        if self._tf is None:
            return

        LOG.info('Removing incomplete bundle %s' % self._tf.name)
        try:
            if self.image_tar is not None:
                self.image_tar.close()
        except (OSError, tarfile.TarError) as e:
            LOG.debug('Ignoring error closing incomplete bundle: %s' % e)
        self._tf.close()
        if os.path.exists(self._tf.name):
            os.unlink(self._tf.name)
