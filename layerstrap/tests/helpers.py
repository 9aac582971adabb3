"""Builders for in-memory layers and images used across the tests."""

import gzip
import io
import tarfile

import zstandard as zstd

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap.inputs.base import BlobFetcher, ManifestProvider
from layerstrap.manifest import BlobDescriptor, ImageReference, Manifest


CONFIG = b'{"architecture":"amd64","os":"linux"}'


def make_tar(entries):
    """Build an uncompressed tarball.

    entries is a list of tuples, the first element of which is the kind:

        ('file', path, data[, mode[, mtime]])
        ('dir', path[, mode])
        ('symlink', path, target)
        ('hardlink', path, target)
        ('fifo', path)
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w',
                      format=tarfile.USTAR_FORMAT) as tf:
        for entry in entries:
            kind, path = entry[0], entry[1]
            ti = tarfile.TarInfo(path)
            if kind == 'file':
                data = entry[2]
                ti.size = len(data)
                ti.mode = entry[3] if len(entry) > 3 else 0o644
                ti.mtime = entry[4] if len(entry) > 4 else 0
                tf.addfile(ti, io.BytesIO(data))
                continue

            if kind == 'dir':
                ti.type = tarfile.DIRTYPE
                ti.mode = entry[2] if len(entry) > 2 else 0o755
            elif kind == 'symlink':
                ti.type = tarfile.SYMTYPE
                ti.linkname = entry[2]
            elif kind == 'hardlink':
                ti.type = tarfile.LNKTYPE
                ti.linkname = entry[2]
            elif kind == 'fifo':
                ti.type = tarfile.FIFOTYPE
            tf.addfile(ti)
    return buf.getvalue()


def compress(data, compression_type):
    if compression_type == constants.COMPRESSION_GZIP:
        return gzip.compress(data, mtime=0)
    if compression_type == constants.COMPRESSION_ZSTD:
        return zstd.ZstdCompressor().compress(data)
    return data


MEDIA_TYPES = {
    constants.COMPRESSION_GZIP: constants.MEDIA_TYPE_OCI_LAYER_GZIP,
    constants.COMPRESSION_ZSTD: constants.MEDIA_TYPE_OCI_LAYER_ZSTD,
    constants.COMPRESSION_NONE: constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED,
}


def descriptor_for(blob, media_type):
    return BlobDescriptor(media_type, digest_codec.from_bytes(blob), len(blob))


def make_layer(entries, compression_type=constants.COMPRESSION_GZIP):
    """Return (blob, descriptor) for a layer holding entries."""
    blob = compress(make_tar(entries), compression_type)
    return blob, descriptor_for(blob, MEDIA_TYPES[compression_type])


def make_image(layer_entries, compression_type=constants.COMPRESSION_GZIP):
    """Return (manifest, blobs) for an image with one layer per list.

    blobs maps each Digest to its bytes, including the config.
    """
    blobs = {}
    config_desc = descriptor_for(CONFIG, constants.MEDIA_TYPE_OCI_CONFIG)
    blobs[config_desc.digest] = CONFIG

    layer_descs = []
    for entries in layer_entries:
        blob, desc = make_layer(entries, compression_type)
        blobs[desc.digest] = blob
        layer_descs.append(desc)

    return Manifest.build(config_desc, layer_descs), blobs


REFERENCE = ImageReference('registry.example.com', 'library/test', 'latest')


class FakeSource(ManifestProvider, BlobFetcher):
    """Serves a single image from memory.

    Blobs listed in fail raise the given exception when fetched, and blobs
    listed in corrupt are served with different content.
    """

    def __init__(self, manifest, blobs):
        self.manifest = manifest
        self.blobs = blobs
        self.fail = {}
        self.corrupt = set()
        self.fetched = []

    def get_manifest(self, reference):
        return self.manifest

    def fetch(self, reference, digest):
        self.fetched.append(digest)
        if digest in self.fail:
            raise self.fail[digest]
        data = self.blobs[digest]
        if digest in self.corrupt:
            data = bytes([data[0] ^ 0xff]) + data[1:]
        return io.BytesIO(data)
