"""Tests for layer spooling, verification and decoding."""

import io
import os
import random
import shutil
import tempfile
import unittest

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap import layers
from layerstrap.manifest import BlobDescriptor
from layerstrap.tests import helpers


def _random_bytes(size, seed=0):
    return random.Random(seed).randbytes(size)


class SpoolBlobTestCase(unittest.TestCase):
    def setUp(self):
        super(SpoolBlobTestCase, self).setUp()
        self.temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.temp_dir)

    def test_spool_verified(self):
        """Test a matching blob is spooled and returned."""
        data = b'layer bytes' * 1000
        desc = helpers.descriptor_for(data, None)
        path = layers.spool_blob(io.BytesIO(data), desc,
                                 temp_dir=self.temp_dir)
        try:
            with open(path, 'rb') as f:
                self.assertEqual(data, f.read())
        finally:
            os.unlink(path)

    def test_spool_from_chunks(self):
        data = [b'abc', b'def']
        desc = helpers.descriptor_for(b'abcdef', None)
        path = layers.spool_blob(iter(data), desc, temp_dir=self.temp_dir)
        os.unlink(path)

    def test_spool_digest_mismatch(self):
        """Test a blob with the wrong content leaves nothing behind."""
        desc = helpers.descriptor_for(b'expected', None)
        with self.assertRaises(errors.DigestMismatch) as cm:
            layers.spool_blob(io.BytesIO(b'tampered'), desc,
                              temp_dir=self.temp_dir)
        self.assertEqual(desc.digest, cm.exception.digest)
        self.assertEqual([], os.listdir(self.temp_dir))

    def test_spool_too_large(self):
        """Test a blob larger than declared is refused."""
        data = b'x' * 100
        desc = BlobDescriptor(None, digest_codec.from_bytes(data), 10)
        with self.assertRaises(errors.DigestMismatch):
            layers.spool_blob(io.BytesIO(data), desc, temp_dir=self.temp_dir)
        self.assertEqual([], os.listdir(self.temp_dir))

    def test_spool_too_small(self):
        data = b'x' * 100
        desc = BlobDescriptor(None, digest_codec.from_bytes(data), 200)
        with self.assertRaises(errors.DigestMismatch):
            layers.spool_blob(io.BytesIO(data), desc, temp_dir=self.temp_dir)
        self.assertEqual([], os.listdir(self.temp_dir))

    def test_spool_closes_stream(self):
        data = b'abc'
        stream = io.BytesIO(data)
        path = layers.spool_blob(stream, helpers.descriptor_for(data, None),
                                 temp_dir=self.temp_dir)
        os.unlink(path)
        self.assertTrue(stream.closed)


class IterEntriesTestCase(unittest.TestCase):
    def test_entry_kinds(self):
        """Test each tar member type maps to an entry kind."""
        data = helpers.make_tar([
            ('dir', 'etc', 0o750),
            ('file', 'etc/hostname', b'box\n', 0o640, 1234),
            ('symlink', 'etc/alias', 'hostname'),
            ('hardlink', 'etc/copy', 'etc/hostname'),
            ('fifo', 'etc/pipe'),
        ])

        seen = []
        for entry in layers.iter_entries(io.BytesIO(data)):
            content = None
            if entry.content is not None:
                content = entry.content.read()
            seen.append((entry.path, entry.kind, content, entry.link_target))

        self.assertEqual([
            ('etc', constants.ENTRY_DIRECTORY, None, None),
            ('etc/hostname', constants.ENTRY_FILE, b'box\n', None),
            ('etc/alias', constants.ENTRY_SYMLINK, None, 'hostname'),
            ('etc/copy', constants.ENTRY_HARDLINK, None, 'etc/hostname'),
            ('etc/pipe', constants.ENTRY_OTHER, None, None),
        ], seen)

    def test_entry_metadata(self):
        data = helpers.make_tar([('file', 'a', b'abc', 0o751, 1234)])
        entry = next(layers.iter_entries(io.BytesIO(data)))
        self.assertEqual(0o751, entry.mode)
        self.assertEqual(3, entry.size)
        self.assertEqual(1234, entry.mtime)

    def test_unread_content_is_skipped(self):
        data = helpers.make_tar([
            ('file', 'a', b'a' * 2000),
            ('file', 'b', b'b' * 10),
        ])
        entries = layers.iter_entries(io.BytesIO(data))
        self.assertEqual('a', next(entries).path)
        second = next(entries)
        self.assertEqual('b', second.path)
        self.assertEqual(b'b' * 10, second.content.read())

    def test_empty_stream(self):
        """Test an empty layer is not silently accepted."""
        with self.assertRaises(errors.ArchiveParseError):
            list(layers.iter_entries(io.BytesIO(b'')))

    def test_not_a_tarball(self):
        with self.assertRaises(errors.ArchiveParseError):
            list(layers.iter_entries(io.BytesIO(b'x' * 2048)))

    def test_corrupt_header_mid_stream(self):
        """Test a bad header after valid entries raises."""
        data = bytearray(helpers.make_tar([
            ('file', 'first', b'hello'),
            ('file', 'second', b'world'),
        ]))
        # The second header follows the first header and its padded data
        data[1024] ^= 0xff

        entries = layers.iter_entries(io.BytesIO(bytes(data)))
        self.assertEqual('first', next(entries).path)
        with self.assertRaises(errors.ArchiveParseError):
            next(entries)

    def test_truncated_entry_data(self):
        """Test a stream ending inside file data raises."""
        data = helpers.make_tar([('file', 'big', b'z' * 4096)])
        entries = layers.iter_entries(io.BytesIO(data[:1024]))
        entry = next(entries)
        with self.assertRaises(errors.ArchiveParseError):
            entry.content.read()

    def test_entry_too_large(self):
        data = helpers.make_tar([('file', 'big', b'z' * 4096)])
        with self.assertRaises(errors.ArchiveParseError) as cm:
            list(layers.iter_entries(io.BytesIO(data), max_entry_size=1024))
        self.assertEqual('big', cm.exception.path)


class DecodeLayerTestCase(unittest.TestCase):
    def setUp(self):
        super(DecodeLayerTestCase, self).setUp()
        self.temp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.temp_dir)

    def _decode(self, blob, desc, **kwargs):
        out = []
        for entry in layers.decode_layer(io.BytesIO(blob), desc,
                                         temp_dir=self.temp_dir, **kwargs):
            content = entry.content.read() if entry.content else None
            out.append((entry.path, content))
        return out

    def test_decode_each_compression(self):
        """Test gzip, zstd and uncompressed layers decode identically."""
        for compression_type in helpers.MEDIA_TYPES:
            blob, desc = helpers.make_layer(
                [('dir', 'bin'), ('file', 'bin/sh', b'#!')], compression_type)
            self.assertEqual([('bin', None), ('bin/sh', b'#!')],
                             self._decode(blob, desc), compression_type)
        self.assertEqual([], os.listdir(self.temp_dir))

    def test_decode_sniffs_compression(self):
        """Test a layer with an unhelpful media type is sniffed."""
        blob, desc = helpers.make_layer([('file', 'a', b'a')],
                                        constants.COMPRESSION_ZSTD)
        desc = desc._replace(media_type='application/octet-stream')
        self.assertEqual([('a', b'a')], self._decode(blob, desc))

    def test_decode_refuses_unverified(self):
        """Test nothing is decoded when the digest doesn't match."""
        blob, desc = helpers.make_layer([('file', 'a', b'a')])
        tampered = bytearray(blob)
        tampered[-1] ^= 0xff
        with self.assertRaises(errors.DigestMismatch):
            layers.decode_layer(io.BytesIO(bytes(tampered)), desc,
                                temp_dir=self.temp_dir)
        self.assertEqual([], os.listdir(self.temp_dir))

    def test_decode_truncated_gzip(self):
        """Test a verified but truncated gzip layer fails to decompress."""
        blob, _ = helpers.make_layer(
            [('file', 'noise', _random_bytes(65536))])
        truncated = blob[:len(blob) // 2]
        desc = helpers.descriptor_for(truncated,
                                      constants.MEDIA_TYPE_OCI_LAYER_GZIP)
        with self.assertRaises(errors.DecompressionError):
            self._decode(truncated, desc)

    def test_decode_size_limit(self):
        blob, desc = helpers.make_layer(
            [('file', 'zeros', b'\x00' * 65536)])
        with self.assertRaises(errors.DecompressionError):
            self._decode(blob, desc, max_size=1024)

    def test_spooled_file_removed(self):
        blob, desc = helpers.make_layer([('file', 'a', b'a')])
        entries = layers.decode_layer(io.BytesIO(blob), desc,
                                      temp_dir=self.temp_dir)
        self.assertEqual([], os.listdir(self.temp_dir))
        self.assertEqual(['a'], [e.path for e in entries])

    def test_close_before_iterating(self):
        """Test closing an unread layer releases its spooled file."""
        blob, desc = helpers.make_layer([('file', 'a', b'a')])
        entries = layers.decode_layer(io.BytesIO(blob), desc,
                                      temp_dir=self.temp_dir)
        self.assertFalse(entries.closed)
        entries.close()
        self.assertTrue(entries.closed)
        self.assertEqual([], list(entries))
