"""Tests for the digest module."""

import hashlib
import io
import re
import unittest

from layerstrap import digest as digest_codec
from layerstrap import errors


SHA256_EMPTY = ('e3b0c44298fc1c149afbf4c8996fb924'
                '27ae41e4649b934ca495991b7852b855')


class ParseTestCase(unittest.TestCase):
    def test_parse_and_format(self):
        """Test that a parsed digest formats back to the same string."""
        raw = 'sha256:%s' % SHA256_EMPTY
        d = digest_codec.parse(raw)
        self.assertEqual('sha256', d.algorithm)
        self.assertEqual(SHA256_EMPTY, d.hex)
        self.assertEqual(raw, digest_codec.format_digest(d))
        self.assertEqual(raw, str(d))

    def test_parse_normalizes_case(self):
        """Test that algorithm and hex are lowercased."""
        d = digest_codec.parse('SHA256:%s' % SHA256_EMPTY.upper())
        self.assertEqual(digest_codec.parse('sha256:%s' % SHA256_EMPTY), d)

    def test_parse_sha512(self):
        d = digest_codec.parse('sha512:' + 'a' * 128)
        self.assertEqual('sha512', d.algorithm)

    def test_malformed(self):
        """Test that malformed digests are rejected."""
        for raw in ['', 'sha256', 'sha256:', ':' + SHA256_EMPTY,
                    'md5:' + 'a' * 32, 'sha256:' + 'a' * 63,
                    'sha256:' + 'g' * 64, 'sha256:' + 'a' * 65,
                    None, 42]:
            with self.assertRaises(errors.MalformedDigest, msg=repr(raw)):
                digest_codec.parse(raw)

    def test_malformed_kind(self):
        with self.assertRaises(errors.MaterializationError) as cm:
            digest_codec.parse('nonsense')
        self.assertEqual('malformed_digest', cm.exception.kind)


class SanitizeTestCase(unittest.TestCase):
    def test_sanitize(self):
        d = digest_codec.parse('sha256:%s' % SHA256_EMPTY)
        self.assertEqual('sha256_%s' % SHA256_EMPTY,
                         digest_codec.sanitize_for_filesystem(d))

    def test_sanitize_is_filesystem_safe(self):
        """Test sanitized names only use safe characters."""
        for algorithm, length in digest_codec.ALGORITHMS.items():
            d = digest_codec.Digest(algorithm, 'f' * length)
            name = digest_codec.sanitize_for_filesystem(d)
            self.assertTrue(re.match('^[A-Za-z0-9._-]+$', name))
            self.assertNotIn('/', name)
            self.assertNotIn(':', name)

    def test_sanitize_distinct(self):
        """Test that different digests never share a sanitized name."""
        digests = [
            digest_codec.Digest('sha256', 'a' * 64),
            digest_codec.Digest('sha256', 'b' * 64),
            digest_codec.Digest('sha512', 'a' * 128),
            digest_codec.Digest('sha384', 'a' * 96),
        ]
        names = set(digest_codec.sanitize_for_filesystem(d) for d in digests)
        self.assertEqual(len(digests), len(names))


class VerifyTestCase(unittest.TestCase):
    def test_from_bytes(self):
        self.assertEqual(SHA256_EMPTY, digest_codec.from_bytes(b'').hex)

    def test_compute_matches_hashlib(self):
        data = b'hello world' * 10000
        d = digest_codec.compute(io.BytesIO(data))
        self.assertEqual(hashlib.sha256(data).hexdigest(), d.hex)

    def test_compute_from_chunks(self):
        chunks = [b'hello', b' ', b'world']
        self.assertEqual(digest_codec.from_bytes(b'hello world'),
                         digest_codec.compute(chunks))

    def test_verify(self):
        """Test verify accepts the content and rejects any change to it."""
        data = b'some layer content'
        d = digest_codec.from_bytes(data)
        self.assertTrue(digest_codec.verify(d, io.BytesIO(data)))

        for i in range(len(data)):
            mutated = bytearray(data)
            mutated[i] ^= 0x01
            self.assertFalse(
                digest_codec.verify(d, io.BytesIO(bytes(mutated))))

        self.assertFalse(digest_codec.verify(d, io.BytesIO(data + b'x')))
        self.assertFalse(digest_codec.verify(d, io.BytesIO(data[:-1])))

    def test_verify_sha512(self):
        data = b'content'
        d = digest_codec.Digest('sha512', hashlib.sha512(data).hexdigest())
        self.assertTrue(digest_codec.verify(d, [data]))

    def test_hasher_tracks_size(self):
        h = digest_codec.Hasher()
        h.update(b'abc')
        h.update(b'de')
        self.assertEqual(5, h.size)
        self.assertTrue(h.matches(digest_codec.from_bytes(b'abcde')))
