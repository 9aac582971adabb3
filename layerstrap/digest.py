"""Content digests.

A digest identifies a blob by the hash of its exact content, in the form
``algorithm:hex``. Digests are used both as integrity checks for fetched
blobs and as storage keys for bundle members, so this module also knows how
to turn a digest into a name which is safe to use on a filesystem.
"""

from collections import namedtuple
import hashlib
import re

from layerstrap import errors
from layerstrap import util


# Supported algorithms and the length of their hex encoding
ALGORITHMS = {
    'sha256': 64,
    'sha384': 96,
    'sha512': 128,
}

HEX_RE = re.compile('^[0-9a-f]+$')

# Joins the algorithm and hex in sanitized names. Neither part can contain
# it, so the mapping can't collide.
SANITIZED_SEPARATOR = '_'


class Digest(namedtuple('Digest', ['algorithm', 'hex'])):
    __slots__ = ()

    def __str__(self):
        return format_digest(self)


def parse(raw):
    """Parse an ``algorithm:hex`` string into a Digest.

    The algorithm and hex are normalized to lowercase.

    Raises:
        MalformedDigest: if the string is not a supported digest.
    """
    if not isinstance(raw, str) or ':' not in raw:
        raise errors.MalformedDigest(
            'Digest must be in the form algorithm:hex, not %r' % (raw,))

    algorithm, hexdigest = raw.split(':', 1)
    algorithm = algorithm.lower()
    hexdigest = hexdigest.lower()

    if algorithm not in ALGORITHMS:
        raise errors.MalformedDigest(
            'Unsupported digest algorithm %r' % algorithm, digest=raw)
    if len(hexdigest) != ALGORITHMS[algorithm]:
        raise errors.MalformedDigest(
            '%s digests must have %d hex characters, not %d'
            % (algorithm, ALGORITHMS[algorithm], len(hexdigest)), digest=raw)
    if not HEX_RE.match(hexdigest):
        raise errors.MalformedDigest(
            'Digest contains non-hex characters', digest=raw)

    return Digest(algorithm, hexdigest)


def format_digest(d):
    return '%s:%s' % (d.algorithm, d.hex)


def sanitize_for_filesystem(d):
    """Return a filesystem safe name for a digest.

    The result only contains characters from ``[A-Za-z0-9._-]``, never fails
    for a valid Digest, and distinct digests never share a name.
    """
    return '%s%s%s' % (d.algorithm, SANITIZED_SEPARATOR, d.hex)


class Hasher(object):
    """Incrementally hash content for comparison with an expected digest."""

    def __init__(self, algorithm='sha256'):
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk):
        self._hash.update(chunk)
        self.size += len(chunk)

    def digest(self):
        return Digest(self.algorithm, self._hash.hexdigest())

    def matches(self, expected):
        return self.digest() == expected


def compute(content, algorithm='sha256'):
    """Hash a file-like object or an iterable of byte chunks."""
    h = Hasher(algorithm)
    for chunk in util.iter_chunks(content):
        h.update(chunk)
    return h.digest()


def from_bytes(data, algorithm='sha256'):
    h = Hasher(algorithm)
    h.update(data)
    return h.digest()


def verify(expected, content):
    """Return True if content hashes to the expected digest.

    Args:
        expected: the Digest the content claims to have.
        content: a file-like object or an iterable of byte chunks. It is
            consumed by this call.
    """
    return compute(content, algorithm=expected.algorithm) == expected
