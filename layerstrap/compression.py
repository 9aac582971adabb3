"""Compression utilities for container image layers.

This module provides detection and streaming decompression for the gzip and
zstd formats used in Docker/OCI container images, plus a file-like reader
which decompresses lazily so that a layer never has to be held in memory.
"""

import zlib

import zstandard as zstd

from layerstrap import constants
from layerstrap import errors


# Magic bytes for compression format detection
GZIP_MAGIC = b'\x1f\x8b'
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'


def detect_compression(data):
    """Detect compression format from magic bytes.

    Args:
        data: Bytes or a seekable file-like object with at least 4 bytes.

    Returns:
        One of COMPRESSION_GZIP, COMPRESSION_ZSTD, COMPRESSION_NONE,
        or COMPRESSION_UNKNOWN.
    """
    if hasattr(data, 'read'):
        if not hasattr(data, 'seek'):
            raise ValueError('Cannot detect compression on non-seekable stream')
        pos = data.tell()
        magic = data.read(4)
        data.seek(pos)
    else:
        magic = data[:4]

    if len(magic) < 2:
        return constants.COMPRESSION_UNKNOWN

    if magic[:2] == GZIP_MAGIC:
        return constants.COMPRESSION_GZIP
    if len(magic) >= 4 and magic[:4] == ZSTD_MAGIC:
        return constants.COMPRESSION_ZSTD

    # Check for tar magic at offset 257 (ustar format)
    if hasattr(data, 'read'):
        pos = data.tell()
        data.seek(257)
        tar_magic = data.read(5)
        data.seek(pos)
    else:
        tar_magic = data[257:262]
    if tar_magic == b'ustar':
        return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


def detect_compression_from_media_type(media_type):
    """Detect compression format from OCI/Docker media type.

    Args:
        media_type: Media type string from manifest.

    Returns:
        One of COMPRESSION_GZIP, COMPRESSION_ZSTD, COMPRESSION_NONE,
        or COMPRESSION_UNKNOWN.
    """
    if media_type is None:
        return constants.COMPRESSION_UNKNOWN

    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_GZIP,
                      constants.MEDIA_TYPE_OCI_LAYER_GZIP):
        return constants.COMPRESSION_GZIP
    if media_type in (constants.MEDIA_TYPE_DOCKER_LAYER_ZSTD,
                      constants.MEDIA_TYPE_OCI_LAYER_ZSTD):
        return constants.COMPRESSION_ZSTD
    if media_type == constants.MEDIA_TYPE_OCI_LAYER_UNCOMPRESSED:
        return constants.COMPRESSION_NONE

    # Fallback: check for known suffixes
    if media_type.endswith('+gzip') or media_type.endswith('.gzip'):
        return constants.COMPRESSION_GZIP
    if media_type.endswith('+zstd') or media_type.endswith('.zstd'):
        return constants.COMPRESSION_ZSTD
    if media_type.endswith('.tar') and '+' not in media_type:
        return constants.COMPRESSION_NONE

    return constants.COMPRESSION_UNKNOWN


class StreamingDecompressor:
    """Streaming decompressor for gzip and zstd formats.

    This class provides a unified interface for streaming decompression,
    allowing data to be decompressed chunk by chunk as it arrives. Corrupt
    input is reported as a DecompressionError as soon as it is seen.
    """

    def __init__(self, compression_type):
        """Initialize the decompressor.

        Args:
            compression_type: One of COMPRESSION_GZIP, COMPRESSION_ZSTD,
                or COMPRESSION_NONE.

        Raises:
            ValueError: If compression_type is not supported.
        """
        self.compression_type = compression_type

        if compression_type in (constants.COMPRESSION_GZIP,
                                constants.COMPRESSION_ZSTD,
                                constants.COMPRESSION_NONE):
            self._decompressor = self._new_decompressor()
        else:
            raise ValueError(
                'Unsupported compression type: %s' % compression_type)

    def _new_decompressor(self):
        if self.compression_type == constants.COMPRESSION_GZIP:
            # Use zlib with gzip header support (16 + MAX_WBITS)
            return zlib.decompressobj(16 + zlib.MAX_WBITS)
        if self.compression_type == constants.COMPRESSION_ZSTD:
            return zstd.ZstdDecompressor().decompressobj()
        return None

    def decompress(self, chunk):
        """Decompress a chunk of data.

        Args:
            chunk: Bytes to decompress.

        Returns:
            Decompressed bytes.
        """
        if self._decompressor is None:
            return chunk

        try:
            out = self._decompressor.decompress(chunk)

            # A gzip stream may be several concatenated members
            while (self.compression_type == constants.COMPRESSION_GZIP and
                   self._decompressor.eof and self._decompressor.unused_data):
                remaining = self._decompressor.unused_data
                if not remaining.strip(b'\x00'):
                    # Zero padding after the last member, as gzip allows
                    break
                self._decompressor = self._new_decompressor()
                out += self._decompressor.decompress(remaining)
        except (zlib.error, zstd.ZstdError) as e:
            raise errors.DecompressionError(
                'Corrupt %s stream: %s' % (self.compression_type, e))
        return out

    def flush(self):
        """Flush any remaining buffered data.

        Returns:
            Any remaining decompressed bytes.

        Raises:
            DecompressionError: if the stream ended before the end of the
                compressed data.
        """
        if self._decompressor is None:
            return b''

        if self.compression_type == constants.COMPRESSION_GZIP:
            try:
                remaining = self._decompressor.flush()
            except zlib.error as e:
                raise errors.DecompressionError(
                    'Corrupt gzip stream: %s' % e)
        else:
            # zstd doesn't have a flush method on decompressobj
            remaining = b''

        if not getattr(self._decompressor, 'eof', True):
            raise errors.DecompressionError(
                'Truncated %s stream' % self.compression_type)
        return remaining


class DecompressingReader(object):
    """A read-only file-like object which decompresses another one lazily.

    Args:
        fileobj: the compressed source, read in chunks.
        compression_type: One of COMPRESSION_GZIP, COMPRESSION_ZSTD,
            or COMPRESSION_NONE.
        max_size: optional limit on the number of decompressed bytes.
    """

    def __init__(self, fileobj, compression_type, max_size=None,
                 chunk_size=constants.CHUNK_SIZE):
        self._fileobj = fileobj
        self._decompressor = StreamingDecompressor(compression_type)
        self._buffer = bytearray()
        self._eof = False
        self.max_size = max_size
        self.chunk_size = chunk_size
        self.total = 0

    def _fill(self, size):
        while not self._eof and (size < 0 or len(self._buffer) < size):
            chunk = self._fileobj.read(self.chunk_size)
            if chunk:
                data = self._decompressor.decompress(chunk)
            else:
                data = self._decompressor.flush()
                self._eof = True

            self.total += len(data)
            if self.max_size is not None and self.total > self.max_size:
                raise errors.DecompressionError(
                    'Decompressed layer exceeds limit of %d bytes'
                    % self.max_size)
            self._buffer.extend(data)

    def read(self, size=-1):
        if size is None:
            size = -1
        self._fill(size)
        if size < 0 or size >= len(self._buffer):
            out = bytes(self._buffer)
            self._buffer.clear()
        else:
            out = bytes(self._buffer[:size])
            del self._buffer[:size]
        return out

    def close(self):
        self._fileobj.close()
