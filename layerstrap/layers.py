"""Layer decoding.

A layer blob arrives as an untrusted byte stream. Before anything looks at
its contents it is spooled to a temporary file and checked against the
digest and size from the manifest. Only then is it decompressed, lazily, and
parsed as a tar stream into ArchiveEntry values, one entry at a time.
"""

from collections import namedtuple
import logging
import os
import tarfile
import tempfile

from layerstrap import compression
from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap import util


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


ArchiveEntry = namedtuple('ArchiveEntry', ['path', 'kind', 'mode', 'size',
                                           'link_target', 'mtime', 'content'])


def spool_blob(stream, descriptor, temp_dir=None):
    """Copy a blob to a temporary file, verifying it on the way.

    Args:
        stream: a file-like object or iterable of byte chunks. It is closed
            once consumed.
        descriptor: the BlobDescriptor the blob must match.
        temp_dir: where to create the temporary file.

    Returns:
        The path of the verified temporary file. The caller owns it.

    Raises:
        DigestMismatch: if the blob is larger or smaller than declared, or
            does not hash to the declared digest. No file is left behind.
    """
    expected = descriptor.digest
    h = digest_codec.Hasher(expected.algorithm)

    tf = tempfile.NamedTemporaryFile(
        delete=False, dir=temp_dir, prefix='.layerstrap-blob-')
    LOG.debug('Temporary file for blob %s is %s' % (expected, tf.name))
    try:
        with tf:
            for chunk in util.iter_chunks(stream):
                h.update(chunk)
                if descriptor.size is not None and h.size > descriptor.size:
                    raise errors.DigestMismatch(
                        'Blob is larger than its declared size of %d bytes'
                        % descriptor.size, digest=expected)
                tf.write(chunk)

        if descriptor.size is not None and h.size != descriptor.size:
            raise errors.DigestMismatch(
                'Blob is %d bytes, expected %d' % (h.size, descriptor.size),
                digest=expected)
        if not h.matches(expected):
            LOG.error('Hash verification failed for blob (%s vs %s)'
                      % (expected, h.digest()))
            raise errors.DigestMismatch(
                'Blob content does not match its digest, got %s' % h.digest(),
                digest=expected)

    except BaseException:
        os.unlink(tf.name)
        raise

    finally:
        util.close_quietly(stream)

    return tf.name


def open_layer(fileobj, media_type, max_size=None):
    """Wrap a verified, seekable blob in a lazily decompressing reader.

    The compression format comes from the media type when it says, and
    from the blob's magic bytes otherwise. Unrecognised blobs are assumed
    to be gzip, which is what registries have historically served.
    """
    compression_type = compression.detect_compression_from_media_type(
        media_type)
    if compression_type == constants.COMPRESSION_UNKNOWN:
        compression_type = compression.detect_compression(fileobj)
    if compression_type == constants.COMPRESSION_UNKNOWN:
        compression_type = constants.COMPRESSION_GZIP
    LOG.debug('Layer compression: %s' % compression_type)

    return compression.DecompressingReader(
        fileobj, compression_type, max_size=max_size)


class _StrictTarInfo(tarfile.TarInfo):
    """TarInfo which refuses to treat a corrupt header as end of archive.

    tarfile quietly stops iterating when it meets an invalid header part way
    through a stream. Raising something other than a HeaderError here makes
    the failure visible to the caller instead.
    """

    @classmethod
    def fromtarfile(cls, tf):
        try:
            return super(_StrictTarInfo, cls).fromtarfile(tf)
        except (tarfile.InvalidHeaderError, tarfile.TruncatedHeaderError) as e:
            raise errors.ArchiveParseError(
                'Malformed archive entry header at offset %d: %s'
                % (tf.offset, e))


class _EntryContent(object):
    """Forward-only reader for a file entry's data."""

    def __init__(self, fileobj, path):
        self._fileobj = fileobj
        self.path = path

    def read(self, size=-1):
        try:
            return self._fileobj.read(size)
        except tarfile.TarError as e:
            raise errors.ArchiveParseError(
                'Archive ended inside entry data: %s' % e, path=self.path)

    def close(self):
        self._fileobj.close()


def _entry_kind(member):
    if member.isreg():
        return constants.ENTRY_FILE
    if member.isdir():
        return constants.ENTRY_DIRECTORY
    if member.issym():
        return constants.ENTRY_SYMLINK
    if member.islnk():
        return constants.ENTRY_HARDLINK
    return constants.ENTRY_OTHER


def iter_entries(fileobj, max_entry_size=None):
    """Parse an uncompressed tar stream into ArchiveEntry values.

    The generator is forward only. An entry's content must be consumed
    before asking for the next entry; whatever is left unread is skipped.

    Raises:
        ArchiveParseError: on a malformed header, an empty stream or an
            entry larger than max_entry_size.
    """
    try:
        tar = tarfile.open(fileobj=fileobj, mode='r|',
                           tarinfo=_StrictTarInfo)
    except tarfile.TarError as e:
        raise errors.ArchiveParseError('Layer is not a tar archive: %s' % e)

    with tar:
        while True:
            try:
                member = tar.next()
            except tarfile.TarError as e:
                raise errors.ArchiveParseError(
                    'Malformed archive entry: %s' % e)
            if member is None:
                return

            if max_entry_size is not None and member.size > max_entry_size:
                raise errors.ArchiveParseError(
                    'Entry is %d bytes, more than the limit of %d'
                    % (member.size, max_entry_size), path=member.name)

            kind = _entry_kind(member)
            content = None
            if kind == constants.ENTRY_FILE:
                content = _EntryContent(tar.extractfile(member), member.name)

            link_target = None
            if kind in (constants.ENTRY_SYMLINK, constants.ENTRY_HARDLINK):
                link_target = member.linkname

            yield ArchiveEntry(
                path=member.name, kind=kind, mode=member.mode,
                size=member.size, link_target=link_target,
                mtime=member.mtime, content=content)


def decode_layer(stream, descriptor, temp_dir=None, max_size=None,
                 max_entry_size=None):
    """Verify, decompress and parse one layer blob.

    Returns a SpooledLayer of ArchiveEntry. Nothing is decompressed until the
    whole blob has been verified against descriptor.
    """
    path = spool_blob(stream, descriptor, temp_dir=temp_dir)
    return decode_spooled_layer(path, descriptor.media_type,
                                max_size=max_size,
                                max_entry_size=max_entry_size)


def decode_spooled_layer(path, media_type, max_size=None,
                         max_entry_size=None):
    """Return a SpooledLayer iterating the entries of a verified blob.

    The spooled file is unlinked straight away; the open file keeps its
    data alive until the SpooledLayer is exhausted or closed.
    """
    f = open(path, 'rb')
    os.unlink(path)
    return SpooledLayer(f, media_type, max_size=max_size,
                        max_entry_size=max_entry_size)


class SpooledLayer(object):
    """The entries of a spooled layer, owning its open file.

    close() releases the file whether or not iteration ever started.
    """

    def __init__(self, f, media_type, max_size=None, max_entry_size=None):
        self._file = f
        self._entries = _iter_layer(f, media_type, max_size, max_entry_size)

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._entries)

    @property
    def closed(self):
        return self._file.closed

    def close(self):
        self._entries.close()
        self._file.close()


def _iter_layer(f, media_type, max_size, max_entry_size):
    with f:
        reader = open_layer(f, media_type, max_size=max_size)
        for entry in iter_entries(reader, max_entry_size=max_entry_size):
            yield entry
