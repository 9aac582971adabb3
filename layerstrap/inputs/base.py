from abc import ABC, abstractmethod


class ManifestProvider(ABC):
    """Abstract base class for sources of image manifests.

    Manifest providers turn an ImageReference into the Manifest of a single
    image. Selecting a platform from a manifest list, authentication and
    transport are all the provider's concern.
    """

    @abstractmethod
    def get_manifest(self, reference):
        """Return the Manifest for an ImageReference.

        Raises:
            ManifestError: if the document is not a usable image manifest.
            Any other exception is treated as a fetch failure by callers.
        """
        pass

    def get_digest(self, reference):
        """Return the Digest of the manifest the reference resolves to.

        The default implementation fetches and hashes the manifest, so the
        result always agrees with get_manifest(reference).digest.
        """
        return self.get_manifest(reference).digest


class BlobFetcher(ABC):
    """Abstract base class for sources of content addressed blobs."""

    @abstractmethod
    def fetch(self, reference, digest):
        """Return a readable stream of the blob's bytes.

        Args:
            reference: the ImageReference the blob belongs to.
            digest: the Digest of the blob.

        Returns:
            A file-like object with read(), or an iterable of byte chunks.
            The bytes are expected to hash to digest; callers verify this
            and reject anything else. Retries and timeouts are the
            fetcher's concern.
        """
        pass
