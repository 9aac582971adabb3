from abc import ABC, abstractmethod


class ImageOutput(ABC):
    """Abstract base class for materialization sinks.

    Sinks receive a resolved image from the driver, in manifest order, and
    turn it into an artifact on disk. There are two kinds of sink:

    - Sinks with decodes_layers set receive each layer as a sequence of
      archive entries, through begin_layer(), apply_entry() and
      end_layer().
    - Other sinks receive each blob as a verified, still compressed file
      through process_blob().
    """

    # Whether layers should be decoded into entries for this sink
    decodes_layers = False

    # Whether the config blob should be fetched for this sink
    wants_config = False

    @abstractmethod
    def begin(self, manifest):
        """Prepare to receive the blobs of manifest."""
        pass

    def process_blob(self, descriptor, path):
        """Receive a verified blob (config or layer) spooled at path.

        The driver deletes the spooled file after this returns.
        """
        raise NotImplementedError(
            '%s does not accept raw blobs' % self.__class__.__name__)

    def begin_layer(self, index, descriptor):
        pass

    def apply_entry(self, entry):
        raise NotImplementedError(
            '%s does not accept archive entries' % self.__class__.__name__)

    def end_layer(self):
        pass

    @abstractmethod
    def finalize(self):
        """Complete the output and return the path of the artifact.

        This is called after every blob has been processed successfully.
        """
        pass

    def abort(self):
        """Called instead of finalize() when materialization fails."""
        pass
