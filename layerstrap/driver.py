"""Materialization driver.

Turns a resolved image into an artifact by walking an explicit state
machine:

    resolving -> fetching(i) -> decoding(i) -> applying(i) -> ... -> done

with failed reachable from any state. Layers are always applied in manifest
order. The next blobs may be fetched and verified in the background while
the current layer is applied, but never applied out of turn.
"""

from collections import deque, namedtuple
from concurrent.futures import ThreadPoolExecutor
import logging
import os

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap import layers
from layerstrap.manifest import ArchiveBundle, DirectoryTree
from layerstrap.outputs.bundle import BundleWriter
from layerstrap.outputs.directory import DirectoryMaterializer


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


MaterializationResult = namedtuple(
    'MaterializationResult',
    ['success', 'state', 'target_path', 'error', 'layers_applied',
     'warnings'])


class Materializer(object):
    def __init__(self, manifest_provider, blob_fetcher=None, temp_dir=None,
                 prefetch=1, max_layer_size=None, max_entry_size=None,
                 whiteouts=True):
        """Create a driver.

        Args:
            manifest_provider: a ManifestProvider.
            blob_fetcher: a BlobFetcher. Defaults to manifest_provider, for
                collaborators which are both.
            temp_dir: where blobs are spooled while they are verified.
            prefetch: how many blobs to fetch ahead of the one being
                applied. Zero fetches each blob only when it is needed.
            max_layer_size: limit on the decompressed size of a layer.
            max_entry_size: limit on the size of a single file in a layer.
            whiteouts: whether to process OCI whiteout entries when
                materializing into a directory.
        """
        self.manifest_provider = manifest_provider
        self.blob_fetcher = blob_fetcher or manifest_provider
        self.temp_dir = temp_dir
        self.prefetch = max(0, prefetch)
        self.max_layer_size = max_layer_size
        self.max_entry_size = max_entry_size
        self.whiteouts = whiteouts

        self.state = constants.STATE_PENDING
        self.layer_index = None

    def _set_state(self, state, index=None):
        self.state = state
        self.layer_index = index
        if index is None:
            LOG.debug('State is now %s' % state)
        else:
            LOG.debug('State is now %s (layer %d)' % (state, index))

    def _check_cancel(self, cancel, index=None):
        if cancel is not None and cancel.is_set():
            raise errors.Cancelled('Materialization was cancelled',
                                   layer_index=index)

    def build_output(self, target):
        if isinstance(target, DirectoryTree):
            return DirectoryMaterializer(target.base_path,
                                         whiteouts=self.whiteouts)
        if isinstance(target, ArchiveBundle):
            return BundleWriter(target.base_path, name=target.name)
        raise ValueError('Unknown materialization target %r' % (target,))

    def resolve_manifest(self, reference):
        try:
            return self.manifest_provider.get_manifest(reference)
        except errors.MaterializationError:
            raise
        except Exception as e:
            raise errors.FetchFailure(
                'Fetching manifest for %s failed: %s' % (reference, e))

    def resolve_digest_name(self, reference_or_digest):
        """Return the filesystem safe content address name of an image.

        Args:
            reference_or_digest: a Digest, a digest string, or an
                ImageReference to resolve through the manifest provider.
        """
        if isinstance(reference_or_digest, digest_codec.Digest):
            d = reference_or_digest
        elif isinstance(reference_or_digest, str):
            d = digest_codec.parse(reference_or_digest)
        else:
            try:
                d = self.manifest_provider.get_digest(reference_or_digest)
            except errors.MaterializationError:
                raise
            except Exception as e:
                raise errors.FetchFailure(
                    'Resolving digest for %s failed: %s'
                    % (reference_or_digest, e))
        return digest_codec.sanitize_for_filesystem(d)

    def _fetch_blob(self, reference, descriptor, index):
        """Fetch and verify a blob, returning the path it was spooled to."""
        try:
            stream = self.blob_fetcher.fetch(reference, descriptor.digest)
            return layers.spool_blob(stream, descriptor,
                                     temp_dir=self.temp_dir)
        except errors.MaterializationError as e:
            if e.layer_index is None:
                e.layer_index = index
            raise
        except Exception as e:
            raise errors.FetchFailure(
                'Fetching blob failed: %s' % e, digest=descriptor.digest,
                layer_index=index)

    def _apply_layer(self, output, index, descriptor, path, cancel,
                     entry_callback):
        self._set_state(constants.STATE_DECODING, index)
        entries = layers.decode_spooled_layer(
            path, descriptor.media_type, max_size=self.max_layer_size,
            max_entry_size=self.max_entry_size)

        try:
            output.begin_layer(index, descriptor)
            self._set_state(constants.STATE_APPLYING, index)
            for entry in entries:
                self._check_cancel(cancel, index)
                output.apply_entry(entry)
                if entry_callback:
                    entry_callback(index, entry)
        except errors.MaterializationError as e:
            if e.layer_index is None:
                e.layer_index = index
            if e.digest is None:
                e.digest = descriptor.digest
            raise
        finally:
            entries.close()
        output.end_layer()

    def materialize(self, reference, target, manifest=None, cancel=None,
                    entry_callback=None):
        """Materialize an image into a target.

        Args:
            reference: the ImageReference of the image.
            target: a DirectoryTree or an ArchiveBundle.
            manifest: the image's Manifest, if the caller already has it.
            cancel: optional object with is_set(), such as a
                threading.Event. It is checked between entries and layers.
            entry_callback: optional callable taking (layer_index, entry),
                called after each entry is applied to a directory tree.

        Returns:
            A MaterializationResult. Failures described in layerstrap.errors
            are reported through the result rather than raised.
        """
        output = self.build_output(target)
        layers_applied = 0
        executor = None
        pending = deque()

        try:
            self._set_state(constants.STATE_RESOLVING)
            if manifest is None:
                manifest = self.resolve_manifest(reference)
            output.begin(manifest)

            blobs = []
            if output.wants_config:
                blobs.append((None, manifest.config))
            blobs.extend(enumerate(manifest.layers))

            if self.prefetch > 0:
                executor = ThreadPoolExecutor(max_workers=self.prefetch + 1)

            submitted = 0
            for position, (index, descriptor) in enumerate(blobs):
                self._check_cancel(cancel, index)

                # Keep up to prefetch blobs in flight beyond this one
                while executor and submitted < len(blobs) and \
                        submitted <= position + self.prefetch:
                    next_index, next_descriptor = blobs[submitted]
                    pending.append(executor.submit(
                        self._fetch_blob, reference, next_descriptor,
                        next_index))
                    submitted += 1

                self._set_state(constants.STATE_FETCHING, index)
                if executor:
                    path = pending.popleft().result()
                else:
                    path = self._fetch_blob(reference, descriptor, index)

                if index is None or not output.decodes_layers:
                    try:
                        output.process_blob(descriptor, path)
                    finally:
                        os.unlink(path)
                else:
                    self._apply_layer(output, index, descriptor, path,
                                      cancel, entry_callback)

                if index is not None:
                    layers_applied += 1

            target_path = output.finalize()
            self._set_state(constants.STATE_DONE)
            LOG.info('Materialized %s into %s' % (reference, target_path))
            return MaterializationResult(
                success=True, state=self.state, target_path=target_path,
                error=None, layers_applied=layers_applied,
                warnings=list(getattr(output, 'warnings', [])))

        except errors.MaterializationError as e:
            failed_in = self.state
            self._set_state(constants.STATE_FAILED, self.layer_index)
            output.abort()

            if (not output.decodes_layers and
                    isinstance(e, errors.FetchFailure) and
                    not isinstance(e, errors.IncompleteBundle)):
                e = errors.IncompleteBundle(
                    'Bundle is incomplete: %s' % e.message, digest=e.digest,
                    layer_index=e.layer_index)

            LOG.error('Materialization of %s failed while %s: %s'
                      % (reference, failed_in, e))
            return MaterializationResult(
                success=False, state=self.state, target_path=None, error=e,
                layers_applied=layers_applied,
                warnings=list(getattr(output, 'warnings', [])))

        except Exception:
            self._set_state(constants.STATE_FAILED, self.layer_index)
            output.abort()
            raise

        finally:
            if executor:
                for future in pending:
                    future.cancel()
                executor.shutdown(wait=True)
                for future in pending:
                    if not future.cancelled() and future.exception() is None:
                        os.unlink(future.result())
