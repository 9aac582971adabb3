"""Pipeline builder for layerstrap.

This module provides a PipelineBuilder class that turns source and target
URIs into the collaborators, reference and target a Materializer needs.
"""

import os

from layerstrap.driver import Materializer
from layerstrap.inputs import bundle as input_bundle
from layerstrap.inputs import registry as input_registry
from layerstrap.manifest import ArchiveBundle, DirectoryTree
from layerstrap import uri


class PipelineError(Exception):
    """Raised when a pipeline cannot be built."""
    pass


class PipelineBuilder:
    """Builds source -> materializer -> target pipelines from URIs."""

    def __init__(self, ctx=None):
        """Initialize the pipeline builder.

        Args:
            ctx: Click context object containing global options like
                OS, ARCHITECTURE, VARIANT, USERNAME, PASSWORD, INSECURE.
                Can be None for defaults.
        """
        self.ctx = ctx
        self._ctx_obj = ctx.obj if ctx and ctx.obj else {}

    def _get_ctx(self, key, default=None):
        """Get a value from the context object."""
        value = self._ctx_obj.get(key)
        if value is None:
            return default
        return value

    def build_source(self, source_uri_str):
        """Create the collaborators for a source URI.

        Returns:
            Tuple of (source, reference) where source is both a
            ManifestProvider and a BlobFetcher.

        Raises:
            PipelineError: If the source cannot be created.
        """
        uri_spec = uri.parse_uri(source_uri_str)

        if uri_spec.scheme == 'registry':
            reference = uri.parse_registry_uri(uri_spec)

            # Get options from URI or context
            os_name = uri_spec.options.get('os', self._get_ctx('OS', 'linux'))
            arch = uri_spec.options.get(
                'arch', uri_spec.options.get(
                    'architecture', self._get_ctx('ARCHITECTURE', 'amd64')))
            variant = uri_spec.options.get(
                'variant', self._get_ctx('VARIANT', ''))
            username = uri_spec.options.get(
                'username', self._get_ctx('USERNAME'))
            password = uri_spec.options.get(
                'password', self._get_ctx('PASSWORD'))
            insecure = uri_spec.options.get(
                'insecure', self._get_ctx('INSECURE', False))

            source = input_registry.Registry(
                os=os_name,
                architecture=arch,
                variant=variant,
                secure=(not insecure),
                username=username,
                password=password)
            return source, reference

        elif uri_spec.scheme == 'bundle':
            path = uri_spec.path
            if not path:
                raise PipelineError('bundle:// source URI requires a path')
            if not os.path.isfile(path):
                raise PipelineError('Bundle %s does not exist' % path)
            source = input_bundle.Bundle(path)
            return source, source.reference

        else:
            raise PipelineError('Unknown source scheme: %s' % uri_spec.scheme)

    def build_target(self, dest_uri_str):
        """Create a materialization target from a URI.

        Raises:
            PipelineError: If the target cannot be created.
        """
        uri_spec = uri.parse_uri(dest_uri_str)
        path = uri_spec.path

        if uri_spec.scheme == 'dir':
            if not path:
                raise PipelineError('dir:// URI requires a path')
            return DirectoryTree(path)

        elif uri_spec.scheme == 'bundle':
            if not path:
                raise PipelineError('bundle:// target URI requires a path')
            name = uri_spec.options.get('name')
            if name is not None:
                name = str(name)
                if '/' in name or name in ('.', '..'):
                    raise PipelineError('Invalid bundle name: %s' % name)
            return ArchiveBundle(path, name=name)

        else:
            raise PipelineError('Unknown target scheme: %s' % uri_spec.scheme)

    def build_materializer(self, source):
        return Materializer(
            source, source,
            temp_dir=self._get_ctx('TEMP_DIR'),
            prefetch=self._get_ctx('PREFETCH', 1),
            max_layer_size=self._get_ctx('MAX_LAYER_SIZE'),
            max_entry_size=self._get_ctx('MAX_ENTRY_SIZE'))

    def build_pipeline(self, source_uri_str, dest_uri_str):
        """Build a complete pipeline from URI strings.

        Returns:
            Tuple of (materializer, reference, target)
        """
        source, reference = self.build_source(source_uri_str)
        target = self.build_target(dest_uri_str)
        return self.build_materializer(source), reference, target
