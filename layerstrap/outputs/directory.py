import logging
import os
import posixpath
import shutil

from layerstrap import constants
from layerstrap import errors
from layerstrap.outputs.base import ImageOutput


LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)


# Layer archives are untrusted. Every entry is confined to base_path: entry
# paths may not be absolute or contain "..", and symlinks already in the tree
# are followed as if base_path were the root directory. A symlink is refused
# if following it from base_path climbs above base_path, both when it is
# created and again in finalize(), since later layers can turn a component of
# its target into another symlink.
class DirectoryMaterializer(ImageOutput):
    decodes_layers = True

    def __init__(self, base_path, whiteouts=True):
        self.base_path = base_path
        self.whiteouts = whiteouts
        self.warnings = []

        # Directory modes are applied in finalize() so that a read only
        # directory in one layer doesn't stop us writing into it in the next
        self._deferred_dirs = {}

        self._layer_index = None
        self._layer_paths = set()
        self._layer_entries = 0

    def begin(self, manifest):
        if not os.path.exists(self.base_path):
            os.makedirs(self.base_path)
        self.base_path = os.path.realpath(self.base_path)
        LOG.info('Materializing %d layers into %s'
                 % (len(manifest.layers), self.base_path))

    def begin_layer(self, index, descriptor):
        self._layer_index = index
        self._layer_paths = set()
        self._layer_entries = 0
        LOG.info('Applying layer %d (%s)' % (index, descriptor.digest))

    def end_layer(self):
        LOG.info('Applied %d entries from layer %d'
                 % (self._layer_entries, self._layer_index))

    def _error(self, cls, message, path):
        return cls(message, path=path, layer_index=self._layer_index)

    def _normalize(self, path):
        """Return path relative to the tree root, '' for the root itself."""
        if path.startswith('/'):
            raise self._error(errors.PathTraversal,
                              'Absolute entry paths are not allowed', path)

        parts = []
        for part in path.split('/'):
            if part in ('', '.'):
                continue
            if part == '..':
                raise self._error(errors.PathTraversal,
                                  'Entry path escapes the destination', path)
            parts.append(part)
        return '/'.join(parts)

    def _host_path(self, parts):
        return os.path.join(self.base_path, *parts)

    def _resolve(self, relpath, follow_final=False, allow_loops=False):
        """Map a tree relative path to a host path inside base_path.

        Symlinks are followed with base_path as the root directory, so an
        absolute target such as /usr/lib lands inside the tree. A ".." is
        applied after the links before it have been followed, as the kernel
        does, and raises PathTraversal if it would climb above the root. The
        last component is only followed if follow_final is set.

        Returns:
            A tuple of (host path, resolved relative path). If allow_loops
            is set, (None, None) is returned for a symlink loop instead of
            raising.
        """
        pending = [p for p in relpath.split('/') if p not in ('', '.')]
        resolved = []
        links = 0

        while pending:
            part = pending.pop(0)
            if part == '..':
                if not resolved:
                    raise self._error(
                        errors.PathTraversal,
                        'Symbolic link escapes the destination', relpath)
                resolved.pop()
                continue

            candidate = self._host_path(resolved + [part])
            if (pending or follow_final) and os.path.islink(candidate):
                links += 1
                if links > constants.MAX_SYMLINK_DEPTH:
                    if allow_loops:
                        return None, None
                    raise self._error(errors.PathTraversal,
                                      'Too many levels of symbolic links',
                                      relpath)
                target = os.readlink(candidate)
                if target.startswith('/'):
                    resolved = []
                pending = ([p for p in target.split('/') if p not in ('', '.')]
                           + pending)
                continue

            resolved.append(part)

        return self._host_path(resolved), '/'.join(resolved)

    def _prepare_parent(self, relpath, entry_path):
        """Resolve and create the parent directory of relpath.

        Returns the host path and resolved relative path of relpath itself,
        with the final component left unfollowed.
        """
        parent_rel, name = posixpath.split(relpath)
        parent_host, parent_resolved = self._resolve(parent_rel,
                                                     follow_final=True)
        if not os.path.isdir(parent_host):
            try:
                os.makedirs(parent_host)
            except (FileExistsError, NotADirectoryError):
                raise self._error(errors.PathConflict,
                                  'Parent of entry is not a directory',
                                  entry_path)
        return (os.path.join(parent_host, name),
                posixpath.join(parent_resolved, name))

    def _is_real_dir(self, host):
        return os.path.isdir(host) and not os.path.islink(host)

    def _remove(self, host, resolved):
        if self._is_real_dir(host):
            shutil.rmtree(host)
        else:
            os.unlink(host)

        for path in list(self._deferred_dirs):
            if path == resolved or path.startswith(resolved + '/'):
                del self._deferred_dirs[path]

    def _replace(self, host, resolved, entry_path):
        """Clear the way for a new non-directory at host."""
        if not os.path.lexists(host):
            return
        if self._is_real_dir(host):
            raise self._error(errors.PathConflict,
                              'A directory already exists at this path',
                              entry_path)
        os.unlink(host)

    def apply_entry(self, entry):
        relpath = self._normalize(entry.path)
        name = posixpath.basename(relpath)
        self._layer_entries += 1

        if self.whiteouts and name.startswith(constants.WHITEOUT_PREFIX):
            self._apply_whiteout(relpath, entry)
            return

        if not relpath:
            if entry.kind == constants.ENTRY_DIRECTORY:
                return
            raise self._error(errors.PathConflict,
                              'Only a directory may replace the root',
                              entry.path)

        if entry.kind == constants.ENTRY_DIRECTORY:
            resolved = self._apply_directory(relpath, entry)
        elif entry.kind == constants.ENTRY_FILE:
            resolved = self._apply_file(relpath, entry)
        elif entry.kind == constants.ENTRY_SYMLINK:
            resolved = self._apply_symlink(relpath, entry)
        elif entry.kind == constants.ENTRY_HARDLINK:
            resolved = self._apply_hardlink(relpath, entry)
        else:
            # Device nodes and fifos are not needed to inspect an image and
            # can't be created without privileges, so they are skipped.
            message = ('layer %s: skipped special file %s'
                       % (self._layer_index, entry.path))
            LOG.warning('Skipping special file %s' % entry.path)
            self.warnings.append(message)
            return

        self._layer_paths.add(resolved)

    def _apply_directory(self, relpath, entry):
        host, resolved = self._prepare_parent(relpath, entry.path)

        if os.path.islink(host):
            host, resolved = self._resolve(resolved, follow_final=True)
            if not self._is_real_dir(host):
                raise self._error(errors.PathConflict,
                                  'A non-directory already exists at this '
                                  'path', entry.path)
        elif os.path.lexists(host):
            if not os.path.isdir(host):
                raise self._error(errors.PathConflict,
                                  'A non-directory already exists at this '
                                  'path', entry.path)
        else:
            os.mkdir(host)

        self._deferred_dirs[resolved] = (entry.mode, entry.mtime)
        return resolved

    def _apply_file(self, relpath, entry):
        host, resolved = self._prepare_parent(relpath, entry.path)
        self._replace(host, resolved, entry.path)

        flags = (os.O_WRONLY | os.O_CREAT | os.O_EXCL |
                 getattr(os, 'O_NOFOLLOW', 0))
        fd = os.open(host, flags, 0o600)
        with os.fdopen(fd, 'wb') as f:
            if entry.content is not None:
                shutil.copyfileobj(entry.content, f,
                                   constants.COPY_BUFFER_SIZE)
            os.fchmod(f.fileno(), entry.mode & 0o7777)
        os.utime(host, (entry.mtime, entry.mtime))
        return resolved

    def _check_link_target(self, resolved, entry):
        """Refuse symlink targets which would point outside the tree."""
        target = entry.link_target
        if not target:
            raise self._error(errors.ArchiveParseError,
                              'Symbolic link has no target', entry.path)

        if target.startswith('/'):
            stack = []
        else:
            stack = [p for p in posixpath.dirname(resolved).split('/') if p]

        for part in target.split('/'):
            if part in ('', '.'):
                continue
            if part == '..':
                if not stack:
                    raise self._error(
                        errors.PathTraversal,
                        'Symbolic link target %s escapes the destination'
                        % target, entry.path)
                stack.pop()
            else:
                stack.append(part)

    def _link_escapes(self, resolved):
        """Return True if following the symlink at resolved leaves the tree.

        Symlink loops can't be followed at all, so they don't escape.
        """
        try:
            self._resolve(resolved, follow_final=True, allow_loops=True)
        except errors.PathTraversal:
            return True
        return False

    def _refuse_escaping_link(self, host, resolved, entry_path):
        if not self._link_escapes(resolved):
            return
        target = os.readlink(host)
        os.unlink(host)
        raise self._error(errors.PathTraversal,
                          'Symbolic link target %s escapes the destination'
                          % target, entry_path)

    def _apply_symlink(self, relpath, entry):
        host, resolved = self._prepare_parent(relpath, entry.path)
        self._check_link_target(resolved, entry)
        self._replace(host, resolved, entry.path)
        os.symlink(entry.link_target, host)
        self._refuse_escaping_link(host, resolved, entry.path)
        return resolved

    def _apply_hardlink(self, relpath, entry):
        source_rel = self._normalize(entry.link_target or '')
        source_host, _ = self._resolve(source_rel)
        if (not source_rel or not os.path.lexists(source_host) or
                self._is_real_dir(source_host)):
            raise self._error(errors.PathConflict,
                              'Hard link target %s does not exist'
                              % entry.link_target, entry.path)

        host, resolved = self._prepare_parent(relpath, entry.path)
        if host == source_host:
            return resolved
        self._replace(host, resolved, entry.path)
        os.link(source_host, host, follow_symlinks=False)

        # A hard link to a symlink reinterprets its target from here
        if os.path.islink(host):
            self._refuse_escaping_link(host, resolved, entry.path)
        return resolved

    def _written_this_layer(self, resolved):
        prefix = resolved + '/'
        for path in self._layer_paths:
            if path == resolved or path.startswith(prefix):
                return True
        return False

    def _apply_whiteout(self, relpath, entry):
        # Some light reading on how this works...
        # https://github.com/opencontainers/image-spec/blob/main/layer.md#whiteouts
        parent_rel, name = posixpath.split(relpath)
        parent_host, parent_resolved = self._resolve(parent_rel,
                                                     follow_final=True)

        if name == constants.WHITEOUT_OPAQUE:
            # Hide everything in the directory which came from lower layers
            if not self._is_real_dir(parent_host):
                return
            for child in sorted(os.listdir(parent_host)):
                child_resolved = posixpath.join(parent_resolved, child)
                if self._written_this_layer(child_resolved):
                    continue
                self._remove(os.path.join(parent_host, child), child_resolved)
            return

        target = name[len(constants.WHITEOUT_PREFIX):]
        if target in ('', '.', '..'):
            raise self._error(errors.PathTraversal,
                              'Invalid whiteout entry', entry.path)

        host = os.path.join(parent_host, target)
        if os.path.lexists(host):
            LOG.debug('Whiteout removes %s' % posixpath.join(parent_rel,
                                                             target))
            self._remove(host, posixpath.join(parent_resolved, target))

    def _remove_escaping_links(self):
        """Check every symlink in the finished tree, removing escapes.

        Returns the tree relative paths of the links which were removed.
        """
        removed = []
        for dirpath, dirnames, filenames in os.walk(self.base_path):
            rel = os.path.relpath(dirpath, self.base_path)
            if rel == '.':
                rel = ''
            for name in sorted(dirnames + filenames):
                host = os.path.join(dirpath, name)
                resolved = posixpath.join(rel, name)
                if os.path.islink(host) and self._link_escapes(resolved):
                    LOG.error('Removing symbolic link %s -> %s which escapes '
                              'the destination'
                              % (resolved, os.readlink(host)))
                    os.unlink(host)
                    removed.append(resolved)
        return removed

    def finalize(self):
        escaped = self._remove_escaping_links()
        if escaped:
            raise self._error(
                errors.PathTraversal,
                'Removed %d symbolic links escaping the destination'
                % len(escaped),
                escaped[0])

        # Deepest first, so that setting a parent's mtime is the last change
        # made inside it
        for resolved in sorted(self._deferred_dirs,
                               key=lambda p: p.count('/'), reverse=True):
            mode, mtime = self._deferred_dirs[resolved]
            host = self._host_path(resolved.split('/'))
            if not self._is_real_dir(host):
                continue
            os.chmod(host, mode & 0o7777)
            os.utime(host, (mtime, mtime))

        if self.warnings:
            LOG.warning('Skipped %d entries while materializing'
                        % len(self.warnings))
        LOG.info('Image materialized into %s' % self.base_path)
        return self.base_path
