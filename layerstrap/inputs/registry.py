# A simple implementation of a docker registry client, used as the manifest
# provider and blob fetcher for images which live in a registry.

# https://docs.docker.com/registry/spec/manifest-v2-2/ documents the image manifest
# format, noting that the response format you get back varies based on what you have
# in your accept header for the request.

# https://github.com/opencontainers/image-spec/blob/main/media-types.md documents
# the new OCI mime types.

import json
import logging
import re
from requests.exceptions import ChunkedEncodingError, ConnectionError
import threading
import time

from layerstrap import constants
from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap import util
from layerstrap.inputs.base import BlobFetcher, ManifestProvider
from layerstrap.manifest import Manifest

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # Exponential backoff: 2^attempt seconds

LOG = logging.getLogger(__name__)
LOG.setLevel(logging.INFO)

AUTH_RE = re.compile('Bearer realm="([^"]*)",service="([^"]*)"')


class Registry(ManifestProvider, BlobFetcher):
    def __init__(self, os='linux', architecture='amd64', variant='',
                 secure=True, username=None, password=None):
        self.os = os
        self.architecture = architecture
        self.variant = variant
        self.secure = secure
        self.username = username
        self.password = password

        # Bearer tokens are scoped to a repository
        self._cached_auth = {}
        self._auth_lock = threading.Lock()

    @property
    def _moniker(self):
        if self.secure:
            return 'https'
        return 'http'

    def _url(self, reference, kind, target):
        return ('%(moniker)s://%(registry)s/v2/%(image)s/%(kind)s/%(target)s'
                % {
                    'moniker': self._moniker,
                    'registry': reference.registry,
                    'image': reference.repository,
                    'kind': kind,
                    'target': target
                })

    def request_url(self, method, url, reference, headers=None, stream=False):
        """Make an authenticated request to the registry.

        Thread-safe: uses _auth_lock to protect _cached_auth updates.
        """
        if not headers:
            headers = {}

        with self._auth_lock:
            token = self._cached_auth.get(reference.repository)
        if token:
            headers.update({'Authorization': 'Bearer %s' % token})

        try:
            return util.request_url(method, url, headers=headers,
                                    stream=stream)
        except util.UnauthorizedException as e:
            m = AUTH_RE.match(e.args[5].get('Www-Authenticate', ''))
            if not m:
                raise

            auth_url = ('%s?service=%s&scope=repository:%s:pull'
                        % (m.group(1), m.group(2), reference.repository))
            # If credentials are provided, use Basic auth for token request
            if self.username and self.password:
                r = util.request_url(
                    'GET', auth_url, auth=(self.username, self.password))
            else:
                r = util.request_url('GET', auth_url)
            body = r.json()
            token = body.get('token') or body.get('access_token')
            headers.update({'Authorization': 'Bearer %s' % token})
            with self._auth_lock:
                self._cached_auth[reference.repository] = token

            return util.request_url(method, url, headers=headers,
                                    stream=stream)

    def _get_manifest_document(self, reference, target, accept):
        r = self.request_url(
            'GET', self._url(reference, 'manifests', target), reference,
            headers={'Accept': ','.join(accept)})
        content_type = r.headers.get('Content-Type', '').split(';')[0]
        return content_type, r.content

    def _select_platform(self, manifests):
        for m in manifests:
            platform = m.get('platform', {})
            if 'variant' in platform:
                LOG.info('Found manifest for %s on %s %s'
                         % (platform.get('os'), platform.get('architecture'),
                            platform['variant']))
            else:
                LOG.info('Found manifest for %s on %s'
                         % (platform.get('os'), platform.get('architecture')))

            if (platform.get('os') == self.os and
                platform.get('architecture') == self.architecture and
                    platform.get('variant', '') == self.variant):
                return m

        raise errors.ManifestError(
            'Could not find a matching manifest for %s / %s / %s'
            % (self.os, self.architecture, self.variant))

    def get_manifest(self, reference):
        LOG.info('Fetching manifest for %s' % reference)
        content_type, raw = self._get_manifest_document(
            reference, reference.reference,
            constants.IMAGE_MANIFEST_TYPES + constants.MANIFEST_LIST_TYPES)
        expected = None
        if reference.is_digest:
            expected = digest_codec.parse(reference.reference)

        if content_type in constants.MANIFEST_LIST_TYPES:
            if expected and digest_codec.from_bytes(raw) != expected:
                raise errors.DigestMismatch(
                    'Manifest list does not match its digest',
                    digest=expected)

            try:
                manifests = json.loads(raw)['manifests']
            except (KeyError, TypeError, ValueError) as e:
                raise errors.ManifestError('Invalid manifest list: %s' % e)
            m = self._select_platform(manifests)
            LOG.info('Fetching matching manifest %s' % m['digest'])
            expected = digest_codec.parse(m['digest'])
            content_type, raw = self._get_manifest_document(
                reference, m['digest'], constants.IMAGE_MANIFEST_TYPES)

        elif content_type not in constants.IMAGE_MANIFEST_TYPES:
            raise errors.ManifestError(
                'Unknown manifest content type %s' % content_type)

        if expected and digest_codec.from_bytes(raw) != expected:
            LOG.error('Hash verification failed for manifest %s' % expected)
            raise errors.DigestMismatch(
                'Manifest does not match its digest', digest=expected)

        manifest = Manifest.from_bytes(raw, media_type=content_type)
        LOG.info('There are %d image layers' % len(manifest.layers))
        return manifest

    def _iter_blob(self, reference, url, r):
        """Yield the chunks of a blob download, restarting on failure.

        A restarted download discards the bytes which were already yielded,
        so the caller sees one continuous stream.
        """
        offset = 0
        attempt = 0
        while True:
            skip = offset
            try:
                if r is None:
                    r = self.request_url('GET', url, reference, stream=True)
                for chunk in r.iter_content(constants.CHUNK_SIZE):
                    if skip:
                        if len(chunk) <= skip:
                            skip -= len(chunk)
                            continue
                        chunk = chunk[skip:]
                        skip = 0
                    offset += len(chunk)
                    yield chunk
                return

            except (ChunkedEncodingError, ConnectionError) as e:
                if attempt >= MAX_RETRIES:
                    LOG.error('Blob download failed after %d attempts: %s'
                              % (MAX_RETRIES + 1, str(e)))
                    raise

                wait_time = RETRY_BACKOFF_BASE ** attempt
                LOG.warning(
                    'Blob download failed (attempt %d/%d): %s. '
                    'Retrying in %d seconds...'
                    % (attempt + 1, MAX_RETRIES + 1, str(e), wait_time))
                time.sleep(wait_time)
                attempt += 1

            finally:
                # Also reached when the consumer closes us early
                if r is not None:
                    r.close()
                    r = None

    def fetch(self, reference, digest):
        LOG.info('Fetching blob %s' % digest)
        url = self._url(reference, 'blobs', str(digest))
        r = self.request_url('GET', url, reference, stream=True)
        return self._iter_blob(reference, url, r)
