"""URI parsing for layerstrap sources and targets.

URI formats:
    Source:
        registry://host/image[:tag|@digest][?arch=X&os=Y&variant=Z]
        bundle:///path/to/bundle

    Target:
        dir:///path/to/directory
        directory:///path/...  (alias for dir)
        bundle:///path/to/directory[?name=NAME]
"""

from collections import namedtuple
from urllib.parse import urlparse, parse_qs, unquote

from layerstrap.manifest import ImageReference


# Named tuples for parsed specifications
URISpec = namedtuple('URISpec', ['scheme', 'host', 'path', 'options'])


# Scheme classifications
INPUT_SCHEMES = {'registry', 'bundle'}
OUTPUT_SCHEMES = {'dir', 'bundle'}

# Scheme aliases
SCHEME_ALIASES = {
    'directory': 'dir',
}

PATH_SCHEMES = ('dir', 'bundle')


class URIParseError(Exception):
    """Raised when a URI cannot be parsed."""
    pass


def _convert_value(value):
    if value.lower() in ('true', 'yes'):
        return True
    if value.lower() in ('false', 'no'):
        return False
    try:
        return int(value)
    except ValueError:
        return value


def parse_uri(uri_string):
    """Parse a URI string into components.

    Args:
        uri_string: A URI like 'registry://docker.io/library/busybox:latest'

    Returns:
        URISpec(scheme, host, path, options)

    Raises:
        URIParseError: If the URI is malformed.
    """
    # Handle URIs without :// (e.g., 'dir:out' -> 'dir://out')
    if '://' not in uri_string and ':' in uri_string:
        scheme, rest = uri_string.split(':', 1)
        if not rest.startswith('//'):
            uri_string = '%s://%s' % (scheme, rest)

    parsed = urlparse(uri_string)

    if not parsed.scheme:
        raise URIParseError('Missing scheme in URI: %s' % uri_string)

    scheme = parsed.scheme.lower()
    scheme = SCHEME_ALIASES.get(scheme, scheme)

    # Parse query string into options dict
    options = {}
    if parsed.query:
        qs = parse_qs(parsed.query)
        for key, values in qs.items():
            # Convert single-value lists to scalars
            if len(values) == 1:
                options[key] = _convert_value(values[0])
            else:
                options[key] = values

    host = parsed.netloc
    path = unquote(parsed.path)

    # For file-based schemes, the host might be part of the path
    if scheme in PATH_SCHEMES:
        if host and not path:
            # dir://out -> host='out', path=''
            path = host
            host = ''
        elif host:
            # dir://localhost/path/to/dir -> path='/path/to/dir'
            if host != 'localhost':
                path = host + path
            host = ''

    return URISpec(scheme=scheme, host=host, path=path, options=options)


def parse_registry_uri(uri_spec):
    """Parse registry URI into an ImageReference.

    Handles formats like:
        registry://docker.io/library/busybox:latest
        registry://ghcr.io/owner/repo:v1.0
        registry://ghcr.io/owner/repo@sha256:...
    """
    if uri_spec.scheme != 'registry':
        raise URIParseError(
            'Expected registry:// URI, got %s' % uri_spec.scheme)

    host = uri_spec.host
    path = uri_spec.path.lstrip('/')
    if not host or not path:
        raise URIParseError('registry:// URI requires a host and an image')

    if '@' in path:
        image, reference = path.split('@', 1)
    elif ':' in path.split('/')[-1]:
        # The tag follows the last colon in the final path element, so
        # that a port in an image path is not mistaken for a tag
        last_colon = path.rfind(':')
        image = path[:last_colon]
        reference = path[last_colon + 1:]
    else:
        image = path
        reference = 'latest'

    if not image or not reference:
        raise URIParseError('Invalid image reference: %s' % path)

    return ImageReference(host, image, reference)
