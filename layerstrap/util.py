import json
import logging
from pbr.version import VersionInfo
import requests

from layerstrap import constants


LOG = logging.getLogger(__name__)


class APIException(Exception):
    pass


class UnauthorizedException(Exception):
    pass


STATUS_CODES_TO_ERRORS = {
    401: UnauthorizedException
}


def get_user_agent():
    try:
        version = VersionInfo('layerstrap').version_string()
    except Exception:
        version = '0.0.0'
    return 'Mozilla/5.0 (Ubuntu; Linux x86_64) layerstrap/%s' % version


def request_url(method, url, headers=None, data=None, stream=False,
                auth=None):
    if not headers:
        headers = {}
    headers.update({'User-Agent': get_user_agent()})
    if data:
        headers['Content-Type'] = 'application/json'
        data = json.dumps(data)
    r = requests.request(method, url,
                         data=data,
                         headers=headers,
                         stream=stream,
                         auth=auth)

    LOG.debug('-------------------------------------------------------')
    LOG.debug('API client requested: %s %s (stream=%s)'
              % (method, url, stream))
    for h in headers:
        if h == 'Authorization':
            LOG.debug('Header: %s = <redacted>' % h)
        else:
            LOG.debug('Header: %s = %s' % (h, headers[h]))
    LOG.debug('API client response: code = %s' % r.status_code)
    for h in r.headers:
        LOG.debug('Header: %s = %s' % (h, r.headers[h]))
    if stream:
        LOG.debug('Result content not logged for streaming requests')
    LOG.debug('-------------------------------------------------------')

    if r.status_code in STATUS_CODES_TO_ERRORS:
        raise STATUS_CODES_TO_ERRORS[r.status_code](
            'API request failed', method, url, r.status_code, r.text, r.headers)

    if r.status_code != 200:
        raise APIException(
            'API request failed', method, url, r.status_code, r.text, r.headers)
    return r


def iter_chunks(stream, chunk_size=constants.CHUNK_SIZE):
    """Yield byte chunks from a file-like object or an iterable of bytes."""
    if hasattr(stream, 'read'):
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                return
            yield chunk
    else:
        for chunk in stream:
            if chunk:
                yield chunk


def close_quietly(stream):
    close = getattr(stream, 'close', None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        LOG.debug('Ignoring error closing stream: %s' % e)
