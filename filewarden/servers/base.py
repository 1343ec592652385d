"""This module contains an utility superclass for creating WSGI servers."""

import json
import logging
import sys
import traceback


logger = logging.getLogger(__name__)


class HttpError(Exception):
    def __init__(self, status, description, headers=()):
        # status should be a string of form '404 Not Found'
        super().__init__(status, description)
        self.status = status
        self.description = description
        self.headers = list(headers)


class Server:
    """A base WSGI-compatible class, which delegates request handling to
    ``handle_<HTTP-method-name>`` methods."""

    def __call__(self, environ, start_response):
        try:
            if environ['REQUEST_METHOD'] == 'HEAD':
                environ['REQUEST_METHOD'] = 'GET'
                _body_iter = self.__call__(environ, start_response)
                # Server implementations should return closeable iterators
                # from handle_GET to avoid resource leaks.
                if hasattr(_body_iter, 'close'):
                    _body_iter.close()

                return []
            else:
                handler = getattr(
                    self, 'handle_{}'.format(environ['REQUEST_METHOD']), None)
                if handler is None:
                    raise HttpError(
                        '405 Method Not Allowed',
                        'Method {} is not supported'.format(
                            environ['REQUEST_METHOD']))
                return handler(environ, start_response)

        except HttpError as e:
            response_headers = [
                ('Content-Type', 'text/plain'),
                ('X-Exception', e.description),
            ] + e.headers
            start_response(e.status, response_headers, sys.exc_info())
            return [e.description.encode()]
        except Exception as e:
            logger.error('Unhandled server exception.', exc_info=1)
            status = '500 Oops'
            response_headers = [('Content-Type', 'text/plain'),
                                ('X-Exception', str(e))]
            start_response(status, response_headers, sys.exc_info())
            return [traceback.format_exc().encode()]


def json_response(start_response, data, status='200 OK'):
    body = json.dumps(data).encode('utf8')
    start_response(status, [
        ('Content-Type', 'application/json'),
        ('Content-Length', str(len(body))),
    ])
    return [body]


def get_endpoint_and_path(environ):
    """Extracts "endpoint" and "path" from the request URL.

    Endpoint is the first path component, and path is the rest. Both
    of them are without leading or trailing slashes, and empty components
    are skipped.
    """
    try:
        # PEP 3333 passes the path as latin-1 decoded bytes.
        path = environ['PATH_INFO'].encode('latin-1').decode('utf-8')
    except UnicodeError:
        raise HttpError('400 Bad Request', 'Path is not valid UTF-8.')

    components = [c for c in path.split('/') if c]
    if '..' in components:
        raise HttpError('400 Bad Request', 'Path cannot contain "..".')

    if not components:
        return '', ''
    return components[0], '/'.join(components[1:])


def read_json(environ):
    """Decodes the request body as a JSON object."""
    try:
        length = int(environ.get('CONTENT_LENGTH') or 0)
    except ValueError:
        raise HttpError('400 Bad Request', 'Invalid Content-Length header')
    body = environ['wsgi.input'].read(length) if length else b''
    try:
        data = json.loads(body.decode('utf-8'))
    except ValueError:
        raise HttpError('400 Bad Request', 'Request body is not valid JSON')
    if not isinstance(data, dict):
        raise HttpError('400 Bad Request', 'Expected a JSON object')
    return data
