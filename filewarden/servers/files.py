"""HTTP front end of a :class:`filewarden.service.FileService`.

Endpoints:

- ``PUT /files/<name>`` uploads the request body as ``<name>``.
  An optional ``SHA256-Checksum`` header is verified against the body.
  Responds ``201`` for a new file and ``200`` for a duplicate.
- ``DELETE /files/<file_id>`` deletes a file.
- ``DELETE /files/all`` deletes every file.
- ``GET /files/`` lists metadata of all files.
- ``GET /files/<file_id>`` returns metadata and version of a file.
- ``POST /reconcile/`` runs a reconciliation pass and returns its report.
- ``POST /status-update/`` sets the status of a file, the body is a JSON
  object with ``fileId`` and ``status``.
- ``GET /status/`` describes the worker pool.
"""

import functools
import logging

from filewarden.errors import (ChecksumMismatch, LockServiceUnavailable,
                               NotFound, OperationTimeout, ResourceLocked)
from filewarden.servers import base


logger = logging.getLogger(__name__)


def _translate_errors(fn):
    @functools.wraps(fn)
    def wrapped(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except NotFound as e:
            raise base.HttpError('404 Not Found', str(e))
        except ResourceLocked as e:
            raise base.HttpError('409 Conflict', str(e),
                                 headers=[('Retry-After', '1')])
        except ChecksumMismatch as e:
            raise base.HttpError('422 Unprocessable Entity', str(e))
        except LockServiceUnavailable as e:
            raise base.HttpError('503 Service Unavailable', str(e))
        except OperationTimeout as e:
            raise base.HttpError('504 Gateway Timeout', str(e))
        except ValueError as e:
            raise base.HttpError('400 Bad Request', str(e))

    return wrapped


def record_to_json(record, version=None):
    data = {
        'fileId': record.file_id,
        'fileName': record.file_name,
        'checksum': record.checksum,
        'creationDate': record.creation_date,
        'status': record.status,
    }
    if version is not None:
        data['version'] = version
    return data


class FilewardenServer(base.Server):
    """A WSGI application exposing a :class:`FileService`.

    Note that this wouldn't work as standalone server: a "manager"
    process should handle DB initialization and the startup
    reconciliation, refer to ``filewarden.servers.run`` for more details.
    """

    def __init__(self, service):
        self.service = service

    @_translate_errors
    def handle_PUT(self, environ, start_response):
        endpoint, path = base.get_endpoint_and_path(environ)
        if endpoint != 'files' or not path:
            raise base.HttpError('400 Bad Request',
                                 'PUT can be only performed on "/files/..."')

        content_length = environ.get('CONTENT_LENGTH')
        if not content_length:
            raise base.HttpError('411 Length Required',
                                 'Content-Length header is required')

        expected = environ.get('HTTP_SHA256_CHECKSUM', None)
        logger.debug('Handling PUT %s (%s bytes).', path, content_length)

        task = self.service.submit_upload(environ['wsgi.input'], path,
                                          size=int(content_length),
                                          expected_checksum=expected)
        result = task.get()
        status = '201 Created' if result.is_new else '200 OK'
        return base.json_response(start_response, {
            'fileId': result.file_id,
            'fileName': result.file_name,
            'checksum': result.checksum,
            'creationDate': result.creation_date,
            'isNew': result.is_new,
            'version': result.version,
        }, status=status)

    @_translate_errors
    def handle_DELETE(self, environ, start_response):
        endpoint, path = base.get_endpoint_and_path(environ)
        if endpoint != 'files' or not path:
            raise base.HttpError('400 Bad Request',
                                 'DELETE can be only performed on "/files/..."')

        if path == 'all':
            logger.debug('Handling DELETE of all files.')
            results = self.service.delete_all()
            return base.json_response(start_response, {
                'deleted': [r.file_id for r in results],
            })

        logger.debug('Handling DELETE %s.', path)
        result = self.service.delete(path)
        return base.json_response(start_response, {
            'fileId': result.file_id,
            'fileName': result.file_name,
            'version': result.version,
        })

    @_translate_errors
    def handle_GET(self, environ, start_response):
        endpoint, path = base.get_endpoint_and_path(environ)
        if endpoint == 'files' and not path:
            records = self.service.list_records()
            return base.json_response(
                start_response, [record_to_json(r) for r in records])
        elif endpoint == 'files':
            record = self.service.get_record(path)
            version = self.service.file_version(record.file_id)
            return base.json_response(start_response,
                                      record_to_json(record, version))
        elif endpoint == 'status':
            return base.json_response(start_response, self.service.status())
        else:
            raise base.HttpError(
                '400 Bad Request',
                'Unknown endpoint "{}", expected "files" or "status"'
                .format(endpoint))

    @_translate_errors
    def handle_POST(self, environ, start_response):
        endpoint, _ = base.get_endpoint_and_path(environ)
        if endpoint == 'reconcile':
            report = self.service.reconcile_now()
            return base.json_response(start_response, report._asdict())
        elif endpoint == 'status-update':
            data = base.read_json(environ)
            if 'fileId' not in data or 'status' not in data:
                raise base.HttpError('400 Bad Request',
                                     'Both "fileId" and "status" are required')
            result = self.service.set_status(data['fileId'], data['status'])
            return base.json_response(start_response, {
                'fileId': result.file_id,
                'fileName': result.file_name,
                'status': result.status,
                'version': result.version,
            })
        else:
            raise base.HttpError(
                '400 Bad Request',
                'POST can be only performed on "/reconcile/" or '
                '"/status-update/"')
