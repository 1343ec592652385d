"""A client of the filewarden HTTP server."""

import functools
import logging
import os
import shutil
import tempfile
import time
from urllib.parse import quote

import requests

from filewarden.client import FilewardenClientError
from filewarden.errors import NotFound, ResourceLocked
from filewarden.utils import check_name, file_digest


logger = logging.getLogger(__name__)


_DEFAULT_TIMEOUT_S = 60


def _verbose_http_errors(fn):
    @functools.wraps(fn)
    def wrapped(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except requests.exceptions.RequestException as e:
            if e.response is None:
                raise FilewardenClientError(
                    'Error making HTTP request: %s' % e)

            code = e.response.status_code
            message = e.response.headers.get('x-exception', str(e))
            if code == 404:
                raise NotFound(message)
            if code == 409:
                raise ResourceLocked(e.response.url)
            raise FilewardenClientError(
                'HTTP/%d: %s\n%s' % (code, message, e.response.text),
                status_code=code)

    return wrapped


def _report_timing(name):
    def decorator(fn):
        @functools.wraps(fn)
        def wrapped(*args, **kwargs):
            t = time.time()
            logger.debug('    %s starting', name)
            ret = fn(*args, **kwargs)
            elapsed = time.time() - t
            logger.debug('    %s took %.2fs', name, elapsed)
            return ret
        return wrapped
    return decorator


class RemoteClient:
    """Talks to a filewarden server.

    Responses are returned as decoded JSON. Uploads return a dict with
    ``fileId``, ``fileName``, ``checksum``, ``creationDate``, ``isNew``
    and ``version``.

    ``base_url`` defaults to the ``FILEWARDEN_URL`` environment variable.
    ``timeout`` bounds connecting and every wait for data, in seconds.
    """

    def __init__(self, base_url=None, timeout=_DEFAULT_TIMEOUT_S):
        if base_url is None:
            base_url = os.environ.get('FILEWARDEN_URL')
        if not base_url:
            raise ValueError('No filewarden server URL given')
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _file_url(self, name_or_id):
        return self.base_url + '/files/' + quote(name_or_id, safe='')

    @_report_timing('RemoteClient.upload_file')
    @_verbose_http_errors
    def upload_file(self, filename, name=None):
        """Uploads a local file, by default under its base name."""
        if name is None:
            name = os.path.basename(filename)
        check_name(name)
        headers = {'SHA256-Checksum': file_digest(filename)}

        # Important detail: this upload is streaming.
        # http://docs.python-requests.org/en/latest/user/advanced/#streaming-uploads
        with open(filename, 'rb') as f:
            return self._put(name, f, headers)

    @_verbose_http_errors
    def upload_stream(self, stream, name):
        check_name(name)
        # The server requires Content-Length, so a stream of unknown length
        # is spooled to a temporary file first.
        with tempfile.TemporaryFile() as tmp:
            shutil.copyfileobj(stream, tmp)
            tmp.seek(0)
            headers = {'SHA256-Checksum': file_digest(tmp)}
            tmp.seek(0)
            return self._put(name, tmp, headers)

    def _put(self, name, f, headers):
        response = requests.put(self._file_url(name), data=f,
                                headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def delete_file(self, file_id):
        response = requests.delete(self._file_url(file_id),
                                   timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def delete_all(self):
        """Deletes every file, returns the list of deleted ids."""
        response = requests.delete(self.base_url + '/files/all',
                                   timeout=self.timeout)
        response.raise_for_status()
        return response.json()['deleted']

    @_verbose_http_errors
    def set_status(self, file_id, status):
        response = requests.post(self.base_url + '/status-update/',
                                 json={'fileId': file_id, 'status': status},
                                 timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def list_files(self):
        response = requests.get(self.base_url + '/files/',
                                timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def file_info(self, file_id):
        response = requests.get(self._file_url(file_id),
                                timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def reconcile(self):
        response = requests.post(self.base_url + '/reconcile/',
                                 timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @_verbose_http_errors
    def status(self):
        response = requests.get(self.base_url + '/status/',
                                timeout=self.timeout)
        response.raise_for_status()
        return response.json()
