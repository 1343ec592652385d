"""Tests for the WSGI application in .files module."""

import hashlib
import io
import json
import shutil
import tempfile
import unittest
from wsgiref.util import setup_testing_defaults

from filewarden.servers.files import FilewardenServer
from filewarden.service_test import make_service


class FilewardenServerTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.service = make_service(self.temp_dir)
        self.service.start()
        self.app = FilewardenServer(self.service)

    def tearDown(self):
        self.service.close()
        shutil.rmtree(self.temp_dir)

    def request(self, method, path, body=b'', headers=None):
        environ = {
            'REQUEST_METHOD': method,
            'PATH_INFO': path,
            'wsgi.input': io.BytesIO(body),
        }
        if body or method == 'PUT':
            environ['CONTENT_LENGTH'] = str(len(body))
        environ.update(headers or {})
        setup_testing_defaults(environ)

        response = {}

        def start_response(status, response_headers, exc_info=None):
            response['status'] = status
            response['headers'] = dict(response_headers)

        body = b''.join(self.app(environ, start_response))
        return response['status'], response['headers'], body

    def put(self, name, data, headers=None):
        status, _, body = self.request('PUT', '/files/' + name, data, headers)
        return status, json.loads(body.decode())

    def test_put_should_create_file(self):
        status, data = self.put('a.txt', b'hello')

        self.assertEqual(status, '201 Created')
        self.assertTrue(data['isNew'])
        self.assertEqual(data['fileName'], 'a.txt')
        self.assertEqual(data['checksum'],
                         hashlib.sha256(b'hello').hexdigest())
        self.assertEqual(data['version'], 1)

    def test_put_of_duplicate_should_return_existing_id(self):
        _, first = self.put('a.txt', b'hello')
        status, second = self.put('a.txt', b'hello')

        self.assertEqual(status, '200 OK')
        self.assertFalse(second['isNew'])
        self.assertEqual(second['fileId'], first['fileId'])

    def test_put_with_wrong_checksum_should_be_rejected(self):
        status, headers, _ = self.request(
            'PUT', '/files/a.txt', b'hello',
            {'HTTP_SHA256_CHECKSUM': '0' * 64})

        self.assertEqual(status, '422 Unprocessable Entity')
        self.assertIn('Checksum mismatch', headers['X-Exception'])

    def test_put_should_require_content_length(self):
        environ_headers = {'CONTENT_LENGTH': ''}
        status, _, _ = self.request('PUT', '/files/a.txt', b'',
                                    environ_headers)

        self.assertEqual(status, '411 Length Required')

    def test_put_of_nested_name_should_be_rejected(self):
        status, _, _ = self.request('PUT', '/files/dir/a.txt', b'hello')

        self.assertEqual(status, '400 Bad Request')

    def test_get_should_return_record_and_version(self):
        _, uploaded = self.put('a.txt', b'hello')

        status, _, body = self.request('GET', '/files/' + uploaded['fileId'])

        self.assertEqual(status, '200 OK')
        data = json.loads(body.decode())
        self.assertEqual(data['fileId'], uploaded['fileId'])
        self.assertEqual(data['status'], 'Uploaded')
        self.assertEqual(data['version'], 1)

    def test_get_of_unknown_id_should_404(self):
        status, _, _ = self.request('GET', '/files/nonexistent')

        self.assertEqual(status, '404 Not Found')

    def test_list_should_return_all_records(self):
        self.put('a.txt', b'a')
        self.put('b.txt', b'b')

        status, _, body = self.request('GET', '/files/')

        self.assertEqual(status, '200 OK')
        names = sorted(r['fileName'] for r in json.loads(body.decode()))
        self.assertEqual(names, ['a.txt', 'b.txt'])

    def test_delete_should_remove_file(self):
        _, uploaded = self.put('a.txt', b'hello')

        status, _, body = self.request('DELETE',
                                       '/files/' + uploaded['fileId'])

        self.assertEqual(status, '200 OK')
        self.assertEqual(json.loads(body.decode())['version'], 2)
        status, _, _ = self.request('DELETE', '/files/' + uploaded['fileId'])
        self.assertEqual(status, '404 Not Found')

    def test_reconcile_should_return_report(self):
        with open(self.temp_dir + '/files/new.txt', 'wb') as f:
            f.write(b'new')

        status, _, body = self.request('POST', '/reconcile/')

        self.assertEqual(status, '200 OK')
        report = json.loads(body.decode())
        self.assertEqual(report['inserted'], 1)
        self.assertEqual(report['deleted'], 0)

    def test_status_should_describe_workers(self):
        status, _, body = self.request('GET', '/status')

        self.assertEqual(status, '200 OK')
        self.assertEqual(json.loads(body.decode())['workers'], 4)

    def test_unsupported_method_should_405(self):
        status, _, _ = self.request('PATCH', '/files/a.txt')

        self.assertEqual(status, '405 Method Not Allowed')

    def test_head_should_not_return_body(self):
        self.put('a.txt', b'hello')

        status, _, body = self.request('HEAD', '/files/')

        self.assertEqual(status, '200 OK')
        self.assertEqual(body, b'')

    def test_utf8_names_should_round_trip(self):
        name = 'zażółć.txt'
        path = '/files/' + name.encode('utf-8').decode('latin-1')

        status, _, body = self.request('PUT', path, b'hello')

        self.assertEqual(status, '201 Created')
        self.assertEqual(json.loads(body.decode())['fileName'], name)

    def test_delete_all_should_remove_every_file(self):
        _, a = self.put('a.txt', b'a')
        _, b = self.put('b.txt', b'b')

        status, _, body = self.request('DELETE', '/files/all')

        self.assertEqual(status, '200 OK')
        self.assertEqual(sorted(json.loads(body.decode())['deleted']),
                         sorted([a['fileId'], b['fileId']]))
        status, _, body = self.request('GET', '/files/')
        self.assertEqual(json.loads(body.decode()), [])

    def test_status_update_should_change_status(self):
        _, uploaded = self.put('a.txt', b'hello')
        payload = json.dumps({'fileId': uploaded['fileId'],
                              'status': 'Processed'}).encode()

        status, _, body = self.request('POST', '/status-update/', payload)

        self.assertEqual(status, '200 OK')
        self.assertEqual(json.loads(body.decode())['version'], 2)
        _, _, body = self.request('GET', '/files/' + uploaded['fileId'])
        self.assertEqual(json.loads(body.decode())['status'], 'Processed')

    def test_status_update_of_unknown_file_should_404(self):
        payload = json.dumps({'fileId': 'nonexistent',
                              'status': 'Processed'}).encode()

        status, _, _ = self.request('POST', '/status-update/', payload)

        self.assertEqual(status, '404 Not Found')

    def test_status_update_without_status_should_be_rejected(self):
        status, _, _ = self.request('POST', '/status-update/', b'{}')
        self.assertEqual(status, '400 Bad Request')

        status, _, _ = self.request('POST', '/status-update/', b'not json')
        self.assertEqual(status, '400 Bad Request')
