"""This module is responsible for storing files on disk.

The storage strategy is as follows:
- Files are stored flat in a directory called 'files', under the name
  they were uploaded with.
- Incoming data is first written to a private 'tmp' directory, hashed on
  the way, and then renamed into 'files'. A crash in the middle of a
  transfer therefore leaves at most a stray temporary file, never a
  truncated file under a real name.
- Nothing here takes locks: callers must hold the lease of a name before
  committing or deleting it.
"""

import collections
import errno
import logging
import os
import shutil
import tempfile

from filewarden.errors import NotFound, StorageIOError
from filewarden.utils import DigestingReader, check_name, mkdir


logger = logging.getLogger(__name__)


FileStat = collections.namedtuple('FileStat', ['creation_time', 'size'])


class FileStorage:
    """Manages the directory holding uploaded files."""

    def __init__(self, base_dir):
        self.base_dir = base_dir
        self.files_dir = os.path.join(base_dir, 'files')
        self.tmp_dir = os.path.join(base_dir, 'tmp')

        mkdir(self.files_dir)
        mkdir(self.tmp_dir)

    def stage(self, data, size=0):
        """Copies ``data`` into a temporary file and computes its digest.

        Args:
            data: binary file-like object with file contents.
            size: length of ``data`` in bytes
                If not 0, exactly ``size`` bytes are read, which is required
                for WSGI input streams that do not signal EOF.

        Returns a :class:`StagedFile`, which should be used as a context
        manager so the temporary file is removed unless committed.
        """
        fd, path = tempfile.mkstemp(dir=self.tmp_dir)
        staged = StagedFile(path)
        success = False
        try:
            with os.fdopen(fd, 'wb') as dest:
                reader = DigestingReader(data)
                _copy_stream(reader, dest, size)
            success = True
        except OSError as e:
            raise StorageIOError('Failed to stage upload: {}'.format(e))
        finally:
            if not success:
                staged.discard()
        staged.digest = reader.hexdigest()
        staged.size = reader.size
        logger.debug('Staged %d bytes in %s (%s).',
                     staged.size, path, staged.digest)
        return staged

    def commit(self, staged, name):
        """Atomically moves a staged file under ``name``.

        An existing file with this name is replaced.
        """
        check_name(name)
        try:
            os.replace(staged.path, self._file_path(name))
        except OSError as e:
            raise StorageIOError('Failed to commit {}: {}'.format(name, e))
        staged.committed = True
        logger.debug('Committed %s.', name)

    def write(self, name, data, size=0):
        """Stores ``data`` under ``name`` and returns its digest."""
        with self.stage(data, size) as staged:
            self.commit(staged, name)
            return staged.digest

    def read(self, name):
        """Returns a binary stream with the contents of ``name``."""
        check_name(name)
        try:
            return open(self._file_path(name), 'rb')
        except OSError as e:
            if e.errno == errno.ENOENT:
                raise NotFound('File "{}" not found in storage'.format(name))
            raise StorageIOError('Failed to read {}: {}'.format(name, e))

    def delete(self, name):
        """Removes ``name``. Returns whether the file existed."""
        check_name(name)
        try:
            os.unlink(self._file_path(name))
        except OSError as e:
            if e.errno == errno.ENOENT:
                return False
            raise StorageIOError('Failed to delete {}: {}'.format(name, e))
        logger.debug('Deleted %s.', name)
        return True

    def exists(self, name):
        return os.path.isfile(self._file_path(name))

    def list(self):
        """Returns names of all stored files, sorted."""
        try:
            entries = os.listdir(self.files_dir)
        except OSError as e:
            raise StorageIOError('Failed to list files: {}'.format(e))
        return sorted(name for name in entries
                      if os.path.isfile(self._file_path(name)))

    def stat(self, name):
        check_name(name)
        try:
            st = os.stat(self._file_path(name))
        except OSError as e:
            if e.errno == errno.ENOENT:
                raise NotFound('File "{}" not found in storage'.format(name))
            raise StorageIOError('Failed to stat {}: {}'.format(name, e))
        # st_birthtime is not available on every platform.
        creation_time = getattr(st, 'st_birthtime', st.st_mtime)
        return FileStat(creation_time=creation_time, size=st.st_size)

    def cleanup_staging(self):
        """Removes leftovers of interrupted transfers."""
        removed = 0
        for name in os.listdir(self.tmp_dir):
            try:
                os.unlink(os.path.join(self.tmp_dir, name))
                removed += 1
            except OSError:
                logger.warning('Could not remove stale temporary file %s.',
                               name, exc_info=True)
        return removed

    def _file_path(self, name):
        return os.path.join(self.files_dir, name)


class StagedFile:
    """A temporary file holding an upload that is not committed yet.

    Should be used as a context manager.
    """

    def __init__(self, path):
        self.path = path
        self.digest = None
        self.size = 0
        self.committed = False

    def __enter__(self):
        return self

    def __exit__(self, _exc_type, _exc_value, _traceback):
        """Removes the file if it was not committed."""
        if not self.committed:
            self.discard()

    def discard(self):
        try:
            os.unlink(self.path)
        except OSError as e:
            if e.errno != errno.ENOENT:
                raise


_BUFFER_SIZE = 64 * 1024


def _copy_stream(src, dest, length=0):
    """Similar to shutil.copyfileobj, but supports limiting data size.

    Some WSGI implementations do not support EOFs on the input stream,
    refer to https://www.python.org/dev/peps/pep-0333/#input-and-error-streams

    Args:
        src: source file-like object
        dest: destination file-like object
        length: optional file size hint
            If not 0, exactly length bytes will be written.
            If 0, write will continue until EOF is encountered.
    """
    if length == 0:
        shutil.copyfileobj(src, dest, _BUFFER_SIZE)
        return

    bytes_left = length
    while bytes_left > 0:
        buf = src.read(min(_BUFFER_SIZE, bytes_left))
        if not buf:
            raise StorageIOError(
                'Stream ended {} bytes early'.format(bytes_left))
        dest.write(buf)
        bytes_left -= len(buf)
