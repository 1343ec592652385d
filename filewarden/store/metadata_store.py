"""An abstract definition of a metadata store."""

import collections
import uuid


STATUS_UPLOADED = 'Uploaded'
STATUS_DELETE_PENDING = 'Deleted-pending'


FileRecord = collections.namedtuple(
    'FileRecord',
    ['file_id', 'file_name', 'checksum', 'creation_date', 'status'])
"""Metadata of a single logical file.

    Fields:

    * ``file_id`` opaque unique id, immutable once assigned
    * ``file_name`` name the file is stored under (not unique by itself)
    * ``checksum`` SHA256 hex digest of the content
    * ``creation_date`` ISO-8601 timestamp of first observation
    * ``status`` free-form status string, e.g. ``Uploaded``
"""


def new_file_id():
    return str(uuid.uuid4())


def dedup_key(file_name, checksum):
    """Returns the key identifying a logical file for duplicate detection."""
    return '{}\0{}'.format(file_name, checksum)


def matches(record, filter):
    """Checks if ``record`` has all field values given in ``filter``."""
    for field, value in filter.items():
        if field not in FileRecord._fields:
            raise ValueError('Unknown FileRecord field: {}'.format(field))
        if getattr(record, field) != value:
            return False
    return True


class MetadataStore:
    """An abstract base class for durable mappings from file ids to
       :class:`FileRecord` instances.

       Filters are dicts (or keyword arguments) mapping field names to
       required values; an empty filter matches every record.

       Implementations must refuse to hold two records with the same
       ``file_id`` or the same ``(file_name, checksum)`` pair.
    """

    def find_one(self, **filter):
        """Returns a record matching ``filter`` or ``None``."""
        raise NotImplementedError

    def insert(self, record):
        """Adds a new record.

           Raises ``ValueError`` if it would duplicate an existing
           ``file_id`` or ``(file_name, checksum)`` pair.
        """
        raise NotImplementedError

    def update(self, filter, patch):
        """Sets fields from the ``patch`` dict on every record matching
           ``filter``. ``file_id`` cannot be patched.

           Returns the number of updated records.
        """
        raise NotImplementedError

    def delete(self, filter):
        """Removes every record matching ``filter``.

           Returns the number of removed records.
        """
        raise NotImplementedError

    def find_all(self):
        """Returns a list of all records."""
        raise NotImplementedError

    def find_by_key(self, file_id):
        return self.find_one(file_id=file_id)

    def upsert(self, record):
        """Inserts ``record`` or overwrites the one with the same id."""
        patch = record._asdict()
        del patch['file_id']
        if not self.update({'file_id': record.file_id}, patch):
            self.insert(record)

    def scan_all(self):
        """Iterates over all records."""
        return iter(self.find_all())

    def close(self):
        pass


def check_patch(patch):
    if 'file_id' in patch:
        raise ValueError('file_id is immutable')
    for field in patch:
        if field not in FileRecord._fields:
            raise ValueError('Unknown FileRecord field: {}'.format(field))
