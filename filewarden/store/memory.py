"""In-memory metadata store and counters."""

import collections
import threading

from filewarden.store.metadata_store import (MetadataStore, check_patch,
                                             dedup_key, matches)
from filewarden.versions import CounterService


class MemoryMetadataStore(MetadataStore):
    """A metadata store which keeps records in a dict.

       Cool for testing, but nothing survives a restart.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._records = collections.OrderedDict()

    def find_one(self, **filter):
        with self._mutex:
            for record in self._records.values():
                if matches(record, filter):
                    return record
        return None

    def insert(self, record):
        with self._mutex:
            if record.file_id in self._records:
                raise ValueError('Duplicate file id: {}'.format(record.file_id))
            key = dedup_key(record.file_name, record.checksum)
            for other in self._records.values():
                if dedup_key(other.file_name, other.checksum) == key:
                    raise ValueError('Duplicate record for {} ({})'.format(
                        record.file_name, record.checksum))
            self._records[record.file_id] = record

    def update(self, filter, patch):
        check_patch(patch)
        with self._mutex:
            targets = [r for r in self._records.values() if matches(r, filter)]
            for record in targets:
                self._records[record.file_id] = record._replace(**patch)
            return len(targets)

    def delete(self, filter):
        with self._mutex:
            targets = [r.file_id for r in self._records.values()
                       if matches(r, filter)]
            for file_id in targets:
                del self._records[file_id]
            return len(targets)

    def find_all(self):
        with self._mutex:
            return list(self._records.values())


class MemoryCounterService(CounterService):
    def __init__(self):
        self._mutex = threading.Lock()
        self._values = collections.defaultdict(int)

    def increment(self, key):
        with self._mutex:
            self._values[key] += 1
            return self._values[key]

    def get(self, key):
        with self._mutex:
            return self._values.get(key, 0)
