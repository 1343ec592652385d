"""Metadata store and counters kept in a Berkeley DB environment.

The environment lives in a single directory and may be shared by several
processes (gunicorn workers). It is opened with ``DB_REGISTER``, so the
server manager must run :func:`db_init` (which performs recovery) before
any worker opens it.

Databases:
- 'records' maps file ids to JSON-encoded records.
- 'dedup' maps ``file_name + '\\0' + checksum`` to the file id.
- 'counters' maps counter keys to decimal integers.
"""

import contextlib
import json
import logging

import bsddb3

from filewarden.store.metadata_store import (FileRecord, MetadataStore,
                                             check_patch, dedup_key, matches)
from filewarden.utils import mkdir
from filewarden.versions import CounterService


logger = logging.getLogger(__name__)


_ENV_FLAGS = (bsddb3.db.DB_CREATE
              | bsddb3.db.DB_INIT_LOCK
              | bsddb3.db.DB_INIT_LOG
              | bsddb3.db.DB_INIT_MPOOL
              | bsddb3.db.DB_INIT_TXN
              | bsddb3.db.DB_REGISTER)


def db_init(db_dir):
    logger.info('Attempting to create and/or initialize database.')
    mkdir(db_dir)
    db_env = bsddb3.db.DBEnv()
    db_env.open(db_dir, _ENV_FLAGS | bsddb3.db.DB_RECOVER)
    db_env.close()
    logger.info('Successfully created and/or initialized database.')


class BsddbEnvironment:
    """Owns the DB environment and the databases opened in it."""

    def __init__(self, db_dir):
        mkdir(db_dir)
        # https://docs.oracle.com/cd/E17076_05/html/programmer_reference/transapp_env_open.html
        self.env = bsddb3.db.DBEnv()
        try:
            self.env.open(db_dir, _ENV_FLAGS)
        except bsddb3.db.DBRunRecoveryError:
            raise RuntimeError(
                'DB requires recovery! Run filewarden.store.bsddb_store.db_init '
                'before opening it.')
        self._dbs = []

    def open_db(self, name):
        db = bsddb3.db.DB(self.env)
        db.open(name,
                dbtype=bsddb3.db.DB_HASH,
                flags=bsddb3.db.DB_CREATE | bsddb3.db.DB_AUTO_COMMIT)
        self._dbs.append(db)
        return db

    @contextlib.contextmanager
    def transaction(self):
        txn = self.env.txn_begin()
        try:
            yield txn
        except BaseException:
            txn.abort()
            raise
        else:
            txn.commit()

    def close(self):
        for db in self._dbs:
            db.close()
        self._dbs = []
        self.env.close()


class BsddbMetadataStore(MetadataStore):
    def __init__(self, environment):
        self.environment = environment
        self.records = environment.open_db('records')
        self.dedup = environment.open_db('dedup')

    def find_one(self, **filter):
        if 'file_id' in filter:
            record = self._get(filter['file_id'])
            if record is not None and matches(record, filter):
                return record
            return None

        if 'file_name' in filter and 'checksum' in filter:
            file_id = self.dedup.get(
                _dedup_bytes(filter['file_name'], filter['checksum']))
            if file_id is None:
                return None
            record = self._get(file_id.decode())
            if record is not None and matches(record, filter):
                return record
            return None

        for record in self._scan():
            if matches(record, filter):
                return record
        return None

    def insert(self, record):
        with self.environment.transaction() as txn:
            logger.debug('Started DB transaction (inserting %s).',
                         record.file_id)
            id_bytes = record.file_id.encode()
            dedup_bytes = _dedup_bytes(record.file_name, record.checksum)
            if self.records.get(id_bytes, txn=txn) is not None:
                raise ValueError('Duplicate file id: {}'.format(record.file_id))
            if self.dedup.get(dedup_bytes, txn=txn) is not None:
                raise ValueError('Duplicate record for {} ({})'.format(
                    record.file_name, record.checksum))
            self.records.put(id_bytes, _encode(record), txn=txn)
            self.dedup.put(dedup_bytes, id_bytes, txn=txn)
        logger.debug('Committed DB transaction (inserting %s).',
                     record.file_id)

    def update(self, filter, patch):
        check_patch(patch)
        updated = 0
        with self.environment.transaction() as txn:
            logger.debug('Started DB transaction (updating %s).', filter)
            for record in self._matching(filter, txn):
                new_record = record._replace(**patch)
                id_bytes = record.file_id.encode()
                self.records.put(id_bytes, _encode(new_record), txn=txn)
                old_key = _dedup_bytes(record.file_name, record.checksum)
                new_key = _dedup_bytes(new_record.file_name,
                                       new_record.checksum)
                if old_key != new_key:
                    self.dedup.delete(old_key, txn=txn)
                    self.dedup.put(new_key, id_bytes, txn=txn)
                updated += 1
        logger.debug('Committed DB transaction (updated %d).', updated)
        return updated

    def delete(self, filter):
        deleted = 0
        with self.environment.transaction() as txn:
            logger.debug('Started DB transaction (deleting %s).', filter)
            for record in self._matching(filter, txn):
                self.records.delete(record.file_id.encode(), txn=txn)
                dedup_bytes = _dedup_bytes(record.file_name, record.checksum)
                if self.dedup.get(dedup_bytes, txn=txn) is not None:
                    self.dedup.delete(dedup_bytes, txn=txn)
                deleted += 1
        logger.debug('Committed DB transaction (deleted %d).', deleted)
        return deleted

    def find_all(self):
        return list(self._scan())

    def close(self):
        # Closes the counters database as well, they share the environment.
        self.environment.close()

    def _get(self, file_id, txn=None):
        data = self.records.get(file_id.encode(), txn=txn)
        if data is None:
            return None
        return _decode(data)

    def _matching(self, filter, txn):
        if 'file_id' in filter:
            record = self._get(filter['file_id'], txn)
            if record is not None and matches(record, filter):
                return [record]
            return []
        return [r for r in self._scan(txn) if matches(r, filter)]

    def _scan(self, txn=None):
        for _, data in self.records.items(txn=txn):
            yield _decode(data)


class BsddbCounterService(CounterService):
    def __init__(self, environment):
        self.environment = environment
        self.counters = environment.open_db('counters')

    def increment(self, key):
        key_bytes = key.encode()
        with self.environment.transaction() as txn:
            value = int(self.counters.get(key_bytes, b'0', txn=txn)) + 1
            self.counters.put(key_bytes, str(value).encode(), txn=txn)
        return value

    def get(self, key):
        return int(self.counters.get(key.encode(), b'0'))


def _dedup_bytes(file_name, checksum):
    return dedup_key(file_name, checksum).encode('utf-8')


def _encode(record):
    return json.dumps(record._asdict()).encode('utf-8')


def _decode(data):
    return FileRecord(**json.loads(data.decode('utf-8')))
