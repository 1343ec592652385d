#!/usr/bin/env python

"""The entry point for filewarden server.

It uses gunicorn to manage workers, initializes the DB and runs the
mandatory startup reconciliation before starting handling requests, and
exits the whole server on worker error. You should consider running this
under a supervisor process in production.

Important note: worker exit killing the whole server is necessary
to ensure integrity of Berkeley DB database, which is shared
between all worker processes. Refer to
https://web.stanford.edu/class/cs276a/projects/docs/berkeleydb/ref/transapp/app.html.

Every gunicorn worker runs its own pool of task workers. They are kept
apart by leases stored in ``<dir>/locks``, shared by all processes.
"""

import json
import logging
import logging.config
import multiprocessing
import os
from optparse import OptionParser
import re
import signal
import subprocess
import sys
import tempfile

from filewarden.locks import LockManager
from filewarden.locks.fcntl_service import FcntlLockService
from filewarden.servers.files import FilewardenServer
from filewarden.service import FileService
from filewarden.storage import FileStorage
from filewarden.store.bsddb_store import (BsddbCounterService,
                                          BsddbEnvironment,
                                          BsddbMetadataStore, db_init)
from filewarden.versions import VersionCounter


logger = logging.getLogger(__name__)


# Clients may use this as a sensible default port to connect to.
DEFAULT_PORT = 9998

_DEFAULT_IO_TIMEOUT_S = 5 * 60
_DEFAULT_LOCK_CALL_TIMEOUT_S = 10

_DEFAULT_LOG_CONFIG = {
  'version': 1,
  'handlers': {
    'default': {
      'class': 'logging.StreamHandler',
      'formatter': 'precise',
      'level': 'INFO',
      'stream': 'ext://sys.stdout'
    }
  },
  'formatters': {
    'precise': {
      'format': '%(asctime)s %(levelname)-8s %(name)-15s %(message)s',
      'datefmt': '%Y-%m-%d %H:%M:%S'
    }
  },
  'loggers': {
    'gunicorn.error': {
      'handlers': ['default'],
      'level': 'INFO',
      'propagate': False
    },
    'gunicorn.access': {
      'handlers': ['default'],
      'level': 'INFO',
      'propagate': False
    },
    '': {
      'handlers': ['default'],
      'level': 'INFO'
    }
  }
}


def strip_margin(text):
    return re.sub(r'\n[ \t]*\|', '\n', text)


def make_file_service(dir, lock_call_timeout=None, **kwargs):
    """Builds a :class:`FileService` over the storage root ``dir``.

    The Berkeley DB environment in ``<dir>/db`` must have been initialized
    with :func:`db_init`. Closing the service closes the environment.

    Unlike a bare :class:`FileService`, every lock service call and every
    storage or store step is bounded, by ``FILEWARDEN_LOCK_CALL_TIMEOUT``
    and ``FILEWARDEN_IO_TIMEOUT`` unless given as arguments.
    """
    if lock_call_timeout is None:
        lock_call_timeout = float(os.environ.get(
            'FILEWARDEN_LOCK_CALL_TIMEOUT', _DEFAULT_LOCK_CALL_TIMEOUT_S))
    if kwargs.get('io_timeout') is None:
        kwargs['io_timeout'] = float(os.environ.get(
            'FILEWARDEN_IO_TIMEOUT', _DEFAULT_IO_TIMEOUT_S))

    environment = BsddbEnvironment(os.path.join(dir, 'db'))
    store = BsddbMetadataStore(environment)
    versions = VersionCounter(BsddbCounterService(environment))
    lock_manager = LockManager(FcntlLockService(os.path.join(dir, 'locks')),
                               call_timeout=lock_call_timeout)
    return FileService(FileStorage(dir), store, lock_manager, versions,
                       **kwargs)


def main(args=None):
    parser = OptionParser()
    parser.add_option('-p', '--port', dest='port', default=DEFAULT_PORT,
            type='int',
            help="Listen on specified port number")
    parser.add_option('-l', '--listen-on', dest='listen_on',
            default='127.0.0.1',
            help="Listen on specified address")
    parser.add_option('-d', '--dir', dest='dir', default=None,
            help="Specify storage root (taken from FILEWARDEN_DIR "
                 "environment variable if not present)")
    parser.add_option('-L', '--log', dest='log', default=None,
            help="Log file location (stderr by default)")
    parser.add_option('--log-config', dest='log_config', default=None,
            help="Logging configuration (in JSON). Takes precedence over -L")
    parser.add_option('-D', '--no-daemon', dest='daemonize',
            action='store_false', default=True,
            help="Do not daemonize, stay in foreground")
    parser.add_option('--workers', dest='workers', type='int',
            default=2 * multiprocessing.cpu_count(),
            help="Specifies the amount of worker processes to use")
    parser.add_option('--pool-size', dest='pool_size', type='int',
            default=4,
            help="Number of task workers in each worker process")
    parser.add_option('--lock-ttl', dest='lock_ttl', type='float',
            default=30,
            help="Lifetime of file leases, in seconds; must exceed "
                 "the longest upload")
    parser.add_option('--reconcile-interval', dest='reconcile_interval',
            type='float', default=0,
            help="Seconds between periodic reconciliation passes "
                 "(0 disables them, a pass always runs at startup)")
    parser.add_option('--io-timeout', dest='io_timeout', type='float',
            default=_DEFAULT_IO_TIMEOUT_S,
            help="Bound on each storage or metadata step of a task, "
                 "in seconds")
    parser.add_option('--lock-call-timeout', dest='lock_call_timeout',
            type='float', default=_DEFAULT_LOCK_CALL_TIMEOUT_S,
            help="Bound on a single call to the lock service, in seconds")
    options, args = parser.parse_args(args)
    if args:
        parser.error("Unrecognized arguments: " + ' '.join(args))

    if not options.dir:
        options.dir = os.environ['FILEWARDEN_DIR']

    if options.log_config:
        with open(options.log_config) as f:
            log_config = json.load(f)
    else:
        log_config = _DEFAULT_LOG_CONFIG
        if options.log:
            log_config['handlers']['default'] = {
                'class': 'logging.handlers.RotatingFileHandler',
                'formatter': 'precise',
                'filename': options.log,
                'maxBytes': 1024 * 1024,
                'backupCount': 3
            }

    logging.config.dictConfig(log_config)

    storage_dir = os.path.abspath(options.dir)
    if not os.path.exists(storage_dir):
        os.makedirs(storage_dir, 0o700)

    db_init(os.path.join(storage_dir, 'db'))
    startup_reconcile(storage_dir, options.lock_ttl,
                      io_timeout=options.io_timeout,
                      lock_call_timeout=options.lock_call_timeout)

    gunicorn_settings = strip_margin("""
        |import logging
        |import os
        |import signal
        |
        |logger = logging.getLogger('gunicorn.config')
        |
        |bind = ['{listen_on}:{port}']
        |daemon = {daemonize}
        |workers = {workers}
        |worker_class = 'gevent'
        |raw_env = ['FILEWARDEN_DIR={storage_dir}',
        |           'FILEWARDEN_POOL_SIZE={pool_size}',
        |           'FILEWARDEN_LOCK_TTL={lock_ttl}',
        |           'FILEWARDEN_RECONCILE_INTERVAL={reconcile_interval}',
        |           'FILEWARDEN_IO_TIMEOUT={io_timeout}',
        |           'FILEWARDEN_LOCK_CALL_TIMEOUT={lock_call_timeout}']
        |timeout = 5*60
        |
        |logconfig_dict = {logconfig_dict}
        |
        |def worker_exit(server, worker):
        |    # See module docstring for why this is required.
        |    logger.info(
        |        'worker_exit() hook: sending SIGTERM to gunicorn server')
        |    os.kill(os.getppid(), signal.SIGTERM)
        """.format(
        listen_on=options.listen_on,
        port=options.port,
        daemonize=options.daemonize,
        workers=options.workers,
        storage_dir=storage_dir,
        pool_size=options.pool_size,
        lock_ttl=options.lock_ttl,
        reconcile_interval=options.reconcile_interval,
        io_timeout=options.io_timeout,
        lock_call_timeout=options.lock_call_timeout,
        logconfig_dict=repr(log_config),
    ))

    conf_fd, conf_path = tempfile.mkstemp(text=True)
    try:
        conf_file = os.fdopen(conf_fd, 'w')
        conf_file.write(gunicorn_settings)
        conf_file.close()

        args = ['gunicorn', '-c', conf_path,
                'filewarden.servers.run:gunicorn_entry']

        try:
            popen = subprocess.Popen(args)
        except OSError as e:
            raise RuntimeError('Cannot run gunicorn:\n%s' % e)

        signal.signal(signal.SIGINT, lambda signum, frame: popen.terminate())
        signal.signal(signal.SIGTERM, lambda signum, frame: popen.terminate())
        popen.communicate()
        retval = popen.returncode
        if not options.daemonize:
            sys.exit(retval)
        if retval:
            raise RuntimeError('gunicorn exited with code %d' % retval)
    finally:
        # At this point gunicorn does not need the configuration file, so it
        # can be safely deleted.
        os.unlink(conf_path)


def startup_reconcile(storage_dir, lock_ttl, io_timeout=None,
                      lock_call_timeout=None):
    """Runs before any worker starts, so no upload can be in flight.

    A failure is logged and the server starts anyway, the next pass
    (periodic or requested) will try again.
    """
    service = make_file_service(storage_dir, lock_ttl=lock_ttl,
                                io_timeout=io_timeout,
                                lock_call_timeout=lock_call_timeout,
                                reconcile_interval=0)
    try:
        try:
            removed = service.storage.cleanup_staging()
        except OSError:
            logger.warning('Could not remove leftovers of interrupted '
                           'uploads.', exc_info=True)
        else:
            if removed:
                logger.info('Removed %d leftovers of interrupted uploads.',
                            removed)
        report = service.reconcile_logged()
        if report is not None:
            logger.info('Startup reconciliation: %s', report)
    finally:
        service.close()


# This service instance is cached between requests within one WSGI process.
filewarden_instance = None


def gunicorn_entry(env, start_response):
    global filewarden_instance
    if filewarden_instance is None:
        service = make_file_service(os.environ['FILEWARDEN_DIR'])
        # The manager has already reconciled the storage.
        service.start(reconcile=False)
        filewarden_instance = FilewardenServer(service)
    return filewarden_instance(env, start_response)


if __name__ == '__main__':
    main()
