"""Script for restoring consistency of a filewarden storage offline."""

import argparse
import logging
import os
import sys

from filewarden.errors import ResourceLocked
from filewarden.scripts import progress_bar
from filewarden.servers.run import make_file_service
from filewarden.store.bsddb_store import db_init


logger = logging.getLogger(__name__)


_DESCRIPTION = """
Restores consistency between stored files and their metadata.


Every file found in storage gets a metadata record (files that appeared
out of band are registered under a new id), and records of files which
are gone are removed.

The pass takes the same leases as a running server, so it is safe to
run next to one, but it is refused while the server's own pass runs.
Leftovers of interrupted uploads are only deleted with --clean-staging,
which must not be used while a server is running: it would delete
uploads still in progress.
"""


def main(argv=None):
    parser = argparse.ArgumentParser(description=_DESCRIPTION)
    parser.add_argument('root', help='root directory of filewarden storage')
    parser.add_argument('-s', '--silent', action='store_true',
            help='if set, progress bar is not printed')
    parser.add_argument('--clean-staging', action='store_true',
            help='if set, leftovers of interrupted uploads are deleted '
                 '(only when no server is running)')

    args = parser.parse_args(argv)
    root = args.root
    silent = args.silent

    logging.basicConfig(
            format="%(asctime)-15s %(name)s %(levelname)s: %(message)s",
            level=logging.WARNING if silent else logging.INFO)

    ensure_storage_format(root)
    db_init(os.path.join(root, 'db'))

    service = make_file_service(root, reconcile_interval=0)
    try:
        if args.clean_staging:
            removed = service.storage.cleanup_staging()
            logger.info('Removed %d leftovers of interrupted uploads.',
                        removed)

        widgets = progress_bar.counter_widgets('Reconciling')
        with progress_bar.conditional(show=not silent,
                                      widgets=widgets) as bar:
            try:
                report = service.reconcile_now(progress=bar.update)
            except ResourceLocked:
                print('Another reconciliation pass is running.')
                sys.exit(1)
    finally:
        service.close()

    if not silent:
        print('Completed: {} inserted, {} updated, {} deleted, '
              '{} skipped, {} errors.'.format(*report))
    if report.errors:
        sys.exit(2)


def ensure_storage_format(root_dir):
    """Checks if the directory looks like a filewarden storage.

    Exits with error if it doesn't.
    """
    if not os.path.isdir(os.path.join(root_dir, 'files')):
        print('"files/" directory not found')
        sys.exit(1)


if __name__ == '__main__':
    main()
