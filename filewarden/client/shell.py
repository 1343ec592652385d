from optparse import OptionParser
import json
import logging

from filewarden.client import RemoteClient


def _make_command_parser(cmd, extra_usage=''):
    usage = "usage: %prog [options] command [command-specific options] " \
            + extra_usage
    description = "Help for command '%s'" % cmd
    return OptionParser(usage=usage, description=description)


def _print_json(data):
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_put(client, *args):
    parser = _make_command_parser('put', "local_filename [name]")
    options, args = parser.parse_args(list(args))
    if not args:
        parser.error("Missing local filename")
    if len(args) > 2:
        parser.error("Too many arguments")
    name = args[1] if len(args) == 2 else None
    result = client.upload_file(args[0], name)
    if not result['isNew']:
        logging.info('Identical file already stored, nothing uploaded.')
    print(result['fileId'])


def cmd_rm(client, *args):
    parser = _make_command_parser('rm', "file_id")
    options, args = parser.parse_args(list(args))
    if not args:
        parser.error("Missing file id")
    if len(args) > 1:
        parser.error("Too many arguments")
    client.delete_file(args[0])


def cmd_purge(client, *args):
    parser = _make_command_parser('purge')
    options, args = parser.parse_args(list(args))
    if args:
        parser.error("Too many arguments")
    deleted = client.delete_all()
    logging.info('Deleted %d files.', len(deleted))


def cmd_setstatus(client, *args):
    parser = _make_command_parser('setstatus', "file_id status")
    options, args = parser.parse_args(list(args))
    if len(args) < 2:
        parser.error("Missing file id or status")
    if len(args) > 2:
        parser.error("Too many arguments")
    _print_json(client.set_status(args[0], args[1]))


def cmd_ls(client, *args):
    parser = _make_command_parser('ls')
    options, args = parser.parse_args(list(args))
    if args:
        parser.error("Too many arguments")
    for record in client.list_files():
        print('%s  %s  %s  %s' % (record['fileId'], record['checksum'],
                                  record['creationDate'], record['fileName']))


def cmd_info(client, *args):
    parser = _make_command_parser('info', "file_id")
    options, args = parser.parse_args(list(args))
    if not args:
        parser.error("Missing file id")
    if len(args) > 1:
        parser.error("Too many arguments")
    _print_json(client.file_info(args[0]))


def cmd_reconcile(client, *args):
    parser = _make_command_parser('reconcile')
    options, args = parser.parse_args(list(args))
    if args:
        parser.error("Too many arguments")
    _print_json(client.reconcile())


def cmd_status(client, *args):
    parser = _make_command_parser('status')
    options, args = parser.parse_args(list(args))
    if args:
        parser.error("Too many arguments")
    _print_json(client.status())


def main():
    usage = "usage: %prog [options] command [command-specific options]"
    commands = [s for s in globals() if s.startswith('cmd_')]
    commands = sorted([s[4:] for s in commands])
    epilog = """
The server URL is taken from the FILEWARDEN_URL environment variable
if not specified on the command line.

Each command has its own --help text.

Supported commands: %s.""" % ', '.join(commands)
    parser = OptionParser(usage=usage, epilog=epilog)
    parser.disable_interspersed_args()

    parser.add_option('-r', '--remote-url', dest='remote_url', default=None,
            help="URL of the filewarden server")
    parser.add_option('-v', '--verbose', dest='verbose', default=0,
            action='count', help="Be verbose")

    options, args = parser.parse_args()
    if not args:
        parser.error("Missing command. Try --help for list of available "
                "commands.")
    cmd = globals().get('cmd_' + args[0],
            lambda *a: parser.error("Unknown command: " + args[0]))

    level = logging.WARNING
    if options.verbose:
        level = logging.DEBUG
    logging.basicConfig(
            format="%(asctime)-15s %(name)s %(levelname)s: %(message)s",
            level=level)

    client = RemoteClient(options.remote_url)
    cmd(client, *args[1:])


if __name__ == '__main__':
    main()
