import argparse
from datetime import datetime
import logging
import os
from os import path
from string import Template
import re
import sys
import uuid
from fnmatch import fnmatch

import dateutil.parser
from rich.console import Console
from rich.text import Text

from . import config, expire
from .config import Job
from .expire import BackupEntry, GenerationPolicy


class ArgumentError(Exception):
    pass


class BackendError(Exception):
    pass


TIER_STYLES = {
    'Recent': 'red',
    'Daily': 'yellow',
    'Weekly': 'cyan',
    'Monthly': 'blue',
    'Yearly': 'magenta',
}

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


class DirectoryBackend(object):
    """
    The code that looks at, and deletes from, a directory of backups.

    The retention decision itself is made by ``expire.select``; this
    class only feeds it with the backups found on disk and acts upon
    the result.
    """

    def __init__(self, log, console=None, dryrun=False, verbose=False):
        """
        In ``dryrun`` mode, the class will only pretend to delete
        backups. Decisions are printed to ``console`` in dry-run and
        ``verbose`` mode.
        """
        self.log = log
        self.console = console or Console(highlight=False, soft_wrap=True)
        self.dryrun = dryrun
        self.verbose = verbose

    def get_directory(self, job):
        directory = Template(job.directory).safe_substitute(
            {'name': job.name or ''})
        return path.abspath(path.expanduser(directory))

    def _list_directory(self, directory):
        """Return a dict of file name => modification time for all the
        regular files in ``directory``.
        """
        self.log.debug("Listing: %s", directory)
        files = {}
        try:
            with os.scandir(directory) as it:
                for item in it:
                    if not item.is_file():
                        continue
                    files[item.name] = datetime.fromtimestamp(
                        item.stat().st_mtime)
        except OSError as e:
            raise BackendError('Cannot list backups in %s: %s' % (directory, e))
        return files

    def _remove(self, filename):
        self.log.debug("Removing: %s", filename)
        try:
            os.remove(filename)
        except FileNotFoundError:
            self.log.warning("'%s' is already gone", filename)
        except OSError as e:
            raise BackendError('Cannot delete %s: %s' % (filename, e))

    def get_backups(self, job):
        """Return a dict of backups that exist for the given job, mapping
        the file name to the time of the backup.
        """
        files = self._list_directory(self.get_directory(job))

        if not job.target:
            pattern = job.pattern or '*'
            return dict((name, mtime) for name, mtime in files.items()
                        if fnmatch(name, pattern))

        # Assemble a regular expression that matches the job's target
        # filenames, and read the date from the name.
        unique = uuid.uuid4().hex
        target = Template(job.target).safe_substitute(
            {'name': job.name or '', 'date': unique})
        regex = re.compile("^%s$" %
                           re.escape(target).replace(unique, '(?P<date>.*?)'))

        backups = {}
        for name in files:
            match = regex.match(name)
            if not match:
                continue
            try:
                date = parse_date(match.group('date'), job.dateformat)
            except (ValueError, OverflowError) as e:
                # When two targets share a prefix, say "home-$date" and
                # "home-dev-$date", the generic date group will also match
                # the other job's files. Warn, but carry on.
                self.log.exception("Ignoring '%s': %s", name, e)
            else:
                backups[name] = date

        return backups

    def decide(self, job):
        """Return a list of ``Decision`` objects for the job's backups,
        most recent first.
        """
        backups = self.get_backups(job)
        entries = [BackupEntry(name, dt) for name, dt in backups.items()]
        decisions = expire.select(entries, job.policy or GenerationPolicy())
        decisions.sort(key=lambda d: expire.recency(d.entry), reverse=True)
        return decisions

    def report(self, decision):
        line = Text('[ ')
        if decision.retain:
            line.append('Keeping ')
            line.append(('(%s)' % decision.tier).ljust(9),
                        style=TIER_STYLES[decision.tier])
        else:
            line.append('Deleting'.ljust(17), style='red')
        line.append(' ] ')
        line.append(decision.entry.name)
        line.append(' %s' % decision.entry.modified.strftime(TIMESTAMP_FORMAT))
        self.console.print(line)

    def expire(self, job):
        """Delete those backups of the job which we do not need to keep
        according to its policy.
        """
        decisions = self.decide(job)
        self.log.info('%d backups are matching', len(decisions))

        to_keep = sorted(d.entry.name for d in decisions if d.retain)
        to_delete = sorted(d.entry.name for d in decisions if not d.retain)
        self.log.info('%d of those can be deleted', len(to_delete))

        if self.dryrun or self.verbose:
            for decision in decisions:
                self.report(decision)

        self.log.debug('Keeping %s', ' '.join(to_keep))

        if len(to_delete) == 0:
            return decisions

        self.log.info('Deleting %s', ' '.join(to_delete))

        if not self.dryrun:
            directory = self.get_directory(job)
            for name in to_delete:
                self._remove(path.join(directory, name))
        return decisions


def parse_date(string, dateformat=None):
    """Parse a date string, either using the given format, or by
    relying on python-dateutil.

    Dates carrying a timezone are converted to naive local time, so they
    compare with file modification times and with each other.
    """
    if dateformat:
        date = datetime.strptime(string, dateformat)
    else:
        date = dateutil.parser.parse(string)
    if date.tzinfo is not None:
        date = date.astimezone().replace(tzinfo=None)
    return date


def quota_string(value):
    """Parse a string like ``7d`` to a (generation, count) tuple.
    """
    try:
        return config.str_to_quota(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            'invalid quota: %s (suffix r, d, w, m, y allowed)' % e)


def quota_count(value):
    try:
        count = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError('invalid count: %r' % value)
    if count < 0:
        raise argparse.ArgumentTypeError('count must not be negative: %r' % value)
    return count


def policy_from_args(args):
    """Combine ``--keep`` and the ``--keep-<generation>`` options into
    a ``GenerationPolicy``.
    """
    quotas = {}
    for field, count in (args.keep or []):
        if field in quotas:
            raise ArgumentError('--keep gives the %s generation more than '
                                'once' % field)
        quotas[field] = count
    for field in GenerationPolicy._fields:
        count = getattr(args, 'keep_%s' % field)
        if count is None:
            continue
        if field in quotas:
            raise ArgumentError('The %s generation is given by both --keep '
                                'and --keep-%s' % (field, field))
        quotas[field] = count
    return GenerationPolicy(**quotas)


class Command(object):

    BackendClass = DirectoryBackend

    def __init__(self, args, log, console=None, backend_class=None):
        self.args = args
        self.log = log
        self.backend = (backend_class or self.BackendClass)(
            self.log, console,
            dryrun=getattr(self.args, 'dryrun', False),
            verbose=getattr(self.args, 'verbose', False))

    @classmethod
    def setup_arg_parser(self, parser):
        pass

    @classmethod
    def validate_args(self, args):
        pass

    def run(self, job):
        raise NotImplementedError()


class ListCommand(Command):

    help = 'list the existing backups and what would become of them'
    description = 'For each job, output the existing backups, most ' \
                  'recent first, and whether they would be kept or deleted.'

    def run(self, job):
        self.log.info('%s', (job.name or "Unnamed job"))
        if not job.policy or not job.policy.keeps_anything():
            # Without a policy we can't decide anything, just list.
            backups = sorted(self.backend.get_backups(job).items(),
                             key=lambda x: (x[1], x[0]), reverse=True)
            for backup, _ in backups:
                print("  %s" % backup)
            return

        for decision in self.backend.decide(job):
            self.backend.report(decision)


class ExpireCommand(Command):

    help = 'delete old backups'
    description = 'For each job defined, determine which backups can ' \
                  'be deleted according to its policy, and then delete them.'

    @classmethod
    def setup_arg_parser(self, parser):
        parser.add_argument('--dry-run', dest='dryrun', action='store_true',
                            help='only simulate, don\'t delete anything')

    @classmethod
    def validate_args(self, args):
        if not args.config and not args.policy.keeps_anything():
            raise ArgumentError('Must specify some backups to keep')

    def __init__(self, *a, **kw):
        Command.__init__(self, *a, **kw)
        if self.backend.dryrun:
            self.log.warning('Dry run mode. Not deleting any files.')

    def run(self, job):
        if not job.policy or not job.policy.keeps_anything():
            self.log.info("Skipping '%s', does not define a policy", job.name)
            return

        self.backend.expire(job)


COMMANDS = {
    'expire': ExpireCommand,
    'list': ListCommand,
}


def parse_args(argv):
    """Parse the command line.
    """
    parser = argparse.ArgumentParser(
        description='Prune a directory of backups, keeping generations of '
                    'recent, daily, weekly, monthly and yearly backups.')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('-q', action='store_true', dest='quiet', help='be quiet')
    group.add_argument('-v', action='store_true', dest='verbose', help='be verbose')
    parser.add_argument('--no-color', dest='no_color', action='store_true',
                        help='don\'t use colors in the output')
    parser.add_argument('--config', '-c', help='use the given config file')

    group = parser.add_argument_group(
        description='Instead of using a configuration file, you may define '
                    'a single job on the command line:')
    group.add_argument('--dir', dest='directory',
                       help='directory holding the backups')
    group.add_argument('--pattern', help='only consider files matching '
                                         'this glob pattern')
    group.add_argument('--target', help='backup filename, with $date '
                                        'standing for the time of the backup')
    group.add_argument('--dateformat', '-f', help='dateformat')
    group.add_argument('--keep', metavar='QUOTA', type=quota_string,
                       nargs='+', help='generation quotas, like 3r 7d 4w')
    for field in GenerationPolicy._fields:
        group.add_argument('--keep-%s' % field, dest='keep_%s' % field,
                           metavar='N', type=quota_count,
                           help='%s backups to keep, default is 0' %
                                field.capitalize())

    # This will allow the user to break out of an nargs='+' to start
    # with the subcommand. See http://bugs.python.org/issue9571.
    parser.add_argument('-', dest='__dummy', action="store_true",
                        help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(
        title="commands", dest='command_name',
        description="commands may offer additional options")
    subparsers.required = True
    for cmd_name, cmd_klass in COMMANDS.items():
        subparser = subparsers.add_parser(cmd_name, help=cmd_klass.help,
                                          description=cmd_klass.description,
                                          add_help=False)
        subparser.set_defaults(command=cmd_klass)
        group = subparser.add_argument_group(
            title="optional arguments for this command")
        # We manually add the --help option so that we can have a
        # custom group title, but only show a single group.
        group.add_argument('-h', '--help', action='help',
                           default=argparse.SUPPRESS,
                           help='show this help message and exit')
        cmd_klass.setup_arg_parser(group)
        subparser.add_argument(
            'jobs', metavar='job', nargs='*',
            help='only process the given job as defined in the config file')

    args = parser.parse_args(argv)

    # Do some argument validation that would be to much to ask for
    # argparse to handle internally.
    single_job_options = [args.directory, args.pattern, args.target,
                          args.dateformat, args.keep] + [
        getattr(args, 'keep_%s' % f) for f in GenerationPolicy._fields]
    if args.config and any(o is not None for o in single_job_options):
        raise ArgumentError('If --config is used, then --dir, --pattern, '
                            '--target, --dateformat and the --keep options '
                            'are not available')
    if args.jobs and not args.config:
        raise ArgumentError(('Specific jobs (%s) can only be given if a '
                            'config file is used') % ", ".join(args.jobs))
    if not args.config:
        if not args.directory:
            raise ArgumentError('Since you are not using a config file, '
                                'you need to give --dir')
        if args.target and args.pattern:
            raise ArgumentError('Use either --target or --pattern, not both')
        if args.target and '$date' not in args.target:
            raise ArgumentError('--target must make use of the $date '
                                'placeholder')
        args.policy = policy_from_args(args)
    else:
        args.policy = None
    # The command may want to do some validation regarding it's own options.
    args.command.validate_args(args)

    return args


def main(argv):
    try:
        args = parse_args(argv)
    except ArgumentError as e:
        print("Error: %s" % e)
        return 1

    # Setup logging
    level = logging.WARNING if args.quiet else (
        logging.DEBUG if args.verbose else logging.INFO)
    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter("%(message)s"))
    log = logging.getLogger()
    log.setLevel(level)
    log.addHandler(ch)

    console = Console(no_color=args.no_color, highlight=False, soft_wrap=True)

    # Build a list of jobs, process them.
    if args.config:
        try:
            jobs, global_config = config.load_config_from_file(args.config)
        except (config.ConfigError, IOError):
            log.exception("Error loading config file:")
            return 1
    else:
        # Only a single job, as given on the command line
        jobs = {None: Job(**{'directory': args.directory,
                             'pattern': args.pattern,
                             'target': args.target,
                             'dateformat': args.dateformat,
                             'policy': args.policy})}

    # Validate the requested list of jobs to run
    if args.jobs:
        unknown = set(args.jobs) - set(jobs.keys())
        if unknown:
            log.error('Error: not defined in the config file: %s', ", ".join(unknown))
            return 1
        jobs_to_run = dict([(n, j) for n, j in jobs.items() if n in args.jobs])
    else:
        jobs_to_run = jobs

    command = args.command(args, log, console)
    try:
        for job in jobs_to_run.values():
            command.run(job)
    except BackendError as e:
        log.error("Error: %s", e)
        return 1


def run():
    sys.exit(main(sys.argv[1:]) or 0)


if __name__ == '__main__':
    run()
