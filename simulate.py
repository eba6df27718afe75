#!/usr/bin/env python

import sys
from os import path
sys.path.insert(0, path.dirname(path.abspath(__file__)))

from datetime import timedelta

from snapkeeper.test import BackupSimulator


DEFAULT_POLICY = '3r 7d 4w 6m 2y'


def main(argv):
    if '-h' in argv:
        print("./simulate.py [backup-timestamps]")
        return 1

    # Do some default simulation: a backup every day for a year
    if not argv:
        s = BackupSimulator(DEFAULT_POLICY)

        until = s.now + timedelta(days=365)
        while s.now <= until:
            s.go_by(timedelta(days=1))
            s.backup()

        for name, date in s.backups.items():
            print(name)

    # Simulate a backup with the timestamps given
    else:
        s = BackupSimulator(DEFAULT_POLICY)
        s.add([d for d in argv])
        deleted, _ = s.expire()

        print("Deleted backups:")
        for name in deleted:
            print(name)

        print("")
        print("Remaining backups:")
        for name, date in s.backups.items():
            print(name)


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]) or 0)
