from collections import OrderedDict
from datetime import datetime

from .config import parse_policy
from .expire import expire as default_expire_func
from .script import parse_date


__all__ = ('BackupSimulator',)


class BackupSimulator(object):
    """Helper to simulate making backups, and expire old ones, at
    various points in time.
    """

    def __init__(self, policy, expire_func=default_expire_func):
        if isinstance(policy, str):
            policy = parse_policy(policy)
        self.policy = policy
        self.expire_func = expire_func
        self.now = datetime.now()
        self.backups = OrderedDict()

    def add(self, backups):
        for dt in backups:
            if isinstance(dt, str):
                dt = parse_date(dt)
            self.backups[str(dt)] = dt

    def go_to(self, dt):
        self.now = dt

    def go_by(self, td):
        self.now += td

    def backup(self, expire=True):
        self.add([self.now])
        if expire:
            return self.expire()

    def expire(self):
        keep = self.expire_func(self.backups, self.policy)
        deleted = [key for key in self.backups if key not in keep]
        for key in deleted:
            del self.backups[key]
        return deleted, keep
