from collections import namedtuple, OrderedDict


__all__ = ('BackupEntry', 'GenerationPolicy', 'Decision', 'TIERS',
           'select', 'expire',)


BackupEntry = namedtuple('BackupEntry', 'name modified')


class GenerationPolicy(namedtuple('GenerationPolicy',
                                  'recent daily weekly monthly yearly')):
    """How many backups each generation keeps. A quota of 0 disables
    the generation.
    """
    __slots__ = ()

    def __new__(cls, recent=0, daily=0, weekly=0, monthly=0, yearly=0):
        self = super(GenerationPolicy, cls).__new__(
            cls, recent, daily, weekly, monthly, yearly)
        for field, value in zip(self._fields, self):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError('%s: quota must be an integer, not %r' % (
                    field, value))
            if value < 0:
                raise ValueError('%s: quota must not be negative' % field)
        return self

    def keeps_anything(self):
        return any(self)

    def __str__(self):
        return ' '.join('%s=%d' % (f, v) for f, v in zip(self._fields, self)
                        if v) or 'nothing'


class Decision(namedtuple('Decision', 'entry tier')):
    """The verdict for a single entry. ``tier`` names the generation which
    keeps the entry, or is None if the entry can be deleted.
    """
    __slots__ = ()

    @property
    def retain(self):
        return self.tier is not None


def daily_key(dt):
    return '%04d-%02d-%02d' % (dt.year, dt.month, dt.day)


def weekly_key(dt):
    year, week, _ = dt.isocalendar()
    return '%04d-W%02d' % (year, week)


def monthly_key(dt):
    return '%04d-%02d' % (dt.year, dt.month)


def yearly_key(dt):
    return '%04d' % dt.year


# Order matters: each generation only sees what the previous ones left.
CALENDAR_TIERS = (
    ('Daily', 'daily', daily_key),
    ('Weekly', 'weekly', weekly_key),
    ('Monthly', 'monthly', monthly_key),
    ('Yearly', 'yearly', yearly_key),
)

TIERS = ('Recent',) + tuple(label for label, _, _ in CALENDAR_TIERS)


def recency(entry):
    return entry.modified, entry.name


def select(entries, policy):
    """Given a list of ``BackupEntry`` items and a ``GenerationPolicy``,
    decide which of the backups to keep, using a grandfather-father-son
    strategy with calendar based generations.

    * The ``recent`` newest backups are always kept.

    * For each of the daily, weekly, monthly and yearly generations,
      the backups not already kept by an earlier generation are put into
      buckets by calendar day, ISO week, month or year. The newest backup
      of each bucket represents it, and the newest ``quota`` of these
      representatives are kept.

    The outcome does not depend on the order of ``entries``; if two
    backups share a timestamp, the one whose name sorts last counts as
    the newer one.

    Returned is a list of ``Decision`` objects, in the order of
    ``entries``.
    """
    entries = list(entries)
    by_recency = sorted(entries, key=recency, reverse=True)

    kept = {}
    for entry in by_recency:
        if entry.name in kept:
            raise ValueError('Duplicate backup name: %s' % entry.name)
        kept[entry.name] = None

    for entry in by_recency[:policy.recent]:
        kept[entry.name] = 'Recent'

    for label, field, bucket_key in CALENDAR_TIERS:
        quota = getattr(policy, field)
        if not quota:
            continue

        # Walking newest first, the first entry we see for a bucket is
        # its representative, and the representatives come out sorted.
        representatives = OrderedDict()
        for entry in by_recency:
            if kept[entry.name] is not None:
                continue
            representatives.setdefault(bucket_key(entry.modified), entry)

        candidates = list(representatives.values())
        if len(candidates) > quota:
            candidates = candidates[:quota]
        for entry in candidates:
            kept[entry.name] = label

    return [Decision(entry, kept[entry.name]) for entry in entries]


def expire(backups, policy):
    """Given a dict of backup name => backup timestamp pairs in
    ``backups``, return the list of names to keep under ``policy``.
    """
    entries = [BackupEntry(name, dt) for name, dt in backups.items()]
    return [d.entry.name for d in select(entries, policy) if d.retain]
