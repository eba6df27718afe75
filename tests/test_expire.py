from datetime import datetime, timedelta

import pytest

from snapkeeper.expire import (
    BackupEntry, GenerationPolicy, Decision, TIERS, CALENDAR_TIERS,
    select, expire, weekly_key)
from snapkeeper.test import BackupSimulator


def entries_every(hours, count, start=datetime(2022, 1, 3, 1, 30)):
    return [BackupEntry('backup-%04d' % i, start + timedelta(hours=hours * i))
            for i in range(count)]


def kept(decisions):
    return dict((d.entry.name, d.tier) for d in decisions if d.retain)


def check_invariants(entries, policy):
    decisions = select(entries, policy)
    # one decision per entry, in input order
    assert [d.entry for d in decisions] == list(entries)
    for tier, quota in zip(TIERS, policy):
        assert len([d for d in decisions if d.tier == tier]) <= quota
    for label, _, bucket_key in CALENDAR_TIERS:
        keys = [bucket_key(d.entry.modified) for d in decisions
                if d.tier == label]
        assert len(keys) == len(set(keys))
    return decisions


def test_same_day_counts_once():
    """Two backups on the same day only count once against the daily
    quota, so the newer day wins."""
    day0 = datetime(2024, 5, 1)
    entries = [
        BackupEntry('a', day0.replace(hour=8)),
        BackupEntry('b', day0.replace(hour=20)),
        BackupEntry('c', day0 + timedelta(days=1, hours=9)),
    ]
    decisions = select(entries, GenerationPolicy(daily=1))
    assert kept(decisions) == {'c': 'Daily'}


def test_nothing_to_keep():
    decisions = check_invariants(entries_every(5, 30), GenerationPolicy())
    assert len(decisions) == 30
    assert not any(d.retain for d in decisions)


def test_recent_keeps_everything_available():
    entries = entries_every(24 * 40, 2)
    decisions = select(entries, GenerationPolicy(recent=2, yearly=3))
    assert kept(decisions) == {'backup-0000': 'Recent',
                               'backup-0001': 'Recent'}


def test_one_per_day():
    entries = entries_every(24, 10)
    decisions = check_invariants(entries, GenerationPolicy(daily=3))
    assert sorted(kept(decisions)) == ['backup-0007', 'backup-0008',
                                       'backup-0009']
    assert len([d for d in decisions if not d.retain]) == 7


def test_iso_weeks_across_new_year():
    """2023-12-31 is a Sunday in ISO week 52, the next day already
    belongs to week 1 of 2024."""
    entries = [
        BackupEntry('fri', datetime(2023, 12, 29, 12)),
        BackupEntry('sun', datetime(2023, 12, 31, 12)),
        BackupEntry('mon', datetime(2024, 1, 1, 12)),
    ]
    assert weekly_key(datetime(2023, 12, 31)) == '2023-W52'
    assert weekly_key(datetime(2024, 1, 1)) == '2024-W01'

    assert kept(select(entries, GenerationPolicy(weekly=1))) == {
        'mon': 'Weekly'}
    assert kept(select(entries, GenerationPolicy(weekly=2))) == {
        'mon': 'Weekly', 'sun': 'Weekly'}


def test_iso_week_year_differs_from_calendar_year():
    assert weekly_key(datetime(2021, 1, 1)) == '2020-W53'
    assert weekly_key(datetime(2019, 12, 30)) == '2020-W01'


def test_empty():
    assert select([], GenerationPolicy(recent=3, daily=7)) == []
    assert expire({}, GenerationPolicy(daily=1)) == []


def test_quota_larger_than_buckets():
    entries = entries_every(12, 6)   # two backups a day, three days
    decisions = check_invariants(entries, GenerationPolicy(daily=100))
    assert sorted(kept(decisions)) == ['backup-0001', 'backup-0003',
                                       'backup-0005']


def test_input_order_does_not_matter():
    entries = entries_every(7, 300)
    policy = GenerationPolicy(recent=2, daily=5, weekly=4, monthly=3, yearly=1)
    forward = kept(select(entries, policy))
    backward = kept(select(list(reversed(entries)), policy))
    assert forward == backward
    assert forward == kept(select(entries, policy))


def test_same_timestamp_broken_by_name():
    dt = datetime(2024, 2, 2, 2, 2)
    entries = [BackupEntry('a', dt), BackupEntry('c', dt), BackupEntry('b', dt)]
    assert kept(select(entries, GenerationPolicy(recent=1))) == {'c': 'Recent'}
    assert kept(select(entries, GenerationPolicy(daily=1))) == {'c': 'Daily'}


def test_tiers_in_priority_order():
    entries = [
        BackupEntry('d2-late', datetime(2024, 4, 10, 23)),
        BackupEntry('d2-mid', datetime(2024, 4, 10, 12)),
        BackupEntry('d2-early', datetime(2024, 4, 10, 1)),
        BackupEntry('d1', datetime(2024, 4, 9, 12)),
        BackupEntry('march', datetime(2024, 3, 20, 12)),
        BackupEntry('last-year', datetime(2023, 6, 1, 12)),
    ]
    policy = GenerationPolicy(recent=1, daily=2, weekly=1, monthly=1, yearly=1)
    assert kept(check_invariants(entries, policy)) == {
        'd2-late': 'Recent',
        'd2-mid': 'Daily',
        'd1': 'Daily',
        'd2-early': 'Weekly',
        'march': 'Monthly',
        'last-year': 'Yearly',
    }


def test_later_tier_picks_up_leftovers():
    """Entries a tier passes over are still candidates for the next
    one."""
    entries = [
        BackupEntry('morning', datetime(2024, 7, 3, 8)),
        BackupEntry('evening', datetime(2024, 7, 3, 20)),
    ]
    decisions = select(entries, GenerationPolicy(daily=1, weekly=1))
    assert kept(decisions) == {'evening': 'Daily', 'morning': 'Weekly'}


def test_invariants_on_irregular_history():
    entries = entries_every(7, 1500) + entries_every(
        53, 200, start=datetime(2019, 6, 1, 4))
    entries = [BackupEntry('x%s' % e.name if i >= 1500 else e.name, e.modified)
               for i, e in enumerate(entries)]
    for policy in [GenerationPolicy(recent=3, daily=7, weekly=4,
                                    monthly=12, yearly=5),
                   GenerationPolicy(daily=1000),
                   GenerationPolicy(yearly=2),
                   GenerationPolicy(recent=10, monthly=2)]:
        check_invariants(entries, policy)


def test_raising_a_quota_never_keeps_less():
    entries = entries_every(11, 1200)
    base = GenerationPolicy(recent=2, daily=3, weekly=2, monthly=2, yearly=1)
    for field in GenerationPolicy._fields:
        totals = []
        for extra in range(6):
            policy = base._replace(**{field: getattr(base, field) + extra})
            totals.append(len(kept(select(entries, policy))))
        assert totals == sorted(totals), field


def test_decision():
    entry = BackupEntry('foo', datetime(2024, 1, 1))
    assert Decision(entry, 'Daily').retain
    assert not Decision(entry, None).retain


def test_policy():
    assert GenerationPolicy() == (0, 0, 0, 0, 0)
    assert not GenerationPolicy().keeps_anything()
    assert GenerationPolicy(monthly=1).keeps_anything()
    pytest.raises(ValueError, GenerationPolicy, daily=-1)
    pytest.raises(ValueError, GenerationPolicy, weekly='3')


def test_duplicate_names():
    dt = datetime(2024, 1, 1)
    pytest.raises(ValueError, select,
                  [BackupEntry('a', dt), BackupEntry('a', dt)],
                  GenerationPolicy(daily=1))


def test_expire_dict():
    backups = dict((e.name, e.modified) for e in entries_every(24, 10))
    assert sorted(expire(backups, GenerationPolicy(recent=1, daily=2))) == [
        'backup-0007', 'backup-0008', 'backup-0009']


def test_simulated_year():
    """Back up once a day for more than a year, pruning after each
    backup."""
    s = BackupSimulator('7d 4w 12m')
    s.go_to(datetime(2023, 1, 1, 12))
    newest = []
    for _ in range(400):
        s.go_by(timedelta(days=1))
        deleted, keep = s.backup()
        newest.append(str(s.now))

    assert len(s.backups) <= 23
    for name in newest[-7:]:
        assert name in s.backups
    oldest = min(s.backups.values())
    assert s.now - oldest > timedelta(days=270)
