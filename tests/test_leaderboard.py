from datetime import timedelta

import pytest

from conftest import NOW
from squad_quest.database.schemas import WEEKLY_RESET_META


@pytest.fixture
def reset_done(services, store):
    store.set(WEEKLY_RESET_META, {'lastResetISO': services.weekly_reset.current_week_start().isoformat()})


def test_weekly_zeroes_stale_entries(services, seed_user, reset_done):
    seed_user('ann', city='Pune', thisWeekXP=300)
    seed_user('bob', city='Pune', thisWeekXP=500, lastWeeklyResetDate=NOW - timedelta(days=7))
    seed_user('cat', city='Goa', thisWeekXP=100)

    pune = services.leaderboard.weekly('Pune')
    assert [(e['uid'], e['thisWeekXP']) for e in pune] == [('ann', 300), ('bob', 0)]

    everyone = services.leaderboard.weekly()
    assert [e['uid'] for e in everyone] == ['ann', 'cat', 'bob']


def test_weekly_uses_default_city(services, seed_user, reset_done, config):
    config.DEFAULT_CITY = 'Goa'
    seed_user('ann', city='Pune', thisWeekXP=300)
    seed_user('cat', city='Goa', thisWeekXP=100)

    assert [e['uid'] for e in services.leaderboard.weekly()] == ['cat']


def test_weekly_runs_overdue_cycle(services, seed_user, store, notifier):
    seed_user('bob', thisWeekXP=500, lastWeeklyResetDate=NOW - timedelta(days=7))

    entries = services.leaderboard.weekly()

    assert store.get(WEEKLY_RESET_META).exists
    assert entries[0]['uid'] == 'bob'
    assert entries[0]['thisWeekXP'] == 0
    assert 'WEEKLY_CHAMPION' in entries[0]['badges']
    assert len(notifier.topics) == 1


def test_all_time_ranks_by_lifetime_not_wallet(services, seed_user, reset_done):
    seed_user('bob', xp=100, lifetimeXP=1000)
    seed_user('cat', xp=800, lifetimeXP=800)

    entries = services.leaderboard.all_time()

    assert [e['uid'] for e in entries] == ['bob', 'cat']
    assert entries[0]['xp'] == 100
    assert entries[0]['level'] == 6


def test_limit(services, seed_user, reset_done):
    for i in range(5):
        seed_user(f"u{i}", thisWeekXP=10 * (i + 1))

    assert [e['uid'] for e in services.leaderboard.weekly(limit=2)] == ['u4', 'u3']


def test_stale_rows_do_not_crowd_out_this_week(services, seed_user, reset_done):
    for i in range(3):
        seed_user(f"s{i}", thisWeekXP=1000 + i, lastWeeklyResetDate=NOW - timedelta(days=7))
    seed_user('ann', thisWeekXP=50)
    seed_user('bob', thisWeekXP=20)

    entries = services.leaderboard.weekly(limit=2)

    assert [(e['uid'], e['thisWeekXP']) for e in entries] == [('ann', 50), ('bob', 20)]
