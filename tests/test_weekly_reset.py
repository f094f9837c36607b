from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, both_docs
from squad_quest.database.schemas import WEEKLY_RESET_META
from squad_quest.errors import NotFound, TransientConflict

LAST_WEEK = NOW - timedelta(days=7)
CLOSING_WEEK_START = datetime(2026, 3, 2, tzinfo=timezone.utc)


@pytest.fixture
def closing_week(seed_user):
    seed_user('ann', xp=5000, thisWeekXP=900, lastWeeklyResetDate=LAST_WEEK)
    seed_user('bob', xp=2000, thisWeekXP=500, lastWeeklyResetDate=LAST_WEEK)
    seed_user('cat', xp=1000, thisWeekXP=300, lastWeeklyResetDate=LAST_WEEK)
    seed_user('dan', xp=400, thisWeekXP=100, lastWeeklyResetDate=LAST_WEEK)
    seed_user('eve', lastWeeklyResetDate=LAST_WEEK)
    # Never reset since an older week; its weekly XP is not this week's
    seed_user('old', xp=9000, thisWeekXP=2000, lastWeeklyResetDate=NOW - timedelta(days=20))


def test_weekly_cycle_rewards_top_three_and_resets(services, closing_week, store, notifier):
    assert services.weekly_reset.is_due() is True

    result = services.weekly_reset.run_weekly_cycle()

    assert result['skipped'] is False
    assert result['week'] == '2026-03-09T00:00:00+00:00'
    assert [(w['uid'], w['rank'], w['xpAwarded']) for w in result['winners']] == [
        ('ann', 1, 500), ('bob', 2, 300), ('cat', 3, 150),
    ]
    assert result['usersReset'] == 12
    assert result['batches'] == 1

    public, stats = both_docs(store, 'ann')
    for doc in (public, stats):
        assert doc['xp'] == 5500
        assert doc['lifetimeXP'] == 5500
        assert doc['thisWeekXP'] == 0
        assert doc['lastWeeklyResetDate'] == NOW
        assert doc['badges'] == ['WEEKLY_CHAMPION']
        assert doc['activeBorder'] == 'champion_aura'
        assert doc['activeBuff']['multiplier'] == 1.5
        assert doc['activeBuff']['expiresAt'] == NOW + timedelta(days=7)
    bob_public, _ = both_docs(store, 'bob')
    assert bob_public['badges'] == ['WEEKLY_RUNNER_UP']
    assert 'activeBuff' not in bob_public
    assert both_docs(store, 'old')[0]['thisWeekXP'] == 0

    assert notifier.titles_for('ann') == ['Weekly Results Are In!']
    assert len(notifier.topics) == 1
    assert notifier.topics[0]['topic'] == 'all_users'
    assert store.get(WEEKLY_RESET_META).get('lastResetISO') == result['week']


def test_weekly_cycle_runs_once_per_week(services, closing_week, store):
    services.weekly_reset.run_weekly_cycle()

    assert services.weekly_reset.is_due() is False
    assert services.weekly_reset.run_weekly_cycle() == {'success': True, 'skipped': True}
    assert both_docs(store, 'ann')[0]['xp'] == 5500


def test_current_week_records_are_not_last_weeks_winners(services, seed_user, store):
    seed_user('ann', xp=100, thisWeekXP=80)

    result = services.weekly_reset.run_weekly_cycle()

    assert result['winners'] == []
    assert result['usersReset'] == 0
    assert both_docs(store, 'ann')[1]['thisWeekXP'] == 80


def test_forced_cycle_ranks_and_resets_everyone(services, seed_user, store):
    seed_user('ann', xp=100, thisWeekXP=80)
    services.weekly_reset.run_weekly_cycle()

    result = services.weekly_reset.run_weekly_cycle(force=True)

    assert result['skipped'] is False
    assert [w['uid'] for w in result['winners']] == ['ann']
    assert result['usersReset'] == 2
    public, stats = both_docs(store, 'ann')
    assert public['thisWeekXP'] == stats['thisWeekXP'] == 0
    assert stats['xp'] == 600


def test_weekly_cycle_batches_writes(services, seed_user, config):
    config.BATCH_WRITE_LIMIT = 4
    for i in range(5):
        seed_user(f"u{i}", lastWeeklyResetDate=LAST_WEEK)

    result = services.weekly_reset.run_weekly_cycle()

    assert result['usersReset'] == 10
    assert result['batches'] == 3


def test_lazy_reset_on_profile_read(services, seed_user, store):
    seed_user('bob', thisWeekXP=300, lastWeeklyResetDate=LAST_WEEK)
    seed_user('ann', thisWeekXP=120)

    profile = services.weekly_reset.lazy_reset_user('bob')

    assert profile['thisWeekXP'] == 0
    public, stats = both_docs(store, 'bob')
    assert public['thisWeekXP'] == stats['thisWeekXP'] == 0
    assert stats['lastWeeklyResetDate'] == NOW
    assert services.weekly_reset.lazy_reset_user('ann')['thisWeekXP'] == 120

    with pytest.raises(NotFound):
        services.weekly_reset.lazy_reset_user('ghost')


def test_early_claim_keeps_last_weeks_rank(services, seed_user, store):
    seed_user('ann', xp=1000, thisWeekXP=900, lastWeeklyResetDate=LAST_WEEK)
    seed_user('bob', xp=100, thisWeekXP=10, lastWeeklyResetDate=LAST_WEEK)

    services.bounty.claim('ann')
    public, stats = both_docs(store, 'ann')
    for doc in (public, stats):
        assert doc['thisWeekXP'] == 50
        assert doc['lastWeekXP'] == 900
        assert doc['lastWeekStart'] == CLOSING_WEEK_START

    result = services.weekly_reset.run_weekly_cycle()

    assert [(w['uid'], w['rank'], w['thisWeekXP']) for w in result['winners']] == [
        ('ann', 1, 900), ('bob', 2, 10),
    ]
    assert result['usersReset'] == 2
    public, stats = both_docs(store, 'ann')
    for doc in (public, stats):
        assert doc['xp'] == 1550
        assert doc['thisWeekXP'] == 50
        assert doc['badges'] == ['WEEKLY_CHAMPION']


def test_profile_read_keeps_last_weeks_rank(services, seed_user, store):
    seed_user('ann', thisWeekXP=900, lastWeeklyResetDate=LAST_WEEK)
    seed_user('bob', thisWeekXP=10, lastWeeklyResetDate=LAST_WEEK)

    assert services.weekly_reset.lazy_reset_user('ann')['lastWeekXP'] == 900

    result = services.weekly_reset.run_weekly_cycle()

    assert [w['uid'] for w in result['winners']] == ['ann', 'bob']


def test_older_weeks_are_not_carried_over(services, seed_user, store):
    seed_user('old', thisWeekXP=2000, lastWeeklyResetDate=NOW - timedelta(days=20))

    services.bounty.claim('old')

    assert 'lastWeekXP' not in both_docs(store, 'old')[1]
    assert services.weekly_reset.run_weekly_cycle()['winners'] == []


def test_failed_cycle_stays_due_and_resumes(services, closing_week, store, notifier, monkeypatch):
    award = services.weekly_reset.award_winner
    failures = []

    def award_or_fail_once(uid, rank, week_iso):
        if rank == 2 and not failures:
            failures.append(uid)
            raise TransientConflict("Too much contention, please retry")
        return award(uid, rank, week_iso)

    monkeypatch.setattr(services.weekly_reset, 'award_winner', award_or_fail_once)

    with pytest.raises(TransientConflict):
        services.weekly_reset.run_weekly_cycle()

    assert services.weekly_reset.is_due() is True
    assert both_docs(store, 'ann')[1]['xp'] == 5500
    assert both_docs(store, 'bob')[1]['xp'] == 2000
    assert both_docs(store, 'dan')[1]['thisWeekXP'] == 100
    assert notifier.messages == []

    result = services.weekly_reset.run_weekly_cycle()

    assert result['skipped'] is False
    assert [(w['uid'], w['rank']) for w in result['winners']] == [('ann', 1), ('bob', 2), ('cat', 3)]
    assert result['usersReset'] == 12
    assert both_docs(store, 'ann')[1]['xp'] == 5500
    assert both_docs(store, 'bob')[1]['xp'] == 2300
    assert both_docs(store, 'cat')[1]['xp'] == 1150
    assert notifier.titles_for('ann') == ['Weekly Results Are In!']
    marker = store.get(WEEKLY_RESET_META).to_dict()
    assert marker['lastResetISO'] == result['week']
    assert 'pending' not in marker
    assert services.weekly_reset.is_due() is False
