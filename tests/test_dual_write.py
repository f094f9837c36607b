from datetime import timedelta

from conftest import NOW, both_docs
from squad_quest.database.schemas import stats_path, user_path

MIRRORED = ('xp', 'lifetimeXP', 'thisWeekXP', 'level', 'reliabilityScore', 'questsCompleted',
            'badges', 'daily_streak', 'equippedFrame')


def assert_mirrored(store, uid):
    public, stats = both_docs(store, uid)
    for field in MIRRORED:
        assert public.get(field) == stats.get(field), field


def test_records_stay_mirrored_through_a_session(services, seed_user, seed_quest, store, clock):
    seed_user('host')
    seed_user('bob', xp=3000)
    seed_quest('q1', 'host', maxPlayers=3, startTime=NOW + timedelta(minutes=10))

    services.bounty.claim('bob')
    services.quests.join_quest('bob', 'q1')
    clock.advance(minutes=10)
    services.quests.finalize_quest('bob', 'q1', photo_url='https://cdn.example/proof.png')
    services.vibe_check.submit('bob', 'q1', {'host': ['leader']})
    services.shop.buy('bob', 'neon_frame_01')
    services.shop.buy('bob', 'streak_freeze')

    assert_mirrored(store, 'bob')
    assert_mirrored(store, 'host')
    _, stats = both_docs(store, 'bob')
    # 3000 + 50 bounty + 145 quest + 50 review - 2500 frame - 500 freeze
    assert stats['xp'] == 245
    assert stats['lifetimeXP'] == 3245
    assert stats['thisWeekXP'] == 245
    assert stats['level'] == 10


def test_drifted_pair_is_healed_from_stats(services, store, clock):
    store.set(user_path('bob'), {'name': 'Bob', 'xp': 100, 'lifetimeXP': 100, 'lastWeeklyResetDate': clock.now})
    store.set(stats_path('bob'), {'name': 'Bob', 'xp': 150, 'lifetimeXP': 150, 'lastWeeklyResetDate': clock.now})

    services.bounty.claim('bob')

    public, stats = both_docs(store, 'bob')
    assert public['xp'] == stats['xp'] == 200
    assert public['lifetimeXP'] == stats['lifetimeXP'] == 200


def test_public_only_record_is_read_as_fallback(services, store, clock):
    store.set(user_path('bob'), {'name': 'Bob', 'xp': 700, 'lastWeeklyResetDate': clock.now})

    services.shop.buy('bob', 'streak_freeze')

    public, stats = both_docs(store, 'bob')
    assert public['xp'] == stats['xp'] == 200
    assert stats['inventory'] == {'streak_freeze': 1}
