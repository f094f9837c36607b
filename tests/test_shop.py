from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import NOW, both_docs
from squad_quest.database.schemas import COUPON_CODES, REDEMPTIONS, shop_item_path, stats_path
from squad_quest.errors import InvalidRequest, NotFound, PreconditionFailed, RewardError
from squad_quest.features.shop import OutOfStock


def test_catalogue_lists_configured_items(services, store):
    store.set(shop_item_path('streak_freeze'), {'cost': 750})

    items = {item['id']: item for item in services.shop.list_items()}

    assert len(items) == 12
    assert items['streak_freeze']['cost'] == 750
    assert items['gold_aura']['type'] == 'cosmetic'


def test_buy_consumable_only_touches_wallet(services, seed_user, store):
    seed_user('bob', xp=600, thisWeekXP=120)

    result = services.shop.buy('bob', 'streak_freeze')

    assert result['success'] is True
    assert result['newBalance'] == 100
    assert result['itemCount'] == 1
    public, stats = both_docs(store, 'bob')
    for doc in (public, stats):
        assert doc['xp'] == 100
        assert doc['lifetimeXP'] == 600
        assert doc['thisWeekXP'] == 120
    assert stats['inventory'] == {'streak_freeze': 1}
    assert 'inventory' not in public


def test_buy_with_insufficient_xp(services, seed_user):
    seed_user('bob', xp=100)

    with pytest.raises(PreconditionFailed) as excinfo:
        services.shop.buy('bob', 'streak_freeze')
    assert excinfo.value.status_code == 403
    assert excinfo.value.to_dict() == {'error': 'Insufficient XP', 'required': 500, 'balance': 100}


def test_buy_unknown_item(services, seed_user):
    seed_user('bob', xp=100)
    with pytest.raises(NotFound):
        services.shop.buy('bob', 'unicorn')


def test_cosmetic_is_equipped_and_owned_once(services, seed_user, store):
    seed_user('bob', xp=6000)

    result = services.shop.buy('bob', 'neon_frame_01')

    assert result['equipped'] == 'neon_frame_01'
    public, stats = both_docs(store, 'bob')
    for doc in (public, stats):
        assert doc['inventory']['frames'] == ['neon_frame_01']
        assert doc['equippedFrame'] == 'neon_frame_01'
        assert doc['xp'] == 3500

    with pytest.raises(PreconditionFailed, match='already owned'):
        services.shop.buy('bob', 'neon_frame_01')
    assert store.get(stats_path('bob')).get('xp') == 3500


def test_badge_purchase(services, seed_user, store):
    seed_user('bob', xp=5000)

    assert services.shop.buy('bob', 'badge_coffee')['badgeUnlocked'] is True
    public, stats = both_docs(store, 'bob')
    assert public['badges'] == stats['badges'] == ['badge_coffee']

    with pytest.raises(PreconditionFailed, match='Badge already owned'):
        services.shop.buy('bob', 'badge_coffee')


def test_voucher_without_stock(services, seed_user, store):
    seed_user('bob', xp=20000)

    with pytest.raises(OutOfStock) as excinfo:
        services.shop.buy('bob', 'amazon_in_100')
    assert excinfo.value.status_code == 503
    assert store.get(stats_path('bob')).get('xp') == 20000


def test_concurrent_voucher_purchases_never_share_a_code(services, seed_user, store):
    buyers = ['ann', 'bob', 'cat']
    for uid in buyers:
        seed_user(uid, xp=10000)
    services.shop.seed_coupons('amazon_in_100', ['CODE-A', 'CODE-B'])

    def buy(uid):
        try:
            return services.shop.buy(uid, 'amazon_in_100')
        except RewardError as e:
            return e

    with ThreadPoolExecutor(max_workers=3) as executor:
        results = list(executor.map(buy, buyers))

    bought = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, RewardError)]
    assert sorted(r['code'] for r in bought) == ['CODE-A', 'CODE-B']
    assert len(failed) == 1 and isinstance(failed[0], OutOfStock)

    coupons = store.query(COUPON_CODES, [('itemId', '==', 'amazon_in_100')])
    assert all(c.get('isUsed') for c in coupons)
    assert len({c.get('usedBy') for c in coupons}) == 2
    redemptions = store.query(REDEMPTIONS)
    assert len(redemptions) == 2
    assert all(r.get('expiresAt') == NOW + timedelta(days=30) for r in redemptions)


def test_redemptions_lists_unexpired_codes(services, seed_user, clock):
    seed_user('bob', xp=10000)
    services.shop.seed_coupons('amazon_in_100', ['CODE-A'])
    services.shop.buy('bob', 'amazon_in_100')

    redemptions = services.shop.redemptions('bob')
    assert [r['code'] for r in redemptions] == ['CODE-A']
    assert services.shop.redemptions('ann') == []

    clock.advance(days=31)
    assert services.shop.redemptions('bob') == []


def test_seed_coupons_validation(services):
    with pytest.raises(NotFound):
        services.shop.seed_coupons('unicorn', ['X'])
    with pytest.raises(InvalidRequest):
        services.shop.seed_coupons('streak_freeze', ['X'])
    with pytest.raises(InvalidRequest):
        services.shop.seed_coupons('amazon_in_100', [])
