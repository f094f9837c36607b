import logging

from squad_quest.database.schemas import REDEMPTIONS, USERS, stats_path, user_path
from squad_quest.features.unit_of_work import UserPair
from squad_quest.utils.leveling import calculate_level
from squad_quest.utils.time_windows import utcnow

logger = logging.getLogger(__name__)


def spent_xp(record, redemption_item_ids, shop_items):
    """XP a user has spent in the shop, rebuilt from what they own."""
    cost = {item_id: item.get('cost', 0) for item_id, item in shop_items.items()}
    spent = 0
    for item_id, item in shop_items.items():
        if item.get('type') == 'consumable':
            spent += record.inventory_count(item.get('inventoryKey') or item_id) * cost[item_id]
    spent += sum(cost.get(frame_id, 0) for frame_id in record.owned_frames())
    spent += sum(cost.get(badge_id, 0) for badge_id in record.badges)
    spent += sum(cost.get(item_id, 0) for item_id in redemption_item_ids)
    return spent


def backfill_lifetime_xp(store, config, clock=utcnow):
    """Give every user without ``lifetimeXP`` a total of wallet + shop spend.

    Each user is migrated in its own transaction, so concurrent XP changes are
    never lost, and users that already carry the field are left untouched.
    """
    summary = {'totalUsers': 0, 'updated': 0, 'skipped': 0}
    for snapshot in store.list_documents(USERS):
        summary['totalUsers'] += 1
        uid = snapshot.id

        def migrate_in_transaction(transaction):
            public_snap, stats_snap = transaction.get_all(UserPair.paths(uid))
            if public_snap.get('lifetimeXP') is not None and (
                    not stats_snap.exists or stats_snap.get('lifetimeXP') is not None):
                return None
            pair = UserPair(uid, public_snap, stats_snap)
            redemptions = transaction.query(REDEMPTIONS, [('userId', '==', uid)])
            spent = spent_xp(pair.record, [r.get('itemId') for r in redemptions], config.SHOP_ITEMS)
            lifetime = pair.balance + spent
            now = clock()
            payload = {'lifetimeXP': lifetime, 'level': calculate_level(lifetime), 'updatedAt': now}
            transaction.set(user_path(uid), payload, merge=True)
            if stats_snap.exists:
                transaction.set(stats_path(uid), payload, merge=True)
            return lifetime

        lifetime = store.run_transaction(migrate_in_transaction, max_attempts=config.TRANSACTION_MAX_ATTEMPTS)
        if lifetime is None:
            summary['skipped'] += 1
        else:
            summary['updated'] += 1
            logger.info(f"Backfilled lifetimeXP for {uid}: {lifetime}")

    logger.info(f"lifetimeXP backfill complete: {summary}")
    return summary
