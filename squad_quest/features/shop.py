import logging
from datetime import timedelta

from squad_quest.database.schemas import (
    COUPON_CODES, REDEMPTIONS, SHOP_ITEMS, ActivityEntry, ShopItem, shop_item_path,
)
from squad_quest.database.store import ArrayUnion, chunked, new_document_id
from squad_quest.errors import InvalidRequest, NotFound, PreconditionFailed
from squad_quest.features.unit_of_work import RewardManager, log_activity, read_user_pairs

logger = logging.getLogger(__name__)

VOUCHER = 'voucher'
COSMETIC = 'cosmetic'
BADGE = 'badge'


class OutOfStock(PreconditionFailed):
    status_code = 503


class ShopManager(RewardManager):
    """XP shop. Spending only ever touches the wallet (``xp``)."""

    def _resolve_item(self, item_id, override=None):
        base = self.config.SHOP_ITEMS.get(item_id)
        if base is None and not override:
            return None
        data = dict(base or {})
        data.update(override or {})
        return ShopItem(item_id, data)

    def catalogue(self):
        """Static catalogue merged with per-item overrides stored in ``shop_items``."""
        overrides = {snapshot.id: snapshot.to_dict() for snapshot in self.store.list_documents(SHOP_ITEMS)}
        items = {}
        for item_id in list(self.config.SHOP_ITEMS) + [i for i in overrides if i not in self.config.SHOP_ITEMS]:
            item = self._resolve_item(item_id, overrides.get(item_id))
            if item is not None and item.cost > 0:
                items[item_id] = item
        return items

    def list_items(self):
        return [item.to_dict() for item in self.catalogue().values()]

    def buy(self, uid, item_id):
        def buy_in_transaction(transaction):
            now = self.now()
            pairs, (override_snap,) = read_user_pairs(transaction, [uid], extra_paths=[shop_item_path(item_id)])
            item = self._resolve_item(item_id, override_snap.to_dict())
            if item is None:
                raise NotFound("Item not found")
            coupons = []
            if item.type == VOUCHER:
                coupons = transaction.query(
                    COUPON_CODES, [('itemId', '==', item_id), ('isUsed', '==', False)], limit=1,
                )

            pair = pairs[uid]
            record = pair.record
            if pair.balance < item.cost:
                raise PreconditionFailed("Insufficient XP", status_code=403,
                                         required=item.cost, balance=pair.balance)

            result = {'itemName': item.name}
            if item.type == COSMETIC:
                if item.id in record.owned_frames():
                    raise PreconditionFailed("Item already owned")
                pair.spend(item.cost)
                pair.mirror(inventory={item.inventory_key: ArrayUnion([item.id])}, equippedFrame=item.id)
                result['equipped'] = item.id
            elif item.type == BADGE:
                if item.id in record.badges:
                    raise PreconditionFailed("Badge already owned")
                pair.spend(item.cost)
                pair.grant_badges([item.id])
                result['badgeUnlocked'] = True
            elif item.type == VOUCHER:
                if not coupons:
                    raise OutOfStock("Out of Stock")
                coupon = coupons[0]
                pair.spend(item.cost)
                transaction.update(coupon.path, {'isUsed': True, 'usedBy': uid, 'usedAt': now})
                redemption_path = transaction.new_path(REDEMPTIONS)
                transaction.set(redemption_path, {
                    'userId': uid,
                    'itemId': item.id,
                    'code': coupon.get('code'),
                    'status': 'approved',
                    'purchasedAt': now,
                    'expiresAt': now + timedelta(days=self.config.VOUCHER_VALIDITY_DAYS),
                })
                result['code'] = coupon.get('code')
                result['redemptionId'] = redemption_path.rsplit('/', 1)[-1]
            else:
                # Consumables stack; counters live on the private record only
                pair.spend(item.cost)
                pair.increment_private('inventory', item.inventory_key, 1)
                result['itemCount'] = record.inventory_count(item.inventory_key) + 1

            pair.stage(transaction, now)
            log_activity(transaction, ActivityEntry(
                'purchase', uid, pair.name, f"bought {item.name}", item.name, now,
            ))
            result['newBalance'] = pair.balance
            return result

        result = self.run(buy_in_transaction)
        logger.info(f"{uid} bought {item_id} (balance {result['newBalance']})")
        response = {'success': True, 'message': f"Purchased {result.pop('itemName')}"}
        response.update(result)
        return response

    def seed_coupons(self, item_id, codes):
        """Bulk-load voucher codes for an item."""
        item = self._resolve_item(item_id, self.store.get(shop_item_path(item_id)).to_dict())
        if item is None:
            raise NotFound("Item not found")
        if item.type != VOUCHER:
            raise InvalidRequest(f"{item_id} is not a voucher item")
        if not isinstance(codes, list) or not codes or not all(isinstance(c, str) and c.strip() for c in codes):
            raise InvalidRequest("codes must be a non-empty list of strings")

        now = self.now()
        for chunk in chunked(codes, self.config.BATCH_WRITE_LIMIT):
            batch = self.store.batch()
            for code in chunk:
                batch.set(f"{COUPON_CODES}/{new_document_id()}", {
                    'code': code.strip(),
                    'itemId': item_id,
                    'isUsed': False,
                    'usedBy': None,
                    'usedAt': None,
                    'createdAt': now,
                })
            batch.commit()
        logger.info(f"Seeded {len(codes)} coupons for {item_id}")
        return {'success': True, 'message': f"{len(codes)} coupons added for {item_id}"}

    def redemptions(self, uid):
        """The caller's unexpired voucher redemptions, soonest to expire first."""
        snapshots = self.store.query(
            REDEMPTIONS,
            [('userId', '==', uid), ('expiresAt', '>', self.now())],
            order_by='expiresAt',
        )
        return [dict(snapshot.to_dict(), id=snapshot.id) for snapshot in snapshots]
