"""Typed views over the Firestore documents the reward engine touches.

Each record is built from a raw document dictionary and owns the defaults for
missing fields, so callers never scatter ``data.get(x) or default`` checks.
"""
from squad_quest.utils.leveling import calculate_level
from squad_quest.utils.time_windows import as_datetime

USERS = 'users'
USER_STATS = 'userStats'
QUESTS = 'quests'
ARCHIVED_QUESTS = 'archived_quests'
GLOBAL_ACTIVITY = 'global_activity'
COUPON_CODES = 'coupon_codes'
REDEMPTIONS = 'redemptions'
SHOP_ITEMS = 'shop_items'
META = 'meta'

QUEST_SUBCOLLECTIONS = ('members', 'chat', 'verifications', 'reviews')

WEEKLY_RESET_META = f"{META}/weekly_reset"


def user_path(uid):
    return f"{USERS}/{uid}"


def stats_path(uid):
    return f"{USER_STATS}/{uid}"


def quest_path(quest_id):
    return f"{QUESTS}/{quest_id}"


def member_path(quest_id, uid):
    return f"{QUESTS}/{quest_id}/members/{uid}"


def verification_path(quest_id, uid):
    return f"{QUESTS}/{quest_id}/verifications/{uid}"


def review_path(quest_id, uid):
    return f"{QUESTS}/{quest_id}/reviews/{uid}"


def joined_quest_path(uid, quest_id):
    return f"{USERS}/{uid}/joinedQuests/{quest_id}"


def shop_item_path(item_id):
    return f"{SHOP_ITEMS}/{item_id}"


def _int(value, default=0):
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


class UserRecord:
    """Either half of the users / userStats pair."""

    def __init__(self, uid, data=None):
        data = data or {}
        self.uid = uid
        self.exists = bool(data)
        self.name = data.get('name') or 'Hero'
        self.city = data.get('city')
        self.xp = _int(data.get('xp'))
        # Records written before lifetime tracking only carry the wallet
        self.lifetime_xp = _int(data.get('lifetimeXP'), self.xp)
        self.this_week_xp = _int(data.get('thisWeekXP'))
        # Cached on the documents; always re-derived from lifetime XP here
        self.level = calculate_level(self.lifetime_xp)
        self.reliability_score = _int(data.get('reliabilityScore'))
        self.daily_streak = _int(data.get('daily_streak'))
        self.quests_completed = _int(data.get('questsCompleted'))
        self.badges = list(data.get('badges') or [])
        self.inventory = dict(data.get('inventory') or {})
        self.feedback_counts = dict(data.get('feedbackCounts') or data.get('vibeTags') or {})
        self.equipped_frame = data.get('equippedFrame')
        self.active_border = data.get('activeBorder')
        self.active_buff = data.get('activeBuff') or None
        self.last_claimed_at = as_datetime(data.get('last_claimed_at'))
        self.last_weekly_reset = as_datetime(data.get('lastWeeklyResetDate'))
        # Weekly XP carried over when a stale week was zeroed before the cycle ran
        self.last_week_xp = _int(data.get('lastWeekXP'))
        self.last_week_start = as_datetime(data.get('lastWeekStart'))
        self.fcm_token = data.get('fcmToken')
        self.avatar = data.get('avatar') or ''

    def inventory_count(self, key) -> int:
        return _int(self.inventory.get(key))

    def owned_frames(self) -> list:
        frames = self.inventory.get('frames')
        return list(frames) if isinstance(frames, list) else []


class Quest:
    def __init__(self, quest_id, data=None):
        data = data or {}
        self.id = quest_id
        self.host_id = data.get('hostId')
        self.title = data.get('title') or 'Quest'
        self.status = data.get('status', 'open')
        self.max_players = _int(data.get('maxPlayers'), 0)
        self.members_count = _int(data.get('membersCount'))
        self.members = list(data.get('members') or [])
        self.is_private = bool(data.get('isPrivate', False))
        self.secret_code = data.get('secretCode')
        self.start_time = as_datetime(data.get('startTime'))
        self.hot_zone_notified = bool(data.get('hotZoneNotified', False))
        self.difficulty = _int(data.get('difficulty'), 1) or 1
        self.city = data.get('city')


class Verification:
    def __init__(self, data=None):
        data = data or {}
        self.completed = bool(data.get('completed', False))
        self.rewarded = data.get('rewarded') is True
        self.earned_xp = _int(data.get('earnedXP'))
        self.completed_at = as_datetime(data.get('completedAt'))


class ActivityEntry:
    """Append-only global feed record."""

    def __init__(self, type, user_id, user, action, target, timestamp, earned_xp=None, **extra):
        self.type = type
        self.user_id = user_id
        self.user = user
        self.action = action
        self.target = target
        self.timestamp = timestamp
        self.earned_xp = earned_xp
        self.extra = extra

    def to_dict(self):
        data = {
            'type': self.type,
            'userId': self.user_id,
            'user': self.user,
            'action': self.action,
            'target': self.target,
            'timestamp': self.timestamp,
        }
        if self.earned_xp is not None:
            data['earnedXP'] = self.earned_xp
        data.update(self.extra)
        return data


class ShopItem:
    def __init__(self, item_id, data):
        self.id = item_id
        self.name = data.get('name', item_id)
        self.type = data.get('type', 'consumable')
        self.cost = _int(data.get('cost'))
        self.inventory_key = data.get('inventoryKey') or item_id
        self.category = data.get('category')
        self.description = data.get('description', '')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'cost': self.cost,
            'category': self.category,
            'description': self.description,
        }
