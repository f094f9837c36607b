"""Shared read -> validate -> compute -> write machinery for reward procedures.

Every procedure is a function of one ``Transaction``: it reads everything it
needs with a single batched ``get_all``, raises a ``RewardError`` if a
precondition fails (nothing is staged yet, so nothing is written), then stages
its writes through ``UserPair`` so the public ``users`` record and the private
``userStats`` record receive the same mirrored fields in the same commit.
"""
import logging
from datetime import timedelta

from squad_quest.database.schemas import (
    GLOBAL_ACTIVITY, ActivityEntry, UserRecord, stats_path, user_path,
)
from squad_quest.database.store import ArrayUnion, Increment
from squad_quest.utils.leveling import calculate_level
from squad_quest.utils.time_windows import utcnow

logger = logging.getLogger(__name__)

_MISSING = object()


class UserPair:
    """Staged dual-write for one user's ``users`` and ``userStats`` documents.

    Counter changes are accumulated as deltas. When both documents already
    agree on a counter the delta is written as an atomic ``Increment``;
    otherwise the absolute value derived from ``userStats`` is written to both,
    which heals a pair that drifted apart.
    """

    def __init__(self, uid, public_snapshot, stats_snapshot, current_week_start=None):
        self.uid = uid
        self._public_raw = public_snapshot.to_dict() or {}
        self._stats_raw = stats_snapshot.to_dict() or {}
        self.public = UserRecord(uid, self._public_raw)
        self.stats = UserRecord(uid, self._stats_raw) if stats_snapshot.exists else self.public
        self.week_start = current_week_start
        self._deltas = {}
        self._mirrored = {}
        self._private = {}
        self._nested = {}
        self.new_badges = []

    @staticmethod
    def paths(uid):
        return [user_path(uid), stats_path(uid)]

    @property
    def exists(self):
        return self.public.exists or self.stats.exists

    @property
    def record(self) -> UserRecord:
        # userStats is the source of truth; users is the fallback
        return self.stats

    @property
    def name(self):
        return self.public.name if self.public.exists else self.stats.name

    @property
    def week_is_stale(self) -> bool:
        if self.week_start is None:
            return False
        last_reset = self.record.last_weekly_reset
        return last_reset is None or last_reset < self.week_start

    def closing_week_fields(self) -> dict:
        """``lastWeekXP``/``lastWeekStart`` to write when a stale week is zeroed.

        Only XP from the week right before the current one is kept; an older
        week is past ranking and is dropped.
        """
        if not self.week_is_stale or self.record.this_week_xp <= 0:
            return {}
        closing_start = self.week_start - timedelta(days=7)
        last_reset = self.record.last_weekly_reset
        if last_reset is not None and last_reset < closing_start:
            return {}
        return {'lastWeekXP': self.record.this_week_xp, 'lastWeekStart': closing_start}

    def _base(self, field):
        if field == 'lifetimeXP':
            return self.record.lifetime_xp
        if field == 'thisWeekXP':
            return 0 if self.week_is_stale else self.record.this_week_xp
        value = self._stats_raw.get(field, self._public_raw.get(field, 0))
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0

    def value(self, field):
        """Current value of a counter including staged deltas."""
        return self._base(field) + self._deltas.get(field, 0)

    @property
    def balance(self) -> int:
        return self.value('xp')

    @property
    def lifetime_xp(self) -> int:
        return self.value('lifetimeXP')

    @property
    def this_week_xp(self) -> int:
        return self.value('thisWeekXP')

    @property
    def level(self) -> int:
        return calculate_level(self.lifetime_xp)

    @property
    def staged(self) -> bool:
        return bool(self._deltas or self._mirrored or self._private or self._nested)

    def increment(self, field, amount=1):
        self._deltas[field] = self._deltas.get(field, 0) + amount

    def earn(self, amount, weekly=True):
        """Credit earned XP to the wallet, the lifetime total and this week."""
        if amount <= 0:
            return
        self.increment('xp', amount)
        self.increment('lifetimeXP', amount)
        if weekly:
            self.increment('thisWeekXP', amount)

    def spend(self, amount):
        """Debit the wallet only; ranking fields are never touched."""
        self.increment('xp', -amount)

    def increment_private(self, parent, key, amount=1):
        bucket = self._nested.setdefault(parent, {})
        bucket[key] = bucket.get(key, 0) + amount

    def grant_badges(self, badge_ids):
        """Add badges not already held; returns the newly unlocked ids."""
        unlocked = [b for b in badge_ids if b not in self.record.badges and b not in self.new_badges]
        self.new_badges.extend(unlocked)
        return unlocked

    def mirror(self, **fields):
        self._mirrored.update(fields)

    def private(self, **fields):
        self._private.update(fields)

    def _in_sync(self, field):
        public_value = self._public_raw.get(field, _MISSING)
        return public_value is not _MISSING and public_value == self._stats_raw.get(field, _MISSING)

    def _counter_payload(self):
        payload = {}
        for field, delta in self._deltas.items():
            if field == 'thisWeekXP' and self.week_is_stale:
                payload[field] = max(0, self.value(field))
                payload['lastWeeklyResetDate'] = self.week_start
                payload.update(self.closing_week_fields())
            elif self._in_sync(field):
                payload[field] = Increment(delta)
            else:
                payload[field] = self.value(field)
        if 'lifetimeXP' in self._deltas:
            payload['level'] = self.level
        return payload

    def stage(self, transaction, now):
        """Write the mirrored payload to both documents and private fields to userStats."""
        if not self.staged:
            return
        mirrored = self._counter_payload()
        mirrored.update(self._mirrored)
        if self.new_badges:
            mirrored['badges'] = ArrayUnion(self.new_badges)
        mirrored['updatedAt'] = now
        transaction.set(user_path(self.uid), mirrored, merge=True)

        private = dict(mirrored)
        private.update(self._private)
        for parent, counters in self._nested.items():
            bucket = dict(private.get(parent) or {})
            bucket.update({key: Increment(amount) for key, amount in counters.items()})
            private[parent] = bucket
        transaction.set(stats_path(self.uid), private, merge=True)


def read_user_pairs(transaction, uids, current_week_start=None, extra_paths=()):
    """One batched read of every user pair plus any extra documents.

    Returns ``(pairs_by_uid, extra_snapshots)``.
    """
    uids = list(dict.fromkeys(uids))
    extra_paths = list(extra_paths)
    paths = list(extra_paths)
    for uid in uids:
        paths.extend(UserPair.paths(uid))
    snapshots = transaction.get_all(paths)
    extra = snapshots[:len(extra_paths)]
    rest = snapshots[len(extra_paths):]
    pairs = {}
    for index, uid in enumerate(uids):
        pairs[uid] = UserPair(uid, rest[2 * index], rest[2 * index + 1], current_week_start)
    return pairs, extra


def log_activity(transaction, entry: ActivityEntry):
    path = transaction.new_path(GLOBAL_ACTIVITY)
    transaction.set(path, entry.to_dict())
    return path


class RewardManager:
    """Base for the reward procedures: store, configuration, notifier and clock."""

    def __init__(self, store, config, notifier=None, clock=None):
        self.store = store
        self.config = config
        self.notifier = notifier
        self.clock = clock or utcnow

    def now(self):
        return self.clock()

    @property
    def tz_name(self):
        return self.config.TIMEZONE

    def run(self, fn):
        return self.store.run_transaction(fn, max_attempts=self.config.TRANSACTION_MAX_ATTEMPTS)

    def notify(self, user_id, title, body, data=None):
        """Post-commit, fire-and-forget push notification."""
        if not self.notifier or not user_id:
            return
        try:
            self.notifier.dispatch(user_id, title, body, data)
        except Exception as e:
            logger.error(f"Failed to queue notification for {user_id}: {e}")
