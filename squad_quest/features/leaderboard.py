import logging

from squad_quest.database.schemas import USERS, UserRecord
from squad_quest.features.weekly_reset import WeeklyReset

logger = logging.getLogger(__name__)

# Rows fetched per leaderboard slot; stale rows are zeroed and sorted down after the query
STALE_WINDOW = 3


def leaderboard_entry(record: UserRecord, this_week_xp=None):
    return {
        'uid': record.uid,
        'name': record.name,
        'avatar': record.avatar,
        'city': record.city,
        'thisWeekXP': record.this_week_xp if this_week_xp is None else this_week_xp,
        'lifetimeXP': record.lifetime_xp,
        'xp': record.xp,
        'level': record.level,
        'badges': record.badges,
        'activeBorder': record.active_border,
        'equippedFrame': record.equipped_frame,
    }


class Leaderboard:
    """Read side: weekly and all-time rankings from the public ``users`` records."""

    def __init__(self, store, config, weekly_reset: WeeklyReset):
        self.store = store
        self.config = config
        self.weekly_reset = weekly_reset

    def _filters(self, city):
        city = city or self.config.DEFAULT_CITY
        return [('city', '==', city)] if city else []

    def weekly(self, city=None, limit=None):
        """Top players by this-week XP; runs the weekly cycle first if it is overdue."""
        if self.weekly_reset.is_due():
            logger.warning("Weekly reset marker is stale, running the weekly cycle")
            self.weekly_reset.run_weekly_cycle()

        limit = limit or self.config.LEADERBOARD_LIMIT
        start = self.weekly_reset.current_week_start()
        snapshots = self.store.query(
            USERS, self._filters(city), order_by='thisWeekXP', descending=True, limit=limit * STALE_WINDOW,
        )
        entries = []
        for snapshot in snapshots:
            record = UserRecord(snapshot.id, snapshot.to_dict())
            stale = record.last_weekly_reset is not None and record.last_weekly_reset < start
            entries.append(leaderboard_entry(record, 0 if stale else None))
        entries.sort(key=lambda entry: entry['thisWeekXP'], reverse=True)
        return entries[:limit]

    def all_time(self, city=None, limit=None):
        """Top players by lifetime XP; shop spending never moves anyone down."""
        limit = limit or self.config.LEADERBOARD_LIMIT
        snapshots = self.store.query(
            USERS, self._filters(city), order_by='lifetimeXP', descending=True, limit=limit,
        )
        return [leaderboard_entry(UserRecord(s.id, s.to_dict())) for s in snapshots]
