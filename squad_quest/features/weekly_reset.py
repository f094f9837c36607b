"""Weekly leaderboard cycle: reward the top three, then zero everyone's week.

A run first records a plan for the week on the ``meta/weekly_reset`` marker
(the winners, and which ranks have been paid). Each award marks its rank on
the plan in the same transaction, and the week is only marked closed once
every winner is paid and the reset has run. A failed run leaves the week due
and the next run resumes the same plan, so the scheduler, the leaderboard's
lazy trigger and an admin can all ask for the cycle without paying twice.

Per-user lazy resets (on read and inside every XP-earning transaction) keep
weekly XP correct even if the cycle never runs. They carry the closing week's
XP over as ``lastWeekXP`` so an early reset does not cost a winner their rank.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from squad_quest.database.schemas import (
    USER_STATS, USERS, WEEKLY_RESET_META, ActivityEntry, UserRecord, user_path,
)
from squad_quest.database.store import ArrayUnion, chunked
from squad_quest.errors import NotFound
from squad_quest.features.unit_of_work import RewardManager, log_activity, read_user_pairs
from squad_quest.utils.time_windows import week_start

logger = logging.getLogger(__name__)

# Extra rows fetched so stale records can be skipped and still leave three winners
WINNER_CANDIDATES = 25


class WeeklyReset(RewardManager):

    def current_week_start(self, now=None):
        return week_start(now or self.now(), self.tz_name)

    def is_due(self) -> bool:
        marker = self.store.get(WEEKLY_RESET_META)
        return marker.get('lastResetISO') != self.current_week_start().isoformat()

    def closing_week_xp(self, record: UserRecord, current_start, force=False) -> int:
        """XP ``record`` earned in the week this cycle closes."""
        closing_start = current_start - timedelta(days=7)
        last_reset = record.last_weekly_reset
        if last_reset is not None and last_reset >= current_start:
            # Already reset into the current week
            if force:
                return record.this_week_xp
            if record.last_week_start is not None and record.last_week_start == closing_start:
                return record.last_week_xp
            return 0
        if last_reset is not None and last_reset < closing_start:
            return 0
        return record.this_week_xp

    def select_winners(self, force=False):
        """Top three ``(xp, record)`` pairs for the week being closed.

        Records still holding the closing week rank by ``thisWeekXP``; records
        lazily reset since then rank by the ``lastWeekXP`` they carried over.
        A forced run closes the current week for records already in it.
        """
        current_start = self.current_week_start()
        closing_start = current_start - timedelta(days=7)
        candidates = {}
        for snapshot in self.store.query(USERS, order_by='thisWeekXP', descending=True,
                                         limit=WINNER_CANDIDATES):
            candidates[snapshot.id] = snapshot
        for snapshot in self.store.query(USERS, [('lastWeekStart', '==', closing_start)],
                                         order_by='lastWeekXP', descending=True,
                                         limit=WINNER_CANDIDATES):
            candidates.setdefault(snapshot.id, snapshot)

        scored = []
        for uid, snapshot in candidates.items():
            record = UserRecord(uid, snapshot.to_dict())
            xp = self.closing_week_xp(record, current_start, force)
            if xp > 0:
                scored.append((xp, record))
        scored.sort(key=lambda item: (-item[0], item[1].uid))
        return scored[:len(self.config.WEEKLY_REWARDS)]

    def _plan_week(self, force):
        """The week's plan, new or left behind by a failed run; None if the week is closed."""
        week_iso = self.current_week_start().isoformat()
        marker = self.store.get(WEEKLY_RESET_META)
        pending = marker.get('pending') or {}
        if pending.get('week') != week_iso and not force and marker.get('lastResetISO') == week_iso:
            return None
        winners = [
            {'uid': record.uid, 'thisWeekXP': xp} for xp, record in self.select_winners(force)
        ]

        def plan_in_transaction(transaction):
            marker = transaction.get(WEEKLY_RESET_META)
            pending = marker.get('pending') or {}
            if pending.get('week') == week_iso:
                return pending
            if not force and marker.get('lastResetISO') == week_iso:
                return None
            if pending:
                logger.warning(f"Abandoning unfinished weekly cycle for {pending.get('week')}")
            plan = {
                'week': week_iso,
                'forced': bool(force),
                'startedAt': self.now(),
                'winners': winners,
                'awardedRanks': [],
            }
            data = marker.to_dict() or {}
            data['pending'] = plan
            transaction.set(WEEKLY_RESET_META, data)
            return plan

        return self.run(plan_in_transaction)

    def award_winner(self, uid, rank, week_iso):
        """Apply one tier of weekly rewards to both user records, once per planned rank.

        Returns the winner's name, or None if the user no longer exists or the
        week was closed by another run.
        """
        reward = self.config.WEEKLY_REWARDS[rank]

        def award_in_transaction(transaction):
            now = self.now()
            pairs, (marker,) = read_user_pairs(transaction, [uid], extra_paths=[WEEKLY_RESET_META])
            pair = pairs[uid]
            pending = marker.get('pending') or {}
            if pending.get('week') != week_iso:
                # Closed by another run
                return None
            if rank in (pending.get('awardedRanks') or []):
                return pair.name if pair.exists else None
            transaction.update(WEEKLY_RESET_META, {'pending.awardedRanks': ArrayUnion([rank])})
            if not pair.exists:
                return None

            # Bonus XP belongs to the wallet and lifetime, not the week being closed
            pair.earn(reward['xp'], weekly=False)
            pair.mirror(activeBorder=reward['border'])
            pair.grant_badges([reward['badge']])
            buff = reward.get('buff')
            if buff:
                pair.mirror(activeBuff={
                    'type': buff['type'],
                    'multiplier': buff['multiplier'],
                    'awardedAt': now,
                    'expiresAt': now + timedelta(days=buff['days']),
                })
            pair.stage(transaction, now)
            log_activity(transaction, ActivityEntry(
                'weekly_reward', uid, pair.name, f"finished #{rank} this week", reward['badge'], now,
                earned_xp=reward['xp'], rank=rank,
            ))
            return pair.name

        return self.run(award_in_transaction)

    def reset_all(self, force=False):
        """Zero ``thisWeekXP`` on both collections in parallel batches."""
        now = self.now()
        start = self.current_week_start(now)
        paths = []
        for collection in (USERS, USER_STATS):
            for snapshot in self.store.list_documents(collection):
                record = UserRecord(snapshot.id, snapshot.to_dict())
                if force or record.last_weekly_reset is None or record.last_weekly_reset < start:
                    paths.append(snapshot.path)
        if not paths:
            return {'usersReset': 0, 'batches': 0}

        def commit_chunk(chunk):
            batch = self.store.batch()
            for path in chunk:
                batch.set(path, {'thisWeekXP': 0, 'lastWeeklyResetDate': now}, merge=True)
            batch.commit()
            return len(chunk)

        chunks = chunked(paths, self.config.BATCH_WRITE_LIMIT)
        with ThreadPoolExecutor(max_workers=min(len(chunks), 8)) as executor:
            written = sum(executor.map(commit_chunk, chunks))
        logger.info(f"Weekly XP reset: {written} documents in {len(chunks)} batches")
        return {'usersReset': written, 'batches': len(chunks)}

    def _close_week(self, week_iso):
        """Mark the week done and drop its plan; False if another run closed it first."""

        def close_in_transaction(transaction):
            marker = transaction.get(WEEKLY_RESET_META)
            pending = marker.get('pending') or {}
            if pending.get('week') != week_iso:
                return False
            transaction.set(WEEKLY_RESET_META, {
                'lastResetISO': week_iso,
                'lastResetAt': self.now(),
                'forced': bool(pending.get('forced')),
            })
            return True

        return self.run(close_in_transaction)

    def run_weekly_cycle(self, force=False):
        """Plan the week, reward the winners, reset weekly XP, close the week, notify."""
        plan = self._plan_week(force)
        if plan is None:
            logger.info("Weekly reset already done for this week")
            return {'success': True, 'skipped': True}

        week_iso = plan['week']
        forced = force or bool(plan.get('forced'))
        if plan.get('awardedRanks'):
            logger.info(f"Resuming weekly reset cycle for {week_iso} (paid ranks: {plan['awardedRanks']})")
        else:
            logger.info(f"Starting weekly reset cycle for {week_iso} (forced={forced})")

        winners = []
        for rank, entry in enumerate(plan.get('winners') or [], start=1):
            name = self.award_winner(entry['uid'], rank, week_iso)
            if name is None:
                logger.warning(f"Weekly winner {entry['uid']} (#{rank}) was not awarded")
                continue
            winners.append({
                'uid': entry['uid'],
                'name': name,
                'rank': rank,
                'thisWeekXP': entry['thisWeekXP'],
                'xpAwarded': self.config.WEEKLY_REWARDS[rank]['xp'],
            })
        stats = self.reset_all(force=forced)

        if not self._close_week(week_iso):
            logger.info(f"Weekly cycle for {week_iso} was closed by another run")
            return {'success': True, 'skipped': True}

        for winner in winners:
            self.notify(winner['uid'], "Weekly Results Are In!",
                        f"You finished #{winner['rank']} this week and earned {winner['xpAwarded']} XP.",
                        {'type': 'weekly_reward', 'rank': str(winner['rank'])})
        if winners and self.notifier:
            try:
                self.notifier.dispatch_topic(
                    self.config.ANNOUNCEMENT_TOPIC, "New Week, New Quests!",
                    f"{winners[0]['name']} is this week's champion. The leaderboard has been reset.",
                    {'type': 'weekly_reset'},
                )
            except Exception as e:
                logger.error(f"Failed to queue weekly announcement: {e}")

        return {
            'success': True,
            'skipped': False,
            'week': week_iso,
            'winners': winners,
            **stats,
        }

    def lazy_reset_user(self, uid):
        """Zero a single user's stale week on read; returns the public record."""

        def reset_in_transaction(transaction):
            now = self.now()
            pairs, _ = read_user_pairs(transaction, [uid], self.current_week_start(now))
            pair = pairs[uid]
            if not pair.exists:
                raise NotFound("User not found")
            reset = pair.week_is_stale and (
                pair.public.this_week_xp != 0 or pair.stats.this_week_xp != 0
                or pair.record.last_weekly_reset is None
            )
            if reset:
                pair.mirror(thisWeekXP=0, lastWeeklyResetDate=now, **pair.closing_week_fields())
                pair.stage(transaction, now)
            return reset

        if self.run(reset_in_transaction):
            logger.info(f"Lazy weekly reset applied for {uid}")
        return self.store.get(user_path(uid)).to_dict() or {}
