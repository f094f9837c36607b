import logging
from datetime import timedelta

from squad_quest.database.schemas import ActivityEntry
from squad_quest.errors import NotFound, PreconditionFailed
from squad_quest.features.unit_of_work import RewardManager, log_activity, read_user_pairs
from squad_quest.utils.time_windows import hours_between, week_start

logger = logging.getLogger(__name__)

STREAK_FREEZE = 'streak_freeze'


class DailyBounty(RewardManager):
    """Daily bounty claims and streak protection."""

    def bounty_xp(self, streak: int) -> int:
        rules = self.config.BOUNTY_RULES
        earned = rules['base_xp']
        if streak > rules['streak_bonus_after']:
            earned += rules['streak_bonus_xp']
        return earned

    def claim(self, uid):
        """Claim the daily bounty: 25h cooldown, streak bookkeeping, XP payout."""
        rules = self.config.BOUNTY_RULES

        def claim_in_transaction(transaction):
            now = self.now()
            pairs, _ = read_user_pairs(transaction, [uid], week_start(now, self.tz_name))
            pair = pairs[uid]
            record = pair.record
            last_claimed = record.last_claimed_at

            if last_claimed is not None and hours_between(last_claimed, now) < rules['cooldown_hours']:
                raise PreconditionFailed("Cooldown active", status_code=403, cooldown=True)

            streak_frozen = False
            if last_claimed is None:
                streak = 1
            elif hours_between(last_claimed, now) > rules['streak_break_hours']:
                if record.inventory_count(STREAK_FREEZE) > 0:
                    streak_frozen = True
                    streak = record.daily_streak + 1
                    pair.increment_private('inventory', STREAK_FREEZE, -1)
                else:
                    streak = 1
            else:
                streak = record.daily_streak + 1

            earned_xp = self.bounty_xp(streak)
            pair.earn(earned_xp)
            pair.mirror(daily_streak=streak, last_claimed_at=now)
            pair.stage(transaction, now)

            log_activity(transaction, ActivityEntry(
                'bounty', uid, pair.name, 'claimed daily bounty', f"{earned_xp} XP", now,
                earned_xp=earned_xp,
            ))
            return {
                'earnedXP': earned_xp,
                'streak': streak,
                'streakFrozen': streak_frozen,
                'newLevel': pair.level,
            }

        result = self.run(claim_in_transaction)
        logger.info(f"Bounty claimed by {uid}: +{result['earnedXP']} XP (streak {result['streak']})")
        return {
            'success': True,
            'message': 'Bounty claimed',
            'earnedXP': result['earnedXP'],
            'streak': result['streak'],
            'streakFrozen': result['streakFrozen'],
            'newLevel': result['newLevel'],
        }

    def sync_streak(self, uid):
        """Protect or break a streak that has gone more than 48h without a claim.

        With a streak freeze in inventory one unit is consumed and the last
        claim is moved to 25 hours ago, so the bounty is immediately
        claimable and the streak survives. Without one the streak drops to 0.
        """
        rules = self.config.BOUNTY_RULES

        def sync_in_transaction(transaction):
            now = self.now()
            pairs, _ = read_user_pairs(transaction, [uid])
            pair = pairs[uid]
            if not pair.exists:
                raise NotFound("User not found")
            record = pair.record
            last_claimed = record.last_claimed_at

            if last_claimed is None or hours_between(last_claimed, now) < rules['streak_break_hours']:
                return {'status': 'ok', 'message': 'Streak is safe'}

            if record.inventory_count(STREAK_FREEZE) > 0:
                pair.increment_private('inventory', STREAK_FREEZE, -1)
                pair.mirror(last_claimed_at=now - timedelta(hours=rules['cooldown_hours']))
                pair.stage(transaction, now)
                return {
                    'status': 'protected',
                    'message': 'Streak Freeze Activated!',
                    'streakSaved': record.daily_streak,
                }

            if record.daily_streak == 0:
                return {'status': 'ok', 'message': 'No active streak'}

            pair.mirror(daily_streak=0)
            pair.stage(transaction, now)
            return {'status': 'reset', 'message': 'Streak lost.', 'oldStreak': record.daily_streak}

        result = self.run(sync_in_transaction)
        if result['status'] != 'ok':
            logger.info(f"Streak sync for {uid}: {result['status']}")
        return result
