import logging

from squad_quest.database.schemas import ActivityEntry, member_path, quest_path, review_path
from squad_quest.errors import Forbidden, InvalidRequest, NotFound
from squad_quest.features.unit_of_work import RewardManager, log_activity, read_user_pairs
from squad_quest.utils.time_windows import week_start

logger = logging.getLogger(__name__)


def normalize_reviews(reviewer_id, reviews, allowed_tags):
    """Validate ``{targetUserId: [tagId, ...]}`` and drop self-reviews and empty entries.

    Every tag must be one of ``allowed_tags``.
    """
    if not isinstance(reviews, dict):
        raise InvalidRequest("reviews must be an object of userId -> tags")
    normalized = {}
    for target_id, tags in reviews.items():
        if target_id == reviewer_id:
            continue
        if not isinstance(tags, list) or not all(isinstance(tag, str) and tag for tag in tags):
            raise InvalidRequest(f"Tags for {target_id} must be a list of strings")
        unknown = sorted(set(tags) - set(allowed_tags))
        if unknown:
            raise InvalidRequest(f"Unknown tags for {target_id}: {', '.join(unknown)}", tags=unknown)
        unique_tags = list(dict.fromkeys(tags))
        if unique_tags:
            normalized[target_id] = unique_tags
    return normalized


class VibeCheck(RewardManager):
    """Peer review after a quest: tags reward teammates, the review rewards the reviewer."""

    def submit(self, reviewer_id, quest_id, reviews):
        rules = self.config.VIBE_RULES
        reviews = normalize_reviews(reviewer_id, reviews, rules['badges'])

        def review_in_transaction(transaction):
            now = self.now()
            # One batched read: quest, review marker, every membership, every user pair
            targets = list(reviews)
            pairs, extra = read_user_pairs(
                transaction, [reviewer_id] + targets, week_start(now, self.tz_name),
                extra_paths=[quest_path(quest_id), review_path(quest_id, reviewer_id),
                             member_path(quest_id, reviewer_id)]
                + [member_path(quest_id, target_id) for target_id in targets],
            )
            quest_snap, review_snap, member_snap = extra[:3]
            target_members = dict(zip(targets, extra[3:]))
            if not quest_snap.exists:
                raise NotFound("Quest not found")
            if not member_snap.exists:
                raise Forbidden("You were not a member of this quest")
            if review_snap.exists:
                return {'alreadyReviewed': True}
            for target_id in reviews:
                if not pairs[target_id].exists:
                    raise NotFound(f"User {target_id} not found")
                if not target_members[target_id].exists:
                    raise Forbidden(f"User {target_id} was not a member of this quest")

            unlocked = []
            for target_id, tags in reviews.items():
                target = pairs[target_id]
                target.earn(rules['tag_xp'] * len(tags))
                candidates = []
                for tag in tags:
                    target.increment_private('feedbackCounts', tag, 1)
                    count = int(target.record.feedback_counts.get(tag, 0) or 0) + 1
                    badge = rules['badges'].get(tag)
                    if badge and count >= rules['badge_threshold']:
                        candidates.append(badge)
                for badge in target.grant_badges(candidates):
                    unlocked.append((target_id, target.name, badge))
                target.stage(transaction, now)

            reviewer = pairs[reviewer_id]
            reviewer.earn(rules['reviewer_xp'])
            reviewer.stage(transaction, now)

            transaction.set(review_path(quest_id, reviewer_id), {
                'reviewerId': reviewer_id,
                'targets': {target_id: tags for target_id, tags in reviews.items()},
                'createdAt': now,
            })
            for target_id, name, badge in unlocked:
                log_activity(transaction, ActivityEntry(
                    'badge', target_id, name, f"earned {badge.replace('_', ' ')} badge", badge, now,
                ))
            log_activity(transaction, ActivityEntry(
                'vibe_check', reviewer_id, reviewer.name, 'completed squad review', 'Vibe Check', now,
                earned_xp=rules['reviewer_xp'],
            ))
            return {'alreadyReviewed': False, 'unlocked': unlocked}

        result = self.run(review_in_transaction)
        if result['alreadyReviewed']:
            return {'success': True, 'alreadyReviewed': True}

        logger.info(f"Vibe check by {reviewer_id} on {quest_id}: {len(reviews)} teammates reviewed")
        for target_id, _, badge in result['unlocked']:
            self.notify(target_id, "New Badge Unlocked!",
                        f"Your squad says you've earned {badge.replace('_', ' ')}.",
                        {'type': 'badge', 'badge': badge})
        return {'success': True, 'earnedXP': rules['reviewer_xp']}
