"""Quest lifecycle: create, join, finalize (pay out), leave, edit, delete."""
import logging
import math

from squad_quest.database.schemas import (
    QUEST_SUBCOLLECTIONS, QUESTS, ActivityEntry, Quest, Verification,
    joined_quest_path, member_path, quest_path, verification_path,
)
from squad_quest.database.store import ArrayRemove, ArrayUnion, Increment, chunked
from squad_quest.errors import Forbidden, InvalidRequest, NotFound, PreconditionFailed
from squad_quest.features.unit_of_work import RewardManager, log_activity, read_user_pairs
from squad_quest.utils.time_windows import as_datetime, hours_between, is_showdown, week_start

logger = logging.getLogger(__name__)

XP_BOOST = 'xp_boost_2x'


class QuestManager(RewardManager):

    # -- create ------------------------------------------------------------
    def create_quest(self, uid, data):
        """Create a quest with the host as its first member."""
        title = (data.get('title') or '').strip()
        if not title:
            raise InvalidRequest("Title is required")
        try:
            max_players = int(data.get('maxPlayers', 4))
            difficulty = int(data.get('difficulty', 1))
        except (TypeError, ValueError):
            raise InvalidRequest("maxPlayers and difficulty must be integers")
        if max_players < 1:
            raise InvalidRequest("maxPlayers must be at least 1")
        if difficulty not in self.config.THREAT_LEVEL_REQUIREMENTS:
            raise InvalidRequest("Invalid difficulty")
        is_private = bool(data.get('isPrivate', False))
        secret_code = data.get('secretCode')
        if is_private and not secret_code:
            raise InvalidRequest("Private quests require a secret code")
        start_time = as_datetime(data.get('startTime'))
        if data.get('startTime') and start_time is None:
            raise InvalidRequest("Invalid startTime")

        def create_in_transaction(transaction):
            now = self.now()
            pairs, _ = read_user_pairs(transaction, [uid])
            host = pairs[uid]
            quest_ref = transaction.new_path(QUESTS)
            quest_id = quest_ref.rsplit('/', 1)[-1]
            transaction.set(quest_ref, {
                'id': quest_id,
                'title': title,
                'description': data.get('description', ''),
                'category': data.get('category'),
                'city': data.get('city') or host.record.city,
                'hostId': uid,
                'hostName': host.name,
                'status': 'open',
                'maxPlayers': max_players,
                'membersCount': 1,
                'members': [uid],
                'difficulty': difficulty,
                'isPrivate': is_private,
                'secretCode': secret_code if is_private else None,
                'startTime': start_time,
                'hotZoneNotified': False,
                'createdAt': now,
                'updatedAt': now,
            })
            transaction.set(member_path(quest_id, uid), {
                'uid': uid, 'name': host.name, 'joinedAt': now, 'role': 'host',
            })
            transaction.set(joined_quest_path(uid, quest_id), {'joinedAt': now, 'role': 'host'})
            log_activity(transaction, ActivityEntry(
                'quest_created', uid, host.name, f"started {title}", title, now,
            ))
            return quest_id

        quest_id = self.run(create_in_transaction)
        logger.info(f"Quest {quest_id} created by {uid}")
        return {'success': True, 'questId': quest_id}

    # -- join --------------------------------------------------------------
    def join_quest(self, uid, quest_id, secret_code=None, display_name=None):
        """Join an open quest; capacity check and member count move together."""
        rules = self.config.QUEST_RULES

        def join_in_transaction(transaction):
            now = self.now()
            pairs, (quest_snap, member_snap) = read_user_pairs(
                transaction, [uid], extra_paths=[quest_path(quest_id), member_path(quest_id, uid)],
            )
            if not quest_snap.exists:
                raise NotFound("Quest not found")
            quest = Quest(quest_id, quest_snap.to_dict())
            pair = pairs[uid]

            if member_snap.exists:
                return {'alreadyJoined': True}
            if quest.status != 'open':
                raise PreconditionFailed("Quest is not open")
            if quest.members_count >= quest.max_players:
                raise PreconditionFailed("Quest is full")
            if quest.is_private and quest.secret_code != secret_code and quest.host_id != uid:
                raise PreconditionFailed("Invalid secret code", status_code=403)

            required_level = self.config.THREAT_LEVEL_REQUIREMENTS.get(quest.difficulty, 0)
            if pair.level < required_level:
                raise PreconditionFailed(
                    f"Clearance Denied: You need to be Level {required_level} to join this mission.",
                    status_code=403, requiredLevel=required_level,
                )

            name = display_name or pair.name
            members_count = quest.members_count + 1
            hot_zone = (
                not quest.hot_zone_notified
                and quest.max_players > 0
                and members_count / quest.max_players >= rules['hot_zone_ratio']
            )
            transaction.set(member_path(quest_id, uid), {
                'uid': uid, 'name': name, 'joinedAt': now, 'role': 'member',
            })
            transaction.set(joined_quest_path(uid, quest_id), {'joinedAt': now, 'role': 'member'})
            quest_update = {
                'members': ArrayUnion([uid]),
                'membersCount': Increment(1),
            }
            if hot_zone:
                quest_update['hotZoneNotified'] = True
            transaction.update(quest_path(quest_id), quest_update)
            log_activity(transaction, ActivityEntry(
                'hero_joined', uid, name, f"joined {quest.title}", quest.title, now,
            ))
            return {
                'alreadyJoined': False,
                'name': name,
                'title': quest.title,
                'hostId': quest.host_id,
                'membersCount': members_count,
                'maxPlayers': quest.max_players,
                'hotZone': hot_zone,
            }

        result = self.run(join_in_transaction)
        if result['alreadyJoined']:
            return {'success': True, 'alreadyJoined': True}

        logger.info(f"{uid} joined quest {quest_id} ({result['membersCount']}/{result['maxPlayers']})")
        host_id = result['hostId']
        if host_id and host_id != uid:
            self.notify(host_id, "New Squad Member!",
                        f"{result['name']} just joined \"{result['title']}\". Check the lobby.",
                        {'type': 'quest_join', 'questId': quest_id})
        if result['hotZone']:
            usage = round(result['membersCount'] / result['maxPlayers'] * 100)
            self.notify(host_id, "Hot Zone Active!",
                        f"Your quest \"{result['title']}\" is {usage}% full! It's filling up fast.",
                        {'type': 'hot_zone', 'questId': quest_id})
        return {
            'success': True,
            'membersCount': result['membersCount'],
            'hotZone': result['hotZone'],
        }

    # -- finalize ----------------------------------------------------------
    def compute_quest_reward(self, quest: Quest, uid, now, photo_url=None):
        """Base reward plus the time, photo, host and Showdown bonuses."""
        rules = self.config.QUEST_RULES
        earned = rules['base_xp']
        bonuses = []

        if quest.start_time is not None:
            minutes_from_start = (now - quest.start_time).total_seconds() / 60
            if -rules['punctuality_early_minutes'] <= minutes_from_start <= rules['punctuality_late_minutes']:
                earned += rules['punctuality_bonus']
                bonuses.append('PUNCTUALITY')

        if photo_url and len(photo_url) > rules['photo_min_length']:
            earned += rules['photo_bonus']
            bonuses.append('PHOTO_EVIDENCE')

        if quest.host_id == uid:
            earned += rules['host_bonus']
            bonuses.append('HOST_BONUS')

        if is_showdown(now, self.tz_name, rules['showdown_weekday'], rules['showdown_start_hour']):
            earned *= rules['showdown_multiplier']
            bonuses.append('SHOWDOWN_SUNDAY')

        return earned, bonuses

    def _active_buff_multiplier(self, buff, now):
        if not isinstance(buff, dict):
            return None
        expires_at = as_datetime(buff.get('expiresAt'))
        if expires_at is None or expires_at <= now:
            return None
        return buff.get('multiplier') or None

    def finalize_quest(self, uid, quest_id, photo_url=None):
        """Pay the quest reward at most once per (quest, member)."""
        rules = self.config.QUEST_RULES
        badge_rules = self.config.QUEST_BADGES

        def finalize_in_transaction(transaction):
            now = self.now()
            pairs, (quest_snap, member_snap, verification_snap) = read_user_pairs(
                transaction, [uid], week_start(now, self.tz_name),
                extra_paths=[quest_path(quest_id), member_path(quest_id, uid), verification_path(quest_id, uid)],
            )
            if not quest_snap.exists:
                raise NotFound("Quest not found")
            if not member_snap.exists:
                raise Forbidden("You are not a member of this quest")
            if Verification(verification_snap.to_dict()).rewarded:
                return {'alreadyClaimed': True}

            quest = Quest(quest_id, quest_snap.to_dict())
            pair = pairs[uid]
            previous_level = pair.level

            earned_xp, bonuses = self.compute_quest_reward(quest, uid, now, photo_url)
            if pair.record.inventory_count(XP_BOOST) > 0:
                earned_xp *= rules['boost_multiplier']
                bonuses.append('XP_BOOST')
                pair.increment_private('inventory', XP_BOOST, -1)
            buff_multiplier = self._active_buff_multiplier(pair.record.active_buff, now)
            if buff_multiplier:
                earned_xp = int(math.floor(earned_xp * buff_multiplier))
                bonuses.append('CHAMPION_BUFF')

            pair.earn(earned_xp)
            pair.increment('questsCompleted', 1)
            pair.increment('reliabilityScore', rules['reliability_on_complete'])
            candidates = [badge_rules['first_completion']]
            candidates.extend(badge_rules['bonuses'][b] for b in bonuses if b in badge_rules['bonuses'])
            new_badges = pair.grant_badges(candidates)
            pair.stage(transaction, now)

            name = member_snap.get('name') or pair.name
            transaction.set(verification_path(quest_id, uid), {
                'completed': True,
                'rewarded': True,
                'earnedXP': earned_xp,
                'bonuses': bonuses,
                'completedAt': now,
                'photoURL': photo_url if photo_url else None,
            }, merge=True)
            log_activity(transaction, ActivityEntry(
                'quest', uid, name, f"completed {quest.title}", quest.title, now, earned_xp=earned_xp,
            ))
            for badge in new_badges:
                log_activity(transaction, ActivityEntry(
                    'badge', uid, name, f"unlocked {badge} badge", badge, now,
                ))
            return {
                'alreadyClaimed': False,
                'earnedXP': earned_xp,
                'newLevel': pair.level,
                'previousLevel': previous_level,
                'bonuses': bonuses,
                'newBadges': new_badges,
            }

        result = self.run(finalize_in_transaction)
        if result['alreadyClaimed']:
            return {'success': True, 'alreadyClaimed': True}

        logger.info(f"Quest {quest_id} finalized by {uid}: +{result['earnedXP']} XP {result['bonuses']}")
        if result['newLevel'] > result['previousLevel']:
            self.notify(uid, "Level Up!", f"You reached Level {result['newLevel']}. Keep questing!",
                        {'type': 'level_up', 'level': str(result['newLevel'])})
        return {
            'success': True,
            'earnedXP': result['earnedXP'],
            'newLevel': result['newLevel'],
            'bonuses': result['bonuses'],
            'newBadges': result['newBadges'],
        }

    # -- leave -------------------------------------------------------------
    def leave_penalty(self, value: int) -> int:
        rules = self.config.LEAVE_RULES
        if value <= 0:
            return 0
        return max(rules['min_penalty'], int(math.floor(value * rules['penalty_rate'])))

    def leave_quest(self, uid, quest_id):
        """Leave a quest; a last-minute or late exit costs 2% of wallet and weekly XP."""
        rules = self.config.LEAVE_RULES

        def leave_in_transaction(transaction):
            now = self.now()
            pairs, (quest_snap, member_snap) = read_user_pairs(
                transaction, [uid], week_start(now, self.tz_name),
                extra_paths=[quest_path(quest_id), member_path(quest_id, uid)],
            )
            if not quest_snap.exists:
                raise NotFound("Quest not found")
            if not member_snap.exists:
                raise Forbidden("You are not a member of this quest")
            quest = Quest(quest_id, quest_snap.to_dict())
            if quest.host_id == uid:
                raise Forbidden("Hosts cannot leave. You must delete the quest.")

            pair = pairs[uid]
            penalized = (
                quest.start_time is not None
                and hours_between(now, quest.start_time) <= rules['grace_hours']
            )
            xp_penalty = weekly_penalty = 0
            if penalized:
                xp_penalty = self.leave_penalty(pair.balance)
                weekly_penalty = self.leave_penalty(pair.this_week_xp)
                if xp_penalty:
                    pair.increment('xp', -xp_penalty)
                if weekly_penalty:
                    pair.increment('thisWeekXP', -weekly_penalty)
                pair.increment('reliabilityScore', -rules['reliability_penalty'])
                pair.stage(transaction, now)

            transaction.delete(member_path(quest_id, uid))
            transaction.delete(joined_quest_path(uid, quest_id))
            transaction.update(quest_path(quest_id), {
                'members': ArrayRemove([uid]),
                'membersCount': Increment(-1),
            })
            return {
                'title': quest.title,
                'hostId': quest.host_id,
                'name': member_snap.get('name') or pair.name,
                'xpPenalty': xp_penalty,
                'weeklyPenalty': weekly_penalty,
            }

        result = self.run(leave_in_transaction)
        logger.info(f"{uid} left quest {quest_id} (penalty {result['xpPenalty']} XP)")
        self.notify(result['hostId'], "Squad Update",
                    f"{result['name']} has left \"{result['title']}\". A spot just opened up!",
                    {'type': 'quest_leave', 'questId': quest_id})
        return {
            'success': True,
            'xpPenalty': result['xpPenalty'],
            'weeklyPenalty': result['weeklyPenalty'],
        }

    # -- host management ---------------------------------------------------
    def _require_host(self, uid, quest_id) -> Quest:
        snapshot = self.store.get(quest_path(quest_id))
        if not snapshot.exists:
            raise NotFound("Quest not found")
        quest = Quest(quest_id, snapshot.to_dict())
        if quest.host_id != uid:
            raise Forbidden("Only quest host can modify this quest")
        return quest

    def edit_quest(self, uid, quest_id, updates):
        """Host-only edit; protected fields are rejected outright."""
        if not isinstance(updates, dict) or not updates:
            raise InvalidRequest("No updates provided")
        protected = sorted(set(updates) & set(self.config.PROTECTED_QUEST_FIELDS))
        if protected:
            raise InvalidRequest(f"Cannot modify protected fields: {', '.join(protected)}", fields=protected)

        changes = dict(updates)
        for field in ('maxPlayers', 'difficulty'):
            if field in changes:
                try:
                    changes[field] = int(changes[field])
                except (TypeError, ValueError):
                    raise InvalidRequest(f"{field} must be an integer")
        if 'maxPlayers' in changes and changes['maxPlayers'] < 1:
            raise InvalidRequest("maxPlayers must be at least 1")
        if 'difficulty' in changes and changes['difficulty'] not in self.config.THREAT_LEVEL_REQUIREMENTS:
            raise InvalidRequest("Invalid difficulty")
        if 'startTime' in changes:
            start_time = as_datetime(changes['startTime'])
            if start_time is None:
                raise InvalidRequest("Invalid startTime")
            changes['startTime'] = start_time

        def edit_in_transaction(transaction):
            quest_snap = transaction.get(quest_path(quest_id))
            if not quest_snap.exists:
                raise NotFound("Quest not found")
            quest = Quest(quest_id, quest_snap.to_dict())
            if quest.host_id != uid:
                raise Forbidden("Only quest host can edit")
            if 'maxPlayers' in changes and changes['maxPlayers'] < quest.members_count:
                raise PreconditionFailed("maxPlayers cannot be below the current member count")
            changes['updatedAt'] = self.now()
            transaction.update(quest_path(quest_id), changes)
            return sorted(updates)

        fields = self.run(edit_in_transaction)
        logger.info(f"Quest {quest_id} edited by {uid}: {fields}")
        return {'success': True, 'updated': fields}

    def delete_quest(self, uid, quest_id):
        """Host-only delete, cascading to every subcollection and member index."""
        self._require_host(uid, quest_id)
        base = quest_path(quest_id)

        paths = []
        member_ids = []
        for name in QUEST_SUBCOLLECTIONS:
            for snapshot in self.store.list_documents(f"{base}/{name}"):
                paths.append(snapshot.path)
                if name == 'members':
                    member_ids.append(snapshot.id)
        paths.extend(joined_quest_path(member_id, quest_id) for member_id in member_ids)

        for chunk in chunked(paths, self.config.BATCH_WRITE_LIMIT):
            batch = self.store.batch()
            for path in chunk:
                batch.delete(path)
            batch.commit()
        # Parent document goes last
        self.store.delete(base)

        logger.info(f"Quest {quest_id} deleted by {uid} ({len(paths)} related documents)")
        return {'success': True, 'deleted': len(paths) + 1}
