import logging

from flask import Blueprint, current_app, g, jsonify, request

from squad_quest.errors import RewardError
from squad_quest.tasks.migration import backfill_lifetime_xp
from squad_quest.utils.security import admin_secret_required, login_required
from squad_quest.utils.validators import validate_json_input

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def services():
    return current_app.extensions['squad_quest']


@api_bp.errorhandler(RewardError)
def handle_reward_error(error):
    if error.status_code >= 500:
        logger.warning(f"{request.path} failed: {error.reason}")
    else:
        logger.info(f"{request.path} rejected: {error.reason}")
    return jsonify(error.to_dict()), error.status_code


# -- daily bounty / streak -------------------------------------------------
@api_bp.route('/bounty/claim', methods=['POST'])
@login_required
def claim_bounty():
    return jsonify(services().bounty.claim(g.user['uid']))


@api_bp.route('/streak/sync', methods=['POST'])
@login_required
def sync_streak():
    return jsonify(services().bounty.sync_streak(g.user['uid']))


@api_bp.route('/user/me', methods=['GET'])
@login_required
def get_profile():
    """Public profile of the caller, with a stale week zeroed on the way out."""
    profile = services().weekly_reset.lazy_reset_user(g.user['uid'])
    profile['uid'] = g.user['uid']
    return jsonify(profile)


# -- quests ----------------------------------------------------------------
@api_bp.route('/quest', methods=['POST'])
@login_required
@validate_json_input({'title': {'required': True, 'type': 'str'}})
def create_quest():
    return jsonify(services().quests.create_quest(g.user['uid'], request.validated_data)), 201


@api_bp.route('/quest/join', methods=['POST'])
@login_required
@validate_json_input({'questId': {'required': True, 'type': 'str'}, 'secretCode': {'type': 'str'}})
def join_quest():
    data = request.validated_data
    return jsonify(services().quests.join_quest(
        g.user['uid'], data['questId'], data.get('secretCode'), g.user.get('name'),
    ))


@api_bp.route('/quest/finalize', methods=['POST'])
@login_required
@validate_json_input({'questId': {'required': True, 'type': 'str'}, 'photoURL': {'type': 'str'}})
def finalize_quest():
    data = request.validated_data
    return jsonify(services().quests.finalize_quest(g.user['uid'], data['questId'], data.get('photoURL')))


@api_bp.route('/quest/leave', methods=['POST'])
@login_required
@validate_json_input({'questId': {'required': True, 'type': 'str'}})
def leave_quest():
    return jsonify(services().quests.leave_quest(g.user['uid'], request.validated_data['questId']))


@api_bp.route('/quest/vibe-check', methods=['POST'])
@login_required
@validate_json_input({'questId': {'required': True, 'type': 'str'}, 'reviews': {'required': True, 'type': 'dict'}})
def vibe_check():
    data = request.validated_data
    return jsonify(services().vibe_check.submit(g.user['uid'], data['questId'], data['reviews']))


@api_bp.route('/quest/<quest_id>', methods=['PATCH'])
@login_required
def edit_quest(quest_id):
    updates = request.get_json(silent=True)
    return jsonify(services().quests.edit_quest(g.user['uid'], quest_id, updates))


@api_bp.route('/quest/<quest_id>', methods=['DELETE'])
@login_required
def delete_quest(quest_id):
    return jsonify(services().quests.delete_quest(g.user['uid'], quest_id))


# -- leaderboards ----------------------------------------------------------
@api_bp.route('/leaderboard/weekly', methods=['GET'])
@login_required
def weekly_leaderboard():
    return jsonify(services().leaderboard.weekly(request.args.get('city')))


@api_bp.route('/leaderboard/all-time', methods=['GET'])
@login_required
def all_time_leaderboard():
    return jsonify(services().leaderboard.all_time(request.args.get('city')))


# -- shop ------------------------------------------------------------------
@api_bp.route('/shop/items', methods=['GET'])
def get_shop_items():
    return jsonify({'items': services().shop.list_items()})


@api_bp.route('/shop/buy', methods=['POST'])
@login_required
@validate_json_input({'itemId': {'required': True, 'type': 'str'}})
def buy_item():
    return jsonify(services().shop.buy(g.user['uid'], request.validated_data['itemId']))


@api_bp.route('/shop/redemptions', methods=['GET'])
@login_required
def get_redemptions():
    return jsonify({'redemptions': services().shop.redemptions(g.user['uid'])})


# -- admin -----------------------------------------------------------------
@api_bp.route('/admin/reset-weekly-xp', methods=['POST'])
@admin_secret_required
def admin_reset_weekly_xp():
    logger.info(f"Admin force reset initiated by {request.remote_addr}")
    result = services().weekly_reset.run_weekly_cycle(force=True)
    result['message'] = 'Weekly XP reset completed successfully'
    return jsonify(result)


@api_bp.route('/admin/coupons', methods=['POST'])
@admin_secret_required
@validate_json_input({'itemId': {'required': True, 'type': 'str'}, 'codes': {'required': True, 'type': 'list'}})
def admin_seed_coupons():
    data = request.validated_data
    return jsonify(services().shop.seed_coupons(data['itemId'], data['codes']))


@api_bp.route('/admin/migrate-lifetime-xp', methods=['POST'])
@admin_secret_required
def admin_migrate_lifetime_xp():
    svc = services()
    return jsonify(dict(backfill_lifetime_xp(svc.store, svc.config, svc.clock), success=True))
