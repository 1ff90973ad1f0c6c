"""Current player's competitive profile, rating history and onboarding."""
from flask import Blueprint, request, jsonify

from courtladder.auth_utils import login_required
from courtladder.routes.helpers import _json_body
from courtladder.services.profiles import (
    get_competitive_profile, list_elo_history, set_initial_category,
)

me_bp = Blueprint('me', __name__)


@me_bp.route('/competitive-profile', methods=['GET'])
@login_required
def competitive_profile():
    profile = get_competitive_profile(request.current_user.id)
    return jsonify({'profile': profile})


@me_bp.route('/elo-history', methods=['GET'])
@login_required
def elo_history():
    raw_limit = request.args.get('limit')
    limit = None
    if raw_limit not in (None, ''):
        try:
            limit = int(raw_limit)
        except (TypeError, ValueError):
            return jsonify({'error': 'limit must be an integer', 'code': 'VALIDATION_ERROR'}), 400

    items, next_cursor = list_elo_history(
        request.current_user.id, cursor=request.args.get('cursor'), limit=limit,
    )
    return jsonify({'items': items, 'next_cursor': next_cursor})


@me_bp.route('/onboarding', methods=['POST'])
@login_required
def onboarding():
    data = _json_body()
    category = data.get('category')
    if isinstance(category, str) and category.strip().isdigit():
        category = int(category.strip())
    profile = set_initial_category(request.current_user.id, category)
    return jsonify({'profile': profile})
