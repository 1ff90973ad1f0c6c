"""Platform admin routes: rating corrections and ledger maintenance."""
from flask import Blueprint, request, jsonify

from courtladder.auth_utils import admin_required
from courtladder.routes.helpers import _json_body
from courtladder.services.profiles import adjust_rating
from courtladder.services.rating_engine import audit_ledger, replay_pending_rating_updates
from courtladder.services.standings import recompute_all_standings

admin_bp = Blueprint('admin', __name__)


@admin_bp.route('/users/<int:user_id>/elo-adjustments', methods=['POST'])
@admin_required
def create_elo_adjustment(user_id):
    data = _json_body()
    result = adjust_rating(request.current_user.id, user_id, data.get('delta'), data.get('note'))
    return jsonify(result), 201


@admin_bp.route('/ratings/replay', methods=['POST'])
@admin_required
def replay_ratings():
    applied = replay_pending_rating_updates()
    return jsonify({'applied': applied})


@admin_bp.route('/ratings/audit', methods=['GET'])
@admin_required
def audit_ratings():
    mismatches = audit_ledger()
    return jsonify({'ok': not mismatches, 'mismatches': mismatches})


@admin_bp.route('/standings/recompute', methods=['POST'])
@admin_required
def recompute_standings():
    summary = recompute_all_standings()
    return jsonify(summary)
