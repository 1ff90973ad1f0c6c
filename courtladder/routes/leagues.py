"""League setup and standings routes."""
from flask import Blueprint, request, jsonify

from courtladder.auth_utils import login_required
from courtladder.routes.helpers import _json_body, _optional_int, _parse_iso_datetime
from courtladder.services.leagues import add_member, create_league, get_league
from courtladder.services.standings import compute_standings

leagues_bp = Blueprint('leagues', __name__)


@leagues_bp.route('', methods=['POST'])
@login_required
def create():
    data = _json_body()
    league = create_league(
        request.current_user,
        data.get('name'),
        mode=data.get('mode', 'scheduled'),
        start_date=_parse_iso_datetime(data.get('start_date'), 'start_date'),
        end_date=_parse_iso_datetime(data.get('end_date'), 'end_date'),
        scoring_rules=data.get('scoring_rules'),
    )
    return jsonify({'league': league.to_dict()}), 201


@leagues_bp.route('/<int:league_id>', methods=['GET'])
@login_required
def get_one(league_id):
    league = get_league(league_id)
    return jsonify({
        'league': league.to_dict(),
        'members': [member.to_dict() for member in league.members],
    })


@leagues_bp.route('/<int:league_id>/members', methods=['POST'])
@login_required
def add_league_member(league_id):
    data = _json_body()
    user_id = _optional_int(data.get('user_id'), 'user_id')
    if user_id is None:
        return jsonify({'error': 'user_id is required', 'code': 'VALIDATION_ERROR'}), 400
    member = add_member(request.current_user, league_id, user_id, data.get('role', 'member'))
    return jsonify({'member': member.to_dict()}), 201


@leagues_bp.route('/<int:league_id>/standings', methods=['GET'])
@login_required
def standings(league_id):
    scope = str(request.args.get('scope') or '').strip().lower() or None
    result = compute_standings(league_id, scope=scope)
    return jsonify({
        'league_id': result.league_id,
        'scope': result.scope,
        'computed_at': result.computed_at,
        'snapshot_id': result.snapshot_id,
        'rows': result.rows,
        'movement': result.movement,
    })
