"""Match result reporting and confirmation routes."""
from flask import Blueprint, request, jsonify
from sqlalchemy import or_, select

from courtladder.auth_utils import login_required
from courtladder.models import MatchResult, MatchResultPlayer, MatchStatus, MatchType
from courtladder.routes.helpers import (
    _after_match_change, _json_body, _optional_int, _parse_iso_datetime,
    _parse_team_ids, idempotent,
)
from courtladder.services import match_lifecycle
from courtladder.services.match_reporting import report_match_result
from courtladder.services.match_store import get_match_result

matches_bp = Blueprint('matches', __name__)

_DEFAULT_LIST_LIMIT = 50
_MAX_LIST_LIMIT = 200


def _match_payload(match):
    return match.to_dict(viewer_id=request.current_user.id, include_events=True)


def _transition_response(outcome, reason):
    payload = {
        'match': _match_payload(outcome.match),
        'replayed': outcome.replayed,
        'elo_changes': [change._asdict() for change in outcome.deltas],
    }
    if outcome.replayed:
        payload['code'] = match_lifecycle.REPLAY_CODE
    else:
        _after_match_change(outcome.match, reason)
    return jsonify(payload)


@matches_bp.route('', methods=['POST'])
@login_required
@idempotent
def report_match():
    data = _json_body()
    team_a_ids = _parse_team_ids(data.get('team_a'))
    team_b_ids = _parse_team_ids(data.get('team_b'))
    if team_a_ids is None or team_b_ids is None:
        return jsonify({
            'error': 'Both teams must be lists of numeric player IDs',
            'code': 'VALIDATION_ERROR',
        }), 400

    match, replayed = report_match_result(
        request.current_user,
        team_a_ids,
        team_b_ids,
        data.get('sets'),
        match_type=data.get('match_type', MatchType.COMPETITIVE),
        source=data.get('source', 'manual'),
        league_id=_optional_int(data.get('league_id'), 'league_id'),
        played_at=_parse_iso_datetime(data.get('played_at'), 'played_at'),
        challenge_id=_optional_int(data.get('challenge_id'), 'challenge_id'),
        reservation_id=_optional_int(data.get('reservation_id'), 'reservation_id'),
    )
    if not replayed:
        _after_match_change(match, 'reported')
    return jsonify({'match': _match_payload(match), 'replayed': replayed}), 200 if replayed else 201


@matches_bp.route('', methods=['GET'])
@login_required
def list_matches():
    """Results the current user played in, newest first."""
    status = str(request.args.get('status') or '').strip().lower()
    if status and status not in MatchStatus.ALL:
        return jsonify({'error': 'Invalid status filter', 'code': 'VALIDATION_ERROR'}), 400
    try:
        limit = int(request.args.get('limit', _DEFAULT_LIST_LIMIT))
    except (TypeError, ValueError):
        limit = _DEFAULT_LIST_LIMIT
    limit = max(1, min(limit, _MAX_LIST_LIMIT))

    user_id = request.current_user.id
    played_ids = select(MatchResultPlayer.match_result_id).where(
        MatchResultPlayer.user_id == user_id
    )
    query = MatchResult.query.filter(or_(
        MatchResult.id.in_(played_ids),
        MatchResult.reported_by_user_id == user_id,
    ))
    if status:
        query = query.filter(MatchResult.status == status)
    league_id = _optional_int(request.args.get('league_id'), 'league_id')
    if league_id is not None:
        query = query.filter(MatchResult.league_id == league_id)

    matches = query.order_by(MatchResult.created_at.desc(), MatchResult.id.desc()).limit(limit).all()
    return jsonify({'matches': [m.to_dict(viewer_id=user_id) for m in matches]})


@matches_bp.route('/<int:match_id>', methods=['GET'])
@login_required
def get_match(match_id):
    return jsonify({'match': _match_payload(get_match_result(match_id))})


@matches_bp.route('/<int:match_id>/confirm', methods=['POST', 'PATCH'])
@login_required
@idempotent
def confirm_match(match_id):
    outcome = match_lifecycle.confirm(match_id, request.current_user)
    return _transition_response(outcome, 'confirmed')


@matches_bp.route('/<int:match_id>/reject', methods=['POST', 'PATCH'])
@login_required
@idempotent
def reject_match(match_id):
    data = _json_body()
    outcome = match_lifecycle.reject(match_id, request.current_user, data.get('reason'))
    return _transition_response(outcome, 'rejected')


@matches_bp.route('/<int:match_id>/dispute', methods=['POST', 'PATCH'])
@login_required
@idempotent
def dispute_match(match_id):
    data = _json_body()
    outcome = match_lifecycle.dispute(
        match_id, request.current_user, data.get('reason'), data.get('message'),
    )
    return _transition_response(outcome, 'disputed')


@matches_bp.route('/<int:match_id>/resolve-confirm-as-is', methods=['POST', 'PATCH'])
@login_required
@idempotent
def resolve_confirm_as_is(match_id):
    outcome = match_lifecycle.resolve_confirm_as_is(match_id, request.current_user)
    return _transition_response(outcome, 'resolved')


@matches_bp.route('/<int:match_id>/resolve', methods=['POST', 'PATCH'])
@login_required
@idempotent
def resolve_with_correction(match_id):
    """Admin override: replace the scoreline and resolve in one step."""
    data = _json_body()
    outcome = match_lifecycle.resolve_with_correction(
        match_id, request.current_user, data.get('sets'), data.get('note'),
    )
    return _transition_response(outcome, 'overridden')
